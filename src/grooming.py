#!/usr/bin/env python3
"""
Grooming commands lookup.

Given a sensor board (batch, serial), find its CO and NO2 sensors in the board
database, locate their stored BLV calibration JSON files, and print the stored
commands (NO2 first, then CO).

The board database is a header-less CSV with rows
[board_batch, board_serial, _, co_batch, co_serial, no2_batch, no2_serial].
"""

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import pandas as pd

try:
    from .exceptions import BLVCalcError
except ImportError:
    from exceptions import BLVCalcError

logger = logging.getLogger(__name__)

IDX_BOARD_BATCH = 0
IDX_BOARD_SERIAL = 1
IDX_CO_BATCH = 3
IDX_CO_SERIAL = 4
IDX_NO2_BATCH = 5
IDX_NO2_SERIAL = 6

# Slots searched for a sensor's calibration file
SLOT_RANGE = range(1, 50)


class BoardLookupError(BLVCalcError):
    """Raised when the board database does not hold exactly one matching record."""

    pass


@dataclass(frozen=True)
class BoardRecord:
    board_batch: int
    board_serial: int
    co_batch: int
    co_serial: int
    no2_batch: int
    no2_serial: int


def load_board_db(path: Union[str, Path]) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Sensor boards database not found: {path}")
    df = pd.read_csv(path, header=None, skip_blank_lines=True)
    if df.shape[1] <= IDX_NO2_SERIAL:
        raise ValueError(
            f"Sensor boards database needs at least {IDX_NO2_SERIAL + 1} columns, "
            f"found {df.shape[1]}"
        )
    return df


def find_board(db: pd.DataFrame, batch: int, serial: int) -> BoardRecord:
    """
    Return the single record for (batch, serial).

    Raises:
        BoardLookupError: when zero or several records match.
    """
    board_batch = pd.to_numeric(db[IDX_BOARD_BATCH], errors="coerce")
    board_serial = pd.to_numeric(db[IDX_BOARD_SERIAL], errors="coerce")
    matches = db[(board_batch == batch) & (board_serial == serial)]
    if len(matches) == 0:
        raise BoardLookupError(
            f"Couldn't find record for Sensor Board Batch #{batch} / Serial #{serial}"
        )
    if len(matches) > 1:
        raise BoardLookupError(
            f"Found {len(matches)} records for Sensor Board Batch #{batch} / "
            f"Serial #{serial}, but should only have found 1"
        )
    row = matches.iloc[0]
    return BoardRecord(
        board_batch=int(row[IDX_BOARD_BATCH]),
        board_serial=int(row[IDX_BOARD_SERIAL]),
        co_batch=int(row[IDX_CO_BATCH]),
        co_serial=int(row[IDX_CO_SERIAL]),
        no2_batch=int(row[IDX_NO2_BATCH]),
        no2_serial=int(row[IDX_NO2_SERIAL]),
    )


def calibration_file_name(sensor: str, batch: int, serial: int, slot: int) -> str:
    return f"{sensor}_Batch_{batch:05d}_Serial_{serial:05d}_Slot_{slot:02d}_blv.json"


def find_calibration_files(
    folder: Union[str, Path], sensor: str, batch: int, serial: int
) -> List[Path]:
    folder = Path(folder)
    return [
        folder / calibration_file_name(sensor, batch, serial, slot)
        for slot in SLOT_RANGE
        if (folder / calibration_file_name(sensor, batch, serial, slot)).is_file()
    ]


def sensor_commands(
    folder: Union[str, Path], sensor: str, batch: int, serial: int
) -> List[str]:
    """
    Stored commands for one sensor. Warns unless exactly one file is found; with
    several, the highest slot wins.
    """
    found = find_calibration_files(folder, sensor, batch, serial)
    if len(found) != 1:
        logger.warning(f"{len(found)} {sensor} Records Found. Should have been exactly 1")
    if not found:
        return []
    payload = json.loads(found[-1].read_text(encoding="utf-8"))
    commands = payload.get("commands")
    if not isinstance(commands, list):
        raise ValueError(f"{found[-1]} has no 'commands' list")
    return [str(c) for c in commands]


def grooming_commands(
    batch: int,
    serial: int,
    json_folder: Union[str, Path],
    sensor_boards_db: Union[str, Path],
) -> List[str]:
    """All grooming commands for a board: NO2 first, then CO."""
    record = find_board(load_board_db(sensor_boards_db), batch, serial)
    return sensor_commands(
        json_folder, "NO2", record.no2_batch, record.no2_serial
    ) + sensor_commands(json_folder, "CO", record.co_batch, record.co_serial)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Print stored BLV grooming commands for a sensor board",
        epilog="Example: python -m src.grooming --batch 3 --serial 14 "
        "--json-folder output/20250101T120000 --sensor-boards-db boards.csv",
    )
    parser.add_argument("--batch", type=int, required=True, help="Sensor board batch")
    parser.add_argument("--serial", type=int, required=True, help="Sensor board serial")
    parser.add_argument(
        "--json-folder", default=".", help="Folder holding *_blv.json files"
    )
    parser.add_argument(
        "--sensor-boards-db", required=True, help="Header-less board database CSV"
    )
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
    )

    try:
        commands = grooming_commands(
            args.batch, args.serial, args.json_folder, args.sensor_boards_db
        )
    except (FileNotFoundError, ValueError, BLVCalcError) as e:
        print(f"Error: {e}", file=sys.stderr)
        parser.print_usage(sys.stderr)
        sys.exit(1)
    for command in commands:
        print(command)


if __name__ == "__main__":
    main()
