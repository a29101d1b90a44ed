#!/usr/bin/env python3
"""
Sensor log CSV access.

- SensorLogReader reads a 1-based range of data rows from a logged CSV and knows
  which columns carry per-slot voltages.
- reduce_directory() trims finished per-channel CSVs in place (drop leading and
  trailing rows, keep selected columns).
"""

import argparse
import logging
import re
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import pandas as pd

logger = logging.getLogger(__name__)

SLOT_NUMBER_RE = re.compile(r"(\d+)")
UNSAFE_NAME_RE = re.compile(r"[^\w.%-]+")

PathLike = Union[str, Path]


class CSVProcessingError(Exception):
    """Base exception for sensor log CSV errors."""

    pass


class InvalidRangeError(CSVProcessingError):
    """Raised for a row range or column selection that does not fit the file."""

    pass


class FileAccessError(CSVProcessingError):
    """Raised when a CSV cannot be parsed or written."""

    pass


def slot_number(column: str) -> Optional[int]:
    """First integer found in a channel column name, e.g. 'Slot_03_V' -> 3."""
    match = SLOT_NUMBER_RE.search(column)
    return int(match.group(1)) if match else None


def voltage_columns(columns: Sequence[str], marker: str = "Slot") -> List[str]:
    """Columns that carry a channel voltage, identified by a marker substring."""
    return [c for c in columns if marker in str(c)]


class SensorLogReader:
    """
    Row-range reader for a sensor log CSV.

    Rows are numbered from 1 and never include the header line, which is always
    preserved in what read_rows() returns.
    """

    def __init__(self, path: PathLike) -> None:
        self.path = Path(path)
        if not self.path.is_file():
            if self.path.exists():
                raise FileAccessError(f"Not a regular file: {self.path}")
            raise FileNotFoundError(f"Sensor log not found: {self.path}")
        if self.path.suffix.lower() != ".csv":
            logger.warning(f"Sensor log without .csv suffix: {self.path}")
        self._row_count: Optional[int] = None

    def row_count(self) -> int:
        """Number of data rows, counted once and cached."""
        if self._row_count is None:
            try:
                self._row_count = sum(
                    len(chunk)
                    for chunk in pd.read_csv(
                        self.path, usecols=[0], chunksize=50_000, dtype=str
                    )
                )
            except pd.errors.EmptyDataError:
                self._row_count = 0
            except (OSError, pd.errors.ParserError, ValueError) as e:
                raise FileAccessError(f"Cannot parse {self.path.name}: {e}")
        return self._row_count

    def resolve_rows(
        self, first: Optional[int] = None, last: Optional[int] = None
    ) -> Tuple[int, int]:
        """
        Turn an optional (first, last) request into a concrete inclusive range.
        A last row past the end of the file is clamped.

        Raises:
            InvalidRangeError: for non-positive bounds, first past the end, or last < first.
        """
        total = self.row_count()
        first = 1 if first is None else first
        last = total if last is None else last
        for name, value in (("first row", first), ("last row", last)):
            if not isinstance(value, int) or value < 1:
                raise InvalidRangeError(f"{name} must be a positive integer, got {value!r}")
        if first > total:
            raise InvalidRangeError(f"first row {first} is past the end ({total} rows)")
        if last < first:
            raise InvalidRangeError(f"last row {last} precedes first row {first}")
        return first, min(last, total)

    def read_rows(
        self, first: Optional[int] = None, last: Optional[int] = None
    ) -> pd.DataFrame:
        """
        Read rows first..last (inclusive) with every value kept as a string.

        Non-numeric readings therefore reach the per-channel outputs untouched;
        numeric coercion is the analysis stages' job.
        """
        first, last = self.resolve_rows(first, last)
        try:
            return pd.read_csv(
                self.path,
                skiprows=range(1, first),
                nrows=last - first + 1,
                dtype=str,
                keep_default_na=False,
            )
        except pd.errors.EmptyDataError:
            return pd.DataFrame()
        except (OSError, pd.errors.ParserError, ValueError) as e:
            raise FileAccessError(f"Cannot read rows {first}-{last} of {self.path.name}: {e}")

    def header(self) -> List[str]:
        try:
            return list(pd.read_csv(self.path, nrows=0).columns)
        except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise FileAccessError(f"Cannot read header of {self.path.name}: {e}")

    def channel_columns(self, marker: str = "Slot") -> List[str]:
        return voltage_columns(self.header(), marker)

    def trim(
        self,
        strip_first: int,
        strip_last: int,
        keep_cols: Optional[Sequence[int]] = None,
        target: Optional[PathLike] = None,
    ) -> Path:
        """
        Write the file minus its first strip_first and last strip_last rows,
        restricted to keep_cols (zero-based, header kept). Overwrites in place
        unless target is given.
        """
        if min(strip_first, strip_last) < 0:
            raise InvalidRangeError("strip counts must be non-negative")
        total = self.row_count()
        if strip_first + strip_last >= total:
            raise InvalidRangeError(
                f"stripping {strip_first}+{strip_last} rows leaves nothing of {total}"
            )
        df = self.read_rows(strip_first + 1, total - strip_last)

        if keep_cols is not None:
            out_of_range = [i for i in keep_cols if not 0 <= i < df.shape[1]]
            if out_of_range:
                raise InvalidRangeError(
                    f"column indices {out_of_range} out of range ({df.shape[1]} columns)"
                )
            df = df.iloc[:, sorted(set(keep_cols))]

        out = Path(target) if target is not None else self.path
        _write_csv(df, out)
        self._row_count = None
        logger.info(f"Trimmed {self.path.name}: {total} -> {len(df)} rows")
        return out

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False


def _write_csv(df: pd.DataFrame, path: Path) -> None:
    try:
        df.to_csv(path, index=False)
    except OSError as e:
        raise FileAccessError(f"Cannot write {path}: {e}")


def write_channel_csv(df: pd.DataFrame, output_dir: PathLike, column: str) -> Path:
    """Write one channel's augmented rows to <output_dir>/<column>.csv."""
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    stem = UNSAFE_NAME_RE.sub("_", column).strip("_") or "channel"
    path = out_dir / f"{stem}.csv"
    _write_csv(df, path)
    logger.info(f"Wrote channel CSV {path}")
    return path


def reduce_directory(
    directory: PathLike,
    strip_first: int = 10,
    strip_last: int = 10,
    keep_cols: Optional[Sequence[int]] = (0, 8),
) -> List[Path]:
    """Trim every CSV file in a directory in place."""
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Directory not found: {directory}")
    return [
        SensorLogReader(path).trim(strip_first, strip_last, keep_cols)
        for path in sorted(directory.glob("*.csv"))
    ]


def _column_list(raw: str) -> List[int]:
    try:
        return [int(tok) for tok in raw.split(",") if tok.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected comma-separated integers, got {raw!r}")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Inspect sensor logs and trim per-channel output CSVs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m src.csv_processor info usb0.csv
  python -m src.csv_processor reduce --dir outputs --strip-first 100 --strip-last 100 --keep-cols 0,3
        """,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    info = commands.add_parser("info", help="Print row count and channel columns")
    info.add_argument("csv_file")

    reduce = commands.add_parser("reduce", help="Trim every CSV in a folder in place")
    reduce.add_argument("--dir", default="outputs")
    reduce.add_argument("--strip-first", type=int, default=10)
    reduce.add_argument("--strip-last", type=int, default=10)
    reduce.add_argument("--keep-cols", type=_column_list, default=[0, 8])

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
    )

    try:
        if args.command == "info":
            reader = SensorLogReader(args.csv_file)
            print(f"{reader.path}: {reader.row_count()} data rows")
            print(f"Columns: {reader.header()}")
            print(f"Channel columns: {reader.channel_columns()}")
        else:
            trimmed = reduce_directory(
                args.dir, args.strip_first, args.strip_last, args.keep_cols
            )
            print(f"Trimmed {len(trimmed)} file(s) in {args.dir}")
    except (FileNotFoundError, CSVProcessingError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
