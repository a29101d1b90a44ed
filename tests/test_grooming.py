import json
from pathlib import Path

import pytest

from src.grooming import (
    BoardLookupError,
    calibration_file_name,
    find_board,
    grooming_commands,
    load_board_db,
    main,
)


def _setup(tmp_path: Path):
    db = tmp_path / "boards.csv"
    db.write_text("3,14,x,7,21,8,22\n3,15,x,7,23,8,24\n5,1,x,1,1,1,1\n5,1,y,2,2,2,2\n")
    folder = tmp_path / "json"
    folder.mkdir()
    (folder / "NO2_Batch_00008_Serial_00022_Slot_02_blv.json").write_text(
        json.dumps({"commands": ["no2_sen 0.01000000", "no2_blv clear"]})
    )
    (folder / "CO_Batch_00007_Serial_00021_Slot_05_blv.json").write_text(
        json.dumps({"commands": ["co_blv clear"]})
    )
    return db, folder


def test_file_name_zero_padding():
    assert (
        calibration_file_name("NO2", 3, 14, 2) == "NO2_Batch_00003_Serial_00014_Slot_02_blv.json"
    )


def test_find_board(tmp_path: Path):
    db, _ = _setup(tmp_path)
    record = find_board(load_board_db(db), 3, 14)
    assert (record.co_batch, record.co_serial) == (7, 21)
    assert (record.no2_batch, record.no2_serial) == (8, 22)


@pytest.mark.parametrize("batch,serial", [(9, 9), (5, 1)])
def test_missing_or_duplicate_board_raises(tmp_path: Path, batch, serial):
    db, _ = _setup(tmp_path)
    with pytest.raises(BoardLookupError):
        find_board(load_board_db(db), batch, serial)


def test_commands_no2_first_then_co(tmp_path: Path):
    db, folder = _setup(tmp_path)
    assert grooming_commands(3, 14, folder, db) == [
        "no2_sen 0.01000000",
        "no2_blv clear",
        "co_blv clear",
    ]


def test_missing_sensor_file_warns(tmp_path: Path, caplog):
    db, folder = _setup(tmp_path)
    assert grooming_commands(3, 15, folder, db) == []
    assert "0 NO2 Records Found" in caplog.text
    assert "0 CO Records Found" in caplog.text


def test_cli_prints_commands(tmp_path: Path, capsys):
    db, folder = _setup(tmp_path)
    main(
        [
            "--batch",
            "3",
            "--serial",
            "14",
            "--json-folder",
            str(folder),
            "--sensor-boards-db",
            str(db),
        ]
    )
    out = capsys.readouterr().out.splitlines()
    assert out == ["no2_sen 0.01000000", "no2_blv clear", "co_blv clear"]


def test_cli_exits_nonzero_for_unknown_board(tmp_path: Path, capsys):
    db, folder = _setup(tmp_path)
    with pytest.raises(SystemExit) as exc:
        main(["--batch", "9", "--serial", "9", "--json-folder", str(folder),
              "--sensor-boards-db", str(db)])
    assert exc.value.code != 0
    assert "Couldn't find record" in capsys.readouterr().err
