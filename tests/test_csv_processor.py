from pathlib import Path

import pandas as pd
import pytest

from src.csv_processor import (
    SensorLogReader,
    InvalidRangeError,
    reduce_directory,
    slot_number,
    voltage_columns,
    write_channel_csv,
)


def make_log(path: Path, n: int = 30) -> Path:
    df = pd.DataFrame(
        {
            "Timestamp": [i * 6 for i in range(n)],
            "Temperature_degC": [20.0 + 0.01 * i for i in range(n)],
            "Humidity_%": [45.0] * n,
            "Slot_01_V": [0.25] * n,
            "Slot_02_V": ["n/a"] + [0.3] * (n - 1),
        }
    )
    df.to_csv(path, index=False)
    return path


def test_slot_number_and_voltage_columns():
    assert slot_number("Slot_03_V") == 3
    assert slot_number("CO Slot 12 (V)") == 12
    assert slot_number("Temperature") is None
    cols = ["Timestamp", "Slot_01_V", "Temperature_degC", "Slot_02_V"]
    assert voltage_columns(cols) == ["Slot_01_V", "Slot_02_V"]


def test_read_rows_keeps_header_and_strings(tmp_path: Path):
    path = make_log(tmp_path / "log.csv")
    with SensorLogReader(path) as proc:
        assert proc.row_count() == 30
        df = proc.read_rows(5, 9)
        assert proc.channel_columns() == ["Slot_01_V", "Slot_02_V"]
    assert len(df) == 5
    assert list(df.columns)[0] == "Timestamp"
    assert df["Timestamp"].iloc[0] == "24"


def test_read_rows_preserves_non_numeric_values(tmp_path: Path):
    path = make_log(tmp_path / "log.csv")
    df = SensorLogReader(path).read_rows(None, None)
    assert len(df) == 30
    assert df["Slot_02_V"].iloc[0] == "n/a"


def test_read_rows_clamps_end_and_rejects_bad_start(tmp_path: Path):
    proc = SensorLogReader(make_log(tmp_path / "log.csv"))
    assert len(proc.read_rows(25, 500)) == 6
    with pytest.raises(InvalidRangeError):
        proc.read_rows(31, None)
    with pytest.raises(InvalidRangeError):
        proc.read_rows(10, 5)


def test_missing_file_raises(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        SensorLogReader(tmp_path / "missing.csv")


def test_trim_strips_rows_and_keeps_columns(tmp_path: Path):
    path = make_log(tmp_path / "log.csv")
    SensorLogReader(path).trim(10, 10, keep_cols=[0, 3])
    out = pd.read_csv(path)
    assert list(out.columns) == ["Timestamp", "Slot_01_V"]
    assert len(out) == 10
    assert out["Timestamp"].iloc[0] == 60


def test_trim_rejects_overstrip_and_bad_columns(tmp_path: Path):
    proc = SensorLogReader(make_log(tmp_path / "log.csv"))
    with pytest.raises(InvalidRangeError):
        proc.trim(20, 20)
    with pytest.raises(InvalidRangeError):
        proc.trim(1, 1, keep_cols=[0, 9])


def test_reduce_directory(tmp_path: Path):
    make_log(tmp_path / "a.csv")
    make_log(tmp_path / "b.csv", n=25)
    written = reduce_directory(tmp_path, strip_first=2, strip_last=3, keep_cols=[0, 1])
    assert len(written) == 2
    assert len(pd.read_csv(tmp_path / "a.csv")) == 25
    assert len(pd.read_csv(tmp_path / "b.csv")) == 20


def test_write_channel_csv_sanitizes_name(tmp_path: Path):
    df = pd.DataFrame({"x": [1, 2]})
    path = write_channel_csv(df, tmp_path / "run", "Slot 03 (V)")
    assert path.name == "Slot_03_V.csv"
    assert path.exists()
