import json
import math
from pathlib import Path

import numpy as np

from src.main import (
    AnalysisParams,
    LoadParams,
    OutputParams,
    build_manifest_dict,
    build_run_identity,
    get_default_params,
)
from src.utils import (
    canonical_json_hash,
    sanitize_for_json,
    utc_timestamp_seconds,
    write_json,
    write_text_report,
)


def test_build_manifest_dict():
    counts = {
        "total_input_rows": 1000,
        "channel_count": 2,
        "calibrated_channel_count": 2,
        "plateau_count": 5,
    }
    effective_params = {"analysis": {"epsilon": 0.05}}
    artifacts = {"plot_svgs": ["plot-testhash-slot01.svg"], "blv_jsons": []}

    manifest = build_manifest_dict(
        "/test/path/log.csv", counts, effective_params, ("testhash", "fulltesthash"), artifacts
    )

    assert manifest["version"] == "1"
    assert manifest["timestamp_utc"].endswith("Z")
    assert manifest["absolute_input_path"] == "/test/path/log.csv"
    assert manifest["plateau_count"] == 5
    assert manifest["calibrated_channel_count"] == 2
    assert manifest["effective_parameters"] == effective_params
    assert manifest["canonical_hash"] == "fulltesthash"
    assert manifest["canonical_hash_short"] == "testhash"
    assert manifest["artifacts"]["plot_svgs"] == ["plot-testhash-slot01.svg"]


def test_run_identity_is_deterministic_and_parameter_sensitive(tmp_path: Path):
    load, analysis, output = get_default_params()
    load = LoadParams(log_path=tmp_path / "log.csv")
    first = build_run_identity(load, analysis, output)
    second = build_run_identity(load, AnalysisParams(), OutputParams())
    assert first[1] == second[1]
    assert first[2] == second[2]
    assert len(first[1]) == 8

    changed = build_run_identity(load, AnalysisParams(epsilon=0.1), output)
    assert changed[1] != first[1]
    assert first[3]["analysis"]["epsilon"] == 0.05
    assert first[0].endswith("/log.csv")


def test_canonical_hash_ignores_key_order():
    assert canonical_json_hash({"a": 1, "b": 2}) == canonical_json_hash({"b": 2, "a": 1})


def test_sanitize_for_json_handles_numpy_and_non_finite():
    payload = sanitize_for_json(
        {1: np.float64(0.5), "nan": float("nan"), "arr": np.array([1.0, np.inf])}
    )
    assert payload == {"1": 0.5, "nan": None, "arr": [1.0, None]}


def test_write_json_and_report(tmp_path: Path):
    target = write_json(tmp_path / "x.json", {"value": math.nan, "n": np.int64(3)})
    assert json.loads(target.read_text(encoding="utf-8")) == {"value": None, "n": 3}
    report = write_text_report("hello", tmp_path, "abcd1234")
    assert report.name == "report-abcd1234.txt"
    assert report.read_text(encoding="utf-8") == "hello"


def test_utc_timestamp_format():
    ts = utc_timestamp_seconds()
    assert ts.endswith("Z")
    assert "T" in ts
