#!/usr/bin/env python3
"""
BLV Calculator - plateau detection and baseline-voltage calibration.

This module exposes the pipeline as pure functional units:
- load_log()
- condition_temperature()
- analyze_channel()
- run_pipeline()
- write_outputs()

Each function takes explicit inputs and returns explicit outputs. The CLI
(main()) and _orchestrate() are the only places that touch the filesystem
layout of a run or print to the console.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

# Support both package and script execution modes
try:
    # When run as a package: python -m src.main
    from .calibration import Calibration, calibrate, concentration
    from .csv_processor import (
        CSVProcessingError,
        SensorLogReader,
        slot_number,
        voltage_columns,
        write_channel_csv,
    )
    from .diagnostics import StageResult
    from .edges import EdgeDetection, Plateau, find_plateaus, threshold_flat
    from .exceptions import BLVCalcError, NoSurvivingChannelsError
    from .filters import derivative_per_minute, two_pole_filter
    from .optimizer import OptimizedRegion, OptimizerParams, optimize_regions
    from .optimizer import validate_params as validate_optimizer_params
    from .sensitivity import SensitivityTable
    from .utils import (
        build_effective_parameters,
        canonical_json_hash,
        ensure_run_dir,
        normalize_abs_posix,
        utc_timestamp_seconds,
        write_json,
        write_manifest,
        write_text_report,
    )
except ImportError:
    # When run directly: python src/main.py
    from calibration import Calibration, calibrate, concentration
    from csv_processor import (
        CSVProcessingError,
        SensorLogReader,
        slot_number,
        voltage_columns,
        write_channel_csv,
    )
    from diagnostics import StageResult
    from edges import EdgeDetection, Plateau, find_plateaus, threshold_flat
    from exceptions import BLVCalcError, NoSurvivingChannelsError
    from filters import derivative_per_minute, two_pole_filter
    from optimizer import OptimizedRegion, OptimizerParams, optimize_regions
    from optimizer import validate_params as validate_optimizer_params
    from sensitivity import SensitivityTable
    from utils import (
        build_effective_parameters,
        canonical_json_hash,
        ensure_run_dir,
        normalize_abs_posix,
        utc_timestamp_seconds,
        write_json,
        write_manifest,
        write_text_report,
    )

# Configure logging for debugging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class ValidationTest(Enum):
    """Available validation scenarios for --validation-test."""

    SYNTHETIC_PLATEAUS = auto()


class ChannelStatus(Enum):
    OK = auto()
    # Ran to completion but produced no BLV segment
    INSUFFICIENT = auto()
    FAILED = auto()


@dataclass
class LoadParams:
    """
    Parameters used when loading the sensor log.

    Attributes:
        log_path: Path to the CSV log file.
        start_line: 1-based inclusive start line (data rows, header excluded) or None.
        end_line: 1-based inclusive end line (data rows) or None to read to the end.
        timestamp_col: name of the timestamp column (numeric seconds or date-times).
        temperature_col: name of the temperature column (°C).
        humidity_col: name of the humidity column; optional in the log.
        sensor_type_col: name of the sensor-type column; optional in the log.
        slot_marker: substring identifying channel voltage columns.
    """

    log_path: Optional[Path]
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    timestamp_col: str = "Timestamp"
    temperature_col: str = "Temperature_degC"
    humidity_col: str = "Humidity_%"
    sensor_type_col: str = "Sensor_Type"
    slot_marker: str = "Slot"


@dataclass
class AnalysisParams:
    """Every numeric knob of the analysis, in one place."""

    stiffness_pole1: float = 0.2
    stiffness_pole2: float = 0.2
    # Flat threshold on the filtered temperature slope, °C per minute
    epsilon: float = 0.05
    analysis_width_pct: float = 0.3
    taboo_front_pct: float = 0.1
    taboo_tail_pct: float = 0.05
    slope_fit_weight: float = 0.85
    better_slope_sig_margin: float = 0.05
    better_rsquared_sig_margin: float = 0.01
    min_slope_percentile: float = 0.5
    min_fit_percentile: float = 0.5
    minimum_optimized_sample_count: int = 10
    minimum_optimized_duration_minutes: float = 1.0
    minimum_samples_between_edges: int = 10
    minimum_plateau_pairs: int = 5

    def optimizer_params(self) -> OptimizerParams:
        return OptimizerParams(
            analysis_width_pct=self.analysis_width_pct,
            taboo_front_pct=self.taboo_front_pct,
            taboo_tail_pct=self.taboo_tail_pct,
            slope_fit_weight=self.slope_fit_weight,
            better_slope_sig_margin=self.better_slope_sig_margin,
            better_rsquared_sig_margin=self.better_rsquared_sig_margin,
            min_slope_percentile=self.min_slope_percentile,
            min_fit_percentile=self.min_fit_percentile,
        )


@dataclass
class OutputParams:
    output_dir: Path = Path("output")
    batch: Optional[int] = None
    # Slot number -> sensor serial; unmapped slots use the slot number
    serial_map: dict[int, int] = field(default_factory=dict)
    sensor_type: Optional[str] = None
    sensitivity_table: Optional[Path] = None
    render_plots: bool = True


@dataclass
class ConditionedSeries:
    """Shared, read-only vectors every channel is analyzed against."""

    elapsed_seconds: np.ndarray
    temperature: np.ndarray
    filtered_temperature: np.ndarray
    filtered_slope: np.ndarray
    flat: np.ndarray
    plateaus: List[Plateau]
    detection: EdgeDetection


@dataclass
class ChannelResult:
    column: str
    slot: int
    serial: int
    status: ChannelStatus
    regions: List[OptimizedRegion] = field(default_factory=list)
    calibration: Optional[Calibration] = None
    frame: Optional[pd.DataFrame] = None
    filtered_voltage: Optional[np.ndarray] = None
    error: Optional[str] = None
    diagnostics: List[StageResult] = field(default_factory=list)


@dataclass
class PipelineOutputs:
    sensor: str
    conditioned: ConditionedSeries
    channels: List[ChannelResult]
    edge_result: StageResult


def validate_analysis_params(params: AnalysisParams) -> None:
    """Raise ValueError on any out-of-range knob."""
    for name in ("stiffness_pole1", "stiffness_pole2"):
        value = getattr(params, name)
        if not (0.0 < value <= 1.0):
            raise ValueError(f"{name} must be in (0, 1], got {value}")
    if params.epsilon < 0:
        raise ValueError(f"epsilon must be non-negative, got {params.epsilon}")
    for name in (
        "minimum_optimized_sample_count",
        "minimum_samples_between_edges",
        "minimum_plateau_pairs",
    ):
        if getattr(params, name) < 0:
            raise ValueError(f"{name} must be non-negative")
    if params.minimum_optimized_duration_minutes < 0:
        raise ValueError("minimum_optimized_duration_minutes must be non-negative")
    validate_optimizer_params(params.optimizer_params())


def elapsed_seconds(timestamps: pd.Series) -> np.ndarray:
    """
    Convert a timestamp column to elapsed seconds since the first record.

    Numeric columns are taken as seconds; anything else is parsed as date-times.
    Timestamps must be non-decreasing.
    """
    if timestamps.empty:
        raise ValueError("Timestamp column is empty")
    numeric = pd.to_numeric(timestamps, errors="coerce")
    if numeric.notna().all():
        values = numeric.to_numpy(dtype=float)
    else:
        parsed = pd.to_datetime(timestamps, errors="coerce")
        invalid = int(parsed.isna().sum())
        if invalid:
            raise ValueError(
                f"Invalid timestamps detected after parsing: {invalid} of {len(timestamps)} rows"
            )
        values = (parsed - parsed.iloc[0]).dt.total_seconds().to_numpy(dtype=float)
    values = values - values[0]
    decreasing = np.flatnonzero(np.diff(values) < 0)
    if decreasing.size:
        raise ValueError(
            f"Timestamps must be non-decreasing; first decrease at row {int(decreasing[0]) + 1}"
        )
    return values


def load_log(params: LoadParams) -> pd.DataFrame:
    """
    Load the requested row range of the log as a DataFrame of strings and check
    that the required columns and at least one channel column are present.
    """
    if params.log_path is None:
        raise ValueError("No log path given")
    if not Path(params.log_path).exists():
        raise FileNotFoundError(f"Sensor log not found: {params.log_path}")
    with SensorLogReader(params.log_path) as reader:
        df = reader.read_rows(params.start_line, params.end_line)

    if df.empty:
        raise ValueError("No data found in the specified range")
    required = [params.timestamp_col, params.temperature_col]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(
            f"Missing required columns: {', '.join(missing)}. Found columns: {list(df.columns)}"
        )
    if not voltage_columns(df.columns, params.slot_marker):
        raise ValueError(
            f"No channel columns containing '{params.slot_marker}' found in {list(df.columns)}"
        )
    return df


def condition_temperature(
    df: pd.DataFrame, load: LoadParams, analysis: AnalysisParams
) -> Tuple[ConditionedSeries, StageResult]:
    """
    Filter the temperature trace, derive its slope, threshold it, and detect plateaus.

    Raises:
        EmptyDataError: when the temperature column has no numeric value.
    """
    t = elapsed_seconds(df[load.timestamp_col])
    s1, s2 = analysis.stiffness_pole1, analysis.stiffness_pole2

    filtered_temperature = two_pole_filter(df[load.temperature_col], s1, s2)
    raw_slope = derivative_per_minute(filtered_temperature, t)
    filtered_slope = two_pole_filter(raw_slope, s1, s2)
    flat = threshold_flat(filtered_slope, analysis.epsilon)

    edge_result = StageResult(label="edges")
    plateaus, detection = find_plateaus(
        flat,
        analysis.minimum_samples_between_edges,
        minimum_pairs=analysis.minimum_plateau_pairs,
        result=edge_result,
    )
    logger.info(edge_result.summarize())

    conditioned = ConditionedSeries(
        elapsed_seconds=t,
        temperature=pd.to_numeric(df[load.temperature_col], errors="coerce").to_numpy(
            dtype=float
        ),
        filtered_temperature=filtered_temperature,
        filtered_slope=filtered_slope,
        flat=flat,
        plateaus=plateaus,
        detection=detection,
    )
    return conditioned, edge_result


def detect_sensor_type(df: pd.DataFrame, load: LoadParams, output: OutputParams) -> str:
    if output.sensor_type:
        return output.sensor_type
    if load.sensor_type_col in df.columns:
        values = [v.strip() for v in df[load.sensor_type_col].astype(str) if v.strip()]
        if values:
            return values[0]
    return "sensor"


def _channel_frame(
    df: pd.DataFrame,
    column: str,
    load: LoadParams,
    conditioned: ConditionedSeries,
    regions: List[OptimizedRegion],
    filtered_voltage: Optional[np.ndarray],
    conc: Optional[np.ndarray],
) -> pd.DataFrame:
    keep = [
        c
        for c in (
            load.timestamp_col,
            load.sensor_type_col,
            load.temperature_col,
            load.humidity_col,
        )
        if c in df.columns
    ]
    frame = df[keep + [column]].copy().reset_index(drop=True)
    n = len(frame)

    optimized = np.zeros(n, dtype=int)
    for r in regions:
        optimized[r.rising : r.falling] = 1

    frame["filtered_temperature"] = conditioned.filtered_temperature
    frame["filtered_slope"] = conditioned.filtered_slope
    frame["flat_flag"] = conditioned.flat
    frame["plateau_flag"] = conditioned.detection.levels
    frame["optimized_flag"] = optimized
    frame["filtered_voltage"] = (
        filtered_voltage if filtered_voltage is not None else np.nan
    )
    frame["concentration"] = conc if conc is not None else np.nan
    return frame


def analyze_channel(
    df: pd.DataFrame,
    column: str,
    conditioned: ConditionedSeries,
    load: LoadParams,
    analysis: AnalysisParams,
    sensor: str,
    sensitivity: Optional[float],
    serial: Optional[int] = None,
) -> ChannelResult:
    """
    Optimize and calibrate one channel against the shared temperature plateaus.

    Channel-level failures (no numeric voltage, degenerate calibration) are
    captured in the returned ChannelResult rather than raised, so that sibling
    channels are unaffected.
    """
    slot = slot_number(column)
    slot = slot if slot is not None else 0
    result = ChannelResult(
        column=column,
        slot=slot,
        serial=serial if serial is not None else slot,
        status=ChannelStatus.OK,
    )
    opt_result = StageResult(label=f"{column} optimizer")
    range_result = StageResult(label=f"{column} ranges")
    result.diagnostics = [opt_result, range_result]

    try:
        filtered_voltage = two_pole_filter(
            df[column], analysis.stiffness_pole1, analysis.stiffness_pole2
        )
        result.filtered_voltage = filtered_voltage
        result.regions = optimize_regions(
            filtered_voltage,
            conditioned.plateaus,
            analysis.optimizer_params(),
            result=opt_result,
        )
        result.calibration = calibrate(
            result.regions,
            conditioned.elapsed_seconds,
            conditioned.filtered_temperature,
            sensor=sensor,
            sensitivity=sensitivity,
            minimum_sample_count=analysis.minimum_optimized_sample_count,
            minimum_duration_minutes=analysis.minimum_optimized_duration_minutes,
            result=range_result,
        )
    except (BLVCalcError, ValueError) as e:
        result.status = ChannelStatus.FAILED
        result.error = str(e)
        logger.error(f"Channel {column} failed: {e}")
    else:
        if not result.calibration.segments:
            result.status = ChannelStatus.INSUFFICIENT
            range_result.add_warning(
                f"Channel {column}: {len(result.calibration.ranges)} usable range(s), "
                "no BLV segment"
            )
    logger.info(range_result.summarize())

    conc = None
    if result.calibration is not None and result.filtered_voltage is not None:
        conc = concentration(
            result.filtered_voltage,
            conditioned.filtered_temperature,
            result.calibration.segments,
            sensitivity,
        )
    result.frame = _channel_frame(
        df, column, load, conditioned, result.regions, result.filtered_voltage, conc
    )
    return result


def run_pipeline(
    df: pd.DataFrame,
    load: LoadParams,
    analysis: AnalysisParams,
    output: OutputParams,
    sensitivity_table: Optional[SensitivityTable] = None,
) -> PipelineOutputs:
    """
    Full analysis of one log: temperature conditioning, then every channel.

    Raises:
        EmptyDataError: when the temperature column holds no numeric value.
        NoSurvivingChannelsError: when every channel failed.
    """
    validate_analysis_params(analysis)
    conditioned, edge_result = condition_temperature(df, load, analysis)
    sensor = detect_sensor_type(df, load, output)
    table = sensitivity_table if sensitivity_table is not None else SensitivityTable()

    channels: List[ChannelResult] = []
    for column in voltage_columns(df.columns, load.slot_marker):
        slot = slot_number(column)
        slot = slot if slot is not None else 0
        channels.append(
            analyze_channel(
                df,
                column,
                conditioned,
                load,
                analysis,
                sensor=sensor,
                sensitivity=table.lookup(output.batch, slot),
                serial=output.serial_map.get(slot, slot),
            )
        )

    if channels and all(c.status is ChannelStatus.FAILED for c in channels):
        raise NoSurvivingChannelsError(
            "All channels failed: "
            + "; ".join(f"{c.column}: {c.error}" for c in channels)
        )
    return PipelineOutputs(
        sensor=sensor, conditioned=conditioned, channels=channels, edge_result=edge_result
    )


def blv_json_name(sensor: str, batch: Optional[int], serial: int, slot: int) -> str:
    """File name the grooming tool looks up, e.g. NO2_Batch_00003_Serial_00014_Slot_02_blv.json."""
    prefix = sensor.strip().upper()
    if batch is None:
        return f"{prefix}_Slot_{slot:02d}_blv.json"
    return f"{prefix}_Batch_{batch:05d}_Serial_{serial:05d}_Slot_{slot:02d}_blv.json"


def build_summary_table(outputs: PipelineOutputs) -> pd.DataFrame:
    """One row per channel keyed by slot."""
    rows = []
    for ch in outputs.channels:
        cal = ch.calibration
        segments = cal.segments if cal else []
        rows.append(
            {
                "slot": ch.slot,
                "column": ch.column,
                "serial": ch.serial,
                "status": ch.status.name,
                "plateaus": len(outputs.conditioned.plateaus),
                "regions": len(ch.regions),
                "ranges": len(cal.ranges) if cal else 0,
                "segments": len(segments),
                "mean_blv_slope": (
                    float(np.mean([s.slope for s in segments])) if segments else np.nan
                ),
                "sensitivity": cal.sensitivity if cal else np.nan,
                "error": ch.error or "",
            }
        )
    return pd.DataFrame(rows).sort_values("slot").reset_index(drop=True)


def calibration_payload(ch: ChannelResult) -> Dict[str, Any]:
    cal = ch.calibration
    return {
        "column": ch.column,
        "slot": ch.slot,
        "serial": ch.serial,
        "ranges": cal.ranges,
        "segments": cal.segments,
        "commands": cal.commands,
        "sensitivity": cal.sensitivity,
        "overall_fit": cal.overall_fit,
    }


def write_outputs(
    outputs: PipelineOutputs,
    output: OutputParams,
    run_dir: Path,
    short_hash: str,
) -> Dict[str, List[str]]:
    """Write per-channel CSVs, BLV JSON files, plots, and the summary table."""
    try:
        from .plotting import render_channel_plot
    except ImportError:
        from plotting import render_channel_plot

    artifacts: Dict[str, List[str]] = {
        "channel_csvs": [],
        "blv_jsons": [],
        "plot_svgs": [],
        "summary_csv": [],
    }
    for ch in outputs.channels:
        if ch.frame is not None:
            artifacts["channel_csvs"].append(
                str(write_channel_csv(ch.frame, run_dir, ch.column))
            )
        if ch.calibration is not None and ch.calibration.segments:
            name = blv_json_name(outputs.sensor, output.batch, ch.serial, ch.slot)
            artifacts["blv_jsons"].append(
                str(write_json(run_dir / name, calibration_payload(ch)))
            )
        if output.render_plots and ch.filtered_voltage is not None:
            svg = run_dir / f"plot-{short_hash}-slot{ch.slot:02d}.svg"
            artifacts["plot_svgs"].append(
                render_channel_plot(
                    str(svg),
                    f"{outputs.sensor} {ch.column}",
                    outputs.conditioned.elapsed_seconds,
                    outputs.conditioned.temperature,
                    outputs.conditioned.filtered_temperature,
                    ch.filtered_voltage,
                    outputs.conditioned.plateaus,
                    ch.regions,
                    ch.calibration,
                )
            )

    summary_path = run_dir / f"summary-{short_hash}.csv"
    build_summary_table(outputs).to_csv(summary_path, index=False)
    artifacts["summary_csv"].append(str(summary_path))
    return artifacts


def get_default_params() -> tuple[LoadParams, AnalysisParams, OutputParams]:
    """
    Build the default LoadParams, AnalysisParams and OutputParams.

    This is the single point of authority for defaults; the CLI help and
    --print-defaults read from here.
    """
    load = LoadParams(log_path=None)
    analysis = AnalysisParams()
    output = OutputParams()
    return load, analysis, output


def build_run_identity(
    load: LoadParams, analysis: AnalysisParams, output: OutputParams
) -> tuple[str, str, str, dict]:
    """
    Returns (abs_input_posix, short_hash, full_hash, effective_params)
    """
    abs_input_posix = normalize_abs_posix(load.log_path) if load.log_path else ""
    effective_params = build_effective_parameters(
        load=load, analysis=analysis, output=output
    )
    canonical_payload = {
        "absolute_input_path": abs_input_posix,
        "effective_parameters": effective_params,
    }
    short_hash, full_hash = canonical_json_hash(canonical_payload)
    return abs_input_posix, short_hash, full_hash, effective_params


def build_manifest_dict(
    abs_input_posix: str,
    counts: Dict[str, int],
    effective_params: Dict[str, Any],
    hashes: tuple[str, str],
    artifact_paths: Dict[str, List[str]],
) -> Dict[str, Any]:
    short_hash, full_hash = hashes
    return {
        "version": "1",
        "timestamp_utc": utc_timestamp_seconds(),
        "absolute_input_path": abs_input_posix,
        **counts,
        "effective_parameters": effective_params,
        "canonical_hash": full_hash,
        "canonical_hash_short": short_hash,
        "artifacts": artifact_paths,
    }


def assemble_text_report(df: pd.DataFrame, outputs: PipelineOutputs) -> str:
    """Readable run report: plateaus, per-channel ranges, segments and commands."""
    parts: list[str] = ["\n"]
    t = outputs.conditioned.elapsed_seconds
    parts.append(f"Input rows: {len(df)}  Sensor: {outputs.sensor}")
    parts.append(outputs.edge_result.summarize())

    if outputs.conditioned.plateaus:
        plateau_df = pd.DataFrame(
            [
                {
                    "rising": p.rising,
                    "falling": p.falling,
                    "start_min": t[p.rising] / 60.0,
                    "end_min": t[p.falling] / 60.0,
                    "samples": p.length,
                }
                for p in outputs.conditioned.plateaus
            ]
        )
        parts.append(f"Plateaus:\n{plateau_df.to_string(index=False)}")
    else:
        parts.append("Plateaus: (none detected)")

    for ch in outputs.channels:
        parts.append("")
        parts.append(f"=== {ch.column} (slot {ch.slot}) status={ch.status.name}")
        if ch.error:
            parts.append(f"Error: {ch.error}")
        for diag in ch.diagnostics:
            parts.append(diag.summarize())
        cal = ch.calibration
        if cal is None:
            continue
        if cal.ranges:
            ranges_df = pd.DataFrame([dataclasses.asdict(r) for r in cal.ranges])
            parts.append(f"Ranges:\n{ranges_df.to_string(index=False)}")
        if cal.segments:
            seg_df = pd.DataFrame([dataclasses.asdict(s) for s in cal.segments])
            parts.append(f"Segments:\n{seg_df.to_string(index=False)}")
        if cal.overall_fit:
            fit = cal.overall_fit
            parts.append(
                f"Overall OLS: slope={fit['slope']:.6g} intercept={fit['intercept']:.6g} "
                f"R²={fit['r_squared']:.4f} (n={fit['n']})"
            )
        parts.append("Commands:")
        parts.extend(f"  {cmd}" for cmd in cal.commands)
    return "\n".join(parts)


def _orchestrate(
    params_load: LoadParams,
    params_analysis: AnalysisParams,
    params_output: OutputParams,
) -> Path:
    """
    Run the pipeline for one log and write every artifact into a fresh run
    directory, which is returned.
    """
    run_dir = ensure_run_dir(params_output.output_dir.parent, params_output.output_dir.name)
    abs_input_posix, short_hash, full_hash, effective_params = build_run_identity(
        params_load, params_analysis, params_output
    )

    table = None
    if params_output.sensitivity_table is not None:
        table = SensitivityTable.from_csv(params_output.sensitivity_table)

    df = load_log(params_load)
    outputs = run_pipeline(df, params_load, params_analysis, params_output, table)
    artifact_paths = write_outputs(outputs, params_output, run_dir, short_hash)

    counts = {
        "total_input_rows": int(len(df)),
        "channel_count": len(outputs.channels),
        "calibrated_channel_count": sum(
            1 for c in outputs.channels if c.status is ChannelStatus.OK
        ),
        "plateau_count": len(outputs.conditioned.plateaus),
    }
    manifest = build_manifest_dict(
        abs_input_posix=abs_input_posix,
        counts=counts,
        effective_params=effective_params,
        hashes=(short_hash, full_hash),
        artifact_paths=artifact_paths,
    )
    write_manifest(str(run_dir / f"manifest-{short_hash}.json"), manifest)

    report = assemble_text_report(df, outputs)
    write_text_report(report, run_dir, short_hash)
    print(report)
    return run_dir


def _parse_serial_map(entries: Optional[List[str]]) -> dict[int, int]:
    """Parse repeatable SLOT:SERIAL flags."""
    mapping: dict[int, int] = {}
    for entry in entries or []:
        if ":" not in entry:
            raise ValueError(f"Invalid --serial-map entry '{entry}': expected SLOT:SERIAL")
        slot_txt, serial_txt = entry.split(":", 1)
        try:
            slot, serial = int(slot_txt), int(serial_txt)
        except ValueError:
            raise ValueError(
                f"Invalid --serial-map entry '{entry}': SLOT and SERIAL must be integers"
            )
        if slot in mapping and mapping[slot] != serial:
            raise ValueError(f"Conflicting --serial-map entries for slot {slot}")
        mapping[slot] = serial
    return mapping


ANALYSIS_HELP = {
    "stiffness_pole1": "First filter pole coefficient in (0, 1].",
    "stiffness_pole2": "Second filter pole coefficient in (0, 1].",
    "epsilon": "Flat threshold on filtered temperature slope (°C/min).",
    "analysis_width_pct": "Optimized window width as a fraction of the plateau.",
    "taboo_front_pct": "Leading plateau fraction excluded from the search.",
    "taboo_tail_pct": "Trailing plateau fraction excluded from the search.",
    "slope_fit_weight": "Weight of flatness versus fit in the composite score.",
    "better_slope_sig_margin": "Relative margin for a slope to rank better.",
    "better_rsquared_sig_margin": "Relative margin for an R² to rank better.",
    "min_slope_percentile": "Fraction of candidates kept after the slope stage.",
    "min_fit_percentile": "Fraction of candidates kept after the fit stage.",
    "minimum_optimized_sample_count": "Minimum samples for a calibration range.",
    "minimum_optimized_duration_minutes": "Minimum duration for a calibration range.",
    "minimum_samples_between_edges": "Debounce spacing between edges (samples).",
    "minimum_plateau_pairs": "Warn when fewer plateaus are detected.",
}


def _build_cli_parser():
    import argparse

    d_load, d_analysis, d_output = get_default_params()
    parser = argparse.ArgumentParser(
        prog="blv-calc",
        description="BLV calculator (load -> filter -> detect plateaus -> optimize -> calibrate).",
    )
    parser.add_argument(
        "--print-defaults",
        action="store_true",
        help="Print default parameter values and exit.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Show full tracebacks for debugging (also BLV_CALC_DEBUG=1).",
    )
    parser.add_argument(
        "--validation-test",
        choices=[v.name for v in ValidationTest],
        help="Run a validation scenario instead of analyzing a log.",
    )

    # LoadParams
    g_load = parser.add_argument_group("LoadParams")
    g_load.add_argument("--log-path", type=str, help="Path to CSV log file.")
    g_load.add_argument("--start-line", type=int, help="1-based inclusive start line.")
    g_load.add_argument("--end-line", type=int, help="1-based inclusive end line.")
    for name in (
        "timestamp_col",
        "temperature_col",
        "humidity_col",
        "sensor_type_col",
        "slot_marker",
    ):
        g_load.add_argument(
            f"--{name.replace('_', '-')}",
            dest=name,
            type=str,
            help=f"(default: {getattr(d_load, name)})",
        )

    # AnalysisParams, generated from the dataclass so new knobs appear automatically
    g_an = parser.add_argument_group("AnalysisParams")
    for f in dataclasses.fields(AnalysisParams):
        default = getattr(d_analysis, f.name)
        g_an.add_argument(
            f"--{f.name.replace('_', '-')}",
            dest=f.name,
            type=type(default),
            help=f"{ANALYSIS_HELP.get(f.name, '')} (default: {default})",
        )

    # OutputParams
    g_out = parser.add_argument_group("OutputParams")
    g_out.add_argument(
        "--output-dir", type=str, help=f"Run output base (default: {d_output.output_dir})"
    )
    g_out.add_argument("--batch", type=int, help="Sensor batch number.")
    g_out.add_argument(
        "--serial-map",
        action="append",
        metavar="SLOT:SERIAL",
        help="Sensor serial for a slot. Repeatable; unmapped slots use the slot number.",
    )
    g_out.add_argument("--sensor-type", type=str, help="Override the logged sensor type.")
    g_out.add_argument(
        "--sensitivity-table", type=str, help="CSV with batch,slot,sensitivity columns."
    )
    g_out.add_argument("--no-plots", action="store_true", help="Skip SVG rendering.")
    return parser


def _args_to_params(args) -> tuple[LoadParams, AnalysisParams, OutputParams]:
    d_load, d_analysis, d_output = get_default_params()

    load_overrides = {
        name: getattr(args, name)
        for name in (
            "start_line",
            "end_line",
            "timestamp_col",
            "temperature_col",
            "humidity_col",
            "sensor_type_col",
            "slot_marker",
        )
        if getattr(args, name, None) is not None
    }
    if args.start_line is not None and args.start_line <= 0:
        raise ValueError("Invalid --start-line: must be a positive integer")
    if args.end_line is not None and args.end_line <= 0:
        raise ValueError("Invalid --end-line: must be a positive integer")
    load = dataclasses.replace(
        d_load,
        log_path=Path(args.log_path) if args.log_path else None,
        **load_overrides,
    )

    analysis_overrides = {
        f.name: getattr(args, f.name)
        for f in dataclasses.fields(AnalysisParams)
        if getattr(args, f.name, None) is not None
    }
    analysis = dataclasses.replace(d_analysis, **analysis_overrides)
    validate_analysis_params(analysis)

    output = dataclasses.replace(
        d_output,
        output_dir=Path(args.output_dir) if args.output_dir else d_output.output_dir,
        batch=args.batch,
        serial_map=_parse_serial_map(args.serial_map),
        sensor_type=args.sensor_type,
        sensitivity_table=(
            Path(args.sensitivity_table) if args.sensitivity_table else None
        ),
        render_plots=not args.no_plots,
    )
    return load, analysis, output


def main() -> None:
    """
    CLI entry point. Parses arguments, builds parameter objects, then orchestrates.
    """
    import sys

    parser = _build_cli_parser()
    args = parser.parse_args(sys.argv[1:])

    if args.print_defaults:
        import json

        d_load, d_analysis, d_output = get_default_params()
        payload = build_effective_parameters(
            LoadParams=d_load, AnalysisParams=d_analysis, OutputParams=d_output
        )
        print(json.dumps(payload, indent=2))
        return

    # Enable debug mode via --debug flag or environment variable BLV_CALC_DEBUG=1
    debug_mode = bool(args.debug or os.getenv("BLV_CALC_DEBUG", "") == "1")
    if debug_mode:
        logger.setLevel(logging.DEBUG)

    try:
        params_load, params_analysis, params_output = _args_to_params(args)
        if args.validation_test is not None:
            try:
                from . import validation_tests
            except ImportError:
                import validation_tests

            vt = ValidationTest[args.validation_test]
            if vt is ValidationTest.SYNTHETIC_PLATEAUS:
                ok = validation_tests.validate_synthetic_plateaus(
                    params_analysis,
                    output_base_dir=params_output.output_dir.parent
                    / "output_validation",
                )
                sys.exit(0 if ok else 3)
            raise ValueError(f"Selected validation test not supported: {vt.name}")
        if params_load.log_path is None:
            parser.error("--log-path is required")
        _orchestrate(params_load, params_analysis, params_output)
    except (FileNotFoundError, ValueError, BLVCalcError, CSVProcessingError) as e:
        # Concise, user-facing errors for common/user-correctable problems.
        logger.info("User-facing error: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        logger.exception("Unhandled exception during execution")
        if debug_mode:
            import traceback

            traceback.print_exc()
        else:
            print(f"Unexpected error: {e}", file=sys.stderr)
            print(
                "Run with --debug or set BLV_CALC_DEBUG=1 to see the full traceback.",
                file=sys.stderr,
            )
        sys.exit(1)


if __name__ == "__main__":
    main()
