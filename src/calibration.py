"""
Calibration calculator: turn optimized plateau regions into BLV segments.

Each retained region becomes a CalibrationRange (mean filtered temperature, mean
and stdev voltage). Ranges are sorted by temperature, and each adjacent pair
yields one piecewise-linear segment of baseline voltage versus temperature:

    slope     = (high.V - low.V) / (high.T - low.T)
    intercept = high.V - slope * high.T

The segment is anchored at the lower range temperature.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm

try:
    from .diagnostics import StageResult
    from .exceptions import DegenerateCalibrationError
    from .optimizer import OptimizedRegion
except ImportError:
    from diagnostics import StageResult
    from exceptions import DegenerateCalibrationError
    from optimizer import OptimizedRegion

logger = logging.getLogger(__name__)

COMMAND_DECIMALS = 8


@dataclass(frozen=True)
class CalibrationRange:
    start_time: float
    end_time: float
    num_samples: int
    mean_temperature: float
    mean_voltage: float
    stdev_voltage: float

    @property
    def duration_minutes(self) -> float:
        return (self.end_time - self.start_time) / 60.0


@dataclass(frozen=True)
class CalibrationSegment:
    temperature: float
    slope: float
    intercept: float


@dataclass
class Calibration:
    ranges: List[CalibrationRange] = field(default_factory=list)
    segments: List[CalibrationSegment] = field(default_factory=list)
    commands: List[str] = field(default_factory=list)
    sensitivity: Optional[float] = None
    overall_fit: Dict[str, Any] = field(default_factory=dict)


def build_ranges(
    regions: List[OptimizedRegion],
    elapsed_seconds: np.ndarray,
    filtered_temperature: np.ndarray,
    minimum_sample_count: int,
    minimum_duration_minutes: float,
    result: Optional[StageResult] = None,
) -> List[CalibrationRange]:
    """
    Package each optimized region as a CalibrationRange and sort by temperature.

    Ranges below the minimum sample count or duration are dropped with a warning:
    the plateau never stabilized long enough to be trusted.
    """
    if result is None:
        result = StageResult(label="ranges")
    result.input_count = len(regions)
    t = np.asarray(elapsed_seconds, dtype=float)
    temp = np.asarray(filtered_temperature, dtype=float)

    ranges: List[CalibrationRange] = []
    for region in regions:
        start, end = region.rising, region.falling
        rng = CalibrationRange(
            start_time=float(t[start]),
            end_time=float(t[end - 1]),
            num_samples=region.num_samples,
            mean_temperature=float(np.mean(temp[start:end])),
            mean_voltage=region.mean_voltage,
            stdev_voltage=region.stdev_voltage,
        )
        if rng.num_samples < minimum_sample_count:
            result.dropped_count += 1
            result.add_warning(
                f"Range {start}-{end} dropped: {rng.num_samples} samples "
                f"< minimum {minimum_sample_count}"
            )
            continue
        if rng.duration_minutes < minimum_duration_minutes:
            result.dropped_count += 1
            result.add_warning(
                f"Range {start}-{end} dropped: {rng.duration_minutes:.2f} min "
                f"< minimum {minimum_duration_minutes} min"
            )
            continue
        ranges.append(rng)

    ranges.sort(key=lambda r: r.mean_temperature)
    result.output_count = len(ranges)
    return ranges


def build_segments(ranges: List[CalibrationRange]) -> List[CalibrationSegment]:
    """
    Compute one BLV segment per adjacent pair of temperature-sorted ranges.

    Raises:
        DegenerateCalibrationError: when two ranges share the same mean temperature.
    """
    ordered = sorted(ranges, key=lambda r: r.mean_temperature)
    segments: List[CalibrationSegment] = []
    for low, high in zip(ordered, ordered[1:]):
        dt = high.mean_temperature - low.mean_temperature
        if math.isclose(dt, 0.0, abs_tol=1e-9):
            raise DegenerateCalibrationError(
                f"Two calibration ranges share mean temperature {low.mean_temperature:.6f}"
            )
        slope = (high.mean_voltage - low.mean_voltage) / dt
        intercept = high.mean_voltage - slope * high.mean_temperature
        segments.append(
            CalibrationSegment(
                temperature=low.mean_temperature, slope=slope, intercept=intercept
            )
        )
    return segments


def overall_fit(ranges: List[CalibrationRange]) -> Dict[str, Any]:
    """
    OLS of mean voltage on mean temperature across all ranges (statsmodels).

    Only a diagnostic: the calibration itself is piecewise. Needs 3 or more ranges.
    """
    if len(ranges) < 3:
        return {}
    df = pd.DataFrame(
        {
            "temperature": [r.mean_temperature for r in ranges],
            "voltage": [r.mean_voltage for r in ranges],
        }
    )
    X = sm.add_constant(df[["temperature"]], has_constant="add")
    res = sm.OLS(df["voltage"].to_numpy(), X).fit()
    return {
        "slope": float(res.params["temperature"]),
        "intercept": float(res.params["const"]),
        "r_squared": float(res.rsquared),
        "n": int(res.nobs),
    }


def baseline_voltage(segments: List[CalibrationSegment], temperature) -> np.ndarray:
    """
    Evaluate the piecewise BLV curve at the given temperature(s).

    Temperatures below the first anchor use the first segment; above the last
    anchor, the last segment. Returns NaN everywhere when there are no segments.
    """
    temps = np.atleast_1d(np.asarray(temperature, dtype=float))
    if not segments:
        return np.full_like(temps, np.nan)
    anchors = np.array([s.temperature for s in segments])
    slopes = np.array([s.slope for s in segments])
    intercepts = np.array([s.intercept for s in segments])
    idx = np.clip(np.searchsorted(anchors, temps, side="right") - 1, 0, len(segments) - 1)
    return slopes[idx] * temps + intercepts[idx]


def concentration(
    voltage,
    temperature,
    segments: List[CalibrationSegment],
    sensitivity: Optional[float],
) -> np.ndarray:
    """
    (voltage - BLV(temperature)) / sensitivity.

    Without a usable sensitivity or calibration the concentration is unavailable
    (NaN), never zero.
    """
    v = np.atleast_1d(np.asarray(voltage, dtype=float))
    sensitivity = usable_sensitivity(sensitivity)
    if sensitivity is None or not segments:
        return np.full_like(v, np.nan)
    return (v - baseline_voltage(segments, temperature)) / sensitivity


def usable_sensitivity(sensitivity: Optional[float]) -> Optional[float]:
    """Return the sensitivity, or None when it is missing, zero or non-finite."""
    if sensitivity is None:
        return None
    value = float(sensitivity)
    if value == 0.0 or not math.isfinite(value):
        return None
    return value


def _fmt(value: float) -> str:
    return f"{value:.{COMMAND_DECIMALS}f}"


def calibration_commands(
    sensor: str,
    sensitivity: Optional[float],
    segments: List[CalibrationSegment],
) -> List[str]:
    """Textual grooming commands: sensitivity, BLV clear, one BLV add per segment."""
    prefix = sensor.strip().lower()
    commands: List[str] = []
    sensitivity = usable_sensitivity(sensitivity)
    if sensitivity is not None:
        commands.append(f"{prefix}_sen {_fmt(sensitivity)}")
    else:
        logger.warning(f"No sensitivity for {prefix}; omitting {prefix}_sen command")
    commands.append(f"{prefix}_blv clear")
    for seg in segments:
        commands.append(
            f"{prefix}_blv add {_fmt(seg.temperature)} {_fmt(seg.slope)} {_fmt(seg.intercept)}"
        )
    return commands


def calibrate(
    regions: List[OptimizedRegion],
    elapsed_seconds: np.ndarray,
    filtered_temperature: np.ndarray,
    sensor: str,
    sensitivity: Optional[float],
    minimum_sample_count: int,
    minimum_duration_minutes: float,
    result: Optional[StageResult] = None,
) -> Calibration:
    """Ranges -> segments -> commands for one channel."""
    ranges = build_ranges(
        regions,
        elapsed_seconds,
        filtered_temperature,
        minimum_sample_count,
        minimum_duration_minutes,
        result=result,
    )
    segments = build_segments(ranges)
    return Calibration(
        ranges=ranges,
        segments=segments,
        commands=calibration_commands(sensor, sensitivity, segments),
        sensitivity=usable_sensitivity(sensitivity),
        overall_fit=overall_fit(ranges),
    )
