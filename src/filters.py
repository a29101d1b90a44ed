"""
Two-pole low-pass filtering of logged sensor vectors.

The filter is a cascade of two exponential smoothers:

    pole1  = pole1 + (v[i] - pole1) * s1
    out[i] = out[i-1] + (pole1 - out[i-1]) * s2

with both stages seeded from the first sample, so out[0] == v[0]. Missing or
non-numeric entries are forward-filled (flat interpolation) before filtering.
"""

from dataclasses import dataclass
from typing import Iterable

import numpy as np
import pandas as pd

try:
    from .exceptions import EmptyDataError
except ImportError:
    from exceptions import EmptyDataError


@dataclass
class FilterState:
    """Running state of the two poles; one instance per filtered vector."""

    pole1: float
    output: float


def forward_fill(values: Iterable) -> np.ndarray:
    """
    Coerce values to float and replace every non-numeric entry by the last numeric
    value seen. Leading non-numeric entries take the first numeric value found.

    Raises:
        EmptyDataError: when the vector holds no numeric value at all.
    """
    series = pd.to_numeric(pd.Series(list(values), dtype=object), errors="coerce")
    series = series.astype(float).replace([np.inf, -np.inf], np.nan)
    if series.empty or series.isna().all():
        raise EmptyDataError("No numeric values found in vector")
    return series.ffill().bfill().to_numpy(dtype=float)


def _validate_stiffness(name: str, value: float) -> None:
    if not (0.0 < value <= 1.0):
        raise ValueError(f"{name} must be in (0, 1], got {value}")


def filter_step(state: FilterState, sample: float, s1: float, s2: float) -> FilterState:
    """Advance both poles by one sample and return the new state."""
    pole1 = state.pole1 + (sample - state.pole1) * s1
    output = state.output + (pole1 - state.output) * s2
    return FilterState(pole1=pole1, output=output)


def two_pole_filter(values: Iterable, s1: float, s2: float) -> np.ndarray:
    """
    Apply the cascaded two-pole low-pass filter to a vector.

    Args:
        values: raw samples; non-numeric entries are forward-filled first.
        s1: first-stage coefficient in (0, 1]; 1.0 passes the input through.
        s2: second-stage coefficient in (0, 1].

    Returns:
        np.ndarray of the same length as values.
    """
    _validate_stiffness("stiffness_pole1", s1)
    _validate_stiffness("stiffness_pole2", s2)
    v = forward_fill(values)

    out = np.empty_like(v)
    state = FilterState(pole1=float(v[0]), output=float(v[0]))
    out[0] = state.output
    for i in range(1, len(v)):
        state = filter_step(state, float(v[i]), s1, s2)
        out[i] = state.output
    return out


def derivative_per_minute(values: Iterable, elapsed_seconds: Iterable) -> np.ndarray:
    """
    First difference of a series scaled to units per minute.

    The scale uses the median positive sample interval so that repeated timestamps
    never divide by zero; with no positive interval the difference stays per sample.
    The first element is 0.
    """
    v = np.asarray(values, dtype=float)
    t = np.asarray(elapsed_seconds, dtype=float)
    out = np.zeros_like(v)
    if len(v) < 2:
        return out

    dt = np.diff(t)
    positive = dt[dt > 0]
    minutes_per_sample = float(np.median(positive)) / 60.0 if positive.size else 1.0
    out[1:] = np.diff(v) / minutes_per_sample
    return out
