"""
Closed-form linear regression over a fixed-width window of a data vector.

The abscissa is the implicit sample offset 0..n-1, so only the ordinate window is
passed around. slope = r_xy * (s_y / s_x) with sample standard deviations, and
intercept = mean_y - slope * mean_x.
"""

import math
from dataclasses import dataclass

import numpy as np
from scipy import stats

try:
    from .exceptions import InsufficientSamplesError
except ImportError:
    from exceptions import InsufficientSamplesError


@dataclass(frozen=True)
class WindowFit:
    slope: float
    intercept: float
    mean: float
    stdev: float


def _window(data: np.ndarray, start: int, n: int) -> np.ndarray:
    if n < 2:
        raise InsufficientSamplesError(
            f"Regression window needs at least 2 samples, got {n}"
        )
    if start < 0 or start + n > len(data):
        raise InsufficientSamplesError(
            f"Window [{start}, {start + n}) exceeds data length {len(data)}"
        )
    return np.asarray(data[start : start + n], dtype=float)


def fit_window(data: np.ndarray, start: int, n: int) -> WindowFit:
    """
    Fit y = slope * x + intercept over data[start:start+n] with x = 0..n-1.

    A window without variance in y is a flat line: slope 0 and intercept equal to
    the window mean.

    Raises:
        InsufficientSamplesError: when n < 2 or the window runs past the data.
    """
    y = _window(data, start, n)
    x = np.arange(n, dtype=float)

    mean_x = float(x.mean())
    mean_y = float(y.mean())
    s_x = float(x.std(ddof=1))
    s_y = float(y.std(ddof=1))

    # Exact constancy; s_y can be a rounding residue rather than 0.0
    if np.ptp(y) == 0.0 or not math.isfinite(s_y):
        slope = 0.0
    else:
        r_xy = float(stats.pearsonr(x, y)[0])
        slope = r_xy * (s_y / s_x) if math.isfinite(r_xy) else 0.0
    intercept = mean_y - slope * mean_x
    return WindowFit(slope=slope, intercept=intercept, mean=mean_y, stdev=s_y)


def r_squared(
    data: np.ndarray, start: int, n: int, slope: float, intercept: float
) -> float:
    """
    Squared Pearson correlation between the model slope*x + intercept and the data
    window. Returns NaN when either vector is constant (fit quality undefined).
    """
    y = _window(data, start, n)
    model = slope * np.arange(n, dtype=float) + intercept
    if np.ptp(y) == 0.0 or np.ptp(model) == 0.0:
        return float("nan")
    r = float(stats.pearsonr(model, y)[0])
    return r * r
