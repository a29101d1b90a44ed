"""
Region optimizer: pick the flattest, best-fitting sub-window inside each plateau.

For a plateau of length L the window width is ceil(L * analysis_width_pct). Every
legal window start (outside the taboo zones at both ends of the plateau) becomes a
candidate, and the candidates go through three filter-and-rank stages:

1. slope stage     - ascending |slope|, keep the best min_slope_percentile
2. fit stage       - descending R², keep the best min_fit_percentile
3. composite stage - descending heuristic, winner is the top entry

Rankings use a significance-margin comparator: one value only beats another when
the relative difference exceeds the stage margin; otherwise the later window wins.
"""

import functools
import logging
import math
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

try:
    from .diagnostics import StageResult
    from .edges import Plateau
    from .exceptions import (
        EmptySearchWindowError,
        InsufficientSamplesError,
    )
    from .regression import fit_window, r_squared
except ImportError:
    from diagnostics import StageResult
    from edges import Plateau
    from exceptions import EmptySearchWindowError, InsufficientSamplesError
    from regression import fit_window, r_squared

logger = logging.getLogger(__name__)


@dataclass
class OptimizerParams:
    analysis_width_pct: float = 0.3
    taboo_front_pct: float = 0.1
    taboo_tail_pct: float = 0.05
    slope_fit_weight: float = 0.85
    better_slope_sig_margin: float = 0.05
    better_rsquared_sig_margin: float = 0.01
    min_slope_percentile: float = 0.5
    min_fit_percentile: float = 0.5


@dataclass
class CandidateWindow:
    start: int
    num_samples: int
    slope: float
    intercept: float
    mean: float
    stdev: float
    r_squared: float = float("nan")
    heuristic_score: float = float("nan")

    @property
    def abs_slope(self) -> float:
        return abs(self.slope)

    @property
    def fit(self) -> float:
        # Undefined fits (constant windows) rank as the worst possible fit.
        return 0.0 if math.isnan(self.r_squared) else self.r_squared


@dataclass(frozen=True)
class OptimizedRegion:
    """Winning window of a plateau; falling is the exclusive end index."""

    rising: int
    falling: int
    mean_voltage: float
    stdev_voltage: float
    num_samples: int
    slope: float
    r_squared: float
    heuristic_score: float
    plateau: Plateau


def significantly_better(
    a: float, b: float, margin: float, higher_is_better: bool
) -> bool:
    """True when a beats b by more than margin relative to the larger magnitude."""
    diff = (a - b) if higher_is_better else (b - a)
    if diff <= 0:
        return False
    return diff > margin * max(abs(a), abs(b))


def _rank(
    candidates: List[CandidateWindow],
    key: Callable[[CandidateWindow], float],
    margin: float,
    higher_is_better: bool,
) -> List[CandidateWindow]:
    def _cmp(a: CandidateWindow, b: CandidateWindow) -> int:
        va, vb = key(a), key(b)
        if significantly_better(va, vb, margin, higher_is_better):
            return -1
        if significantly_better(vb, va, margin, higher_is_better):
            return 1
        # Equal rank: prefer the later window
        return b.start - a.start

    return sorted(candidates, key=functools.cmp_to_key(_cmp))


def _keep_fraction(ranked: List[CandidateWindow], pct: float) -> List[CandidateWindow]:
    keep = max(1, math.ceil(len(ranked) * pct))
    return ranked[:keep]


def _normalize(value: float, lo: float, hi: float, inverted: bool = False) -> float:
    span = hi - lo
    if span <= 0 or not math.isfinite(span):
        return 1.0
    scaled = (value - lo) / span
    return 1.0 - scaled if inverted else scaled


def validate_params(params: OptimizerParams) -> None:
    if not (0.0 < params.analysis_width_pct <= 1.0):
        raise ValueError(
            f"analysis_width_pct must be in (0, 1], got {params.analysis_width_pct}"
        )
    for name in ("taboo_front_pct", "taboo_tail_pct"):
        value = getattr(params, name)
        if not (0.0 <= value < 1.0):
            raise ValueError(f"{name} must be in [0, 1), got {value}")
    if not (0.0 <= params.slope_fit_weight <= 1.0):
        raise ValueError(
            f"slope_fit_weight must be in [0, 1], got {params.slope_fit_weight}"
        )
    for name in ("min_slope_percentile", "min_fit_percentile"):
        value = getattr(params, name)
        if not (0.0 < value <= 1.0):
            raise ValueError(f"{name} must be in (0, 1], got {value}")
    for name in ("better_slope_sig_margin", "better_rsquared_sig_margin"):
        if getattr(params, name) < 0:
            raise ValueError(f"{name} must be non-negative")


def window_offsets(plateau_length: int, params: OptimizerParams) -> tuple[int, range]:
    """
    Return (num_samples, legal start offsets relative to the plateau start).

    Raises:
        EmptySearchWindowError: when the taboo zones leave no legal start.
    """
    num_samples = math.ceil(plateau_length * params.analysis_width_pct)
    first = math.ceil(params.taboo_front_pct * plateau_length)
    last = math.floor(
        plateau_length - num_samples - params.taboo_tail_pct * plateau_length
    )
    if plateau_length <= 0 or num_samples <= 0 or last < first:
        raise EmptySearchWindowError(
            f"No legal window in plateau of {plateau_length} samples "
            f"(window={num_samples}, offsets {first}..{last})"
        )
    return num_samples, range(first, last + 1)


def build_candidates(
    voltage: np.ndarray, plateau: Plateau, params: OptimizerParams
) -> List[CandidateWindow]:
    """Fit every legal window of the plateau (the stage-1 population)."""
    num_samples, offsets = window_offsets(plateau.length, params)
    if num_samples < 2:
        raise InsufficientSamplesError(
            f"Window of {num_samples} samples in plateau {plateau} is too short"
        )
    candidates = []
    for offset in offsets:
        start = plateau.rising + offset
        fit = fit_window(voltage, start, num_samples)
        candidates.append(
            CandidateWindow(
                start=start,
                num_samples=num_samples,
                slope=fit.slope,
                intercept=fit.intercept,
                mean=fit.mean,
                stdev=fit.stdev,
                r_squared=r_squared(
                    voltage, start, num_samples, fit.slope, fit.intercept
                ),
            )
        )
    return candidates


def slope_stage(
    candidates: List[CandidateWindow], params: OptimizerParams
) -> List[CandidateWindow]:
    ranked = _rank(
        candidates,
        key=lambda c: c.abs_slope,
        margin=params.better_slope_sig_margin,
        higher_is_better=False,
    )
    return _keep_fraction(ranked, params.min_slope_percentile)


def fit_stage(
    candidates: List[CandidateWindow], params: OptimizerParams
) -> List[CandidateWindow]:
    ranked = _rank(
        candidates,
        key=lambda c: c.fit,
        margin=params.better_rsquared_sig_margin,
        higher_is_better=True,
    )
    return _keep_fraction(ranked, params.min_fit_percentile)


def composite_stage(
    survivors: List[CandidateWindow],
    population: List[CandidateWindow],
    params: OptimizerParams,
) -> List[CandidateWindow]:
    """
    Score survivors with the weighted heuristic and rank them best first.

    Normalization bounds come from the whole stage-1 population so the score does
    not depend on how aggressive the earlier stages were.
    """
    slopes = [c.abs_slope for c in population]
    fits = [c.fit for c in population]
    s_lo, s_hi = min(slopes), max(slopes)
    f_lo, f_hi = min(fits), max(fits)
    w = params.slope_fit_weight
    for c in survivors:
        flatness = _normalize(c.abs_slope, s_lo, s_hi, inverted=True)
        c.heuristic_score = w * flatness + (1.0 - w) * _normalize(c.fit, f_lo, f_hi)
    # Reuse the slope margin for the composite ranking
    return _rank(
        survivors,
        key=lambda c: c.heuristic_score,
        margin=params.better_slope_sig_margin,
        higher_is_better=True,
    )


def optimize_plateau(
    voltage: np.ndarray, plateau: Plateau, params: OptimizerParams
) -> OptimizedRegion:
    """Run the three-stage search on one plateau and return the winning region."""
    population = build_candidates(voltage, plateau, params)
    survivors = slope_stage(population, params)
    survivors = fit_stage(survivors, params)
    ranked = composite_stage(survivors, population, params)
    best = ranked[0]
    return OptimizedRegion(
        rising=best.start,
        falling=best.start + best.num_samples,
        mean_voltage=best.mean,
        stdev_voltage=best.stdev,
        num_samples=best.num_samples,
        slope=best.slope,
        r_squared=best.r_squared,
        heuristic_score=best.heuristic_score,
        plateau=plateau,
    )


def optimize_regions(
    voltage: np.ndarray,
    plateaus: List[Plateau],
    params: OptimizerParams,
    result: Optional[StageResult] = None,
) -> List[OptimizedRegion]:
    """
    Optimize every plateau of a channel, in plateau (temporal) order.

    A plateau whose search window is empty or too short is skipped and recorded as
    an error on the stage result; the remaining plateaus are still optimized.
    """
    if result is None:
        result = StageResult(label="optimizer")
    result.input_count = len(plateaus)
    voltage = np.asarray(voltage, dtype=float)
    if not plateaus:
        result.skip("no plateaus detected")
        return []

    regions: List[OptimizedRegion] = []
    with result.timed():
        for plateau in plateaus:
            try:
                regions.append(optimize_plateau(voltage, plateau, params))
            except (EmptySearchWindowError, InsufficientSamplesError) as e:
                result.dropped_count += 1
                result.add_error(
                    f"Plateau {plateau.rising}-{plateau.falling} skipped: {e}"
                )

    result.output_count = len(regions)
    logger.info(result.summarize())
    return regions
