"""
Debounced edge detection on a thresholded temperature-slope trace.

A sample is "flat" (1) when the filtered temperature slope magnitude is within
epsilon, otherwise "transitioning" (0). Rising edges mark the start of a plateau,
falling edges its end.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional

import numpy as np

try:
    from .diagnostics import StageResult
except ImportError:
    from diagnostics import StageResult

logger = logging.getLogger(__name__)


class EdgeDirection(Enum):
    RISING = "rising"
    FALLING = "falling"


@dataclass(frozen=True)
class Transition:
    index: int
    direction: EdgeDirection


@dataclass(frozen=True)
class Plateau:
    rising: int
    falling: int

    @property
    def length(self) -> int:
        return self.falling - self.rising


@dataclass
class DebounceState:
    current_level: int
    last_edge_index: int = 0


@dataclass
class EdgeDetection:
    rising: List[int] = field(default_factory=list)
    falling: List[int] = field(default_factory=list)
    levels: Optional[np.ndarray] = None
    spurious: List[int] = field(default_factory=list)

    def transitions(self) -> List[Transition]:
        """Merged, time-ordered view of both edge lists."""
        merged = [Transition(i, EdgeDirection.RISING) for i in self.rising]
        merged += [Transition(i, EdgeDirection.FALLING) for i in self.falling]
        return sorted(merged, key=lambda t: t.index)


def threshold_flat(slope: Iterable[float], epsilon: float) -> np.ndarray:
    """Return 1 where |slope| <= epsilon, 0 elsewhere."""
    if epsilon < 0:
        raise ValueError(f"epsilon must be non-negative, got {epsilon}")
    s = np.asarray(slope, dtype=float)
    return (np.abs(s) <= epsilon).astype(int)


def debounce_step(
    state: DebounceState, index: int, sample: int, minimum_spacing: int
) -> tuple[DebounceState, Optional[EdgeDirection]]:
    """
    Advance the debouncer by one sample.

    Returns the new state and the registered edge direction, or None when the
    sample matches the current level or the change came too soon after the last
    edge (the change is then discarded).
    """
    if sample == state.current_level:
        return state, None
    if index - state.last_edge_index > minimum_spacing:
        direction = EdgeDirection.RISING if sample else EdgeDirection.FALLING
        return DebounceState(current_level=sample, last_edge_index=index), direction
    return state, None


def detect_edges(levels: Iterable[int], minimum_spacing: int) -> EdgeDetection:
    """
    Run the debounced level-crossing state machine over a binary vector.

    The returned EdgeDetection carries the raw rising/falling lists (before
    balancing), the cleaned level trace, and the indices of discarded changes.
    """
    if minimum_spacing < 0:
        raise ValueError(
            f"minimum_samples_between_edges must be non-negative, got {minimum_spacing}"
        )
    raw = np.asarray(levels, dtype=int)
    result = EdgeDetection(levels=np.zeros_like(raw))
    if raw.size == 0:
        return result

    state = DebounceState(current_level=int(raw[0]))
    for i, sample in enumerate(raw):
        sample = int(sample)
        state, direction = debounce_step(state, i, sample, minimum_spacing)
        if direction is EdgeDirection.RISING:
            result.rising.append(i)
        elif direction is EdgeDirection.FALLING:
            result.falling.append(i)
        elif sample != state.current_level:
            result.spurious.append(i)
            logger.debug(
                "Spurious transition at index %d ignored (last edge at %d)",
                i,
                state.last_edge_index,
            )
        result.levels[i] = state.current_level
    return result


def balance_edges(
    rising: List[int], falling: List[int], last_index: int
) -> tuple[List[int], List[int]]:
    """
    Clean the edge lists so they alternate, starting rising and ending falling.

    - Leading falling edges before the first rising edge are dropped.
    - When exactly one falling edge is missing, a synthetic one is appended at
      last_index (the final segment was still flat when logging stopped).
    - Both lists are then truncated to equal length, keeping the earliest edges.
    """
    rising = list(rising)
    falling = list(falling)
    while rising and falling and rising[0] >= falling[0]:
        falling.pop(0)
    if len(rising) == len(falling) + 1:
        falling.append(last_index)
    n = min(len(rising), len(falling))
    return rising[:n], falling[:n]


def find_plateaus(
    flat: Iterable[int],
    minimum_spacing: int,
    minimum_pairs: int = 5,
    result: Optional[StageResult] = None,
) -> tuple[List[Plateau], EdgeDetection]:
    """
    Detect debounced edges on a flat/transitioning vector and pair them into plateaus.

    Fewer than minimum_pairs plateaus is reported as a warning; processing
    continues with whatever was found.
    """
    if result is None:
        result = StageResult(label="edges")
    flat = np.asarray(flat, dtype=int)
    result.input_count = int(flat.size)

    detection = detect_edges(flat, minimum_spacing)
    result.dropped_count = len(detection.spurious)
    if detection.spurious:
        result.add_event(
            f"Ignored {len(detection.spurious)} samples of spurious transitions "
            f"(minimum spacing {minimum_spacing})"
        )

    rising, falling = balance_edges(
        detection.rising, detection.falling, max(int(flat.size) - 1, 0)
    )
    detection.rising, detection.falling = rising, falling
    plateaus = [Plateau(r, f) for r, f in zip(rising, falling) if f > r]

    result.output_count = len(plateaus)
    result.add_metric("rising_edges", len(rising))
    result.add_metric("falling_edges", len(falling))
    if len(plateaus) < minimum_pairs:
        result.add_warning(
            f"Only {len(plateaus)} plateau pairs detected (expected at least {minimum_pairs})"
        )
    return plateaus, detection
