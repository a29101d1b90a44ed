"""Per-stage diagnostics shared by the pipeline stages."""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

logger = logging.getLogger(__name__)

MetricValue = Union[int, float, str]


@dataclass
class StageResult:
    """
    Counters and messages collected while a stage runs.

    Warnings, events and errors are logged the moment they are recorded, so the
    run log and the report stay in step.
    """

    label: Optional[str] = None
    # Items in / kept / dropped (samples, plateaus or ranges depending on the stage)
    input_count: int = 0
    output_count: int = 0
    dropped_count: int = 0
    warnings: list[str] = field(default_factory=list)
    events: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    metrics: dict[str, MetricValue] = field(default_factory=dict)
    skipped_reason: Optional[str] = None
    elapsed_ms: Optional[float] = None

    @contextmanager
    def timed(self) -> Iterator["StageResult"]:
        t0 = time.perf_counter()
        try:
            yield self
        finally:
            self.elapsed_ms = (time.perf_counter() - t0) * 1000.0

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning(message)

    def add_event(self, message: str) -> None:
        self.events.append(message)
        logger.info(message)

    def add_error(self, message: str) -> None:
        """Record a unit-level failure that did not abort the stage."""
        self.errors.append(message)
        logger.error(message)

    def add_metric(self, name: str, value: MetricValue) -> None:
        self.metrics[name] = value

    def skip(self, reason: str) -> None:
        self.skipped_reason = reason
        self.add_event(f"{self.label or 'stage'} skipped: {reason}")

    def summarize(self) -> str:
        head = f"{self.label}: " if self.label else ""
        parts = [f"{head}{self.input_count} in, {self.output_count} out"]
        counters = {
            "dropped": self.dropped_count,
            "warnings": len(self.warnings),
            "errors": len(self.errors),
        }
        parts.extend(f"{k}={v}" for k, v in counters.items() if v)
        if self.skipped_reason:
            parts.append(f"skipped ({self.skipped_reason})")
        if self.elapsed_ms is not None:
            parts.append(f"{self.elapsed_ms:.1f} ms")
        if self.metrics:
            parts.append(", ".join(f"{k}={v}" for k, v in self.metrics.items()))
        return " | ".join(parts)
