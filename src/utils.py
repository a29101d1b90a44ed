from __future__ import annotations

import dataclasses
import datetime as _dt
import hashlib
import json
import logging
import math
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np

logger = logging.getLogger(__name__)


# -------------------------
# Run identity
# -------------------------
def normalize_abs_posix(path: str | Path) -> str:
    """Resolved, forward-slash form of a path, so hashes match across platforms."""
    return Path(path).resolve().as_posix()


def canonical_json_dumps(payload: dict[str, Any]) -> str:
    """Compact, key-sorted JSON used as the hashing input."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def canonical_json_hash(payload: dict[str, Any]) -> tuple[str, str]:
    """SHA-256 of the canonical JSON, as (first 8 hex chars, full hex digest)."""
    digest = hashlib.sha256(canonical_json_dumps(payload).encode("utf-8")).hexdigest()
    return digest[:8], digest


# -------------------------
# JSON conversion
# -------------------------
def sanitize_for_json(obj: Any) -> Any:
    """
    Recursively convert pipeline values to plain JSON types.

    Paths become absolute POSIX strings, enums their name, dataclasses dicts,
    numpy scalars/arrays Python numbers/lists. NaN and infinities become None
    since JSON has no representation for them.
    """
    if obj is None or isinstance(obj, (bool, int, str)):
        return obj
    if isinstance(obj, float):
        return obj if math.isfinite(obj) else None
    if isinstance(obj, np.generic):
        return sanitize_for_json(obj.item())
    if isinstance(obj, np.ndarray):
        return [sanitize_for_json(v) for v in obj.tolist()]
    if isinstance(obj, Enum):
        return obj.name
    if isinstance(obj, Path):
        return normalize_abs_posix(obj)
    if isinstance(obj, (_dt.datetime, _dt.date)):
        return obj.isoformat()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return sanitize_for_json(dataclasses.asdict(obj))
    if isinstance(obj, dict):
        return {str(k): sanitize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [sanitize_for_json(v) for v in obj]
    return str(obj)


def build_effective_parameters(**sections: Any) -> dict[str, Any]:
    """
    One JSON-ready mapping per parameter object, keyed by the keyword name,
    e.g. build_effective_parameters(load=..., analysis=...). New dataclass
    fields show up without any change here.
    """
    return {
        name: sanitize_for_json(
            dataclasses.asdict(section)
            if dataclasses.is_dataclass(section)
            else vars(section)
        )
        for name, section in sections.items()
    }


def write_json(path: str | Path, payload: Any) -> Path:
    target = Path(path)
    target.write_text(
        json.dumps(sanitize_for_json(payload), indent=2, ensure_ascii=False),
        encoding="utf-8",
    )
    return target


def write_manifest(path: str | Path, manifest: dict[str, Any]) -> None:
    write_json(path, manifest)
    logger.info("Wrote manifest %s", str(path))


def utc_timestamp_seconds() -> str:
    """Current UTC time as e.g. 2025-01-31T12:00:00Z."""
    return _dt.datetime.now(_dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# -------------------------
# Run directory
# -------------------------
def ensure_run_dir(base: Path | str = ".", prefix: str = "output") -> Path:
    """Create and return <base>/<prefix>/<local timestamp> for one run."""
    run_dir = Path(base) / prefix / _dt.datetime.now().strftime("%Y%m%dT%H%M%S")
    run_dir.mkdir(parents=True, exist_ok=True)
    logger.debug("Run directory: %s", str(run_dir))
    return run_dir


def write_text_report(report_text: str, run_dir: Path, short_hash: str) -> Path:
    """
    Save the report as <run_dir>/report-<short_hash>.txt.

    A failed write is logged, not raised.
    """
    target = Path(run_dir) / f"report-{short_hash}.txt"
    try:
        target.write_text(report_text, encoding="utf-8")
    except OSError:
        logger.exception("Could not write report %s", str(target))
    return target
