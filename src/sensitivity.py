"""
Sensitivity lookup table: (batch, slot) -> native sensor sensitivity.

The table is a CSV with columns batch, slot, sensitivity. A miss is not an error;
lookup() returns None and the caller skips concentration scaling.
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import pandas as pd

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("batch", "slot", "sensitivity")


class SensitivityTable:
    def __init__(self, entries: Optional[Dict[Tuple[int, int], float]] = None) -> None:
        self._entries: Dict[Tuple[int, int], float] = dict(entries or {})

    @classmethod
    def from_csv(cls, path: Union[str, Path]) -> "SensitivityTable":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Sensitivity table not found: {path}")
        df = pd.read_csv(path)
        df.columns = [str(c).strip().lower() for c in df.columns]
        missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
        if missing:
            raise ValueError(
                f"Sensitivity table missing columns: {', '.join(missing)}. "
                f"Found columns: {list(df.columns)}"
            )
        df = df.assign(
            batch=pd.to_numeric(df["batch"], errors="coerce"),
            slot=pd.to_numeric(df["slot"], errors="coerce"),
            sensitivity=pd.to_numeric(df["sensitivity"], errors="coerce"),
        ).dropna(subset=list(REQUIRED_COLUMNS))
        entries = {
            (int(row.batch), int(row.slot)): float(row.sensitivity)
            for row in df.itertuples(index=False)
        }
        logger.info(f"Loaded {len(entries)} sensitivity entries from {path}")
        return cls(entries)

    def lookup(self, batch: Optional[int], slot: int) -> Optional[float]:
        """Return the sensitivity for (batch, slot), or None when not found."""
        if batch is None:
            return None
        value = self._entries.get((int(batch), int(slot)))
        if value is None:
            logger.info(f"No sensitivity entry for batch {batch} slot {slot}")
        return value

    def __len__(self) -> int:
        return len(self._entries)
