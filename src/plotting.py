"""
SVG rendering of per-channel analysis results.

Each channel gets one figure with three panels: the temperature trace with its
detected plateaus, the filtered voltage with the optimized windows, and the BLV
curve (range means plus the piecewise segments).
"""

import logging
from pathlib import Path
from typing import List, Optional

# Select a non-interactive backend before pyplot is imported so rendering works
# in headless environments.
import matplotlib

matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
import numpy as np

try:
    from .calibration import Calibration, baseline_voltage
    from .edges import Plateau
    from .optimizer import OptimizedRegion
except ImportError:
    from calibration import Calibration, baseline_voltage
    from edges import Plateau
    from optimizer import OptimizedRegion

logger = logging.getLogger(__name__)


def render_channel_plot(
    output_svg: str,
    title: str,
    elapsed_seconds: np.ndarray,
    temperature: np.ndarray,
    filtered_temperature: np.ndarray,
    filtered_voltage: np.ndarray,
    plateaus: List[Plateau],
    regions: List[OptimizedRegion],
    calibration: Optional[Calibration] = None,
) -> str:
    """Render one channel's figure to output_svg and return the path."""
    minutes = np.asarray(elapsed_seconds, dtype=float) / 60.0
    last = len(minutes) - 1

    fig, (ax_t, ax_v, ax_blv) = plt.subplots(3, 1, figsize=(11, 11))
    try:
        ax_t.plot(minutes, temperature, lw=0.8, color="0.6", label="Temperature")
        ax_t.plot(minutes, filtered_temperature, lw=1.2, label="Filtered temperature")
        for i, p in enumerate(plateaus):
            ax_t.axvspan(
                minutes[p.rising],
                minutes[min(p.falling, last)],
                color="tab:green",
                alpha=0.12,
                label="Plateau" if i == 0 else None,
            )
        ax_t.set_ylabel("Temperature (°C)")
        ax_t.set_title(title)
        ax_t.legend(loc="best", fontsize="small")

        ax_v.plot(minutes, filtered_voltage, lw=1.0, label="Filtered voltage")
        for i, r in enumerate(regions):
            ax_v.axvspan(
                minutes[r.rising],
                minutes[min(r.falling - 1, last)],
                color="tab:orange",
                alpha=0.3,
                label="Optimized region" if i == 0 else None,
            )
        ax_v.set_xlabel("Elapsed time (min)")
        ax_v.set_ylabel("Voltage (V)")
        ax_v.legend(loc="best", fontsize="small")

        if calibration is not None and calibration.ranges:
            temps = np.array([r.mean_temperature for r in calibration.ranges])
            volts = np.array([r.mean_voltage for r in calibration.ranges])
            errs = np.array([r.stdev_voltage for r in calibration.ranges])
            ax_blv.errorbar(temps, volts, yerr=errs, fmt="o", label="Range mean")
            if calibration.segments:
                grid = np.linspace(temps.min(), temps.max(), 200)
                ax_blv.plot(
                    grid,
                    baseline_voltage(calibration.segments, grid),
                    lw=1.5,
                    label="BLV segments",
                )
            ax_blv.legend(loc="best", fontsize="small")
        else:
            ax_blv.text(
                0.5,
                0.5,
                "No calibration",
                ha="center",
                va="center",
                transform=ax_blv.transAxes,
            )
        ax_blv.set_xlabel("Mean temperature (°C)")
        ax_blv.set_ylabel("Mean voltage (V)")

        fig.tight_layout()
        fig.savefig(output_svg, format="svg")
    finally:
        plt.close(fig)
    logger.info("Wrote channel plot: %s", str(output_svg))
    return str(Path(output_svg))
