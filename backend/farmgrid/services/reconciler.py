"""Plot reconciliation: make a farm's plots match a new grid shape.

Given the current plots and a target (rows, cols), produce exactly
rows * cols plots numbered 1..rows*cols:

    - a number that already exists keeps its whole document, only ``size`` changes
    - a number that does not exist yet gets a default (fallow) plot
    - numbers above rows * cols are dropped, and reported as such

Plot numbers are treated as opaque keys here.  Shrinking a grid therefore
keeps the low-numbered plots regardless of where they sat in the old layout.
"""

import copy
import logging
from dataclasses import dataclass, field

from farmgrid.services.grid import calculate_plot_size, write_grid_annotation

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    plots: list[dict]
    kept: list[int] = field(default_factory=list)
    created: list[int] = field(default_factory=list)
    dropped: list[int] = field(default_factory=list)


def default_plot(plot_number: int, size: float) -> dict:
    return {
        "plot_number": plot_number,
        "size": size,
        "crop": {
            "name": "Empty",
            "stage": "fallow",
            "health": "good",
        },
        "soil_health": {
            "ph": 7.0,
            "moisture": 50,
            "recommendations": [],
        },
        "irrigation": {
            "type": "manual",
            "schedule": {
                "frequency": 2,
                "duration": 30,
                "times": ["06:00", "18:00"],
            },
        },
        "pest_alerts": [],
        "activities": [],
        "is_active": True,
    }


def reconcile_plots(
    plots: list[dict], rows: int, cols: int, plot_size: float
) -> ReconcileResult:
    plot_count = rows * cols
    existing = {p["plot_number"]: p for p in plots if "plot_number" in p}

    result = ReconcileResult(plots=[])
    for number in range(1, plot_count + 1):
        current = existing.get(number)
        if current is not None:
            kept = copy.deepcopy(current)
            kept["size"] = plot_size
            result.plots.append(kept)
            result.kept.append(number)
        else:
            result.plots.append(default_plot(number, plot_size))
            result.created.append(number)

    result.dropped = sorted(n for n in existing if n > plot_count or n < 1)
    return result


def apply_grid_config(
    farm, rows: int, cols: int, total_size: float | None = None
) -> ReconcileResult:
    """Resize ``farm`` in memory: plots, structured columns and annotation.

    The caller owns persistence (flush/commit) and the area check.
    """
    if total_size is not None:
        farm.total_size = total_size

    plot_size = calculate_plot_size(farm.total_size, rows, cols)
    result = reconcile_plots(farm.plots or [], rows, cols, plot_size)

    if result.dropped:
        logger.warning(
            f"Grid resize of farm {farm.id} to {rows}x{cols} dropped plots "
            f"{result.dropped}",
            extra={"farm_id": farm.id, "dropped": result.dropped},
        )

    farm.plots = result.plots
    farm.grid_rows = rows
    farm.grid_cols = cols
    farm.plot_size = plot_size
    farm.description = write_grid_annotation(farm.description, rows, cols, plot_size)
    return result
