"""Grid configuration: annotation codec, shape resolution, and plot sizing.

A farm's grid shape (rows x cols) and the per-plot acreage derived from it
are stored in the structured columns grid_rows / grid_cols / plot_size.
The same values are also embedded in the farm description as

    "Grid: {rows}x{cols}, PlotSize: {plot_size}"

so older readers (and humans) can still see them.  On load the shape is
resolved in this order:

    1. structured columns        (source = "structured")
    2. annotation in description (source = "annotation")
    3. inference from plot numbers (source = "inferred")
    4. fixed 4x4 fallback        (source = "default")

Plot numbering is row-major with zero-based row/col
(number = row * cols + col + 1).  Only the helpers at the bottom of this
module know that; the reconciler treats plot numbers as opaque keys.
"""

import math
import re
from dataclasses import dataclass

GRID_PATTERN = re.compile(
    r"Grid: (?P<rows>\d+)x(?P<cols>\d+)"
    r"(?:, PlotSize: (?P<size>\d+(?:\.\d+)?(?:[eE][-+]?\d+)?))?"
)
# The pattern plus the spaces that separate it from the preceding text
ANNOTATION_SPAN = re.compile(r"[ \t]*" + GRID_PATTERN.pattern)

FALLBACK_ROWS = 4
FALLBACK_COLS = 4
FALLBACK_PLOT_SIZE = 0.16
SMALL_GRID_MAX_PLOTS = 16
DEFAULT_DESCRIPTION_PREFIX = "Default farm -"


@dataclass(frozen=True)
class GridConfig:
    rows: int
    cols: int
    plot_size: float | None = None
    source: str = "structured"

    @property
    def plot_count(self) -> int:
        return self.rows * self.cols


# ── Codec ────────────────────────────────────────────────────


def encode_grid_annotation(rows: int, cols: int, plot_size: float) -> str:
    return f"Grid: {rows}x{cols}, PlotSize: {plot_size}"


def strip_grid_annotation(description: str | None) -> str:
    """Remove every embedded grid pattern, keeping the human-written text."""
    if not description:
        return ""
    return ANNOTATION_SPAN.sub("", description).strip()


def write_grid_annotation(
    description: str | None, rows: int, cols: int, plot_size: float
) -> str:
    """Return ``description`` with exactly one (new) grid pattern appended."""
    annotation = encode_grid_annotation(rows, cols, plot_size)
    text = strip_grid_annotation(description)
    if not text:
        return f"{DEFAULT_DESCRIPTION_PREFIX} {annotation}"
    return f"{text} {annotation}"


def decode_grid_annotation(description: str | None) -> GridConfig | None:
    """Parse the first embedded pattern, or None when absent."""
    if not description:
        return None
    match = GRID_PATTERN.search(description)
    if not match:
        return None
    rows, cols = int(match.group("rows")), int(match.group("cols"))
    if rows < 1 or cols < 1:
        return None
    size = match.group("size")
    return GridConfig(
        rows=rows,
        cols=cols,
        plot_size=float(size) if size is not None else None,
        source="annotation",
    )


def infer_grid_shape(plot_numbers: list[int]) -> tuple[int, int]:
    """Best-effort (rows, cols) for farms that never stored a grid shape.

    Small farms get a near-square ceil(sqrt(n)) layout; larger ones take the
    factor pair of the highest plot number with the smallest aspect ratio.
    """
    if not plot_numbers:
        return FALLBACK_ROWS, FALLBACK_COLS

    n = max(plot_numbers)
    if n < 1:
        return FALLBACK_ROWS, FALLBACK_COLS

    if n <= SMALL_GRID_MAX_PLOTS:
        rows = math.ceil(math.sqrt(n))
        cols = math.ceil(n / rows)
        return rows, cols

    best: tuple[int, int] | None = None
    best_ratio = math.inf
    for r in range(1, math.isqrt(n) + 1):
        if n % r:
            continue
        c = n // r
        ratio = max(r, c) / min(r, c)
        # Strictly smaller only: on ties the earlier pair wins
        if ratio < best_ratio:
            best, best_ratio = (r, c), ratio
    return best


def resolve_grid_config(farm) -> GridConfig:
    """Work out the farm's current grid shape and plot size."""
    if farm.grid_rows and farm.grid_cols:
        return GridConfig(
            rows=farm.grid_rows,
            cols=farm.grid_cols,
            plot_size=farm.plot_size
            if farm.plot_size is not None
            else calculate_plot_size(farm.total_size, farm.grid_rows, farm.grid_cols),
            source="structured",
        )

    decoded = decode_grid_annotation(farm.description)
    if decoded:
        return GridConfig(
            rows=decoded.rows,
            cols=decoded.cols,
            plot_size=calculate_plot_size(farm.total_size, decoded.rows, decoded.cols),
            source="annotation",
        )

    plot_numbers = [
        p["plot_number"] for p in farm.plots or [] if p.get("plot_number") is not None
    ]
    rows, cols = infer_grid_shape(plot_numbers)
    return GridConfig(
        rows=rows,
        cols=cols,
        plot_size=calculate_plot_size(farm.total_size, rows, cols),
        source="inferred" if plot_numbers else "default",
    )


# ── Plot sizing ──────────────────────────────────────────────


def calculate_plot_size(total_size: float, rows: int, cols: int) -> float:
    plot_count = rows * cols
    if plot_count <= 0:
        return FALLBACK_PLOT_SIZE
    return total_size / plot_count


def total_plot_area(plots: list[dict]) -> float:
    return sum(float(p.get("size") or 0) for p in plots)


def area_limit(total_size: float, slack: float) -> float:
    return total_size * slack


def check_area_invariant(total_size: float, plots: list[dict], slack: float) -> bool:
    """True when the plots fit inside the farm (plus rounding slack)."""
    return total_plot_area(plots) <= area_limit(total_size, slack) + 1e-9


# ── Row-major layout (presentation boundary) ────────────────


def plot_number_at(row: int, col: int, cols: int) -> int:
    return row * cols + col + 1


def plot_position(plot_number: int, cols: int) -> tuple[int, int]:
    """Zero-based (row, col) of a plot number in a grid ``cols`` wide."""
    index = plot_number - 1
    return index // cols, index % cols
