"""Plot mutations: single update, bulk update, bulk clear, activity append.

Each operation reads the whole farm, works on a deep copy of its plots and
assigns the copy back, so the JSON column is written as one document in a
single flush.  The pure ``apply_*`` helpers do the per-plot work and know
nothing about the database.

Merge rules differ on purpose between the single and bulk paths:

    field kind       update_plot        bulk_update_plots
    ---------------  -----------------  -----------------
    list             append             replace
    object           shallow merge      shallow merge
"""

import copy
import logging
from datetime import datetime, timezone

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from farmgrid.database import on_commit
from farmgrid.middleware.exceptions import NoPlotsFoundError, PlotNotFoundError
from farmgrid.models.farm import Farm
from farmgrid.models.user import User
from farmgrid.schemas.farm import (
    PLOT_LIST_FIELDS,
    PLOT_OBJECT_FIELDS,
    ActivityCreate,
    PlotUpdate,
    is_iso_date_text,
)
from farmgrid.services.farms import check_revision, get_owned_farm
from farmgrid.utils.cache import invalidate_owner_stats

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = PLOT_OBJECT_FIELDS + PLOT_LIST_FIELDS
CROP_DATE_FIELDS = ("planted_date", "expected_harvest_date")

_datetime_adapter = TypeAdapter(datetime)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_date(value):
    """ISO-8601 form of a date-shaped string; anything else unchanged."""
    if not is_iso_date_text(value):
        return value
    try:
        return _datetime_adapter.validate_python(value).isoformat()
    except ValidationError:
        return value


def dedupe(plot_numbers: list[int]) -> list[int]:
    return list(dict.fromkeys(plot_numbers))


# ── Pure per-plot transforms ─────────────────────────────────

def apply_plot_update(plot: dict, fields: dict) -> dict:
    for name, value in fields.items():
        if name not in UPDATABLE_FIELDS or value is None:
            continue
        if isinstance(value, list):
            plot[name] = list(plot.get(name) or []) + copy.deepcopy(value)
        elif isinstance(value, dict):
            plot[name] = {**(plot.get(name) or {}), **value}
        else:
            plot[name] = value
    return plot


def apply_bulk_update(plot: dict, fields: dict) -> dict:
    for name, value in fields.items():
        if name not in UPDATABLE_FIELDS or value is None:
            continue
        if isinstance(value, list):
            plot[name] = copy.deepcopy(value)
        elif isinstance(value, dict):
            merged = {**(plot.get(name) or {}), **value}
            if name == "crop":
                for key in CROP_DATE_FIELDS:
                    if key in value:
                        merged[key] = normalize_date(value[key])
            plot[name] = merged
        else:
            plot[name] = value
    return plot


def apply_bulk_clear(plot: dict, now: str | None = None) -> dict:
    plot["crop"] = {
        "name": "Empty",
        "variety": "",
        "planted_date": None,
        "expected_harvest_date": None,
        "stage": "fallow",
        "health": "good",
    }
    plot["pest_alerts"] = []
    plot.setdefault("activities", []).append({
        "type": "other",
        "date": now or _now_iso(),
        "description": "Plot cleared (bulk operation)",
        "cost": 0,
        "materials": [],
        "notes": "Bulk clearing operation",
    })
    return plot


def append_activity(plot: dict, activity: dict, now: str | None = None) -> dict:
    entry = dict(activity)
    if not entry.get("date"):
        entry["date"] = now or _now_iso()
    if entry.get("materials") is None:
        entry["materials"] = []
    plot.setdefault("activities", []).append(entry)
    return entry


def _index_by_number(plots: list[dict]) -> dict[int, int]:
    return {p["plot_number"]: i for i, p in enumerate(plots) if "plot_number" in p}


async def _save_plots(db: AsyncSession, user: User, farm: Farm, plots: list[dict]) -> None:
    farm.plots = plots
    await db.flush()
    on_commit(db, invalidate_owner_stats, user.id)


# ── Operations ───────────────────────────────────────────────

async def update_plot(
    db: AsyncSession,
    user: User,
    farm_id: str,
    plot_number: int,
    data: PlotUpdate,
    expected_revision: int | None = None,
) -> tuple[Farm, dict]:
    farm = await get_owned_farm(db, user, farm_id)
    check_revision(farm, expected_revision)

    plots = copy.deepcopy(farm.plots or [])
    index = _index_by_number(plots).get(plot_number)
    if index is None:
        raise PlotNotFoundError(farm_id, plot_number)

    fields = data.to_fields()
    apply_plot_update(plots[index], fields)
    await _save_plots(db, user, farm, plots)

    logger.info(
        f"Plot {plot_number} of farm {farm.id} updated by {user.id}: {sorted(fields)}",
        extra={"farm_id": farm.id, "plot_number": plot_number},
    )
    return farm, plots[index]


async def bulk_update_plots(
    db: AsyncSession,
    user: User,
    farm_id: str,
    plot_numbers: list[int],
    data: PlotUpdate,
    expected_revision: int | None = None,
) -> tuple[Farm, list[dict], list[int]]:
    """Apply the same fields to every listed plot that exists.

    Returns (farm, updated plots, skipped plot numbers).
    """
    farm = await get_owned_farm(db, user, farm_id)
    check_revision(farm, expected_revision)

    plots = copy.deepcopy(farm.plots or [])
    index = _index_by_number(plots)
    requested = dedupe(plot_numbers)
    matched = [n for n in requested if n in index]
    skipped = [n for n in requested if n not in index]
    if not matched:
        raise NoPlotsFoundError(farm_id, requested)

    fields = data.to_fields()
    updated = [apply_bulk_update(plots[index[n]], fields) for n in matched]
    await _save_plots(db, user, farm, plots)

    logger.info(
        f"Bulk update of {len(matched)} plots in farm {farm.id} by {user.id} "
        f"(skipped {skipped})",
        extra={"farm_id": farm.id, "plot_numbers": matched},
    )
    return farm, updated, skipped


async def bulk_clear_plots(
    db: AsyncSession,
    user: User,
    farm_id: str,
    plot_numbers: list[int],
    expected_revision: int | None = None,
) -> tuple[Farm, list[int], list[int]]:
    """Reset crops and alerts on the listed plots.

    Returns (farm, cleared plot numbers, skipped plot numbers).
    """
    farm = await get_owned_farm(db, user, farm_id)
    check_revision(farm, expected_revision)

    plots = copy.deepcopy(farm.plots or [])
    index = _index_by_number(plots)
    requested = dedupe(plot_numbers)
    cleared = [n for n in requested if n in index]
    skipped = [n for n in requested if n not in index]
    if not cleared:
        raise NoPlotsFoundError(farm_id, requested)

    now = _now_iso()
    for n in cleared:
        apply_bulk_clear(plots[index[n]], now)
    await _save_plots(db, user, farm, plots)

    logger.info(
        f"Bulk clear of {len(cleared)} plots in farm {farm.id} by {user.id} "
        f"(skipped {skipped})",
        extra={"farm_id": farm.id, "plot_numbers": cleared},
    )
    return farm, cleared, skipped


async def add_plot_activity(
    db: AsyncSession,
    user: User,
    farm_id: str,
    plot_number: int,
    data: ActivityCreate,
    expected_revision: int | None = None,
) -> tuple[Farm, dict]:
    farm = await get_owned_farm(db, user, farm_id)
    check_revision(farm, expected_revision)

    plots = copy.deepcopy(farm.plots or [])
    index = _index_by_number(plots).get(plot_number)
    if index is None:
        raise PlotNotFoundError(farm_id, plot_number)

    entry = append_activity(plots[index], data.model_dump(mode="json"))
    await _save_plots(db, user, farm, plots)

    logger.info(
        f"Activity '{entry['type']}' added to plot {plot_number} of farm {farm.id}",
        extra={"farm_id": farm.id, "plot_number": plot_number},
    )
    return farm, entry
