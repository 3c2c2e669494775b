"""Farm repository and farm-level operations.

Every query is scoped to the calling owner and to active farms; a farm
that belongs to someone else is indistinguishable from one that does not
exist.  Writes follow the same shape everywhere:

    load (owner-scoped) -> check If-Match revision -> mutate in memory
    -> area check -> flush -> drop owner rollups once committed
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from farmgrid.config import settings
from farmgrid.database import on_commit
from farmgrid.middleware.exceptions import (
    ConflictError,
    FarmNotFoundError,
    InputValidationError,
    InvariantDriftError,
)
from farmgrid.models.farm import Farm
from farmgrid.models.user import User
from farmgrid.schemas.farm import (
    PLOT_OBJECT_FIELDS,
    FarmCreate,
    FarmUpdate,
    GridConfigRequest,
    PlotIn,
)
from farmgrid.services.grid import (
    GridConfig,
    area_limit,
    calculate_plot_size,
    check_area_invariant,
    decode_grid_annotation,
    resolve_grid_config,
    strip_grid_annotation,
    total_plot_area,
    write_grid_annotation,
)
from farmgrid.services.reconciler import ReconcileResult, apply_grid_config, default_plot
from farmgrid.utils.cache import invalidate_owner_stats

logger = logging.getLogger(__name__)


# ── Loading and guards ───────────────────────────────────────

async def get_owned_farm(db: AsyncSession, user: User, farm_id: str) -> Farm:
    result = await db.execute(
        select(Farm).where(
            Farm.id == farm_id,
            Farm.owner_id == user.id,
            Farm.is_active == True,  # noqa: E712
        )
    )
    farm = result.scalar_one_or_none()
    if not farm:
        raise FarmNotFoundError(farm_id)
    return farm


def check_revision(farm: Farm, expected_revision: int | None) -> None:
    """Reject the write when the caller's If-Match revision is stale."""
    if expected_revision is not None and expected_revision != farm.revision:
        raise ConflictError(
            f"Farm {farm.id} is at revision {farm.revision}, "
            f"request was based on {expected_revision}",
            current_revision=farm.revision,
        )


def enforce_area_invariant(farm: Farm) -> None:
    slack = settings.plot_area_slack
    plots = farm.plots or []
    if check_area_invariant(farm.total_size, plots, slack):
        return

    used = total_plot_area(plots)
    limit = area_limit(farm.total_size, slack)
    if settings.invariant_drift_policy == "warn":
        logger.warning(
            f"Farm {farm.id} plots cover {used:.4f} acres, over the "
            f"{limit:.4f} acre limit",
            extra={"farm_id": farm.id},
        )
        return
    raise InvariantDriftError(used, farm.total_size, limit)


# ── Plot documents from input ────────────────────────────────

def plot_from_input(plot: PlotIn) -> dict:
    """Full plot document: defaults overlaid with what the caller supplied."""
    doc = default_plot(plot.plot_number, plot.size)
    data = plot.model_dump(mode="json", exclude_unset=True)
    for name in PLOT_OBJECT_FIELDS:
        if data.get(name) is not None:
            doc[name] = {**doc[name], **data[name]}
    doc["pest_alerts"] = data.get("pest_alerts", [])
    doc["activities"] = data.get("activities", [])
    doc["is_active"] = data.get("is_active", True)
    return doc


def plots_from_input(plots: list[PlotIn]) -> list[dict]:
    numbers = [p.plot_number for p in plots]
    if len(numbers) != len(set(numbers)):
        raise InputValidationError("Plot numbers must be unique within a farm")
    return [plot_from_input(p) for p in sorted(plots, key=lambda p: p.plot_number)]


def _shape_matches(plots: list[dict], rows: int, cols: int) -> bool:
    numbers = sorted(p["plot_number"] for p in plots if p.get("plot_number") is not None)
    return numbers == list(range(1, rows * cols + 1))


def _set_structured_grid(farm: Farm, grid: GridConfig | None) -> None:
    if grid is None:
        farm.grid_rows = farm.grid_cols = farm.plot_size = None
        return
    farm.grid_rows = grid.rows
    farm.grid_cols = grid.cols
    farm.plot_size = calculate_plot_size(farm.total_size, grid.rows, grid.cols)
    farm.description = write_grid_annotation(
        farm.description, grid.rows, grid.cols, farm.plot_size
    )


# ── CRUD ─────────────────────────────────────────────────────

async def list_farms(db: AsyncSession, user: User) -> list[Farm]:
    result = await db.execute(
        select(Farm)
        .where(Farm.owner_id == user.id, Farm.is_active == True)  # noqa: E712
        .order_by(Farm.created_at.desc())
    )
    return list(result.scalars().all())


async def create_farm(db: AsyncSession, user: User, data: FarmCreate) -> Farm:
    farm = Farm(
        owner_id=user.id,
        name=data.name.strip(),
        total_size=data.total_size,
        location=data.location.model_dump(mode="json"),
        soil_type=data.soil_type,
        irrigation_type=data.irrigation_type,
        description=data.description,
        plots=[],
        is_active=True,
    )

    if data.plots:
        farm.plots = plots_from_input(data.plots)
        decoded = decode_grid_annotation(data.description)
        if decoded and _shape_matches(farm.plots, decoded.rows, decoded.cols):
            _set_structured_grid(farm, decoded)
    else:
        apply_grid_config(farm, settings.default_grid_rows, settings.default_grid_cols)

    enforce_area_invariant(farm)

    db.add(farm)
    await db.flush()
    await db.refresh(farm)
    on_commit(db, invalidate_owner_stats, user.id)

    logger.info(
        f"Farm {farm.id} created by {user.id} with {len(farm.plots)} plots",
        extra={"farm_id": farm.id, "owner_id": user.id},
    )
    return farm


async def update_farm(
    db: AsyncSession,
    user: User,
    farm_id: str,
    data: FarmUpdate,
    expected_revision: int | None = None,
) -> Farm:
    farm = await get_owned_farm(db, user, farm_id)
    check_revision(farm, expected_revision)

    fields = data.model_dump(mode="json", exclude_unset=True)
    for name in ("name", "total_size", "soil_type", "irrigation_type"):
        if name in fields and fields[name] is not None:
            setattr(farm, name, fields[name].strip() if name == "name" else fields[name])
    if fields.get("location") is not None:
        farm.location = fields["location"]

    if "plots" in fields and data.plots is not None:
        farm.plots = plots_from_input(data.plots)
        if farm.grid_rows and farm.grid_cols and not _shape_matches(
            farm.plots, farm.grid_rows, farm.grid_cols
        ):
            logger.info(
                f"Farm {farm.id} plots no longer match "
                f"{farm.grid_rows}x{farm.grid_cols}; clearing stored grid shape",
                extra={"farm_id": farm.id},
            )
            _set_structured_grid(farm, None)

    if "description" in fields:
        description = fields["description"]
        decoded = decode_grid_annotation(description)
        if decoded and _shape_matches(farm.plots or [], decoded.rows, decoded.cols):
            farm.description = description
            _set_structured_grid(farm, decoded)
        else:
            if decoded:
                logger.info(
                    f"Farm {farm.id} description names a {decoded.rows}x{decoded.cols} "
                    f"grid its {len(farm.plots or [])} plots do not fill; ignoring it",
                    extra={"farm_id": farm.id},
                )
                description = strip_grid_annotation(description) or None
            if farm.grid_rows and farm.grid_cols:
                # Keep the stored shape embedded alongside the new human text
                description = write_grid_annotation(
                    description, farm.grid_rows, farm.grid_cols,
                    calculate_plot_size(farm.total_size, farm.grid_rows, farm.grid_cols),
                )
            farm.description = description

    enforce_area_invariant(farm)

    await db.flush()
    await db.refresh(farm)
    on_commit(db, invalidate_owner_stats, user.id)

    logger.info(
        f"Farm {farm.id} updated by {user.id}: {sorted(fields)}",
        extra={"farm_id": farm.id, "owner_id": user.id},
    )
    return farm


async def delete_farm(
    db: AsyncSession,
    user: User,
    farm_id: str,
    expected_revision: int | None = None,
) -> None:
    """Soft delete; the plots stay on the row."""
    farm = await get_owned_farm(db, user, farm_id)
    check_revision(farm, expected_revision)

    farm.is_active = False
    await db.flush()
    on_commit(db, invalidate_owner_stats, user.id)

    logger.info(
        f"Farm {farm.id} deactivated by {user.id}",
        extra={"farm_id": farm.id, "owner_id": user.id},
    )


# ── Grid configuration ───────────────────────────────────────

async def get_grid_config(db: AsyncSession, user: User, farm_id: str) -> GridConfig:
    farm = await get_owned_farm(db, user, farm_id)
    return resolve_grid_config(farm)


async def save_grid_config(
    db: AsyncSession,
    user: User,
    farm_id: str,
    data: GridConfigRequest,
    expected_revision: int | None = None,
) -> tuple[Farm, ReconcileResult]:
    """Resize the farm's grid and reconcile its plots in one write."""
    farm = await get_owned_farm(db, user, farm_id)
    check_revision(farm, expected_revision)

    result = apply_grid_config(farm, data.rows, data.cols, data.total_size)
    enforce_area_invariant(farm)

    await db.flush()
    await db.refresh(farm)
    on_commit(db, invalidate_owner_stats, user.id)

    logger.info(
        f"Farm {farm.id} grid set to {data.rows}x{data.cols} by {user.id} "
        f"(kept {len(result.kept)}, created {len(result.created)}, "
        f"dropped {len(result.dropped)})",
        extra={"farm_id": farm.id, "owner_id": user.id},
    )
    return farm, result
