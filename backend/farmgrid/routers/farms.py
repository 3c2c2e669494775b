"""Farm, grid and plot routes.

All routes are owner-scoped through get_current_user.  Writes accept an
optional ``If-Match: <revision>`` header; a stale value is answered with
409 before anything is changed.

Static paths (/stats, /dashboard, /plots/bulk-*) are declared ahead of the
parameterised ones they would otherwise collide with.
"""

from fastapi import APIRouter, Depends, Header, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from farmgrid.auth.deps import get_current_user
from farmgrid.database import get_db
from farmgrid.middleware.exceptions import InputValidationError
from farmgrid.models.user import User
from farmgrid.schemas.farm import (
    ActivityCreate,
    ActivityOut,
    BulkClearOut,
    BulkPlotClearRequest,
    BulkPlotUpdateRequest,
    BulkUpdateOut,
    DashboardOut,
    FarmCreate,
    FarmOut,
    FarmStatsOut,
    FarmSummaryOut,
    FarmUpdate,
    GridConfigOut,
    GridConfigRequest,
    GridSaveOut,
    PlotUpdate,
    PlotUpdateOut,
)
from farmgrid.services import farm_stats, farms, plot_mutation
from farmgrid.services.grid import GridConfig

router = APIRouter()


def expected_revision(if_match: str | None = Header(None)) -> int | None:
    """Parse ``If-Match`` as a farm revision (quotes and W/ prefix allowed)."""
    if if_match is None:
        return None
    value = if_match.strip()
    if value.startswith("W/"):
        value = value[2:]
    value = value.strip('"')
    if not value.isdigit():
        raise InputValidationError(f"If-Match must be a farm revision, got {if_match!r}")
    return int(value)


def _grid_out(grid: GridConfig) -> GridConfigOut:
    return GridConfigOut(
        rows=grid.rows,
        cols=grid.cols,
        plot_size=grid.plot_size,
        plot_count=grid.plot_count,
        source=grid.source,
    )


# ── Owner rollups ────────────────────────────────────────────

@router.get("/stats", response_model=FarmStatsOut)
async def get_farm_stats(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return await farm_stats.farm_stats(db, user.id)


@router.get("/dashboard", response_model=DashboardOut)
async def get_dashboard_data(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return await farm_stats.dashboard_data(db, user.id)


# ── Farm CRUD ────────────────────────────────────────────────

@router.get("/", response_model=list[FarmOut])
async def list_farms(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return await farms.list_farms(db, user)


@router.post("/", response_model=FarmOut, status_code=status.HTTP_201_CREATED)
async def create_farm(
    body: FarmCreate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return await farms.create_farm(db, user, body)


@router.get("/{farm_id}", response_model=FarmOut)
async def get_farm(
    farm_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return await farms.get_owned_farm(db, user, farm_id)


@router.put("/{farm_id}", response_model=FarmOut)
async def update_farm(
    farm_id: str,
    body: FarmUpdate,
    revision: int | None = Depends(expected_revision),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return await farms.update_farm(db, user, farm_id, body, revision)


@router.delete("/{farm_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_farm(
    farm_id: str,
    revision: int | None = Depends(expected_revision),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    await farms.delete_farm(db, user, farm_id, revision)


# ── Grid configuration ───────────────────────────────────────

@router.get("/{farm_id}/grid", response_model=GridConfigOut)
async def get_grid_config(
    farm_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _grid_out(await farms.get_grid_config(db, user, farm_id))


@router.put("/{farm_id}/grid", response_model=GridSaveOut)
async def save_grid_config(
    farm_id: str,
    body: GridConfigRequest,
    revision: int | None = Depends(expected_revision),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Resize the grid; surviving plot numbers keep their history."""
    farm, result = await farms.save_grid_config(db, user, farm_id, body, revision)
    return GridSaveOut(
        farm=FarmOut.model_validate(farm),
        grid=_grid_out(GridConfig(
            rows=farm.grid_rows,
            cols=farm.grid_cols,
            plot_size=farm.plot_size,
            source="structured",
        )),
        kept_plot_numbers=result.kept,
        created_plot_numbers=result.created,
        dropped_plot_numbers=result.dropped,
    )


@router.get("/{farm_id}/summary", response_model=FarmSummaryOut)
async def get_farm_summary(
    farm_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    farm = await farms.get_owned_farm(db, user, farm_id)
    return farm_stats.farm_summary(farm)


# ── Plots ────────────────────────────────────────────────────

@router.put("/{farm_id}/plots/bulk-update", response_model=BulkUpdateOut)
async def bulk_update_plots(
    farm_id: str,
    body: BulkPlotUpdateRequest,
    revision: int | None = Depends(expected_revision),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    farm, updated, skipped = await plot_mutation.bulk_update_plots(
        db, user, farm_id, body.plot_numbers, body.plot_data, revision
    )
    return BulkUpdateOut(
        updated_plots=updated,
        updated_plot_numbers=[p["plot_number"] for p in updated],
        skipped_plot_numbers=skipped,
        revision=farm.revision,
    )


@router.put("/{farm_id}/plots/bulk-clear", response_model=BulkClearOut)
async def bulk_clear_plots(
    farm_id: str,
    body: BulkPlotClearRequest,
    revision: int | None = Depends(expected_revision),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    farm, cleared, skipped = await plot_mutation.bulk_clear_plots(
        db, user, farm_id, body.plot_numbers, revision
    )
    return BulkClearOut(
        cleared_plot_numbers=cleared,
        skipped_plot_numbers=skipped,
        revision=farm.revision,
    )


@router.put("/{farm_id}/plots/{plot_number}", response_model=PlotUpdateOut)
async def update_plot(
    farm_id: str,
    body: PlotUpdate,
    plot_number: int = Path(..., ge=1),
    revision: int | None = Depends(expected_revision),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    farm, plot = await plot_mutation.update_plot(
        db, user, farm_id, plot_number, body, revision
    )
    return PlotUpdateOut(plot=plot, revision=farm.revision)


@router.post(
    "/{farm_id}/plots/{plot_number}/activities",
    response_model=ActivityOut,
    status_code=status.HTTP_201_CREATED,
)
async def add_plot_activity(
    farm_id: str,
    body: ActivityCreate,
    plot_number: int = Path(..., ge=1),
    revision: int | None = Depends(expected_revision),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    farm, activity = await plot_mutation.add_plot_activity(
        db, user, farm_id, plot_number, body, revision
    )
    return ActivityOut(activity=activity, revision=farm.revision)
