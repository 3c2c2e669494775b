"""Read-only rollups over an owner's farms.

Nothing here is stored; every figure is recomputed from the plot documents
(and the owner-level results are cached in Redis, see utils.cache).
"""

import math
from datetime import date, datetime, timedelta, timezone

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from farmgrid.config import settings
from farmgrid.models.farm import Farm
from farmgrid.schemas.farm import is_iso_date_text
from farmgrid.services.grid import resolve_grid_config
from farmgrid.utils.cache import cached, owner_key

HEALTHY = ("excellent", "good")
HEALTH_SCORES = {"excellent": 5, "good": 4, "fair": 3, "poor": 2, "critical": 1}
SOIL_RETEST_AFTER = timedelta(days=180)
EMPTY_CROP = "Empty"

NO_FARMS_RECOMMENDATIONS = [
    "Create your first farm to get started",
    "Add plot information for better insights",
    "Set up irrigation schedules",
]
GENERIC_RECOMMENDATIONS = [
    "Continue monitoring crop health and weather conditions",
    "Plan for next season crop rotation",
    "Review market prices for optimal harvest timing",
]

_datetime_adapter = TypeAdapter(datetime)
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _parse_time(value) -> datetime | None:
    """Timezone-aware datetime from a stored value, None when it is not a date."""
    if isinstance(value, datetime):
        parsed = value
    elif not is_iso_date_text(value):
        return None
    else:
        try:
            parsed = _datetime_adapter.validate_python(value)
        except ValidationError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def health_percentage(healthy: int, total: int) -> int:
    if total <= 0:
        return 0
    return round_half_up(healthy / total * 100)


def is_active_crop(plot: dict) -> bool:
    crop = plot.get("crop") or {}
    return bool(crop.get("stage")) and crop["stage"] != "fallow"


def active_alerts(plot: dict) -> list[dict]:
    return [a for a in plot.get("pest_alerts") or [] if a.get("status") == "active"]


def summarize_plots(plots: list[dict]) -> dict:
    total = len(plots)
    active = [p for p in plots if is_active_crop(p)]
    healthy = sum(1 for p in plots if (p.get("crop") or {}).get("health") in HEALTHY)
    return {
        "total_plots": total,
        "active_crops": len(active),
        "healthy_plots": healthy,
        "health_percentage": health_percentage(healthy, total),
        "active_pest_alerts": sum(len(active_alerts(p)) for p in plots),
        "plots_with_pest_alerts": sum(1 for p in plots if active_alerts(p)),
        "crop_names": sorted({
            p["crop"]["name"] for p in active if p["crop"].get("name")
        }),
    }


def current_season(today: date | None = None) -> str:
    """Agricultural season label for ``today``.

    Months 6-11 are Kharif and 11-3 Rabi; November matches both ranges
    and resolves to Kharif.
    """
    today = today or date.today()
    month, year = today.month, today.year
    if 6 <= month <= 11:
        return f"Kharif {year}"
    if month >= 11 or month <= 3:
        return f"Rabi {year}"
    return f"Summer {year}"


def needs_soil_test(plot: dict, now: datetime) -> bool:
    last_tested = _parse_time((plot.get("soil_health") or {}).get("last_tested"))
    return last_tested is None or last_tested < now - SOIL_RETEST_AFTER


def build_recommendations(
    plots: list[dict],
    health_score: int,
    pest_alerts: int,
    now: datetime | None = None,
) -> list[str]:
    now = now or datetime.now(timezone.utc)
    recommendations = []

    if health_score < 70:
        recommendations.append(
            "Consider soil testing and nutrient management for better crop health"
        )
    if pest_alerts > 0:
        recommendations.append("Review pest management strategies for affected plots")
    if any(not (p.get("irrigation") or {}).get("schedule") for p in plots):
        recommendations.append(
            "Set up irrigation schedules for optimal water management"
        )
    if any(needs_soil_test(p, now) for p in plots):
        recommendations.append(
            "Schedule soil testing - some plots need updated soil analysis"
        )

    if not recommendations:
        recommendations = list(GENERIC_RECOMMENDATIONS)
    return recommendations[:3]


def recent_activities(farms: list[Farm], per_plot: int, limit: int, fields=None) -> list[dict]:
    """Newest activities across farms, at most ``per_plot`` from each plot."""
    entries = []
    for farm in farms:
        for plot in farm.plots or []:
            activities = sorted(
                plot.get("activities") or [],
                key=lambda a: _parse_time(a.get("date")) or _EPOCH,
                reverse=True,
            )
            for activity in activities[:per_plot]:
                data = (
                    {k: activity.get(k) for k in fields} if fields else dict(activity)
                )
                entries.append({
                    "farm_name": farm.name,
                    "plot_number": plot.get("plot_number"),
                    **data,
                })
    entries.sort(key=lambda a: _parse_time(a.get("date")) or _EPOCH, reverse=True)
    return entries[:limit]


def overall_health(plots: list[dict]) -> str:
    """Average crop health over cultivated plots, as a label."""
    cultivated = [p for p in plots if is_cultivated(p)]
    if not cultivated:
        return "unknown"

    total = sum(
        HEALTH_SCORES.get((p["crop"].get("health") or "good"), 3) for p in cultivated
    )
    average = total / len(cultivated)
    if average >= 4.5:
        return "excellent"
    if average >= 3.5:
        return "good"
    if average >= 2.5:
        return "fair"
    if average >= 1.5:
        return "poor"
    return "critical"


def is_cultivated(plot: dict) -> bool:
    name = (plot.get("crop") or {}).get("name")
    return plot.get("is_active", True) and bool(name) and name != EMPTY_CROP


def farm_summary(farm: Farm) -> dict:
    plots = farm.plots or []
    summary = summarize_plots(plots)
    grid = resolve_grid_config(farm)
    cultivated = [p for p in plots if is_cultivated(p)]
    return {
        "farm_id": farm.id,
        "name": farm.name,
        "total_size": farm.total_size,
        "grid": {
            "rows": grid.rows,
            "cols": grid.cols,
            "plot_size": grid.plot_size,
            "plot_count": grid.plot_count,
            "source": grid.source,
        },
        "total_plots": summary["total_plots"],
        "active_crops": summary["active_crops"],
        "cultivated_area": sum(float(p.get("size") or 0) for p in cultivated),
        "current_crops": list(dict.fromkeys(p["crop"]["name"] for p in cultivated)),
        "active_pest_alerts": summary["active_pest_alerts"],
        "health_percentage": summary["health_percentage"],
        "overall_health": overall_health(plots),
    }


async def _owner_farms(db: AsyncSession, owner_id: str) -> list[Farm]:
    result = await db.execute(
        select(Farm).where(Farm.owner_id == owner_id, Farm.is_active == True)  # noqa: E712
    )
    return list(result.scalars().all())


@cached(owner_key("farm_stats", "stats"), ttl=settings.stats_cache_ttl)
async def farm_stats(db: AsyncSession, owner_id: str) -> dict:
    farms = await _owner_farms(db, owner_id)
    plots = [p for farm in farms for p in farm.plots or []]
    summary = summarize_plots(plots)
    total_acreage = sum(farm.total_size for farm in farms)

    return {
        "total_farms": len(farms),
        "total_acreage": total_acreage,
        "active_crops": summary["active_crops"],
        "plots_with_pest_alerts": summary["plots_with_pest_alerts"],
        "health_percentage": summary["health_percentage"],
        "recent_activities": recent_activities(farms, per_plot=5, limit=10),
        "summary": {
            "average_farm_size": round(total_acreage / len(farms), 2) if farms else 0,
            "total_plots": summary["total_plots"],
            "plots_needing_attention": summary["plots_with_pest_alerts"],
        },
    }


@cached(owner_key("farm_stats", "dashboard"), ttl=settings.stats_cache_ttl)
async def dashboard_data(db: AsyncSession, owner_id: str) -> dict:
    farms = await _owner_farms(db, owner_id)
    if not farms:
        return {
            "total_farms": 0,
            "total_acreage": 0,
            "active_crops": 0,
            "pest_alerts": 0,
            "health_score": 0,
            "recent_activities": [],
            "current_season": current_season(),
            "crop_variety": [],
            "average_farm_size": 0,
            "total_plots": 0,
            "recommendations": list(NO_FARMS_RECOMMENDATIONS),
        }

    plots = [p for farm in farms for p in farm.plots or []]
    summary = summarize_plots(plots)
    total_acreage = sum(farm.total_size for farm in farms)

    return {
        "total_farms": len(farms),
        "total_acreage": round(total_acreage, 2),
        "active_crops": summary["active_crops"],
        "pest_alerts": summary["active_pest_alerts"],
        "health_score": summary["health_percentage"],
        "recent_activities": recent_activities(
            farms, per_plot=3, limit=10,
            fields=("type", "description", "date", "cost"),
        ),
        "current_season": current_season(),
        "crop_variety": summary["crop_names"],
        "average_farm_size": round(total_acreage / len(farms), 2),
        "total_plots": summary["total_plots"],
        "recommendations": build_recommendations(
            plots, summary["health_percentage"], summary["active_pest_alerts"]
        ),
    }
