"""Pydantic schemas for farms, plots and the farm rollups."""

import re
from datetime import datetime, timezone
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PositiveInt

CropStage = Literal[
    "planted", "growing", "flowering", "ready_to_harvest", "harvested", "fallow",
]
CropHealth = Literal["excellent", "good", "fair", "poor", "critical"]
SoilType = Literal[
    "clay", "sandy", "loamy", "silt", "peat",
    "chalk", "alluvial", "black", "red", "laterite",
]
IrrigationType = Literal["drip", "sprinkler", "flood", "manual"]
AlertSeverity = Literal["low", "medium", "high", "critical"]
AlertStatus = Literal["active", "treated", "resolved"]
ActivityType = Literal[
    "planting", "watering", "fertilizing", "pesticide",
    "weeding", "harvesting", "soil_test", "other",
]

# Keys of a plot document that callers may change through the plot routes
PLOT_LIST_FIELDS = ("pest_alerts", "activities")
PLOT_OBJECT_FIELDS = ("crop", "soil_health", "irrigation")

# Calendar date at the start of the text: 2024-06-01, 2024-06-01T10:30:00Z, ...
ISO_DATE_PREFIX = re.compile(r"\d{4}-\d{2}-\d{2}")


def is_iso_date_text(value) -> bool:
    return isinstance(value, str) and ISO_DATE_PREFIX.match(value) is not None


def _require_iso_date(value):
    """Accept datetimes and ISO-8601 text only.

    Bare numbers and digit strings such as "2024" would otherwise be read
    as Unix timestamps.
    """
    if value is None or isinstance(value, datetime) or is_iso_date_text(value):
        return value
    raise ValueError("must be an ISO-8601 date or datetime, e.g. 2024-06-01")


IsoDateTime = Annotated[datetime, BeforeValidator(_require_iso_date)]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Plot sub-documents ───────────────────────────────────────

class CropData(BaseModel):
    name: str | None = Field(None, min_length=2)
    variety: str | None = Field(None, min_length=2)
    planted_date: IsoDateTime | None = None
    expected_harvest_date: IsoDateTime | None = None
    stage: CropStage | None = None
    health: CropHealth | None = None


class SoilHealthData(BaseModel):
    ph: float | None = Field(None, ge=0, le=14)
    nitrogen: float | None = Field(None, ge=0)
    phosphorus: float | None = Field(None, ge=0)
    potassium: float | None = Field(None, ge=0)
    organic_matter: float | None = None
    moisture: float | None = Field(None, ge=0, le=100)
    last_tested: IsoDateTime | None = None
    recommendations: list[str] | None = None


class IrrigationSchedule(BaseModel):
    frequency: int = Field(..., ge=0)
    duration: int = Field(..., ge=0)
    times: list[str] = []


class IrrigationData(BaseModel):
    type: IrrigationType | None = None
    last_watered: IsoDateTime | None = None
    water_requirement: float | None = Field(None, ge=0)
    schedule: IrrigationSchedule | None = None


class PestAlertData(BaseModel):
    type: str
    severity: AlertSeverity
    detected_date: IsoDateTime = Field(default_factory=_utcnow)
    status: AlertStatus = "active"
    treatment: str | None = None
    notes: str | None = None


class MaterialData(BaseModel):
    name: str
    quantity: float = Field(..., ge=0)
    unit: str
    cost: float | None = Field(None, ge=0)


class ActivityWeather(BaseModel):
    temperature: float | None = None
    humidity: float | None = None
    rainfall: float | None = None


class ActivityCreate(BaseModel):
    """Payload for POST /api/farms/{farm_id}/plots/{plot_number}/activities."""
    type: ActivityType
    date: IsoDateTime | None = None
    description: str = Field(..., min_length=5, max_length=200)
    cost: float | None = Field(None, ge=0)
    materials: list[MaterialData] = []
    labor_hours: float | None = Field(None, ge=0)
    weather: ActivityWeather | None = None
    notes: str | None = None


# ── Plot mutation payloads ───────────────────────────────────

class PlotUpdate(BaseModel):
    """Partial plot document.

    Unknown keys (``size``, ``plot_number``, ...) are ignored rather than
    rejected so clients can send back a plot they fetched.
    """
    model_config = ConfigDict(extra="ignore")

    crop: CropData | None = None
    soil_health: SoilHealthData | None = None
    irrigation: IrrigationData | None = None
    pest_alerts: list[PestAlertData] | None = None
    activities: list[ActivityCreate] | None = None

    def to_fields(self) -> dict[str, Any]:
        """Only the fields the caller sent, as JSON-ready plot data.

        Object fields keep only their set keys (they are merged); list
        entries are complete documents with defaults filled in.
        """
        fields: dict[str, Any] = {}
        for name in PLOT_OBJECT_FIELDS:
            if name in self.model_fields_set and getattr(self, name) is not None:
                fields[name] = getattr(self, name).model_dump(
                    mode="json", exclude_unset=True
                )
        for name in PLOT_LIST_FIELDS:
            if name in self.model_fields_set and getattr(self, name) is not None:
                fields[name] = [
                    item.model_dump(mode="json") for item in getattr(self, name)
                ]
        return fields


class BulkPlotUpdateRequest(BaseModel):
    plot_numbers: list[PositiveInt] = Field(..., min_length=1)
    plot_data: PlotUpdate


class BulkPlotClearRequest(BaseModel):
    plot_numbers: list[PositiveInt] = Field(..., min_length=1)


# ── Farm payloads ────────────────────────────────────────────

class LocationCoordinates(BaseModel):
    latitude: float = Field(28.8955, ge=-90, le=90)
    longitude: float = Field(79.0974, ge=-180, le=180)


class Location(BaseModel):
    address: str = Field(..., min_length=5)
    state: str = Field(..., min_length=2)
    district: str = Field(..., min_length=2)
    village: str | None = None
    pincode: str | None = None
    coordinates: LocationCoordinates = Field(default_factory=LocationCoordinates)


class PlotIn(BaseModel):
    """A plot supplied whole, on farm create or update."""
    plot_number: PositiveInt
    size: float = Field(..., gt=0)
    crop: CropData | None = None
    soil_health: SoilHealthData | None = None
    irrigation: IrrigationData | None = None
    pest_alerts: list[PestAlertData] = []
    activities: list[ActivityCreate] = []
    is_active: bool = True


class FarmCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    total_size: float = Field(..., ge=0.1)
    location: Location
    soil_type: SoilType = "loamy"
    irrigation_type: IrrigationType | None = None
    description: str | None = Field(None, max_length=500)
    plots: list[PlotIn] | None = None


class FarmUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(None, min_length=2, max_length=100)
    total_size: float | None = Field(None, ge=0.1)
    location: Location | None = None
    soil_type: SoilType | None = None
    irrigation_type: IrrigationType | None = None
    description: str | None = Field(None, max_length=500)
    plots: list[PlotIn] | None = None


class GridConfigRequest(BaseModel):
    """Payload for PUT /api/farms/{farm_id}/grid."""
    rows: int = Field(..., ge=1, le=100)
    cols: int = Field(..., ge=1, le=100)
    total_size: float | None = Field(None, ge=0.1)


# ── Responses ────────────────────────────────────────────────

class GridConfigOut(BaseModel):
    rows: int
    cols: int
    plot_size: float
    plot_count: int
    source: str


class FarmOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    name: str
    total_size: float
    location: dict
    soil_type: str
    irrigation_type: str | None
    description: str | None
    grid_rows: int | None
    grid_cols: int | None
    plot_size: float | None
    plots: list[dict]
    is_active: bool
    revision: int
    created_at: datetime
    updated_at: datetime | None = None


class GridSaveOut(BaseModel):
    farm: FarmOut
    grid: GridConfigOut
    kept_plot_numbers: list[int]
    created_plot_numbers: list[int]
    dropped_plot_numbers: list[int]


class PlotUpdateOut(BaseModel):
    plot: dict
    revision: int


class BulkUpdateOut(BaseModel):
    updated_plots: list[dict]
    updated_plot_numbers: list[int]
    skipped_plot_numbers: list[int]
    revision: int


class BulkClearOut(BaseModel):
    cleared_plot_numbers: list[int]
    skipped_plot_numbers: list[int]
    revision: int


class ActivityOut(BaseModel):
    activity: dict
    revision: int


class FarmSummaryOut(BaseModel):
    farm_id: str
    name: str
    total_size: float
    grid: GridConfigOut
    total_plots: int
    active_crops: int
    cultivated_area: float
    current_crops: list[str]
    active_pest_alerts: int
    health_percentage: int
    overall_health: str


class StatsSummary(BaseModel):
    average_farm_size: float
    total_plots: int
    plots_needing_attention: int


class FarmStatsOut(BaseModel):
    total_farms: int
    total_acreage: float
    active_crops: int
    plots_with_pest_alerts: int
    health_percentage: int
    recent_activities: list[dict]
    summary: StatsSummary


class DashboardOut(BaseModel):
    total_farms: int
    total_acreage: float
    active_crops: int
    pest_alerts: int
    health_score: int
    recent_activities: list[dict]
    current_season: str
    crop_variety: list[str]
    average_farm_size: float
    total_plots: int
    recommendations: list[str]
