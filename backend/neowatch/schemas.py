from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class RiskInput(BaseModel):
    """Canonical scoring input; every source shape is normalized to this first."""

    is_hazardous: bool = False
    diameter_max_m: float = 0.0
    miss_distance_lunar: float = 0.0
    velocity_kps: float = 0.0


class RiskBreakdown(BaseModel):
    hazard: int
    diameter: int
    distance: int
    velocity: int


class RiskAssessment(BaseModel):
    score: int = Field(ge=1, le=100)
    category: Literal['minimal', 'low', 'moderate', 'high']
    breakdown: RiskBreakdown
    factors: RiskInput


class NeoRecord(BaseModel):
    neo_reference_id: str
    name: str
    nasa_jpl_url: str | None = None
    absolute_magnitude_h: float | None = None
    is_potentially_hazardous: bool = False
    estimated_diameter_min_m: float | None = None
    estimated_diameter_max_m: float | None = None
    close_approach_date: datetime | None = None
    close_approach_date_full: str | None = None
    miss_distance_km: float | None = None
    miss_distance_au: float | None = None
    miss_distance_lunar: float | None = None
    relative_velocity_kps: float | None = None
    relative_velocity_kph: float | None = None
    orbiting_body: str | None = 'Earth'
    raw_data: dict = Field(default_factory=dict)


class FeedResult(BaseModel):
    success: bool
    element_count: int = 0
    near_earth_objects: dict[str, list[dict]] = Field(default_factory=dict)
    error: str | None = None


class BatchStats(BaseModel):
    total: int = 0
    processed: int = 0
    hazardous: int = 0
    high_risk: int = 0
    errors: int = 0


class SweepResult(BaseModel):
    days_ahead: int
    scanned: int = 0
    candidates: int = 0
    alerts_sent: int = 0
    duplicates: int = 0
    filtered: int = 0
    failures: int = 0
    error: str | None = None


class PipelineReport(BaseModel):
    pipeline: str
    start_date: str
    end_date: str
    fetched: int = 0
    feed_ok: bool = True
    batch: BatchStats | None = None
    sweep: SweepResult | None = None


class FetchTrigger(BaseModel):
    mode: Literal['today', 'week'] = 'today'


class AlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    asteroid_id: str
    asteroid_name: str
    type: str
    severity: str
    title: str
    message: str
    data: dict | None = None
    event_date: datetime | None = None
    is_read: bool
    created_at: datetime
