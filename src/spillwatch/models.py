from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from spillwatch.geometry.points import haversine_km


class DetectionStatus(str, Enum):
    oil_spill = "Oil spill"
    non_oil_spill = "Non Oil spill"


class Severity(str, Enum):
    low = "Low"
    medium = "Medium"
    high = "High"
    critical = "Critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = [Severity.low, Severity.medium, Severity.high, Severity.critical]


class ResponseStatus(str, Enum):
    pending = "Pending"
    investigating = "Investigating"
    responding = "Responding"
    contained = "Contained"
    cleaned = "Cleaned"


class ValidationStatus(str, Enum):
    unverified = "Unverified"
    verified = "Verified"
    false_positive = "False Positive"


class ImageryPlatform(str, Enum):
    sar = "SAR"
    optical = "Optical"


class ChangeType(str, Enum):
    insert = "INSERT"
    update = "UPDATE"
    delete = "DELETE"


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class NewsArticle(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    title: str
    url: str
    published_date: str
    source: str
    relevance_score: float | None = None


class Detection(BaseModel):
    """One recorded spill observation, validated at ingestion."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str = Field(min_length=1)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    status: DetectionStatus
    detected_at: datetime
    confidence: float | None = Field(default=None, ge=0, le=1)
    source: str | None = None
    created_at: datetime

    severity: Severity | None = None
    area_affected_km2: float | None = Field(default=None, ge=0)
    response_status: ResponseStatus | None = None
    validation_status: ValidationStatus | None = None
    sar_image_url: str | None = None
    optical_image_url: str | None = None
    copernicus_product_id: str | None = None
    wind_speed_ms: float | None = Field(default=None, ge=0)
    sea_state: str | None = None
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)
    news_correlation: list[NewsArticle] = Field(default_factory=list)
    updated_at: datetime | None = None

    @field_validator("detected_at", "created_at", "updated_at")
    @classmethod
    def _normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @field_validator("tags", "news_correlation", mode="before")
    @classmethod
    def _null_lists(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def version(self) -> datetime:
        return self.updated_at or self.created_at


IMMUTABLE_FIELDS = frozenset(
    {"id", "latitude", "longitude", "status", "detected_at", "created_at"}
)


class DetectionPatch(BaseModel):
    """Fields an operator may change on an existing detection."""

    model_config = ConfigDict(extra="forbid")

    confidence: float | None = Field(default=None, ge=0, le=1)
    source: str | None = None
    severity: Severity | None = None
    area_affected_km2: float | None = Field(default=None, ge=0)
    response_status: ResponseStatus | None = None
    validation_status: ValidationStatus | None = None
    sar_image_url: str | None = None
    optical_image_url: str | None = None
    copernicus_product_id: str | None = None
    wind_speed_ms: float | None = Field(default=None, ge=0)
    sea_state: str | None = None
    notes: str | None = None
    tags: list[str] | None = None
    news_correlation: list[NewsArticle] | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


class DateRange(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalize(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _validate_order(self) -> "DateRange":
        if self.end < self.start:
            raise ValueError("date range end must be greater or equal to start.")
        return self


class LocationFilter(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    radius_km: float = Field(gt=0)


class SearchFilters(BaseModel):
    """Read-only filter value handed to the detection store by the filter UI."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    status: DetectionStatus | Literal["all"] = "all"
    severity: frozenset[Severity] = frozenset()
    response_status: frozenset[ResponseStatus] = frozenset()
    validation_status: frozenset[ValidationStatus] = frozenset()
    date_range: DateRange | None = None
    location: LocationFilter | None = None
    search_text: str | None = None
    tags: frozenset[str] = frozenset()

    @field_validator("search_text")
    @classmethod
    def _blank_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    def to_query_params(self) -> list[tuple[str, str]]:
        """Render as the query parameters accepted by ``GET /v1/detections``."""

        params: list[tuple[str, str]] = []
        if self.status != "all":
            params.append(("status", self.status.value))
        for name, values in (
            ("severity", self.severity),
            ("response_status", self.response_status),
            ("validation_status", self.validation_status),
        ):
            params.extend((name, item.value) for item in sorted(values, key=lambda v: v.value))
        if self.date_range is not None:
            params.append(("date_from", self.date_range.start.isoformat()))
            params.append(("date_to", self.date_range.end.isoformat()))
        if self.location is not None:
            params.append(("lat", str(self.location.lat)))
            params.append(("lng", str(self.location.lng)))
            params.append(("radius_km", str(self.location.radius_km)))
        if self.search_text:
            params.append(("q", self.search_text))
        params.extend(("tag", tag) for tag in sorted(self.tags))
        return params

    def matches_location(self, detection: Detection) -> bool:
        if self.location is None:
            return True
        distance = haversine_km(
            self.location.lat,
            self.location.lng,
            detection.latitude,
            detection.longitude,
        )
        return distance <= self.location.radius_km

    def matches(self, detection: Detection) -> bool:
        """Full predicate, equivalent to the pushed-down query plus the radius filter."""

        if self.status != "all" and detection.status != self.status:
            return False
        if self.severity and detection.severity not in self.severity:
            return False
        if self.response_status and detection.response_status not in self.response_status:
            return False
        if self.validation_status and detection.validation_status not in self.validation_status:
            return False
        if self.date_range is not None:
            if not self.date_range.start <= detection.detected_at <= self.date_range.end:
                return False
        if self.search_text:
            needle = self.search_text.lower()
            haystacks = (detection.notes or "", detection.copernicus_product_id or "")
            if not any(needle in text.lower() for text in haystacks):
                return False
        if self.tags and not self.tags.issubset(detection.tags):
            return False
        return self.matches_location(detection)


class Product(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    title: str
    platform: ImageryPlatform
    mission: str
    instrument: str
    acquisition_date: datetime
    footprint: str | None = None
    preview_url: str | None = None
    download_url: str | None = None
    cloud_coverage: float | None = Field(default=None, ge=0, le=100)


class ImageryBundle(BaseModel):
    radar: list[Product] = Field(default_factory=list)
    optical: list[Product] = Field(default_factory=list)
    partial: bool = False
    errors: list[str] = Field(default_factory=list)


class DetectionStatistics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int = 0
    oil_spills: int = 0
    non_oil_spills: int = 0
    verified: int = 0
    critical: int = 0


class DetectionListResponse(BaseModel):
    items: list[Detection]
    total: int
    stale: bool = False


class ChangeEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: int | None = None
    table: str
    type: ChangeType
    timestamp: datetime
    record: dict[str, Any] | None = None
    old: dict[str, Any] | None = None

    @property
    def record_id(self) -> str | None:
        source = self.record if self.type != ChangeType.delete else self.old
        if not source:
            return None
        value = source.get("id")
        return str(value) if value is not None else None
