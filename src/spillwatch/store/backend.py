from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from pydantic import ValidationError as PydanticValidationError

from spillwatch.errors import ValidationError
from spillwatch.models import Detection, SearchFilters


DETECTIONS_TABLE = "oil_spill_detections"


@dataclass(slots=True)
class DetectionQuery:
    """Filters the backing store can evaluate itself. Radius filtering is not among them."""

    status: str | None = None
    severity: list[str] = field(default_factory=list)
    response_status: list[str] = field(default_factory=list)
    validation_status: list[str] = field(default_factory=list)
    detected_from: datetime | None = None
    detected_to: datetime | None = None
    search_text: str | None = None
    tags: list[str] = field(default_factory=list)
    limit: int | None = None

    @classmethod
    def from_filters(cls, filters: SearchFilters | None) -> "DetectionQuery":
        if filters is None:
            return cls()
        return cls(
            status=None if filters.status == "all" else filters.status.value,
            severity=sorted(item.value for item in filters.severity),
            response_status=sorted(item.value for item in filters.response_status),
            validation_status=sorted(item.value for item in filters.validation_status),
            detected_from=filters.date_range.start if filters.date_range else None,
            detected_to=filters.date_range.end if filters.date_range else None,
            search_text=filters.search_text,
            tags=sorted(filters.tags),
        )


class DetectionBackend(Protocol):
    table: str

    def select(self, query: DetectionQuery) -> list[dict[str, Any]]:
        ...

    def get(self, detection_id: str) -> dict[str, Any] | None:
        ...

    def insert(self, record: dict[str, Any]) -> dict[str, Any]:
        ...

    def update(self, detection_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        ...

    def delete(self, detection_id: str) -> None:
        ...

    def list_changes(self, since_id: int | None, limit: int = 200) -> list[dict[str, Any]]:
        ...

    def latest_change_id(self) -> int | None:
        ...

    def close(self) -> None:
        ...


def validated_detection(record: dict[str, Any]) -> Detection:
    """Check a record against the Detection model.

    Out-of-range coordinates and unknown enum values are rejected here, before
    they reach the backing store.
    """

    try:
        return Detection.model_validate(record)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid detection record: {exc}") from exc


def storage_timestamp(value: datetime | None) -> str | None:
    # Fixed-width UTC text so that string ordering matches time ordering.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


TIMESTAMP_FIELDS = ("detected_at", "created_at", "updated_at")


def storage_record(detection: Detection) -> dict[str, Any]:
    record = detection.model_dump(mode="json")
    for name in TIMESTAMP_FIELDS:
        record[name] = storage_timestamp(getattr(detection, name))
    return record
