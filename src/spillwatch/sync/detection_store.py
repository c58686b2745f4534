from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import anyio
from pydantic import ValidationError as PydanticValidationError

from spillwatch.errors import DetectionNotFoundError, StoreError, ValidationError
from spillwatch.models import (
    IMMUTABLE_FIELDS,
    ChangeEvent,
    ChangeType,
    Detection,
    DetectionPatch,
    DetectionStatistics,
    SearchFilters,
)
from spillwatch.settings import Settings
from spillwatch.store.backend import DetectionBackend, DetectionQuery, storage_timestamp
from spillwatch.store.backend_factory import create_detection_backend
from spillwatch.store.changes import ChangeFeed, Subscription
from spillwatch.sync.statistics import StatisticsView


logger = logging.getLogger(__name__)


class StoreState(str, Enum):
    idle = "idle"
    loading = "loading"
    ready = "ready"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def coerce_filters(filters: SearchFilters | Mapping[str, Any]) -> SearchFilters:
    if isinstance(filters, SearchFilters):
        return filters
    if not isinstance(filters, Mapping):
        raise ValidationError("Filters must be a SearchFilters value or a mapping.")
    try:
        return SearchFilters.model_validate(dict(filters))
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid search filters: {exc}") from exc


def coerce_patch(changes: DetectionPatch | Mapping[str, Any]) -> DetectionPatch:
    """Validate operator changes; identity, position, status and timestamps are immutable."""

    if isinstance(changes, DetectionPatch):
        return changes
    if not isinstance(changes, Mapping):
        raise ValidationError("Detection changes must be a mapping.")
    immutable = sorted(IMMUTABLE_FIELDS.intersection(changes))
    if immutable:
        raise ValidationError(f"Fields cannot be changed: {', '.join(immutable)}.")
    try:
        return DetectionPatch.model_validate(dict(changes))
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid detection changes: {exc}") from exc


class DetectionStore:
    """In-memory view of the detection collection, kept in sync with the backing store.

    ``reload`` fetches the collection for a set of filters. Requests that arrive
    while a fetch is running join it, and once it settles one more fetch runs
    with the most recently requested filters. A failed fetch records ``error``
    and keeps the previous collection visible.

    ``update`` and ``delete`` change the in-memory collection before the remote
    write, and a reload that lands while the write is in flight keeps the
    optimistic change. When the write fails the store reloads from the backing
    store and re-raises.

    A single change-feed subscription, opened by ``start`` and released by
    ``close``, applies remote inserts, updates and deletes as they arrive, even
    for records outside the active filters unless ``strict_filters`` is set.
    Updates older than the local version of a record are discarded.
    """

    def __init__(
        self,
        backend: DetectionBackend,
        *,
        feed: ChangeFeed | None = None,
        filters: SearchFilters | Mapping[str, Any] | None = None,
        strict_filters: bool = False,
        auto_refresh_seconds: float | None = None,
        poll_interval: float = 1.0,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._backend = backend
        self._feed = feed or ChangeFeed(backend, poll_interval=poll_interval)
        self._owns_feed = feed is None
        self._strict_filters = strict_filters
        self._auto_refresh_seconds = auto_refresh_seconds
        self._clock = clock

        initial = coerce_filters(filters) if filters is not None else SearchFilters()
        self._active_filters = initial
        self._requested_filters = initial
        self._requested_generation = 0

        self._detections: tuple[Detection, ...] = ()
        self._versions: dict[str, datetime] = {}
        self._tombstones: set[str] = set()
        # id -> (mutation marker, optimistic record or None for a delete)
        self._pending: dict[str, tuple[object, Detection | None]] = {}
        self._state = StoreState.idle
        self._loaded = False
        self._error: Exception | None = None

        self._reload_task: asyncio.Task[None] | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        self._subscription: Subscription | None = None
        self._started = False
        self._closed = False
        self._stats = StatisticsView(lambda: self._detections)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        backend: DetectionBackend | None = None,
        strict_filters: bool = False,
    ) -> "DetectionStore":
        return cls(
            backend or create_detection_backend(settings),
            strict_filters=strict_filters,
            auto_refresh_seconds=settings.spillwatch_auto_refresh_seconds,
            poll_interval=settings.spillwatch_feed_poll_seconds,
        )

    @property
    def detections(self) -> tuple[Detection, ...]:
        return self._detections

    @property
    def statistics(self) -> DetectionStatistics:
        return self._stats.current

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def loading(self) -> bool:
        return self._state == StoreState.loading

    @property
    def error(self) -> Exception | None:
        return self._error

    @property
    def filters(self) -> SearchFilters:
        return self._active_filters

    @property
    def backend(self) -> DetectionBackend:
        return self._backend

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, detection_id: str) -> Detection | None:
        for detection in self._detections:
            if detection.id == detection_id:
                return detection
        return None

    async def fetch(self, detection_id: str) -> Detection:
        """Return a detection by id, reading the backing store when it is not loaded."""

        self._require_id(detection_id)
        local = self.get(detection_id)
        if local is not None:
            return local
        row = await anyio.to_thread.run_sync(self._backend.get, detection_id)
        if row is None:
            raise DetectionNotFoundError(detection_id)
        try:
            return Detection.model_validate(row)
        except PydanticValidationError as exc:
            raise StoreError(f"Backing store returned an invalid detection: {exc}") from exc

    async def start(self) -> None:
        if self._closed:
            raise StoreError("Detection store is closed.")
        if self._started:
            return
        self._started = True
        self._subscription = self._feed.subscribe(self._backend.table, self._on_change)
        if self._owns_feed:
            await self._feed.start()
        await self.reload()
        if self._auto_refresh_seconds:
            self._refresh_task = asyncio.create_task(
                self._auto_refresh_loop(), name="spillwatch-auto-refresh"
            )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        if self._owns_feed:
            await self._feed.stop()

    async def __aenter__(self) -> "DetectionStore":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def reload(
        self, filters: SearchFilters | Mapping[str, Any] | None = None
    ) -> tuple[Detection, ...]:
        if filters is not None:
            self._requested_filters = coerce_filters(filters)
        self._requested_generation += 1
        if self._reload_task is None:
            self._reload_task = asyncio.create_task(self._run_reloads(), name="spillwatch-reload")
        await asyncio.shield(self._reload_task)
        return self._detections

    async def update(
        self, detection_id: str, changes: DetectionPatch | Mapping[str, Any]
    ) -> Detection:
        self._require_id(detection_id)
        patch = coerce_patch(changes)
        stamp = self._next_stamp(detection_id)
        fields = patch.changes()
        fields["updated_at"] = storage_timestamp(stamp)

        marker = object()
        current = self.get(detection_id)
        if current is not None:
            optimistic = Detection.model_validate(
                {
                    **current.model_dump(),
                    **patch.model_dump(exclude_unset=True),
                    "updated_at": stamp,
                }
            )
            self._replace(optimistic)
            self._pending[detection_id] = (marker, optimistic)

        try:
            try:
                row = await anyio.to_thread.run_sync(self._backend.update, detection_id, fields)
            finally:
                self._settle(detection_id, marker)
        except Exception as exc:
            logger.warning("detection_update_failed id=%s error=%s resync=true", detection_id, exc)
            await self._resync()
            raise

        confirmed = Detection.model_validate(row)
        if not self._closed and self.get(detection_id) is not None:
            local_version = self._versions.get(detection_id)
            if local_version is None or confirmed.version >= local_version:
                self._replace(confirmed)
        return confirmed

    async def delete(self, detection_id: str) -> None:
        self._require_id(detection_id)
        marker = object()
        self._remove(detection_id)
        self._pending[detection_id] = (marker, None)

        try:
            try:
                await anyio.to_thread.run_sync(self._backend.delete, detection_id)
            finally:
                self._settle(detection_id, marker)
        except Exception as exc:
            logger.warning("detection_delete_failed id=%s error=%s resync=true", detection_id, exc)
            await self._resync()
            raise

        self._tombstones.add(detection_id)

    async def _resync(self) -> None:
        await self.reload()

    async def _run_reloads(self) -> None:
        try:
            while True:
                generation = self._requested_generation
                await self._load(self._requested_filters)
                if self._closed or generation == self._requested_generation:
                    return
        finally:
            self._reload_task = None

    async def _load(self, filters: SearchFilters) -> None:
        if self._closed:
            return
        self._state = StoreState.loading
        try:
            rows = await anyio.to_thread.run_sync(
                self._backend.select, DetectionQuery.from_filters(filters)
            )
            fetched = self._parse_rows(rows)
        except Exception as exc:
            logger.warning("detections_reload_failed error=%s", exc)
            if not self._closed:
                if not isinstance(exc, StoreError):
                    exc = StoreError(f"Detection reload failed: {exc}")
                self._error = exc
                self._state = StoreState.ready if self._loaded else StoreState.idle
            return

        if self._closed:
            return

        # Radius filtering cannot be pushed down to the backing store.
        visible = tuple(item for item in fetched if filters.matches_location(item))
        if self._pending:
            visible = self._overlay_pending(visible)
        self._detections = visible
        self._versions = {item.id: item.version for item in visible}
        self._tombstones.difference_update(self._versions)
        self._active_filters = filters
        self._error = None
        self._loaded = True
        self._state = StoreState.ready
        logger.info("detections_loaded count=%s fetched=%s", len(visible), len(fetched))

    @staticmethod
    def _parse_rows(rows: list[dict[str, Any]]) -> list[Detection]:
        try:
            return [Detection.model_validate(row) for row in rows]
        except PydanticValidationError as exc:
            raise StoreError(f"Backing store returned an invalid detection: {exc}") from exc

    async def _auto_refresh_loop(self) -> None:
        interval = self._auto_refresh_seconds
        if not interval:
            return
        while not self._closed:
            await anyio.sleep(interval)
            await self.reload()

    def _on_change(self, event: ChangeEvent) -> None:
        if self._closed or event.table != self._backend.table:
            return

        record_id = event.record_id
        if record_id is None:
            return

        if event.type == ChangeType.delete:
            self._remove(record_id)
            self._tombstones.add(record_id)
            return

        try:
            detection = Detection.model_validate(event.record)
        except PydanticValidationError as exc:
            logger.warning("change_event_invalid id=%s error=%s", record_id, exc.errors()[:1])
            return

        if event.type == ChangeType.insert:
            self._tombstones.discard(detection.id)
        elif detection.id in self._tombstones:
            return

        local_version = self._versions.get(detection.id)
        if local_version is not None and detection.version < local_version:
            logger.info(
                "stale_change_discarded id=%s incoming=%s local=%s",
                detection.id,
                detection.version.isoformat(),
                local_version.isoformat(),
            )
            return

        present = self.get(detection.id) is not None
        if self._strict_filters and not self._active_filters.matches(detection):
            if present:
                self._remove(detection.id)
            return

        if present:
            self._replace(detection)
        elif event.type == ChangeType.insert or self._strict_filters:
            self._detections = (detection, *self._detections)
            self._versions[detection.id] = detection.version

    def _settle(self, detection_id: str, marker: object) -> None:
        pending = self._pending.get(detection_id)
        if pending is not None and pending[0] is marker:
            del self._pending[detection_id]

    def _overlay_pending(self, fetched: tuple[Detection, ...]) -> tuple[Detection, ...]:
        """Keep in-flight optimistic changes over a snapshot read before they were written."""

        merged = []
        for item in fetched:
            pending = self._pending.get(item.id)
            if pending is None:
                merged.append(item)
                continue
            local = pending[1]
            if local is None:
                continue
            merged.append(local if local.version > item.version else item)
        return tuple(merged)

    def _replace(self, detection: Detection) -> None:
        if self._closed:
            return
        self._detections = tuple(
            detection if item.id == detection.id else item for item in self._detections
        )
        self._versions[detection.id] = detection.version

    def _remove(self, detection_id: str) -> bool:
        if self._closed or self.get(detection_id) is None:
            return False
        self._detections = tuple(item for item in self._detections if item.id != detection_id)
        self._versions.pop(detection_id, None)
        return True

    def _next_stamp(self, detection_id: str) -> datetime:
        stamp = self._clock()
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        previous = self._versions.get(detection_id)
        if previous is not None and stamp <= previous:
            stamp = previous + timedelta(microseconds=1)
        return stamp

    @staticmethod
    def _require_id(detection_id: str) -> None:
        if not isinstance(detection_id, str) or not detection_id.strip():
            raise ValidationError("Detection id must be a non-empty string.")
