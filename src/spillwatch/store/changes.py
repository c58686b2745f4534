from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from time import monotonic
from typing import Any, AsyncIterator

import anyio
from pydantic import ValidationError as PydanticValidationError

from spillwatch.errors import StoreError
from spillwatch.models import ChangeEvent
from spillwatch.store.backend import DetectionBackend


logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], None]


def _to_event(row: dict[str, Any]) -> ChangeEvent:
    return ChangeEvent(
        id=row["id"],
        table=row["table"],
        type=row["type"],
        timestamp=row["timestamp"],
        record=row.get("record"),
        old=row.get("old"),
    )


class Subscription:
    def __init__(self, feed: "ChangeFeed", table: str, callback: ChangeCallback):
        self._feed = feed
        self.table = table
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._feed._remove(self)


class ChangeFeed:
    """Push channel over the backend's change log.

    One poller task reads new change rows and hands them, in log order, to the
    subscribers registered for the row's table. Only changes committed after
    ``start()`` are delivered.
    """

    def __init__(self, backend: DetectionBackend, *, poll_interval: float = 1.0):
        self._backend = backend
        self._poll_interval = max(0.01, float(poll_interval))
        self._subscriptions: list[Subscription] = []
        self._cursor: int | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    def subscribe(self, table: str, callback: ChangeCallback) -> Subscription:
        subscription = Subscription(self, table, callback)
        self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._cursor = await anyio.to_thread.run_sync(self._backend.latest_change_id)
        self._task = asyncio.create_task(self._poll_loop(), name="spillwatch-change-feed")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def poll_once(self) -> int:
        rows = await anyio.to_thread.run_sync(self._backend.list_changes, self._cursor, 200)
        for row in rows:
            self._cursor = row["id"]
            try:
                event = _to_event(row)
            except (PydanticValidationError, KeyError, ValueError) as exc:
                logger.warning("change_event_skipped id=%s error=%s", row.get("id"), exc)
                continue
            self._dispatch(event)
        return len(rows)

    def _dispatch(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.active or subscription.table != event.table:
                continue
            try:
                subscription.callback(event)
            except Exception:
                logger.exception("change_subscriber_failed table=%s event_id=%s", event.table, event.id)

    async def _poll_loop(self) -> None:
        while True:
            try:
                delivered = await self.poll_once()
            except StoreError as exc:
                logger.warning("change_feed_poll_failed error=%s", exc)
                delivered = 0
            if not delivered:
                await anyio.sleep(self._poll_interval)


async def stream_changes(
    backend: DetectionBackend,
    *,
    table: str | None = None,
    since_id: int | None = None,
    heartbeat_seconds: float = 10.0,
    poll_interval: float = 0.5,
) -> AsyncIterator[ChangeEvent | None]:
    """Poll the change log and yield events; ``None`` marks an idle heartbeat."""

    cursor = since_id
    if cursor is None:
        cursor = await anyio.to_thread.run_sync(backend.latest_change_id)
    heartbeat_deadline = monotonic() + max(1.0, heartbeat_seconds)

    while True:
        rows = await anyio.to_thread.run_sync(backend.list_changes, cursor, 200)
        if rows:
            for row in rows:
                cursor = row["id"]
                if table and row["table"] != table:
                    continue
                yield _to_event(row)
            heartbeat_deadline = monotonic() + max(1.0, heartbeat_seconds)
            continue

        if monotonic() >= heartbeat_deadline:
            yield None
            heartbeat_deadline = monotonic() + max(1.0, heartbeat_seconds)

        await anyio.sleep(max(0.1, poll_interval))
