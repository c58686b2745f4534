from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from typing import Any

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import PyMongoError

from spillwatch.errors import DetectionNotFoundError, StoreError
from spillwatch.models import ChangeType
from spillwatch.store.backend import (
    DETECTIONS_TABLE,
    DetectionQuery,
    storage_record,
    storage_timestamp,
    validated_detection,
)


class MongoDetectionBackend:
    """MongoDB-backed store for detections and their change log."""

    table = DETECTIONS_TABLE

    def __init__(self, *, uri: str, db_name: str, client: MongoClient | None = None):
        self._uri = uri
        self._client = client or MongoClient(uri, serverSelectionTimeoutMS=5000)
        self._db = self._client[db_name]
        self._detections = self._db[DETECTIONS_TABLE]
        self._changes = self._db.detection_changes
        self._counters = self._db.counters
        if client is None:
            self._wait_until_ready(timeout_seconds=60)
        self._init_schema()

    def _wait_until_ready(self, timeout_seconds: int = 60) -> None:
        deadline = time.monotonic() + max(1, timeout_seconds)
        last_error: Exception | None = None
        while time.monotonic() < deadline:
            try:
                self._client.admin.command("ping")
                return
            except PyMongoError as exc:  # pragma: no cover - depends on runtime env
                last_error = exc
                time.sleep(1.0)

        raise StoreError(
            f"MongoDB is not reachable at '{self._uri}' after {timeout_seconds}s. "
            f"Last error: {last_error}"
        )

    def _init_schema(self) -> None:
        self._detections.create_index([("id", ASCENDING)], unique=True)
        self._detections.create_index([("status", ASCENDING)])
        self._detections.create_index([("severity", ASCENDING)])
        self._detections.create_index([("tags", ASCENDING)])
        self._detections.create_index([("detected_at", DESCENDING)])

        self._changes.create_index([("change_id", ASCENDING)], unique=True)

    @staticmethod
    def _utc_now() -> str:
        return storage_timestamp(datetime.now(timezone.utc)) or ""

    @staticmethod
    def _normalize(doc: dict[str, Any] | None) -> dict[str, Any] | None:
        if not doc:
            return None
        doc = dict(doc)
        doc.pop("_id", None)
        return doc

    def _next_change_id(self) -> int:
        row = self._counters.find_one_and_update(
            {"_id": "detection_changes"},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(row.get("seq", 1))

    def _append_change(
        self,
        change_type: ChangeType,
        record: dict[str, Any] | None,
        old: dict[str, Any] | None,
    ) -> None:
        self._changes.insert_one(
            {
                "change_id": self._next_change_id(),
                "table": self.table,
                "type": change_type.value,
                "timestamp": self._utc_now(),
                "record": record,
                "old": old,
            }
        )

    @staticmethod
    def _build_filter(query: DetectionQuery) -> dict[str, Any]:
        flt: dict[str, Any] = {}
        if query.status:
            flt["status"] = query.status
        if query.severity:
            flt["severity"] = {"$in": list(query.severity)}
        if query.response_status:
            flt["response_status"] = {"$in": list(query.response_status)}
        if query.validation_status:
            flt["validation_status"] = {"$in": list(query.validation_status)}
        if query.detected_from or query.detected_to:
            window: dict[str, Any] = {}
            if query.detected_from:
                window["$gte"] = storage_timestamp(query.detected_from)
            if query.detected_to:
                window["$lte"] = storage_timestamp(query.detected_to)
            flt["detected_at"] = window
        if query.search_text:
            pattern = {"$regex": re.escape(query.search_text), "$options": "i"}
            flt["$or"] = [{"notes": pattern}, {"copernicus_product_id": pattern}]
        if query.tags:
            flt["tags"] = {"$all": list(query.tags)}
        return flt

    def select(self, query: DetectionQuery) -> list[dict[str, Any]]:
        try:
            cursor = self._detections.find(self._build_filter(query)).sort(
                "detected_at", DESCENDING
            )
            if query.limit:
                cursor = cursor.limit(int(query.limit))
            return [doc for doc in (self._normalize(item) for item in cursor) if doc]
        except PyMongoError as exc:
            raise StoreError(f"Detection query failed: {exc}") from exc

    def get(self, detection_id: str) -> dict[str, Any] | None:
        try:
            return self._normalize(self._detections.find_one({"id": detection_id}))
        except PyMongoError as exc:
            raise StoreError(f"Detection lookup failed: {exc}") from exc

    def insert(self, record: dict[str, Any]) -> dict[str, Any]:
        stored = storage_record(validated_detection(record))
        try:
            self._detections.insert_one(dict(stored))
            self._append_change(ChangeType.insert, stored, None)
        except PyMongoError as exc:
            raise StoreError(f"Detection insert failed: {exc}") from exc
        return stored

    def update(self, detection_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        try:
            current = self.get(detection_id)
            if current is None:
                raise DetectionNotFoundError(detection_id)
            merged = {**current, **fields, "id": detection_id}
            if "updated_at" not in fields:
                merged["updated_at"] = self._utc_now()
            stored = storage_record(validated_detection(merged))
            result = self._detections.replace_one({"id": detection_id}, dict(stored))
            if result.matched_count == 0:
                raise DetectionNotFoundError(detection_id)
            self._append_change(ChangeType.update, stored, None)
        except PyMongoError as exc:
            raise StoreError(f"Detection update failed: {exc}") from exc
        return stored

    def delete(self, detection_id: str) -> None:
        try:
            result = self._detections.delete_one({"id": detection_id})
            if result.deleted_count == 0:
                raise DetectionNotFoundError(detection_id)
            self._append_change(ChangeType.delete, None, {"id": detection_id})
        except PyMongoError as exc:
            raise StoreError(f"Detection delete failed: {exc}") from exc

    def list_changes(self, since_id: int | None, limit: int = 200) -> list[dict[str, Any]]:
        query: dict[str, Any] = {}
        if since_id is not None:
            query["change_id"] = {"$gt": since_id}
        try:
            cursor = (
                self._changes.find(query)
                .sort("change_id", ASCENDING)
                .limit(max(1, min(1000, limit)))
            )
            return [
                {
                    "id": int(doc["change_id"]),
                    "table": doc["table"],
                    "type": doc["type"],
                    "timestamp": doc["timestamp"],
                    "record": doc.get("record"),
                    "old": doc.get("old"),
                }
                for doc in cursor
            ]
        except PyMongoError as exc:
            raise StoreError(f"Change log query failed: {exc}") from exc

    def latest_change_id(self) -> int | None:
        doc = self._changes.find_one(sort=[("change_id", DESCENDING)])
        return int(doc["change_id"]) if doc else None

    def close(self) -> None:
        self._client.close()
