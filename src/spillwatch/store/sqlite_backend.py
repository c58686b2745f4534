from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from spillwatch.errors import DetectionNotFoundError, StoreError
from spillwatch.models import ChangeType
from spillwatch.store.backend import (
    DETECTIONS_TABLE,
    DetectionQuery,
    storage_record,
    storage_timestamp,
    validated_detection,
)


_COLUMNS = (
    "id",
    "latitude",
    "longitude",
    "status",
    "detected_at",
    "confidence",
    "source",
    "created_at",
    "severity",
    "area_affected_km2",
    "response_status",
    "validation_status",
    "sar_image_url",
    "optical_image_url",
    "copernicus_product_id",
    "wind_speed_ms",
    "sea_state",
    "notes",
    "tags_json",
    "news_json",
    "updated_at",
)


def _like_pattern(text: str) -> str:
    escaped = text.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class SQLiteDetectionBackend:
    """SQLite-backed store for detections and their change log."""

    table = DETECTIONS_TABLE

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.executescript(
                f"""
                CREATE TABLE IF NOT EXISTS {DETECTIONS_TABLE} (
                    id TEXT PRIMARY KEY,
                    latitude REAL NOT NULL CHECK (latitude >= -90 AND latitude <= 90),
                    longitude REAL NOT NULL CHECK (longitude >= -180 AND longitude <= 180),
                    status TEXT NOT NULL CHECK (status IN ('Oil spill', 'Non Oil spill')),
                    detected_at TEXT NOT NULL,
                    confidence REAL CHECK (confidence IS NULL OR (confidence >= 0 AND confidence <= 1)),
                    source TEXT,
                    created_at TEXT NOT NULL,
                    severity TEXT,
                    area_affected_km2 REAL CHECK (area_affected_km2 IS NULL OR area_affected_km2 >= 0),
                    response_status TEXT,
                    validation_status TEXT,
                    sar_image_url TEXT,
                    optical_image_url TEXT,
                    copernicus_product_id TEXT,
                    wind_speed_ms REAL,
                    sea_state TEXT,
                    notes TEXT,
                    tags_json TEXT NOT NULL DEFAULT '[]',
                    news_json TEXT NOT NULL DEFAULT '[]',
                    updated_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_detections_status ON {DETECTIONS_TABLE}(status);
                CREATE INDEX IF NOT EXISTS idx_detections_detected_at ON {DETECTIONS_TABLE}(detected_at);
                CREATE INDEX IF NOT EXISTS idx_detections_severity ON {DETECTIONS_TABLE}(severity);

                CREATE TABLE IF NOT EXISTS detection_changes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    table_name TEXT NOT NULL,
                    type TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    record_json TEXT,
                    old_json TEXT
                );
                """
            )
            self._conn.commit()

    @staticmethod
    def _utc_now() -> str:
        return storage_timestamp(datetime.now(timezone.utc)) or ""

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> dict[str, Any]:
        record = {key: row[key] for key in _COLUMNS if key not in {"tags_json", "news_json"}}
        record["tags"] = json.loads(row["tags_json"] or "[]")
        record["news_correlation"] = json.loads(row["news_json"] or "[]")
        return record

    @staticmethod
    def _record_to_params(record: dict[str, Any]) -> list[Any]:
        values = dict(record)
        values["tags_json"] = json.dumps(values.pop("tags", None) or [])
        values["news_json"] = json.dumps(values.pop("news_correlation", None) or [])
        return [values.get(column) for column in _COLUMNS]

    def _append_change(
        self,
        change_type: ChangeType,
        record: dict[str, Any] | None,
        old: dict[str, Any] | None,
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO detection_changes(table_name, type, timestamp, record_json, old_json)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                self.table,
                change_type.value,
                self._utc_now(),
                json.dumps(record) if record is not None else None,
                json.dumps(old) if old is not None else None,
            ),
        )

    def _fetch_one(self, detection_id: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            f"SELECT * FROM {DETECTIONS_TABLE} WHERE id = ?", (detection_id,)
        ).fetchone()
        return self._row_to_record(row) if row else None

    def select(self, query: DetectionQuery) -> list[dict[str, Any]]:
        where: list[str] = []
        params: list[Any] = []

        if query.status:
            where.append("status = ?")
            params.append(query.status)
        for column, values in (
            ("severity", query.severity),
            ("response_status", query.response_status),
            ("validation_status", query.validation_status),
        ):
            if values:
                where.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
        if query.detected_from:
            where.append("detected_at >= ?")
            params.append(storage_timestamp(query.detected_from))
        if query.detected_to:
            where.append("detected_at <= ?")
            params.append(storage_timestamp(query.detected_to))
        if query.search_text:
            pattern = _like_pattern(query.search_text)
            where.append(
                "(LOWER(COALESCE(notes, '')) LIKE ? ESCAPE '\\' "
                "OR LOWER(COALESCE(copernicus_product_id, '')) LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern])
        if query.tags:
            where.append(
                "NOT EXISTS (SELECT 1 FROM json_each(?) AS wanted "
                "WHERE wanted.value NOT IN (SELECT value FROM json_each(tags_json)))"
            )
            params.append(json.dumps(query.tags))

        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        limit_sql = ""
        if query.limit:
            limit_sql = "LIMIT ?"
            params.append(int(query.limit))

        try:
            with self._lock:
                rows = self._conn.execute(
                    f"""
                    SELECT * FROM {DETECTIONS_TABLE}
                    {where_sql}
                    ORDER BY detected_at DESC
                    {limit_sql}
                    """,
                    params,
                ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"Detection query failed: {exc}") from exc
        return [self._row_to_record(row) for row in rows]

    def get(self, detection_id: str) -> dict[str, Any] | None:
        try:
            with self._lock:
                return self._fetch_one(detection_id)
        except sqlite3.Error as exc:
            raise StoreError(f"Detection lookup failed: {exc}") from exc

    def insert(self, record: dict[str, Any]) -> dict[str, Any]:
        stored = storage_record(validated_detection(record))
        placeholders = ", ".join("?" for _ in _COLUMNS)
        try:
            with self._lock:
                self._conn.execute(
                    f"INSERT INTO {DETECTIONS_TABLE}({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                    self._record_to_params(stored),
                )
                self._append_change(ChangeType.insert, stored, None)
                self._conn.commit()
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise StoreError(f"Detection insert failed: {exc}") from exc
        return stored

    def update(self, detection_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        try:
            with self._lock:
                current = self._fetch_one(detection_id)
                if current is None:
                    raise DetectionNotFoundError(detection_id)
                merged = {**current, **fields, "id": detection_id}
                if "updated_at" not in fields:
                    merged["updated_at"] = self._utc_now()
                stored = storage_record(validated_detection(merged))
                assignments = ", ".join(f"{column} = ?" for column in _COLUMNS[1:])
                params = self._record_to_params(stored)[1:] + [detection_id]
                self._conn.execute(
                    f"UPDATE {DETECTIONS_TABLE} SET {assignments} WHERE id = ?", params
                )
                self._append_change(ChangeType.update, stored, None)
                self._conn.commit()
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise StoreError(f"Detection update failed: {exc}") from exc
        return stored

    def delete(self, detection_id: str) -> None:
        try:
            with self._lock:
                cursor = self._conn.execute(
                    f"DELETE FROM {DETECTIONS_TABLE} WHERE id = ?", (detection_id,)
                )
                if cursor.rowcount == 0:
                    self._conn.rollback()
                    raise DetectionNotFoundError(detection_id)
                self._append_change(ChangeType.delete, None, {"id": detection_id})
                self._conn.commit()
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise StoreError(f"Detection delete failed: {exc}") from exc

    def list_changes(self, since_id: int | None, limit: int = 200) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if since_id is not None:
            clauses.append("id > ?")
            params.append(since_id)

        where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        try:
            with self._lock:
                rows = self._conn.execute(
                    f"""
                    SELECT id, table_name, type, timestamp, record_json, old_json
                    FROM detection_changes
                    {where_sql}
                    ORDER BY id ASC
                    LIMIT ?
                    """,
                    [*params, max(1, min(1000, limit))],
                ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"Change log query failed: {exc}") from exc

        return [
            {
                "id": int(row["id"]),
                "table": row["table_name"],
                "type": row["type"],
                "timestamp": row["timestamp"],
                "record": json.loads(row["record_json"]) if row["record_json"] else None,
                "old": json.loads(row["old_json"]) if row["old_json"] else None,
            }
            for row in rows
        ]

    def latest_change_id(self) -> int | None:
        with self._lock:
            row = self._conn.execute("SELECT MAX(id) AS n FROM detection_changes").fetchone()
        return int(row["n"]) if row and row["n"] is not None else None

    def close(self) -> None:
        with self._lock:
            self._conn.close()
