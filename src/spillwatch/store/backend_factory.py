from __future__ import annotations

from spillwatch.settings import Settings
from spillwatch.store.backend import DetectionBackend
from spillwatch.store.mongodb_backend import MongoDetectionBackend
from spillwatch.store.sqlite_backend import SQLiteDetectionBackend


def create_detection_backend(settings: Settings) -> DetectionBackend:
    backend = settings.db_backend
    if backend == "mongodb":
        return MongoDetectionBackend(
            uri=settings.spillwatch_mongodb_uri,
            db_name=settings.spillwatch_mongodb_db,
        )
    if backend == "sqlite":
        return SQLiteDetectionBackend(settings.spillwatch_db_path)
    raise ValueError(f"Unsupported SPILLWATCH_DB_BACKEND='{settings.spillwatch_db_backend}'")
