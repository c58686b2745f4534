from spillwatch.store.backend import DETECTIONS_TABLE, DetectionBackend, DetectionQuery
from spillwatch.store.backend_factory import create_detection_backend
from spillwatch.store.changes import ChangeFeed, Subscription
from spillwatch.store.mongodb_backend import MongoDetectionBackend
from spillwatch.store.sqlite_backend import SQLiteDetectionBackend

__all__ = [
    "DETECTIONS_TABLE",
    "ChangeFeed",
    "DetectionBackend",
    "DetectionQuery",
    "MongoDetectionBackend",
    "SQLiteDetectionBackend",
    "Subscription",
    "create_detection_backend",
]
