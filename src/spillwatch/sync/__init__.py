from spillwatch.sync.detection_store import DetectionStore, StoreState
from spillwatch.sync.statistics import StatisticsView, compute_statistics

__all__ = ["DetectionStore", "StatisticsView", "StoreState", "compute_statistics"]
