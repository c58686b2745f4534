"""SpillWatch core: detection synchronization and satellite-catalog client."""

from spillwatch.catalog import CatalogClient, TokenCache
from spillwatch.client import SpillWatchClient
from spillwatch.sync import DetectionStore, StatisticsView

__all__ = ["CatalogClient", "DetectionStore", "SpillWatchClient", "StatisticsView", "TokenCache"]
