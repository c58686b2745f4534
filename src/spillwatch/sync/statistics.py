from __future__ import annotations

from collections.abc import Callable, Sequence

from spillwatch.models import (
    Detection,
    DetectionStatistics,
    DetectionStatus,
    Severity,
    ValidationStatus,
)


def compute_statistics(detections: Sequence[Detection]) -> DetectionStatistics:
    oil_spills = [d for d in detections if d.status == DetectionStatus.oil_spill]
    return DetectionStatistics(
        total=len(detections),
        oil_spills=len(oil_spills),
        non_oil_spills=sum(1 for d in detections if d.status == DetectionStatus.non_oil_spill),
        verified=sum(1 for d in detections if d.validation_status == ValidationStatus.verified),
        critical=sum(1 for d in oil_spills if d.severity == Severity.critical),
    )


class StatisticsView:
    """Aggregate counts over a collection, recomputed only when the collection object changes."""

    def __init__(self, source: Callable[[], Sequence[Detection]]):
        self._source = source
        self._snapshot: Sequence[Detection] | None = None
        self._stats = DetectionStatistics()

    @property
    def current(self) -> DetectionStatistics:
        detections = self._source()
        if detections is not self._snapshot:
            self._stats = compute_statistics(detections)
            self._snapshot = detections
        return self._stats
