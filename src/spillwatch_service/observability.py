from __future__ import annotations

from collections import Counter as Tally
from collections.abc import Sequence

from prometheus_client import Counter, Gauge, Histogram, generate_latest

from spillwatch.models import Detection, DetectionStatus


HTTP_REQUESTS_TOTAL = Counter(
    "spillwatch_http_requests_total",
    "Total HTTP requests handled by the SpillWatch API.",
    labelnames=("method", "path", "status"),
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "spillwatch_http_request_duration_seconds",
    "HTTP request duration in seconds.",
    labelnames=("method", "path"),
    buckets=(0.01, 0.05, 0.1, 0.3, 1.0, 3.0, 10.0, 30.0),
)

IMAGERY_LOOKUPS_TOTAL = Counter(
    "spillwatch_imagery_lookups_total",
    "Imagery lookups grouped by outcome (complete, partial, failed).",
    labelnames=("outcome",),
)

DETECTION_MUTATIONS_TOTAL = Counter(
    "spillwatch_detection_mutations_total",
    "Detection updates and deletes grouped by outcome.",
    labelnames=("operation", "outcome"),
)

DETECTIONS_GAUGE = Gauge(
    "spillwatch_detections",
    "Detections currently loaded, per status.",
    labelnames=("status",),
)


def record_http_request(method: str, path: str, status_code: int, duration_seconds: float) -> None:
    m = method.upper().strip()
    p = path.strip() or "_unknown"
    s = str(int(status_code))
    HTTP_REQUESTS_TOTAL.labels(method=m, path=p, status=s).inc()
    HTTP_REQUEST_DURATION_SECONDS.labels(method=m, path=p).observe(max(0.0, duration_seconds))


def record_imagery_lookup(outcome: str) -> None:
    IMAGERY_LOOKUPS_TOTAL.labels(outcome=outcome).inc()


def record_mutation(operation: str, outcome: str) -> None:
    DETECTION_MUTATIONS_TOTAL.labels(operation=operation, outcome=outcome).inc()


def update_detection_gauges(detections: Sequence[Detection]) -> None:
    counts = Tally(item.status for item in detections)
    for status in DetectionStatus:
        DETECTIONS_GAUGE.labels(status=status.value).set(float(counts.get(status, 0)))


def render_metrics(detections: Sequence[Detection]) -> bytes:
    update_detection_gauges(detections)
    return generate_latest()
