"""Renderers turning a detection collection into CSV, JSON, GeoJSON, KML or a text report."""

from __future__ import annotations

import csv
import io
import json
import math
import xml.etree.ElementTree as ET
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from shapely.geometry import Point, mapping, shape

from spillwatch.errors import ValidationError
from spillwatch.models import (
    Detection,
    DetectionStatus,
    ResponseStatus,
    Severity,
    ValidationStatus,
)
from spillwatch.store.backend import storage_record


CSV_FIELDS = tuple(Detection.model_fields)
KML_NAMESPACE = "http://www.opengis.net/kml/2.2"

_KML_STYLES = {
    "oil_spill": ("ff0000ff", "1.0", "http://maps.google.com/mapfiles/kml/shapes/warning.png"),
    "non_oil_spill": ("ff00ff00", "0.8", "http://maps.google.com/mapfiles/kml/shapes/info.png"),
}


def _record(detection: Detection) -> dict[str, Any]:
    return storage_record(detection)


def to_csv(detections: Sequence[Detection]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_FIELDS, quoting=csv.QUOTE_MINIMAL)
    writer.writeheader()
    for detection in detections:
        row = _record(detection)
        row["tags"] = ";".join(detection.tags)
        row["news_correlation"] = (
            json.dumps(row["news_correlation"]) if detection.news_correlation else ""
        )
        writer.writerow({key: "" if row.get(key) is None else row[key] for key in CSV_FIELDS})
    return buffer.getvalue()


def to_json(detections: Sequence[Detection]) -> str:
    return json.dumps([_record(item) for item in detections], indent=2)


def geojson_collection(detections: Sequence[Detection]) -> dict[str, Any]:
    features = []
    for detection in detections:
        properties = _record(detection)
        properties.pop("latitude")
        properties.pop("longitude")
        geometry = mapping(Point(detection.longitude, detection.latitude))
        features.append(
            {
                "type": "Feature",
                "geometry": {"type": geometry["type"], "coordinates": list(geometry["coordinates"])},
                "properties": properties,
            }
        )
    return {"type": "FeatureCollection", "features": features}


def to_geojson(detections: Sequence[Detection]) -> str:
    return json.dumps(geojson_collection(detections), indent=2)


def from_geojson(payload: str | Mapping[str, Any]) -> list[Detection]:
    """Parse a FeatureCollection produced by ``to_geojson`` back into detections."""

    data = json.loads(payload) if isinstance(payload, str) else payload
    if data.get("type") != "FeatureCollection":
        raise ValidationError("GeoJSON payload must be a FeatureCollection.")

    detections: list[Detection] = []
    for index, feature in enumerate(data.get("features") or []):
        geometry = feature.get("geometry")
        if not geometry or geometry.get("type") != "Point":
            raise ValidationError(f"Feature {index} geometry must be a Point.")
        point = shape(geometry)
        if point.is_empty:
            raise ValidationError(f"Feature {index} geometry must be a Point.")
        record = dict(feature.get("properties") or {})
        record["longitude"] = point.x
        record["latitude"] = point.y
        try:
            detections.append(Detection.model_validate(record))
        except PydanticValidationError as exc:
            raise ValidationError(f"Feature {index} is not a valid detection: {exc}") from exc
    return detections


def _kml_description(detection: Detection) -> str:
    lines = [
        f"<b>Status:</b> {detection.status.value}<br/>",
        f"<b>Detected:</b> {detection.detected_at.isoformat()}<br/>",
    ]
    if detection.confidence is not None:
        lines.append(f"<b>Confidence:</b> {detection.confidence * 100:.1f}%<br/>")
    if detection.severity:
        lines.append(f"<b>Severity:</b> {detection.severity.value}<br/>")
    if detection.area_affected_km2 is not None:
        lines.append(f"<b>Area Affected:</b> {detection.area_affected_km2} km²<br/>")
    if detection.response_status:
        lines.append(f"<b>Response Status:</b> {detection.response_status.value}<br/>")
    if detection.validation_status:
        lines.append(f"<b>Validation:</b> {detection.validation_status.value}<br/>")
    if detection.source:
        lines.append(f"<b>Source:</b> {detection.source}<br/>")
    if detection.notes:
        lines.append(f"<b>Notes:</b> {detection.notes}<br/>")
    return "\n".join(lines)


def to_kml(detections: Sequence[Detection]) -> str:
    ET.register_namespace("", KML_NAMESPACE)
    ns = f"{{{KML_NAMESPACE}}}"

    root = ET.Element(f"{ns}kml")
    document = ET.SubElement(root, f"{ns}Document")
    ET.SubElement(document, f"{ns}name").text = "Oil Spill Detections"
    ET.SubElement(document, f"{ns}description").text = (
        "Oil spill detection data exported from the monitoring system"
    )

    for style_id, (color, scale, href) in _KML_STYLES.items():
        style = ET.SubElement(document, f"{ns}Style", id=style_id)
        icon_style = ET.SubElement(style, f"{ns}IconStyle")
        ET.SubElement(icon_style, f"{ns}color").text = color
        ET.SubElement(icon_style, f"{ns}scale").text = scale
        icon = ET.SubElement(icon_style, f"{ns}Icon")
        ET.SubElement(icon, f"{ns}href").text = href

    for detection in detections:
        style_id = "oil_spill" if detection.status == DetectionStatus.oil_spill else "non_oil_spill"
        placemark = ET.SubElement(document, f"{ns}Placemark", id=detection.id)
        ET.SubElement(placemark, f"{ns}name").text = f"{detection.status.value} - {detection.id[:8]}"
        ET.SubElement(placemark, f"{ns}description").text = _kml_description(detection)
        ET.SubElement(placemark, f"{ns}styleUrl").text = f"#{style_id}"
        point = ET.SubElement(placemark, f"{ns}Point")
        ET.SubElement(point, f"{ns}coordinates").text = (
            f"{detection.longitude},{detection.latitude},0"
        )
        timestamp = ET.SubElement(placemark, f"{ns}TimeStamp")
        ET.SubElement(timestamp, f"{ns}when").text = (
            detection.detected_at.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        )

    ET.indent(root)
    body = ET.tostring(root, encoding="unicode")
    return f'<?xml version="1.0" encoding="UTF-8"?>\n{body}\n'


def top_regions(detections: Sequence[Detection], limit: int = 5) -> list[tuple[int, int, int]]:
    """Group detections into 1-degree grid cells, most populated first."""

    cells = Counter(
        (math.floor(item.latitude), math.floor(item.longitude)) for item in detections
    )
    return [(lat, lon, count) for (lat, lon), count in cells.most_common(limit)]


def summary_report(detections: Sequence[Detection], *, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    oil_spills = [d for d in detections if d.status == DetectionStatus.oil_spill]
    non_oil_spills = [d for d in detections if d.status == DetectionStatus.non_oil_spill]
    verified_spills = [d for d in oil_spills if d.validation_status == ValidationStatus.verified]

    measured = [d.area_affected_km2 for d in oil_spills if d.area_affected_km2]
    total_area = sum(measured)
    average_area = total_area / len(measured) if measured else 0.0

    last_24h = [d for d in detections if now - d.detected_at <= timedelta(hours=24)]
    last_7d = [d for d in detections if now - d.detected_at <= timedelta(days=7)]

    def spills(items: Sequence[Detection]) -> int:
        return sum(1 for d in items if d.status == DetectionStatus.oil_spill)

    def severity_count(level: Severity | None) -> int:
        return sum(1 for d in oil_spills if d.severity == level)

    def response_count(status: ResponseStatus) -> int:
        return sum(1 for d in oil_spills if d.response_status == status)

    def validation_count(status: ValidationStatus) -> int:
        return sum(1 for d in detections if d.validation_status == status)

    regions = top_regions(oil_spills)
    region_lines = [
        f"{rank}. Region around {lat}°, {lon}°: {count} detections"
        for rank, (lat, lon, count) in enumerate(regions, start=1)
    ]

    lines = [
        "OIL SPILL DETECTION SYSTEM - SUMMARY REPORT",
        f"Generated: {now.isoformat(timespec='seconds')}",
        "============================================",
        "",
        "OVERVIEW",
        "--------",
        f"Total Detections: {len(detections)}",
        f"Oil Spills: {len(oil_spills)}",
        f"Non-Oil Spills: {len(non_oil_spills)}",
        f"Verified Spills: {len(verified_spills)}",
        "",
        "SEVERITY BREAKDOWN",
        "------------------",
        f"Critical: {severity_count(Severity.critical)}",
        f"High: {severity_count(Severity.high)}",
        f"Medium: {severity_count(Severity.medium)}",
        f"Low: {severity_count(Severity.low)}",
        f"Unassessed: {severity_count(None)}",
        "",
        "RESPONSE STATUS",
        "---------------",
        *(f"{status.value}: {response_count(status)}" for status in ResponseStatus),
        "",
        "IMPACT METRICS",
        "--------------",
        f"Total Area Affected: {total_area:.2f} km²",
        f"Average Area per Spill: {average_area:.2f} km²",
        "",
        "RECENT ACTIVITY",
        "---------------",
        f"Last 24 Hours: {len(last_24h)} detections ({spills(last_24h)} oil spills)",
        f"Last 7 Days: {len(last_7d)} detections ({spills(last_7d)} oil spills)",
        "",
        "TOP AFFECTED REGIONS",
        "--------------------",
        *(region_lines or ["None"]),
        "",
        "VALIDATION STATUS",
        "-----------------",
        f"Verified: {validation_count(ValidationStatus.verified)}",
        f"Unverified: {validation_count(ValidationStatus.unverified)}",
        f"False Positives: {validation_count(ValidationStatus.false_positive)}",
        "",
        "============================================",
        "End of Report",
        "",
    ]
    return "\n".join(lines)


Renderer = Callable[[Sequence[Detection]], str]

EXPORT_FORMATS: dict[str, tuple[Renderer, str, str]] = {
    "csv": (to_csv, "text/csv", "csv"),
    "json": (to_json, "application/json", "json"),
    "geojson": (to_geojson, "application/geo+json", "geojson"),
    "kml": (to_kml, "application/vnd.google-earth.kml+xml", "kml"),
    "report": (summary_report, "text/plain", "txt"),
}


def render(fmt: str, detections: Sequence[Detection]) -> str:
    key = fmt.strip().lower()
    if key not in EXPORT_FORMATS:
        raise ValidationError(
            f"Unsupported export format '{fmt}'. Expected one of: {', '.join(EXPORT_FORMATS)}."
        )
    renderer, _, _ = EXPORT_FORMATS[key]
    return renderer(detections)


def export_filename(fmt: str, *, now: datetime | None = None) -> str:
    key = fmt.strip().lower()
    if key not in EXPORT_FORMATS:
        raise ValidationError(f"Unsupported export format '{fmt}'.")
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H-%M-%S")
    prefix = "oil_spills_report" if key == "report" else "oil_spills"
    return f"{prefix}_{stamp}.{EXPORT_FORMATS[key][2]}"
