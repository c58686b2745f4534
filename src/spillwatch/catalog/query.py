from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone

from shapely.geometry import Polygon

from spillwatch.errors import ValidationError
from spillwatch.geometry.points import validate_coordinates


KM_PER_DEGREE = 111.32
DEFAULT_ORDER_BY = "ContentDate/Start desc"


@dataclass(frozen=True, slots=True)
class BoundingBox:
    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    def as_list(self) -> list[float]:
        return [self.min_lon, self.min_lat, self.max_lon, self.max_lat]


def bounding_box(latitude: float, longitude: float, radius_km: float) -> BoundingBox:
    """Axis-aligned box approximating a circle of ``radius_km`` around a point.

    The longitude delta is widened by 1/cos(latitude) to follow meridian
    convergence. It diverges as the latitude approaches the poles.
    """

    validate_coordinates(latitude, longitude)
    if not isinstance(radius_km, (int, float)) or not math.isfinite(radius_km) or radius_km <= 0:
        raise ValidationError("Search radius must be a positive number of kilometres.")

    lat_delta = radius_km / KM_PER_DEGREE
    lon_delta = radius_km / (KM_PER_DEGREE * math.cos(latitude * math.pi / 180))
    return BoundingBox(
        min_lon=longitude - lon_delta,
        min_lat=latitude - lat_delta,
        max_lon=longitude + lon_delta,
        max_lat=latitude + lat_delta,
    )


def bounding_polygon(bbox: BoundingBox) -> Polygon:
    # Counter-clockwise exterior ring, as expected for geography'SRID=4326' literals.
    return Polygon(
        [
            (bbox.min_lon, bbox.min_lat),
            (bbox.max_lon, bbox.min_lat),
            (bbox.max_lon, bbox.max_lat),
            (bbox.min_lon, bbox.max_lat),
            (bbox.min_lon, bbox.min_lat),
        ]
    )


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_instant(value: datetime) -> str:
    return to_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class CatalogQuery:
    collection: str
    polygon: Polygon
    start: datetime
    end: datetime
    product_type: str | None = None
    max_cloud_coverage: float | None = None
    page_size: int = 10
    order_by: str = DEFAULT_ORDER_BY

    @property
    def footprint_wkt(self) -> str:
        return self.polygon.wkt

    def odata_filter(self) -> str:
        query = (
            f"Collection/Name eq '{self.collection}' "
            f"and ContentDate/Start ge {format_instant(self.start)} "
            f"and ContentDate/Start le {format_instant(self.end)}"
        )

        if self.product_type:
            query += (
                " and Attributes/OData.CSC.StringAttribute/any("
                "att:att/Name eq 'productType' and "
                f"att/OData.CSC.StringAttribute/Value eq '{self.product_type}')"
            )

        if self.max_cloud_coverage is not None:
            query += (
                " and Attributes/OData.CSC.DoubleAttribute/any("
                "att:att/Name eq 'cloudCover' and "
                f"att/OData.CSC.DoubleAttribute/Value le {self.max_cloud_coverage:g})"
            )

        query += f" and OData.CSC.Intersects(area=geography'SRID=4326;{self.footprint_wkt}')"
        return query

    def to_params(self) -> dict[str, str]:
        return {
            "$filter": self.odata_filter(),
            "$orderby": self.order_by,
            "$top": str(self.page_size),
            "$expand": "Attributes",
        }


class CatalogQueryBuilder:
    """Turns a point, a buffer radius and a time window into a catalog query."""

    def __init__(self, *, page_size: int = 10):
        if page_size < 1 or page_size > 1000:
            raise ValidationError("page_size must be within [1, 1000].")
        self.page_size = page_size

    def build(
        self,
        *,
        latitude: float,
        longitude: float,
        radius_km: float,
        start: datetime,
        end: datetime,
        collection: str,
        product_type: str | None = None,
        max_cloud_coverage: float | None = None,
    ) -> CatalogQuery:
        start, end = to_utc(start), to_utc(end)
        if end < start:
            raise ValidationError("end must be greater or equal to start.")
        if max_cloud_coverage is not None and not 0 <= max_cloud_coverage <= 100:
            raise ValidationError("max_cloud_coverage must be within [0, 100].")

        polygon = bounding_polygon(bounding_box(latitude, longitude, radius_km))
        return CatalogQuery(
            collection=collection,
            polygon=polygon,
            start=start,
            end=end,
            product_type=product_type,
            max_cloud_coverage=max_cloud_coverage,
            page_size=self.page_size,
        )
