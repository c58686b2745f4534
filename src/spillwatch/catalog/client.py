from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

import aiohttp
from pydantic import ValidationError as PydanticValidationError
from shapely import wkt
from shapely.errors import ShapelyError

from spillwatch.catalog.auth import TokenCache
from spillwatch.catalog.evalscripts import OIL_SPILL_INDEX_EVALSCRIPT
from spillwatch.catalog.query import BoundingBox, CatalogQueryBuilder, bounding_box, format_instant, to_utc
from spillwatch.errors import AuthError, CatalogError, ValidationError
from spillwatch.geometry.points import validate_coordinates
from spillwatch.models import ImageryBundle, ImageryPlatform, Product
from spillwatch.settings import Settings


logger = logging.getLogger(__name__)

PRODUCT_ID_RE = re.compile(r"^[A-Za-z0-9\-]{1,64}$")


@dataclass(frozen=True, slots=True)
class ProductFamily:
    platform: ImageryPlatform
    collection: str
    product_type: str
    instrument: str


RADAR = ProductFamily(ImageryPlatform.sar, "SENTINEL-1", "GRD", "SAR")
OPTICAL = ProductFamily(ImageryPlatform.optical, "SENTINEL-2", "S2MSI2A", "MSI")


@dataclass(frozen=True, slots=True)
class ImagerySearchParams:
    latitude: float
    longitude: float
    start: datetime
    end: datetime
    buffer_km: float = 50.0
    max_cloud_coverage: float | None = None


class CatalogClient:
    """Authenticated search client for Sentinel-1 radar and Sentinel-2 optical products."""

    def __init__(
        self,
        *,
        token_cache: TokenCache,
        catalog_url: str,
        processing_url: str,
        query_builder: CatalogQueryBuilder | None = None,
        session: aiohttp.ClientSession | None = None,
        max_results: int = 10,
        max_concurrency: int = 4,
        timeout_seconds: float = 60.0,
    ):
        self._tokens = token_cache
        self.catalog_url = catalog_url.rstrip("/")
        self.processing_url = processing_url.rstrip("/")
        self._builder = query_builder or CatalogQueryBuilder()
        self._session = session
        self._owns_session = session is None
        self.max_results = max(1, int(max_results))
        self._semaphore = asyncio.Semaphore(max(1, int(max_concurrency)))
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        token_cache: TokenCache,
        session: aiohttp.ClientSession | None = None,
    ) -> "CatalogClient":
        return cls(
            token_cache=token_cache,
            catalog_url=settings.spillwatch_copernicus_catalog_url,
            processing_url=settings.spillwatch_sentinelhub_url,
            query_builder=CatalogQueryBuilder(page_size=settings.spillwatch_catalog_page_size),
            session=session,
            max_results=settings.spillwatch_catalog_max_results,
            max_concurrency=settings.spillwatch_catalog_max_concurrency,
            timeout_seconds=settings.spillwatch_catalog_timeout_seconds,
        )

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def search_radar(self, params: ImagerySearchParams) -> list[Product]:
        return await self._search(RADAR, params)

    async def search_optical(self, params: ImagerySearchParams) -> list[Product]:
        return await self._search(OPTICAL, params)

    async def find_imagery(
        self,
        latitude: float,
        longitude: float,
        center_time: datetime,
        *,
        days_before: int = 3,
        days_after: int = 3,
        buffer_km: float = 30.0,
        max_cloud_coverage: float = 20.0,
    ) -> ImageryBundle:
        """Search both product families around a detection, tolerating one failing family."""

        center = to_utc(center_time)
        params = ImagerySearchParams(
            latitude=latitude,
            longitude=longitude,
            start=center - timedelta(days=days_before),
            end=center + timedelta(days=days_after),
            buffer_km=buffer_km,
        )
        self._validate(params)

        results = await asyncio.gather(
            self.search_radar(params),
            self.search_optical(replace(params, max_cloud_coverage=max_cloud_coverage)),
            return_exceptions=True,
        )

        bundle = ImageryBundle()
        failures: list[tuple[str, Exception]] = []
        for family, result in zip(("radar", "optical"), results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception) or isinstance(result, ValidationError):
                    raise result
                logger.warning("imagery_family_failed family=%s error=%s", family, result)
                failures.append((family, result))
                bundle.errors.append(f"{family}: {result}")
                continue
            setattr(bundle, family, result)

        if len(failures) == len(results):
            first = failures[0][1]
            if all(isinstance(exc, AuthError) for _, exc in failures):
                raise first
            raise CatalogError(
                "All imagery searches failed: " + "; ".join(bundle.errors)
            ) from first

        bundle.partial = bool(failures)
        return bundle

    async def search_many(
        self,
        locations: list[tuple[float, float]],
        params: ImagerySearchParams,
    ) -> dict[str, list[Product]]:
        async def _one(lat: float, lon: float) -> list[Product]:
            try:
                return await self.search_radar(replace(params, latitude=lat, longitude=lon))
            except (CatalogError, AuthError) as exc:
                logger.warning("batch_search_failed lat=%s lon=%s error=%s", lat, lon, exc)
                return []

        found = await asyncio.gather(*(_one(lat, lon) for lat, lon in locations))
        return {f"{lat},{lon}": products for (lat, lon), products in zip(locations, found)}

    def quicklook_url(self, product_id: str) -> str:
        return f"{self.catalog_url}/odata/v1/Products({product_id})/Quicklook/$value"

    def download_url(self, product_id: str) -> str:
        return f"{self.catalog_url}/odata/v1/Products({product_id})/$value"

    async def fetch_quicklook(self, product_id: str) -> bytes:
        if not PRODUCT_ID_RE.match(product_id or ""):
            raise ValidationError(f"Invalid product id '{product_id}'.")
        return await self._send("GET", self.quicklook_url(product_id), accept="image/*", as_json=False)

    async def render_oil_spill_index(
        self,
        bbox: BoundingBox,
        start: datetime,
        end: datetime,
        *,
        width: int = 512,
        height: int = 512,
        max_cloud_coverage: float = 20.0,
    ) -> bytes:
        if to_utc(end) < to_utc(start):
            raise ValidationError("end must be greater or equal to start.")
        body = {
            "input": {
                "bounds": {
                    "bbox": bbox.as_list(),
                    "properties": {"crs": "http://www.opengis.net/def/crs/OGC/1.3/CRS84"},
                },
                "data": [
                    {
                        "type": "sentinel-2-l2a",
                        "dataFilter": {
                            "timeRange": {"from": format_instant(start), "to": format_instant(end)},
                            "maxCloudCoverage": max_cloud_coverage,
                        },
                    }
                ],
            },
            "output": {
                "width": width,
                "height": height,
                "responses": [{"identifier": "default", "format": {"type": "image/png"}}],
            },
            "evalscript": OIL_SPILL_INDEX_EVALSCRIPT,
        }
        return await self._send(
            "POST",
            f"{self.processing_url}/api/v1/process",
            json_body=body,
            accept="image/png",
            as_json=False,
        )

    def _validate(self, params: ImagerySearchParams) -> None:
        validate_coordinates(params.latitude, params.longitude)
        bounding_box(params.latitude, params.longitude, params.buffer_km)
        if to_utc(params.end) < to_utc(params.start):
            raise ValidationError("end must be greater or equal to start.")

    async def _search(self, family: ProductFamily, params: ImagerySearchParams) -> list[Product]:
        query = self._builder.build(
            latitude=params.latitude,
            longitude=params.longitude,
            radius_km=params.buffer_km,
            start=params.start,
            end=params.end,
            collection=family.collection,
            product_type=family.product_type,
            max_cloud_coverage=params.max_cloud_coverage,
        )

        url: str | None = f"{self.catalog_url}/odata/v1/Products"
        request_params: dict[str, str] | None = query.to_params()
        products: list[Product] = []
        while url and len(products) < self.max_results:
            payload = await self._send("GET", url, params=request_params)
            for item in payload.get("value", []) or []:
                product = self._to_product(family, item)
                if product is not None:
                    products.append(product)
            url = payload.get("@odata.nextLink")
            request_params = None

        logger.info(
            "catalog_search family=%s collection=%s products=%s",
            family.platform.value,
            family.collection,
            len(products[: self.max_results]),
        )
        return products[: self.max_results]

    def _to_product(self, family: ProductFamily, item: dict[str, Any]) -> Product | None:
        product_id = item.get("Id")
        if not product_id:
            return None

        cloud_coverage = None
        for attribute in item.get("Attributes") or []:
            if attribute.get("Name") == "cloudCover":
                cloud_coverage = attribute.get("Value")

        try:
            return Product(
                id=str(product_id),
                title=str(item.get("Name") or product_id),
                platform=family.platform,
                mission=family.collection,
                instrument=family.instrument,
                acquisition_date=(item.get("ContentDate") or {}).get("Start"),
                footprint=_footprint_wkt(item.get("Footprint")),
                preview_url=self.quicklook_url(str(product_id)),
                download_url=self.download_url(str(product_id)),
                cloud_coverage=cloud_coverage,
            )
        except PydanticValidationError as exc:
            logger.warning("catalog_record_skipped id=%s error=%s", product_id, exc.errors()[:1])
            return None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_seconds)
            )
            self._owns_session = True
        return self._session

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
        accept: str = "application/json",
        as_json: bool = True,
    ) -> Any:
        async with self._semaphore:
            for attempt in (1, 2):
                token = await self._tokens.get_token()
                headers = {"Authorization": token.authorization, "Accept": accept}
                try:
                    async with self._http().request(
                        method, url, params=params, json=json_body, headers=headers
                    ) as response:
                        if response.status == 401:
                            if attempt == 1:
                                logger.warning("catalog_unauthorized url=%s retrying_with_new_token", url)
                                self._tokens.clear(if_token=token)
                                continue
                            raise AuthError(
                                "Copernicus rejected a freshly issued token.", status=401
                            )
                        if response.status >= 300:
                            detail = await response.text()
                            raise CatalogError(detail or "Copernicus API error", status=response.status)
                        if as_json:
                            return await response.json(content_type=None)
                        return await response.read()
                except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                    raise CatalogError(f"Catalog request failed: {exc}") from exc
                except json.JSONDecodeError as exc:
                    raise CatalogError(f"Catalog returned invalid JSON: {exc}") from exc
        raise AuthError("Copernicus rejected the request.", status=401)


def _footprint_wkt(value: Any) -> str | None:
    if not value:
        return None
    text = str(value).strip()
    if text.lower().startswith("geography'") and ";" in text:
        text = text.split(";", 1)[1].rstrip("'")
    try:
        return wkt.loads(text).wkt
    except ShapelyError:
        return None
