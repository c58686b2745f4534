from spillwatch.catalog.auth import Token, TokenCache
from spillwatch.catalog.client import CatalogClient, ImagerySearchParams
from spillwatch.catalog.query import CatalogQuery, CatalogQueryBuilder

__all__ = [
    "CatalogClient",
    "CatalogQuery",
    "CatalogQueryBuilder",
    "ImagerySearchParams",
    "Token",
    "TokenCache",
]
