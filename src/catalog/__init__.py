"""Catalog providers for the resolver."""

from .base import Catalog, CatalogEntry
from .loader import catalog_from_mapping, load_catalog
from .memory import CatalogSnapshot, InMemoryCatalog

__all__ = [
    "Catalog",
    "CatalogEntry",
    "CatalogSnapshot",
    "InMemoryCatalog",
    "catalog_from_mapping",
    "load_catalog",
]
