"""Content catalog: hosted links, reconciled remote entries and sync."""

from .models import CatalogEntry, MediaRecord, RegisteredLink
from .persistence import CatalogDatabase
from .store import CatalogStore
from .sync import CatalogSync

__all__ = [
    "CatalogEntry",
    "MediaRecord",
    "RegisteredLink",
    "CatalogDatabase",
    "CatalogStore",
    "CatalogSync",
]
