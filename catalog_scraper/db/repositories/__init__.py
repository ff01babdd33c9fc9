"""Repository layer for database access."""

from catalog_scraper.db.repositories.base import BaseRepository
from catalog_scraper.db.repositories.scraper import (
    ScraperJobRepository,
    ScraperProgressRepository,
)

__all__ = [
    "BaseRepository",
    "ScraperJobRepository",
    "ScraperProgressRepository",
]
