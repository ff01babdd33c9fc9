"""Background workers package."""

from catalog_scraper.workers.retention import ScraperRetentionService

__all__ = ["ScraperRetentionService"]
