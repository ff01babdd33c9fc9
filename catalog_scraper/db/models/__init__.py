"""SQLAlchemy ORM models.

Import from here: ``from catalog_scraper.db.models import ScraperJob, ScraperProgress``
"""

from catalog_scraper.db.models.base import generate_uuid
from catalog_scraper.db.models.scraper import ScraperHealth, ScraperJob, ScraperProgress

__all__ = [
    "generate_uuid",
    "ScraperJob",
    "ScraperProgress",
    "ScraperHealth",
]
