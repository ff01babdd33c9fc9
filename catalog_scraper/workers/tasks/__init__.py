"""ARQ task registration.

All ARQ task functions are imported here for WorkerSettings.functions.
"""

from catalog_scraper.workers.tasks.scraper import scraper_tick

__all__ = ["scraper_tick"]
