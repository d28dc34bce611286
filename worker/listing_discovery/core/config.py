"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    """Raised when a configuration value cannot be parsed."""


@dataclass(frozen=True)
class Settings:
    database_url: str
    search_base_url: str = "https://www.vrisko.gr"
    fetch_min_interval_ms: int = 1200
    fetch_timeout_seconds: float = 30.0
    fetch_backoff_seconds: Tuple[float, ...] = (2.0, 5.0, 5.0)
    fetch_retry_statuses: Tuple[int, ...] = (502, 503, 504)
    crawl_max_pages: int = 50
    crawl_concurrency: int = 1
    crawl_max_consecutive_empty: int = 2
    crawl_page_delay_range: Tuple[float, float] = (0.5, 2.0)
    default_phone_region: Optional[str] = "GR"
    worker_poll_interval: float = 5.0
    enrich_ttl_days: int = 45
    enrich_complete_score: int = 70
    enrich_max_pages: int = 3
    quota_units_per_keyword: int = 20


def _parse_float_list(name: str, raw: str) -> Tuple[float, ...]:
    try:
        return tuple(float(part) for part in raw.split(",") if part.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be a comma separated list of numbers, got {raw!r}") from exc


def _parse_int_list(name: str, raw: str) -> Tuple[int, ...]:
    try:
        return tuple(int(part) for part in raw.split(",") if part.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be a comma separated list of integers, got {raw!r}") from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    search_base_url = os.getenv("SEARCH_BASE_URL", "https://www.vrisko.gr").rstrip("/")
    fetch_min_interval_ms = int(os.getenv("FETCH_MIN_INTERVAL_MS", "1200"))
    fetch_timeout_seconds = float(os.getenv("FETCH_TIMEOUT_SECONDS", "30"))
    fetch_backoff_seconds = _parse_float_list("FETCH_BACKOFF_SECONDS", os.getenv("FETCH_BACKOFF_SECONDS", "2,5,5"))
    fetch_retry_statuses = _parse_int_list("FETCH_RETRY_STATUSES", os.getenv("FETCH_RETRY_STATUSES", "502,503,504"))
    crawl_max_pages = int(os.getenv("CRAWL_MAX_PAGES", "50"))
    crawl_concurrency = max(1, int(os.getenv("CRAWL_CONCURRENCY", "1")))
    crawl_max_consecutive_empty = max(1, int(os.getenv("CRAWL_MAX_CONSECUTIVE_EMPTY", "2")))
    delay_range = _parse_float_list("CRAWL_PAGE_DELAY_RANGE", os.getenv("CRAWL_PAGE_DELAY_RANGE", "0.5,2.0"))
    if len(delay_range) != 2 or delay_range[0] > delay_range[1]:
        raise ConfigError("CRAWL_PAGE_DELAY_RANGE must be 'min,max' with min <= max")
    default_phone_region_raw = os.getenv("DEFAULT_PHONE_REGION", "GR")
    default_phone_region = default_phone_region_raw.strip().upper() if default_phone_region_raw.strip() else None
    worker_poll_interval = float(os.getenv("WORKER_POLL_INTERVAL", "5"))
    enrich_ttl_days = int(os.getenv("ENRICH_TTL_DAYS", "45"))
    enrich_complete_score = int(os.getenv("ENRICH_COMPLETE_SCORE", "70"))
    enrich_max_pages = int(os.getenv("ENRICH_MAX_PAGES", "3"))
    quota_units_per_keyword = int(os.getenv("QUOTA_UNITS_PER_KEYWORD", "20"))

    if not database_url:
        logger.warning("DATABASE_URL is not set; database operations will fail.")
    if not fetch_backoff_seconds:
        logger.warning("FETCH_BACKOFF_SECONDS is empty; page fetches will not be retried.")

    return Settings(
        database_url=database_url,
        search_base_url=search_base_url,
        fetch_min_interval_ms=fetch_min_interval_ms,
        fetch_timeout_seconds=fetch_timeout_seconds,
        fetch_backoff_seconds=fetch_backoff_seconds,
        fetch_retry_statuses=fetch_retry_statuses,
        crawl_max_pages=crawl_max_pages,
        crawl_concurrency=crawl_concurrency,
        crawl_max_consecutive_empty=crawl_max_consecutive_empty,
        crawl_page_delay_range=(delay_range[0], delay_range[1]),
        default_phone_region=default_phone_region,
        worker_poll_interval=worker_poll_interval,
        enrich_ttl_days=enrich_ttl_days,
        enrich_complete_score=enrich_complete_score,
        enrich_max_pages=enrich_max_pages,
        quota_units_per_keyword=quota_units_per_keyword,
    )
