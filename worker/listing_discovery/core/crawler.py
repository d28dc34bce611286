"""Paginated crawl of directory search results."""

from __future__ import annotations

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Protocol, Tuple
from urllib.parse import quote

from listing_discovery.core.config import Settings, get_settings
from listing_discovery.core.models import ListingRecord
from listing_discovery.etl.listing_parser import parse_listings

logger = logging.getLogger(__name__)

ListingParser = Callable[[Optional[str], str], List[ListingRecord]]


class PageFetcher(Protocol):
    def fetch_page(self, url: str) -> Optional[str]:
        ...


@dataclass(slots=True)
class CrawlBatchResult:
    listings: List[ListingRecord] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    pages_crawled: int = 0
    searches_executed: int = 0


class PaginatedCrawler:
    """Walk ``?page=N`` result pages until the results run out.

    Pages are fetched in windows of ``concurrency`` pages and merged in page
    order. The crawl stops after ``max_consecutive_empty`` empty pages in a
    row, where a failed fetch counts as empty; pages fetched past the stop
    point in the same window are discarded.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        parser: ListingParser = parse_listings,
        *,
        settings: Optional[Settings] = None,
        concurrency: Optional[int] = None,
        max_consecutive_empty: Optional[int] = None,
        page_delay_range: Optional[Tuple[float, float]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.fetcher = fetcher
        self.parser = parser
        self.concurrency = max(1, concurrency or self.settings.crawl_concurrency)
        self.max_consecutive_empty = max(1, max_consecutive_empty or self.settings.crawl_max_consecutive_empty)
        self.page_delay_range = page_delay_range or self.settings.crawl_page_delay_range
        self._sleep = sleep

    def build_search_url(self, keyword: str, location: str, page: int) -> str:
        return (
            f"{self.settings.search_base_url}/search/"
            f"{quote(keyword.strip(), safe='')}/{quote(location.strip(), safe='')}/?page={page}"
        )

    def crawl(self, keyword: str, location: str, max_pages: Optional[int] = None) -> List[ListingRecord]:
        listings, _ = self._crawl(keyword, location, max_pages)
        return listings

    def crawl_keywords(
        self,
        keywords: Iterable[str],
        location: str,
        max_pages: Optional[int] = None,
    ) -> CrawlBatchResult:
        result = CrawlBatchResult()
        for keyword in keywords:
            try:
                listings, pages = self._crawl(keyword, location, max_pages)
            except Exception as exc:  # noqa: BLE001
                logger.error("Crawl failed for keyword=%s location=%s: %s", keyword, location, exc)
                result.errors.append(f"{keyword}: {exc}")
                continue
            result.listings.extend(listings)
            result.pages_crawled += pages
            result.searches_executed += 1
        return result

    def _crawl(self, keyword: str, location: str, max_pages: Optional[int]) -> Tuple[List[ListingRecord], int]:
        limit = self.settings.crawl_max_pages if max_pages is None else max_pages
        collected: List[ListingRecord] = []
        pages_crawled = 0
        consecutive_empty = 0

        logger.info("Starting crawl for keyword=%s location=%s max_pages=%s", keyword, location, limit)

        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            for window_start in range(1, limit + 1, self.concurrency):
                window = range(window_start, min(window_start + self.concurrency, limit + 1))
                if self.concurrency == 1:
                    results = [self._fetch_and_parse(keyword, location, page) for page in window]
                else:
                    results = list(executor.map(lambda page: self._fetch_and_parse(keyword, location, page), window))

                stop = False
                for page, listings in zip(window, results):
                    pages_crawled += 1
                    if listings:
                        consecutive_empty = 0
                        collected.extend(listings)
                        continue
                    consecutive_empty += 1
                    if consecutive_empty >= self.max_consecutive_empty:
                        logger.info("Stopping at page %s: %s consecutive empty pages", page, consecutive_empty)
                        stop = True
                        break
                if stop:
                    break

        logger.info(
            "Crawl completed for keyword=%s: %s listings from %s pages",
            keyword,
            len(collected),
            pages_crawled,
        )
        return collected, pages_crawled

    def _fetch_and_parse(self, keyword: str, location: str, page: int) -> List[ListingRecord]:
        if page > 1:
            self._sleep(random.uniform(*self.page_delay_range))

        url = self.build_search_url(keyword, location, page)
        logger.info("Fetching page %s: %s", page, url)
        html = self.fetcher.fetch_page(url)
        if html is None:
            return []

        listings = self.parser(html, self.settings.search_base_url)
        if not listings:
            logger.info("Page %s: no listings found", page)
        return listings
