import threading
from urllib.parse import parse_qs, urlparse

import pytest

from listing_pages import bakery_page
from listing_discovery.core.crawler import PaginatedCrawler


class ScriptedFetcher:
    """Serve result pages by page number; missing pages are empty."""

    def __init__(self, counts, failures=(), broken_keyword=None):
        self.counts = counts
        self.failures = set(failures)
        self.broken_keyword = broken_keyword
        self.urls = []
        self._lock = threading.Lock()

    def fetch_page(self, url):
        with self._lock:
            self.urls.append(url)
        if self.broken_keyword and f"/{self.broken_keyword}/" in url:
            raise RuntimeError("directory unreachable")
        page = int(parse_qs(urlparse(url).query)["page"][0])
        if page in self.failures:
            return None
        count = self.counts.get(page, 0)
        return bakery_page(count, start=page * 100)

    def pages(self):
        return sorted(int(parse_qs(urlparse(url).query)["page"][0]) for url in self.urls)


def make_crawler(settings, fetcher, **kwargs):
    kwargs.setdefault("sleep", lambda _: None)
    return PaginatedCrawler(fetcher, settings=settings, **kwargs)


def test_build_search_url_encodes_segments(settings):
    crawler = make_crawler(settings, ScriptedFetcher({}))

    url = crawler.build_search_url("φούρνος", "Αθήνα Κέντρο", 3)

    assert url.startswith("https://www.vrisko.gr/search/%CF%86")
    assert "/%CE%91%CE%B8" in url
    assert "%20" in url
    assert url.endswith("/?page=3")


def test_stops_after_two_consecutive_empty_pages(settings):
    fetcher = ScriptedFetcher({1: 5, 2: 0, 3: 0, 4: 9})
    crawler = make_crawler(settings, fetcher)

    listings = crawler.crawl("bakery", "athens", max_pages=10)

    assert len(listings) == 5
    assert fetcher.pages() == [1, 2, 3]


def test_non_empty_page_resets_empty_counter(settings):
    fetcher = ScriptedFetcher({1: 2, 2: 0, 3: 4, 4: 0, 5: 0})
    crawler = make_crawler(settings, fetcher)

    listings = crawler.crawl("bakery", "athens", max_pages=10)

    assert len(listings) == 6
    assert fetcher.pages() == [1, 2, 3, 4, 5]


def test_failed_fetch_counts_as_empty(settings):
    fetcher = ScriptedFetcher({1: 3, 2: 3, 3: 3}, failures={2, 3})
    crawler = make_crawler(settings, fetcher)

    listings = crawler.crawl("bakery", "athens", max_pages=10)

    assert len(listings) == 3
    assert fetcher.pages() == [1, 2, 3]


def test_respects_max_pages(settings):
    fetcher = ScriptedFetcher({page: 1 for page in range(1, 20)})
    crawler = make_crawler(settings, fetcher)

    listings = crawler.crawl("bakery", "athens", max_pages=4)

    assert len(listings) == 4
    assert fetcher.pages() == [1, 2, 3, 4]


def test_zero_max_pages_fetches_nothing(settings):
    fetcher = ScriptedFetcher({1: 5})
    crawler = make_crawler(settings, fetcher)

    assert crawler.crawl("bakery", "athens", max_pages=0) == []
    assert fetcher.urls == []


def test_concurrent_windows_merge_in_page_order(settings):
    fetcher = ScriptedFetcher({1: 1, 2: 2, 3: 1})
    crawler = make_crawler(settings, fetcher, concurrency=3)

    listings = crawler.crawl("bakery", "athens", max_pages=9)

    assert [listing.name for listing in listings] == ["Bakery 100", "Bakery 200", "Bakery 201", "Bakery 300"]


def test_pages_after_stop_point_are_discarded(settings):
    fetcher = ScriptedFetcher({1: 5, 2: 0, 3: 0, 4: 7})
    crawler = make_crawler(settings, fetcher, concurrency=2)

    listings = crawler.crawl("bakery", "athens", max_pages=10)

    assert len(listings) == 5
    assert fetcher.pages() == [1, 2, 3, 4]


def test_jitter_applies_to_every_page_after_the_first(settings):
    delays = []
    fetcher = ScriptedFetcher({1: 1, 2: 1, 3: 1})
    crawler = make_crawler(settings, fetcher, page_delay_range=(0.5, 2.0), sleep=delays.append)

    crawler.crawl("bakery", "athens", max_pages=3)

    assert len(delays) == 2
    assert all(0.5 <= delay <= 2.0 for delay in delays)


def test_crawl_keywords_collects_errors_and_stats(settings):
    fetcher = ScriptedFetcher({1: 2}, broken_keyword="broken")
    crawler = make_crawler(settings, fetcher)

    result = crawler.crawl_keywords(["bakery", "broken", "pastry"], "athens", max_pages=5)

    assert len(result.listings) == 4
    assert result.searches_executed == 2
    assert result.pages_crawled == 6
    assert len(result.errors) == 1
    assert result.errors[0].startswith("broken:")


@pytest.mark.parametrize("threshold, expected_pages", [(1, [1, 2]), (3, [1, 2, 3, 4])])
def test_consecutive_empty_threshold_is_configurable(settings, threshold, expected_pages):
    fetcher = ScriptedFetcher({1: 1})
    crawler = make_crawler(settings, fetcher, max_consecutive_empty=threshold)

    crawler.crawl("bakery", "athens", max_pages=10)

    assert fetcher.pages() == expected_pages
