"""Queue-driven discovery worker: crawl, resolve and enrich businesses per job."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from listing_discovery.core.collaborators import (
    ContactSink,
    QuotaExceededError,
    QuotaGate,
    UnlimitedQuota,
)
from listing_discovery.core.config import Settings, get_settings
from listing_discovery.core.contact_extractor import ContactExtractor, contact_page_links, is_contact_page
from listing_discovery.core.crawler import PageFetcher, PaginatedCrawler
from listing_discovery.core.db import close_pool, init_pool
from listing_discovery.core.identity import IdentityResolver, ScopeValidationError, normalize_business_name, validate_scope
from listing_discovery.core.job_queue import JobStateError
from listing_discovery.core.models import (
    BusinessIdentity,
    ContactCandidate,
    DiscoveryJob,
    JobStatus,
    ListingRecord,
    Scope,
    utcnow,
)
from listing_discovery.etl.transform import LISTING_SOURCE, contacts_from_listing, sanitize_website

logger = logging.getLogger(__name__)


class InvalidJobError(ValueError):
    """Raised when a job's metadata cannot drive a crawl."""


@dataclass(slots=True)
class DiscoveryRunResult:
    job_id: Any
    businesses_found: int = 0
    businesses_created: int = 0
    businesses_updated: int = 0
    contacts_created: int = 0
    keywords_processed: int = 0
    pages_crawled: int = 0
    searches_executed: int = 0
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False


class RefreshPolicy:
    """Decide whether a business website should be (re-)extracted.

    A business is skipped while its last crawl is younger than ``ttl_days``
    and either the crawl did not succeed or the business is complete. The
    default completeness rule is a website plus at least one direct contact,
    or a completeness score of at least ``complete_score``.
    """

    def __init__(
        self,
        ttl_days: int,
        complete_score: int,
        is_complete: Optional[Callable[[BusinessIdentity], bool]] = None,
    ) -> None:
        self.ttl = timedelta(days=ttl_days)
        self.complete_score = complete_score
        self._is_complete = is_complete or self._default_is_complete

    @classmethod
    def from_settings(cls, settings: Settings) -> "RefreshPolicy":
        return cls(settings.enrich_ttl_days, settings.enrich_complete_score)

    def _default_is_complete(self, business: BusinessIdentity) -> bool:
        if not business.website:
            return False
        return bool(business.email or business.phone) or business.completeness_score >= self.complete_score

    def needs_enrichment(self, business: BusinessIdentity, now: Optional[datetime] = None) -> bool:
        if not business.website:
            return False
        if business.last_crawled_at is None:
            return True
        now = now or utcnow()
        fresh = now - business.last_crawled_at < self.ttl
        if business.crawl_status in ("failed", "skipped"):
            return not fresh
        return not (fresh and self._is_complete(business))


def job_keywords(job: DiscoveryJob) -> List[str]:
    raw = job.metadata.get("keywords") or []
    if isinstance(raw, str):
        raw = [raw]
    keywords: List[str] = []
    for keyword in raw:
        value = str(keyword).strip()
        if value and value not in keywords:
            keywords.append(value)
    return keywords


def listing_dedupe_key(listing: ListingRecord) -> tuple:
    if listing.external_id:
        return ("external_id", listing.external_id)
    return ("name", normalize_business_name(listing.name, record_id=listing.listing_id), listing.address.city.lower())


class DiscoveryWorker:
    def __init__(
        self,
        queue: Any,
        crawler: PaginatedCrawler,
        resolver: IdentityResolver,
        extractor: ContactExtractor,
        contact_sink: ContactSink,
        *,
        quota: Optional[QuotaGate] = None,
        site_fetcher: Optional[PageFetcher] = None,
        settings: Optional[Settings] = None,
        refresh_policy: Optional[RefreshPolicy] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.queue = queue
        self.crawler = crawler
        self.resolver = resolver
        self.extractor = extractor
        self.contact_sink = contact_sink
        self.quota = quota or UnlimitedQuota()
        self.site_fetcher = site_fetcher
        self.refresh_policy = refresh_policy or RefreshPolicy.from_settings(self.settings)

    def run_once(self) -> Optional[DiscoveryJob]:
        """Claim and process a single job; return its final state, or None if the queue was empty."""
        job = self.queue.claim_next_job()
        if job is None:
            return None

        logger.info(
            "Processing job %s: city=%s industry=%s dataset=%s",
            job.id,
            job.city_id,
            job.industry_id,
            job.dataset_id,
        )
        try:
            self.process_job(job)
        except (ScopeValidationError, QuotaExceededError, InvalidJobError) as exc:
            logger.error("Job %s rejected: %s", job.id, exc)
            self._fail(job, str(exc), retryable=False)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Job %s failed", job.id)
            self._fail(job, str(exc) or exc.__class__.__name__, retryable=True)

        return self.queue.get_job(job.id) or job

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        stop_event = stop_event or threading.Event()
        poll_interval = self.settings.worker_poll_interval
        logger.info("Discovery worker started (poll interval %.1fs)", poll_interval)
        while not stop_event.is_set():
            try:
                job = self.run_once()
            except Exception as exc:  # noqa: BLE001
                logger.error("Queue processor error: %s", exc)
                job = None
            if job is None:
                stop_event.wait(poll_interval)
        logger.info("Discovery worker stopped")

    def process_job(self, job: DiscoveryJob) -> DiscoveryRunResult:
        result = DiscoveryRunResult(job_id=job.id)
        scope = job.scope()
        validate_scope(scope)

        keywords = job_keywords(job)
        if not keywords:
            raise InvalidJobError(f"Job {job.id} has no search keywords")
        location = str(job.metadata.get("location") or "").strip()
        if not location:
            raise InvalidJobError(f"Job {job.id} has no search location")
        max_pages = int(job.metadata.get("max_pages") or self.settings.crawl_max_pages)

        self.quota.enforce(job.dataset_id, len(keywords) * self.settings.quota_units_per_keyword)

        logger.info("Job %s: searching %s keywords in %r", job.id, len(keywords), location)
        unique: Dict[tuple, ListingRecord] = {}
        for index, keyword in enumerate(keywords, start=1):
            if self._is_cancelled(job.id):
                logger.info("Job %s cancelled before keyword %s/%s", job.id, index, len(keywords))
                result.cancelled = True
                return result

            batch = self.crawler.crawl_keywords([keyword], location, max_pages)
            result.keywords_processed += 1
            result.errors.extend(batch.errors)
            result.pages_crawled += batch.pages_crawled
            result.searches_executed += batch.searches_executed
            for listing in batch.listings:
                unique.setdefault(listing_dedupe_key(listing), listing)

            self.queue.report_progress(job.id, {"keywords_processed": 1, "pages_processed": batch.pages_crawled})
            logger.info(
                "Job %s: keyword %r found %s listings (%s unique so far)",
                job.id,
                keyword,
                len(batch.listings),
                len(unique),
            )

        if self._is_cancelled(job.id):
            logger.info("Job %s cancelled after crawling; skipping persistence", job.id)
            result.cancelled = True
            return result

        result.businesses_found = len(unique)
        self.queue.report_progress(job.id, {"businesses_found": len(unique)})

        for listing in unique.values():
            self._process_listing(listing, scope, result)

        self.queue.report_progress(
            job.id,
            {"businesses_created": result.businesses_created, "businesses_updated": result.businesses_updated},
        )

        try:
            self.queue.complete_job(
                job.id,
                final_stats={
                    "keywords_processed": result.keywords_processed,
                    "pages_processed": result.pages_crawled,
                    "businesses_found": result.businesses_found,
                    "businesses_created": result.businesses_created,
                    "businesses_updated": result.businesses_updated,
                },
            )
        except JobStateError as exc:
            logger.warning("Job %s was not completed: %s", job.id, exc)
            result.cancelled = True

        logger.info(
            "Job %s finished: %s created, %s updated, %s contacts, %s errors",
            job.id,
            result.businesses_created,
            result.businesses_updated,
            result.contacts_created,
            len(result.errors),
        )
        return result

    def _process_listing(self, listing: ListingRecord, scope: Scope, result: DiscoveryRunResult) -> None:
        try:
            resolved = self.resolver.resolve(listing, scope)
        except ScopeValidationError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to resolve business %r: %s", listing.name, exc)
            result.errors.append(f"{listing.name}: {exc}")
            return

        if resolved.was_new:
            result.businesses_created += 1
        elif resolved.was_updated:
            result.businesses_updated += 1

        business = resolved.business
        listing_contacts = contacts_from_listing(listing, self.extractor.default_region)
        result.contacts_created += self._persist_contacts(business, listing_contacts, result, page_type=LISTING_SOURCE)
        self._enrich(business, result)

    def _enrich(self, business: BusinessIdentity, result: DiscoveryRunResult) -> None:
        if self.site_fetcher is None or not self.refresh_policy.needs_enrichment(business):
            return
        store = self.resolver.store
        website = sanitize_website(business.website)
        if not website:
            store.mark_crawled(business.id, status="skipped")
            return

        html = self.site_fetcher.fetch_page(website)
        if html is None:
            logger.info("Website %s for business %s could not be fetched", website, business.id)
            store.mark_crawled(business.id, status="failed")
            return

        candidates = self.extractor.extract(html, website)
        extra_pages = max(0, self.settings.enrich_max_pages - 1)
        for page_url in contact_page_links(html, website, limit=extra_pages):
            page_html = self.site_fetcher.fetch_page(page_url)
            if page_html is not None:
                candidates.extend(self.extractor.extract(page_html, page_url))

        result.contacts_created += self._persist_contacts(business, candidates, result)

        best_email = _best_value(candidates, "email")
        best_phone = _best_value(candidates, "phone")
        store.mark_crawled(business.id, email=best_email, phone=best_phone)

    def _persist_contacts(
        self,
        business: BusinessIdentity,
        candidates: Iterable[ContactCandidate],
        result: DiscoveryRunResult,
        page_type: Optional[str] = None,
    ) -> int:
        created = 0
        for candidate in candidates:
            try:
                contact_id = self.contact_sink.create_contact(candidate)
                self.contact_sink.record_contact_source(
                    contact_id,
                    business.id,
                    candidate.source_url,
                    page_type or _page_type(candidate.source_url),
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to store %s contact for business %s: %s", candidate.type, business.id, exc)
                result.errors.append(f"contact {candidate.value}: {exc}")
                continue
            created += 1
        return created

    def _is_cancelled(self, job_id: Any) -> bool:
        job = self.queue.get_job(job_id)
        return job is None or job.status is JobStatus.CANCELLED

    def _fail(self, job: DiscoveryJob, reason: str, *, retryable: bool) -> None:
        try:
            self.queue.fail_job(job.id, reason, retryable)
        except JobStateError as exc:
            logger.warning("Unable to mark job %s as failed: %s", job.id, exc)


def _best_value(candidates: Iterable[ContactCandidate], contact_type: str) -> Optional[str]:
    best: Optional[ContactCandidate] = None
    for candidate in candidates:
        if candidate.type != contact_type:
            continue
        if best is None or candidate.confidence > best.confidence:
            best = candidate
    return best.value if best else None


def _page_type(url: str) -> str:
    return "contact" if is_contact_page(url) else "homepage"


def build_worker(settings: Settings) -> DiscoveryWorker:
    """Wire the PostgreSQL-backed worker used in production."""
    from listing_discovery.core.business_store import PostgresBusinessStore
    from listing_discovery.core.collaborators import PostgresContactSink
    from listing_discovery.core.job_queue import JobQueue
    from listing_discovery.vendors.page_fetcher import CDN_CHALLENGE_MARKERS, RateLimitedFetcher, RateLimiter

    init_pool()
    limiter = RateLimiter.from_settings(settings)
    directory_fetcher = RateLimitedFetcher(limiter, settings=settings)
    site_fetcher = RateLimitedFetcher(
        limiter,
        settings=settings,
        challenge_markers=CDN_CHALLENGE_MARKERS,
    )
    return DiscoveryWorker(
        JobQueue(),
        PaginatedCrawler(directory_fetcher, settings=settings),
        IdentityResolver(PostgresBusinessStore(), default_region=settings.default_phone_region),
        ContactExtractor(settings),
        PostgresContactSink(),
        site_fetcher=site_fetcher,
        settings=settings,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the listing discovery worker")
    parser.add_argument("--once", action="store_true", help="Process at most one job and exit")
    parser.add_argument(
        "--poll-interval",
        dest="poll_interval",
        type=float,
        help="Seconds to wait between polls when the queue is empty",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)

    settings = get_settings()
    worker = build_worker(settings)
    if args.poll_interval is not None:
        worker.settings = dataclasses.replace(settings, worker_poll_interval=args.poll_interval)

    try:
        if args.once:
            job = worker.run_once()
            if job is None:
                logger.info("No pending discovery jobs")
            else:
                logger.info("Job %s finished with status %s", job.id, job.status.value)
            return

        stop_event = threading.Event()
        try:
            worker.run_forever(stop_event)
        except KeyboardInterrupt:
            logger.info("Interrupted; shutting down")
            stop_event.set()
    finally:
        close_pool()


if __name__ == "__main__":
    main()
