"""Core data models shared by the discovery pipeline."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ListingAddress:
    street: str = ""
    city: str = ""
    postal_code: str = ""
    region: str = ""
    country: str = "Greece"

    def formatted(self) -> Optional[str]:
        """Single-line address, or None when no street/city/postal code is known."""
        locality = " ".join(part for part in (self.city, self.postal_code) if part)
        joined = ", ".join(part for part in (self.street, locality) if part)
        return joined or None


@dataclass(slots=True)
class ListingRecord:
    """Raw business listing as scraped from a directory results page."""

    name: str
    category: str = ""
    address: ListingAddress = field(default_factory=ListingAddress)
    phones: List[str] = field(default_factory=list)
    email: Optional[str] = None
    website: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    listing_url: str = ""
    external_id: Optional[str] = None
    listing_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    captured_at: datetime = field(default_factory=utcnow)
    source: str = "vrisko"


@dataclass(slots=True)
class Scope:
    """Persistence scope inside which business identities are unique."""

    dataset_id: Optional[str]
    city_id: Optional[str]
    industry_id: Optional[str]
    owner_user_id: Optional[str] = None
    discovery_run_id: Optional[str] = None


CRAWL_STATUSES = ("success", "failed", "skipped")


@dataclass(slots=True)
class BusinessIdentity:
    """Canonical, deduplicated business record."""

    id: Any
    name: str
    normalized_name: str
    dataset_id: str
    city_id: str
    industry_id: str
    address: Optional[str] = None
    postal_code: Optional[str] = None
    external_id: Optional[str] = None
    website: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    discovery_run_id: Optional[str] = None
    last_discovered_at: Optional[datetime] = None
    last_crawled_at: Optional[datetime] = None
    crawl_status: Optional[str] = None
    completeness_score: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "BusinessIdentity":
        return cls(
            id=row["id"],
            name=row["name"],
            normalized_name=row["normalized_name"],
            dataset_id=str(row["dataset_id"]),
            city_id=str(row["city_id"]),
            industry_id=str(row["industry_id"]),
            address=row.get("address"),
            postal_code=row.get("postal_code"),
            external_id=row.get("external_id"),
            website=row.get("website"),
            email=row.get("email"),
            phone=row.get("phone"),
            latitude=row.get("latitude"),
            longitude=row.get("longitude"),
            discovery_run_id=row.get("discovery_run_id"),
            last_discovered_at=row.get("last_discovered_at"),
            last_crawled_at=row.get("last_crawled_at"),
            crawl_status=row.get("crawl_status"),
            completeness_score=row.get("completeness_score") or 0,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


@dataclass(slots=True)
class ResolveResult:
    business: BusinessIdentity
    was_new: bool
    was_updated: bool


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


PROGRESS_COUNTERS = (
    "keywords_processed",
    "pages_processed",
    "businesses_found",
    "businesses_created",
    "businesses_updated",
)


@dataclass(slots=True)
class DiscoveryJob:
    """Queue entry describing one (city, industry, dataset) discovery task."""

    id: Any
    city_id: str
    industry_id: str
    dataset_id: str
    status: JobStatus = JobStatus.PENDING
    priority: int = 0
    retry_count: int = 0
    max_retries: int = 3
    keywords_processed: int = 0
    pages_processed: int = 0
    businesses_found: int = 0
    businesses_created: int = 0
    businesses_updated: int = 0
    error_message: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DiscoveryJob":
        return cls(
            id=row["id"],
            city_id=str(row["city_id"]),
            industry_id=str(row["industry_id"]),
            dataset_id=str(row["dataset_id"]),
            status=JobStatus(row["status"]),
            priority=row.get("priority") or 0,
            retry_count=row.get("retry_count") or 0,
            max_retries=row.get("max_retries") if row.get("max_retries") is not None else 3,
            keywords_processed=row.get("keywords_processed") or 0,
            pages_processed=row.get("pages_processed") or 0,
            businesses_found=row.get("businesses_found") or 0,
            businesses_created=row.get("businesses_created") or 0,
            businesses_updated=row.get("businesses_updated") or 0,
            error_message=row.get("error_message"),
            scheduled_at=row.get("scheduled_at"),
            created_at=row.get("created_at"),
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            metadata=dict(row.get("metadata") or {}),
        )

    def scope(self, owner_user_id: Optional[str] = None) -> Scope:
        return Scope(
            dataset_id=self.dataset_id,
            city_id=self.city_id,
            industry_id=self.industry_id,
            owner_user_id=owner_user_id,
            discovery_run_id=self.metadata.get("discovery_run_id"),
        )


CONTACT_TYPES = ("email", "phone", "social", "form")


@dataclass(slots=True)
class ContactCandidate:
    """A scored contact signal extracted from a page."""

    type: str
    value: str
    source_url: str
    confidence: float
    platform: Optional[str] = None

    def __post_init__(self) -> None:
        if self.type not in CONTACT_TYPES:
            raise ValueError(f"Unknown contact type: {self.type}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be within [0, 1], got {self.confidence}")

    @property
    def dedupe_key(self) -> tuple:
        return (self.type, self.value)
