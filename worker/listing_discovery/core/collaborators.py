"""Narrow interfaces to the persistence and billing systems around the worker."""

from __future__ import annotations

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from listing_discovery.core.db import get_connection
from listing_discovery.core.models import BusinessIdentity, ContactCandidate

logger = logging.getLogger(__name__)


class QuotaExceededError(RuntimeError):
    """Raised when a scope has no remaining discovery budget."""


class BusinessStore(ABC):
    @abstractmethod
    def upsert(self, record: Dict[str, Any]) -> Tuple[BusinessIdentity, bool]:
        """Insert or merge ``record``; return the canonical row and whether it was created."""

    @abstractmethod
    def link_to_scope(self, business_id: Any, scope_id: Any) -> None:
        ...

    @abstractmethod
    def get(self, business_id: Any) -> Optional[BusinessIdentity]:
        ...

    @abstractmethod
    def mark_crawled(
        self,
        business_id: Any,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        status: str = "success",
    ) -> Optional[BusinessIdentity]:
        """Stamp a website crawl with its outcome, filling empty contact fields."""


class ContactSink(ABC):
    @abstractmethod
    def create_contact(self, candidate: ContactCandidate) -> Any:
        ...

    @abstractmethod
    def record_contact_source(self, contact_id: Any, business_id: Any, source_url: str, page_type: str) -> None:
        ...


class QuotaGate(ABC):
    @abstractmethod
    def enforce(self, scope_id: Any, estimated_units: int) -> None:
        """Raise :class:`QuotaExceededError` when ``estimated_units`` cannot be spent."""


class UnlimitedQuota(QuotaGate):
    def enforce(self, scope_id: Any, estimated_units: int) -> None:
        logger.debug("Quota check skipped for scope %s (%s units)", scope_id, estimated_units)


class BudgetQuota(QuotaGate):
    """In-process budget per scope, spent as jobs are admitted."""

    def __init__(self, budgets: Dict[Any, int], default: int = 0) -> None:
        self._remaining = dict(budgets)
        self._default = default
        self._lock = threading.Lock()

    def remaining(self, scope_id: Any) -> int:
        with self._lock:
            return self._remaining.get(scope_id, self._default)

    def enforce(self, scope_id: Any, estimated_units: int) -> None:
        with self._lock:
            remaining = self._remaining.get(scope_id, self._default)
            if estimated_units > remaining:
                raise QuotaExceededError(
                    f"Scope {scope_id} needs {estimated_units} units but only {remaining} remain"
                )
            self._remaining[scope_id] = remaining - estimated_units


_UPSERT_CONTACT = """
INSERT INTO contacts (
    type,
    value,
    platform,
    confidence,
    created_at,
    updated_at
) VALUES (
    %(type)s,
    %(value)s,
    %(platform)s,
    %(confidence)s,
    NOW(),
    NOW()
)
ON CONFLICT (type, value) DO UPDATE SET
    platform = COALESCE(EXCLUDED.platform, contacts.platform),
    confidence = GREATEST(EXCLUDED.confidence, contacts.confidence),
    updated_at = NOW()
RETURNING id;
"""

_INSERT_CONTACT_SOURCE = """
INSERT INTO contact_sources (
    contact_id,
    business_id,
    source_url,
    page_type,
    found_at
) VALUES (
    %(contact_id)s,
    %(business_id)s,
    %(source_url)s,
    %(page_type)s,
    NOW()
)
ON CONFLICT (contact_id, business_id, source_url) DO NOTHING;
"""


class PostgresContactSink(ContactSink):
    def create_contact(self, candidate: ContactCandidate) -> Any:
        params = {
            "type": candidate.type,
            "value": candidate.value,
            "platform": candidate.platform,
            "confidence": candidate.confidence,
        }
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_UPSERT_CONTACT, params)
                row = cur.fetchone()
            conn.commit()
        return row[0]

    def record_contact_source(self, contact_id: Any, business_id: Any, source_url: str, page_type: str) -> None:
        params = {
            "contact_id": contact_id,
            "business_id": business_id,
            "source_url": source_url,
            "page_type": page_type,
        }
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_INSERT_CONTACT_SOURCE, params)
            conn.commit()


class MemoryContactSink(ContactSink):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.contacts: Dict[Any, ContactCandidate] = {}
        self._by_key: Dict[tuple, Any] = {}
        self.sources: List[Tuple[Any, Any, str, str]] = []

    def create_contact(self, candidate: ContactCandidate) -> Any:
        with self._lock:
            contact_id = self._by_key.get(candidate.dedupe_key)
            if contact_id is None:
                contact_id = next(self._ids)
                self._by_key[candidate.dedupe_key] = contact_id
                self.contacts[contact_id] = candidate
            elif candidate.confidence > self.contacts[contact_id].confidence:
                self.contacts[contact_id] = candidate
            return contact_id

    def record_contact_source(self, contact_id: Any, business_id: Any, source_url: str, page_type: str) -> None:
        entry = (contact_id, business_id, source_url, page_type)
        with self._lock:
            if not any(existing[:3] == entry[:3] for existing in self.sources):
                self.sources.append(entry)

    def contacts_for(self, business_id: Any) -> List[ContactCandidate]:
        with self._lock:
            ids = []
            for contact_id, owner, _, _ in self.sources:
                if owner == business_id and contact_id not in ids:
                    ids.append(contact_id)
            return [self.contacts[contact_id] for contact_id in ids]
