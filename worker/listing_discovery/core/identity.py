"""Identity resolution for scraped business listings.

A listing is matched to its canonical :class:`BusinessIdentity` inside a scope
using, in order, the directory external id and then the normalized business
name among records that carry no external id yet. A name match adopts the
listing's external id, so a later listing with a different id stays separate.

Field precedence on a match is declared once in :data:`MERGE_POLICY` and
rendered both as an in-memory merge and as the SQL update clauses, so the two
backends cannot drift apart.
"""

from __future__ import annotations

import hashlib
import logging
import re
import unicodedata
from typing import Any, Dict, Mapping, Optional

from listing_discovery.core.collaborators import BusinessStore
from listing_discovery.core.models import ListingRecord, ResolveResult, Scope
from listing_discovery.etl.transform import to_business_record

logger = logging.getLogger(__name__)

INCOMING = "incoming"
COALESCE = "coalesce"

MERGE_POLICY: Dict[str, str] = {
    "dataset_id": INCOMING,
    "city_id": INCOMING,
    "industry_id": INCOMING,
    "name": INCOMING,
    "normalized_name": INCOMING,
    "last_discovered_at": INCOMING,
    "address": COALESCE,
    "postal_code": COALESCE,
    "latitude": COALESCE,
    "longitude": COALESCE,
    "website": COALESCE,
    "email": COALESCE,
    "phone": COALESCE,
    "external_id": COALESCE,
    "discovery_run_id": COALESCE,
}

COMPLETENESS_WEIGHTS = (
    ("website", 40),
    ("email", 30),
    ("phone", 20),
    ("address", 10),
)

REQUIRED_SCOPE_FIELDS = ("dataset_id", "city_id", "industry_id")

_SEPARATOR_RUNS = re.compile(r"[\W_]+", re.UNICODE)


class ScopeValidationError(ValueError):
    """Raised when a scope is missing one of its identifying fields."""


def _slug(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _SEPARATOR_RUNS.sub("-", stripped).strip("-")


def fallback_key(
    external_id: Optional[str] = None,
    record_id: Optional[str] = None,
    name: Optional[str] = None,
) -> str:
    """Deterministic non-empty key for names that normalize to nothing."""
    if external_id:
        slug = _slug(str(external_id))
        if slug:
            return f"ext-{slug}"
    if record_id:
        slug = _slug(str(record_id))
        if slug:
            return f"id-{slug}"
    digest = hashlib.sha1((name or "").encode("utf-8")).hexdigest()
    return f"name-{digest[:16]}"


def normalize_business_name(
    name: str,
    external_id: Optional[str] = None,
    record_id: Optional[str] = None,
) -> str:
    """Return the matching key for ``name``; never empty.

    >>> normalize_business_name("Φούρνος Η Παπαδοπούλου!")
    'φουρνος-η-παπαδοπουλου'
    """
    slug = _slug(name or "")
    if slug:
        return slug
    return fallback_key(external_id, record_id, name)


def merge_fields(existing: Mapping[str, Any], incoming: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(existing)
    for field_name, rule in MERGE_POLICY.items():
        new_value = incoming.get(field_name)
        if rule == INCOMING or new_value is not None:
            merged[field_name] = new_value
    return merged


def conflict_update_clause(table: str = "businesses") -> str:
    """Render :data:`MERGE_POLICY` as the ``DO UPDATE SET`` body of an upsert."""
    assignments = []
    for field_name, rule in MERGE_POLICY.items():
        if rule == INCOMING:
            assignments.append(f"{field_name} = EXCLUDED.{field_name}")
        else:
            assignments.append(f"{field_name} = COALESCE(EXCLUDED.{field_name}, {table}.{field_name})")
    assignments.append("updated_at = NOW()")
    return ",\n    ".join(assignments)


def adopt_update_clause(table: str = "businesses") -> str:
    """Render :data:`MERGE_POLICY` as a ``SET`` body fed from named query parameters."""
    assignments = []
    for field_name, rule in MERGE_POLICY.items():
        if rule == INCOMING:
            assignments.append(f"{field_name} = %({field_name})s")
        else:
            assignments.append(f"{field_name} = COALESCE(%({field_name})s, {table}.{field_name})")
    assignments.append("updated_at = NOW()")
    return ",\n    ".join(assignments)


def compute_completeness_score(record: Any) -> int:
    score = 0
    for field_name, weight in COMPLETENESS_WEIGHTS:
        if isinstance(record, Mapping):
            value = record.get(field_name)
        else:
            value = getattr(record, field_name, None)
        if value:
            score += weight
    return score


def validate_scope(scope: Scope) -> None:
    missing = [name for name in REQUIRED_SCOPE_FIELDS if not getattr(scope, name, None)]
    if missing:
        raise ScopeValidationError(f"Scope is missing required fields: {', '.join(missing)}")


class IdentityResolver:
    """Resolve listings to canonical businesses through a :class:`BusinessStore`."""

    def __init__(self, store: BusinessStore, default_region: Optional[str] = "GR") -> None:
        self.store = store
        self.default_region = default_region

    def resolve(self, listing: ListingRecord, scope: Scope) -> ResolveResult:
        validate_scope(scope)

        record = to_business_record(listing, scope, self.default_region)
        record["normalized_name"] = normalize_business_name(
            listing.name,
            external_id=listing.external_id,
            record_id=listing.listing_id,
        )

        business, was_new = self.store.upsert(record)
        self.store.link_to_scope(business.id, scope.dataset_id)

        logger.debug(
            "Resolved %s -> business %s (new=%s)",
            record["normalized_name"],
            business.id,
            was_new,
        )
        return ResolveResult(business=business, was_new=was_new, was_updated=not was_new)
