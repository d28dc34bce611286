"""Utilities for transforming parsed listings into database rows and contacts."""

import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse, urlunparse

import phonenumbers

from listing_discovery.core.models import ContactCandidate, ListingRecord, Scope, utcnow

logger = logging.getLogger(__name__)

LISTING_CONFIDENCE = 0.95
LISTING_SOURCE = "listing"

_VALID_EMAIL = re.compile(r"^[a-z0-9._%+-]+@[a-z0-9-]+(?:\.[a-z0-9-]+)*\.[a-z]{2,}$")
_ASSET_SUFFIXES = ("png", "jpg", "jpeg", "gif", "svg", "webp", "css", "js")


def sanitize_website(raw_url: Optional[str]) -> Optional[str]:
    """Normalise raw website strings into absolute URLs without query or fragment."""
    if not raw_url:
        return None

    url = raw_url.strip()
    if not url:
        return None

    parsed = urlparse(url, scheme="https")
    if not parsed.netloc:
        parsed = urlparse(f"https://{url}")

    if not parsed.netloc or " " in parsed.netloc:
        return None

    normalized_path = parsed.path or "/"
    if not normalized_path.startswith("/"):
        normalized_path = f"/{normalized_path}"

    normalized = parsed._replace(path=normalized_path, fragment="", query="")
    return urlunparse(normalized)


def normalize_email(raw: Optional[str]) -> Optional[str]:
    email = unquote(raw or "").strip().strip(".,;:<>()[]").lower()
    if not _VALID_EMAIL.match(email):
        return None
    if email.rsplit(".", 1)[-1] in _ASSET_SUFFIXES:
        return None
    return email


def normalize_phone(raw: str, default_region: Optional[str] = "GR") -> Optional[str]:
    """Return the E.164 form of ``raw`` or ``None`` when it is not a possible number."""
    if not raw or not raw.strip():
        return None
    try:
        parsed = phonenumbers.parse(raw.strip(), default_region)
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_possible_number(parsed):
        return None
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def to_business_record(listing: ListingRecord, scope: Scope, default_region: Optional[str] = "GR") -> Dict[str, Any]:
    phone = None
    for raw in listing.phones:
        phone = normalize_phone(raw, default_region)
        if phone:
            break

    return {
        "dataset_id": scope.dataset_id,
        "city_id": scope.city_id,
        "industry_id": scope.industry_id,
        "name": listing.name.strip(),
        "address": listing.address.formatted(),
        "postal_code": listing.address.postal_code or None,
        "latitude": listing.latitude,
        "longitude": listing.longitude,
        "website": sanitize_website(listing.website),
        "email": normalize_email(listing.email),
        "phone": phone,
        "external_id": listing.external_id,
        "discovery_run_id": scope.discovery_run_id,
        "last_discovered_at": utcnow(),
    }


def contacts_from_listing(listing: ListingRecord, default_region: Optional[str] = "GR") -> List[ContactCandidate]:
    """Contacts published on the directory listing itself."""
    source_url = listing.listing_url or LISTING_SOURCE
    contacts: List[ContactCandidate] = []
    seen = set()

    for raw in listing.phones:
        phone = normalize_phone(raw, default_region)
        if not phone:
            logger.debug("Discarding unparseable listing phone %r for %s", raw, listing.name)
            continue
        if ("phone", phone) in seen:
            continue
        seen.add(("phone", phone))
        contacts.append(ContactCandidate("phone", phone, source_url, LISTING_CONFIDENCE))

    email = normalize_email(listing.email)
    if email:
        contacts.append(ContactCandidate("email", email, source_url, LISTING_CONFIDENCE))
    elif listing.email:
        logger.debug("Discarding invalid listing email %r for %s", listing.email, listing.name)

    return contacts
