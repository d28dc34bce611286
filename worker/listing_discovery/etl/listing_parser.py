"""Parse directory search-result pages into :class:`ListingRecord` objects."""

from __future__ import annotations

import logging
from typing import Any, List, Optional
from urllib.parse import unquote, urljoin, urlparse

from bs4 import BeautifulSoup, Tag

from listing_discovery.core.models import ListingAddress, ListingRecord

logger = logging.getLogger(__name__)

LISTING_SELECTOR = ".AdvItemBox"
NAME_SELECTOR = "h2.CompanyName a.nav-company"
CATEGORY_SELECTOR = ".AdvCategory"
DEFAULT_COUNTRY = "Greece"


def parse_listings(html: Optional[str], base_url: str) -> List[ListingRecord]:
    """Extract every listing block on a results page.

    Blocks without a business name are skipped. Any failure while parsing the
    document itself yields an empty list.
    """
    if not html:
        return []

    try:
        soup = BeautifulSoup(html, "html.parser")
        blocks = soup.select(LISTING_SELECTOR)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Unable to parse listings page from %s: %s", base_url, exc)
        return []

    listings: List[ListingRecord] = []
    for block in blocks:
        try:
            listing = _parse_block(block, base_url)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Skipping malformed listing block: %s", exc)
            continue
        if listing is not None:
            listings.append(listing)

    logger.info("Parsed %s listings from %s", len(listings), base_url)
    return listings


def _parse_block(block: Tag, base_url: str) -> Optional[ListingRecord]:
    name_node = block.select_one(NAME_SELECTOR)
    name = ""
    if name_node is not None:
        name = name_node.get_text(" ", strip=True) or (name_node.get("title") or "").strip()
    if not name:
        logger.debug("Skipping listing without a business name")
        return None

    category_node = block.select_one(CATEGORY_SELECTOR)
    category = category_node.get_text(" ", strip=True) if category_node is not None else ""

    address = ListingAddress(
        street=_meta(block, "streetAddress") or "",
        city=_meta(block, "addressLocality") or "",
        postal_code=_meta(block, "postalCode") or "",
        region=_meta(block, "addressRegion") or "",
        country=_meta(block, "addressCountry") or DEFAULT_COUNTRY,
    )

    phones: List[str] = []
    for node in block.select('[itemprop="telephone"]'):
        phone = node.get_text(" ", strip=True) or (node.get("content") or "").strip()
        if phone and phone not in phones:
            phones.append(phone)

    email = _meta(block, "email")
    if not email:
        mailto = block.select_one('a[href^="mailto:"]')
        if mailto is not None:
            email = mailto["href"].split(":", 1)[1].split("?")[0].strip() or None

    website_node = block.select_one('a[itemprop="url"]')
    website = _strip_or_none(website_node.get("href")) if website_node is not None else None

    href = _strip_or_none(name_node.get("href")) if name_node is not None else None
    listing_url = urljoin(f"{base_url}/", href) if href else ""

    return ListingRecord(
        name=name,
        category=category,
        address=address,
        phones=phones,
        email=email.lower() if email else None,
        website=website,
        latitude=_safe_float(_meta(block, "latitude")),
        longitude=_safe_float(_meta(block, "longitude")),
        listing_url=listing_url,
        external_id=external_id_from_url(listing_url),
    )


def external_id_from_url(listing_url: str) -> Optional[str]:
    """Stable directory identifier: the decoded path of the listing page."""
    if not listing_url:
        return None
    path = unquote(urlparse(listing_url).path).strip("/")
    return path or None


def _meta(block: Tag, itemprop: str) -> Optional[str]:
    node = block.select_one(f'meta[itemprop="{itemprop}"]')
    if node is None:
        return None
    return _strip_or_none(node.get("content"))


def _strip_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None:
            return None
        return float(value)
    except (TypeError, ValueError):
        return None
