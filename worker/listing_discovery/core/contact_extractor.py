"""Contact extraction from business web pages.

Every candidate carries a confidence derived from where it was found:
structured data and ``mailto:``/``tel:`` links are trusted most, free text is
scored from the page path (contact pages up, privacy/terms pages down) and
its position on the page.
"""

from __future__ import annotations

import json
import logging
import re
import unicodedata
from typing import Any, Dict, Iterator, List, Optional, Set
from urllib.parse import unquote, urljoin, urlparse, urlunparse

import phonenumbers
from bs4 import BeautifulSoup

from listing_discovery.core.config import Settings, get_settings
from listing_discovery.core.models import ContactCandidate
from listing_discovery.etl.transform import normalize_email, normalize_phone

logger = logging.getLogger(__name__)

STRUCTURED_CONFIDENCE = 0.95
LINK_CONFIDENCE = 0.95
BASE_CONFIDENCE = 0.5
CONTACT_PAGE_CONFIDENCE = 0.9
PRIVACY_PAGE_CONFIDENCE = 0.3
FOOTER_CONFIDENCE = 0.6
OBFUSCATION_BONUS = 0.1

CONTACT_PATH_PATTERN = re.compile(r"(contact|επικοινων|epikoinon)", re.IGNORECASE)
PRIVACY_TERMS_PATTERN = re.compile(
    r"(privacy|terms|gdpr|cookies|πολιτικη[\s_-]*απορρητου|οροι[\s_-]*χρησης)",
    re.IGNORECASE,
)

EMAIL_REGEX = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)

_AT_BRACKETED = r"\s*[\(\[\{]\s*at\s*[\)\]\}]\s*"
_DOT_BRACKETED = r"\s*[\(\[\{]\s*dot\s*[\)\]\}]\s*"
OBFUSCATED_EMAIL_REGEX = re.compile(
    rf"(?<![\w.+-])([A-Z0-9._%+-]+)(?:{_AT_BRACKETED}|\s+at\s+)"
    rf"([A-Z0-9-]+(?:(?:{_DOT_BRACKETED}|\s+dot\s+|\.)[A-Z0-9-]+)+)",
    re.IGNORECASE,
)
_AT_BRACKETED_REGEX = re.compile(_AT_BRACKETED, re.IGNORECASE)
_DOT_SPLIT_REGEX = re.compile(rf"(?:{_DOT_BRACKETED}|\s+dot\s+)", re.IGNORECASE)

SOCIAL_HOSTS = {
    "facebook": ("facebook.com", "fb.com"),
    "instagram": ("instagram.com", "instagr.am"),
    "linkedin": ("linkedin.com",),
    "twitter": ("twitter.com", "x.com"),
    "youtube": ("youtube.com", "youtu.be"),
    "tiktok": ("tiktok.com",),
}
SHARE_LINK_MARKERS = ("sharer", "/share", "intent/", "/dialog/")

FOOTER_SELECTOR = "footer, .footer, #footer, [role=contentinfo]"
NON_CONTENT_TAGS = ("script", "style", "noscript", "template")

LOCAL_BUSINESS_TYPES = {
    "localbusiness",
    "organization",
    "corporation",
    "store",
    "bakery",
    "restaurant",
    "cafeorcoffeeshop",
    "foodestablishment",
    "professionalservice",
    "medicalbusiness",
    "dentist",
    "physician",
    "legalservice",
    "hotel",
    "lodgingbusiness",
    "automotivebusiness",
    "healthandbeautybusiness",
    "homeandconstructionbusiness",
}

CONTACT_KEYWORDS = ("contact", "επικοινων", "epikoinonia")
ABOUT_KEYWORDS = ("about", "σχετικα", "sxetika", "poioi-eimaste")
MESSAGE_FIELD_PATTERN = re.compile(r"(message|msg|comment|μηνυμα)", re.IGNORECASE)


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", (text or "").lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _page_path(url: str) -> str:
    return _fold(unquote(urlparse(url or "").path))


def is_contact_page(url: str) -> bool:
    return bool(CONTACT_PATH_PATTERN.search(_page_path(url)))


def score_confidence(source_url: str, *, is_obfuscated: bool = False, is_footer: bool = False) -> float:
    """Confidence for a contact found in page text."""
    path = _page_path(source_url)
    if CONTACT_PATH_PATTERN.search(path):
        score = CONTACT_PAGE_CONFIDENCE
    elif PRIVACY_TERMS_PATTERN.search(path):
        score = PRIVACY_PAGE_CONFIDENCE
    elif is_footer:
        score = FOOTER_CONFIDENCE
    else:
        score = BASE_CONFIDENCE
    if is_obfuscated:
        score = min(1.0, score + OBFUSCATION_BONUS)
    return round(score, 2)


def decode_obfuscated_email(match: "re.Match[str]") -> Optional[str]:
    local, domain = match.group(1), match.group(2)
    bracketed_at = bool(_AT_BRACKETED_REGEX.search(match.group(0)))
    labels = _DOT_SPLIT_REGEX.split(domain)
    # A bare " at " only counts when the dots are spelled out too.
    if not bracketed_at and len(labels) < 2:
        return None
    return normalize_email(f"{local}@{'.'.join(label.strip() for label in labels)}")


def social_platform(url: str) -> Optional[str]:
    host = urlparse(url).netloc.lower().split(":")[0]
    for platform, hosts in SOCIAL_HOSTS.items():
        if any(host == allowed or host.endswith(f".{allowed}") for allowed in hosts):
            return platform
    return None


def _normalize_social(url: str) -> str:
    parsed = urlparse(url)
    host = parsed.netloc.lower()
    if host.startswith("www."):
        host = host[4:]
    return urlunparse(("https", host, parsed.path.rstrip("/"), "", "", ""))


class _CandidateSet:
    """Keeps one candidate per (type, value): the most confident, in first-seen order."""

    def __init__(self) -> None:
        self._items: Dict[tuple, ContactCandidate] = {}

    def add(self, candidate: ContactCandidate) -> None:
        current = self._items.get(candidate.dedupe_key)
        if current is None or candidate.confidence > current.confidence:
            self._items[candidate.dedupe_key] = candidate

    def to_list(self) -> List[ContactCandidate]:
        return list(self._items.values())


class ContactExtractor:
    """Extract scored contact candidates from a single HTML page."""

    def __init__(self, settings: Optional[Settings] = None, default_region: Optional[str] = None) -> None:
        self.settings = settings or get_settings()
        self.default_region = default_region or self.settings.default_phone_region

    def extract(self, html: Optional[str], page_url: str) -> List[ContactCandidate]:
        if not html:
            return []
        try:
            return self._extract(html, page_url)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Contact extraction failed for %s: %s", page_url, exc)
            return []

    def _extract(self, html: str, page_url: str) -> List[ContactCandidate]:
        soup = BeautifulSoup(html, "html.parser")
        found = _CandidateSet()

        for candidate in self._structured_contacts(soup, page_url):
            found.add(candidate)
        for candidate in self._link_contacts(soup, page_url):
            found.add(candidate)
        for candidate in self._social_links(soup, page_url):
            found.add(candidate)
        form = self._contact_form(soup, page_url)
        if form is not None:
            found.add(form)

        for tag in soup(NON_CONTENT_TAGS):
            tag.decompose()
        footer_texts = []
        for node in soup.select(FOOTER_SELECTOR):
            if node.decomposed:
                continue
            footer_texts.append(node.get_text(" ", strip=True))
            node.decompose()

        body_text = soup.get_text(" ", strip=True)
        for text, is_footer in ((body_text, False), (" ".join(footer_texts), True)):
            for candidate in self._text_contacts(text, page_url, is_footer=is_footer):
                found.add(candidate)

        candidates = found.to_list()
        logger.debug("Extracted %s contact candidates from %s", len(candidates), page_url)
        return candidates

    def _structured_contacts(self, soup: BeautifulSoup, page_url: str) -> Iterator[ContactCandidate]:
        for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
            payload = script.string or script.get_text()
            try:
                data = json.loads(payload)
            except (TypeError, ValueError):
                logger.debug("Ignoring malformed JSON-LD block on %s", page_url)
                continue
            for node in _walk_json_ld(data):
                if not _is_business_node(node):
                    continue
                for entry in [node] + _as_list(node.get("contactPoint")):
                    if not isinstance(entry, dict):
                        continue
                    for raw in _as_list(entry.get("email")):
                        email = normalize_email(str(raw).replace("mailto:", ""))
                        if email:
                            yield ContactCandidate("email", email, page_url, STRUCTURED_CONFIDENCE)
                    for raw in _as_list(entry.get("telephone")):
                        phone = normalize_phone(str(raw), self.default_region)
                        if phone:
                            yield ContactCandidate("phone", phone, page_url, STRUCTURED_CONFIDENCE)

    def _link_contacts(self, soup: BeautifulSoup, page_url: str) -> Iterator[ContactCandidate]:
        for anchor in soup.find_all("a", href=True):
            href = anchor["href"].strip()
            scheme, _, payload = href.partition(":")
            scheme = scheme.lower()
            if scheme == "mailto":
                for address in payload.split("?")[0].split(","):
                    email = normalize_email(address)
                    if email:
                        yield ContactCandidate("email", email, page_url, LINK_CONFIDENCE)
            elif scheme == "tel":
                phone = normalize_phone(unquote(payload), self.default_region)
                if phone:
                    yield ContactCandidate("phone", phone, page_url, LINK_CONFIDENCE)

    def _social_links(self, soup: BeautifulSoup, page_url: str) -> Iterator[ContactCandidate]:
        footer_ids = {id(node) for node in soup.select(FOOTER_SELECTOR)}
        for anchor in soup.find_all("a", href=True):
            absolute = urljoin(page_url, anchor["href"].strip())
            parsed = urlparse(absolute)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                continue
            platform = social_platform(absolute)
            if platform is None:
                continue
            lowered = absolute.lower()
            if any(marker in lowered for marker in SHARE_LINK_MARKERS) or parsed.path.strip("/") == "":
                continue
            in_footer = any(id(parent) in footer_ids for parent in anchor.parents)
            yield ContactCandidate(
                "social",
                _normalize_social(absolute),
                page_url,
                score_confidence(page_url, is_footer=in_footer),
                platform=platform,
            )

    def _contact_form(self, soup: BeautifulSoup, page_url: str) -> Optional[ContactCandidate]:
        contact_path = is_contact_page(page_url)
        for form in soup.find_all("form"):
            has_message_field = form.find("textarea") is not None or any(
                MESSAGE_FIELD_PATTERN.search(field.get("name", "") or "")
                for field in form.find_all(["input", "textarea"])
            )
            descriptor = " ".join(
                [
                    form.get_text(" ", strip=True),
                    form.get("id", "") or "",
                    " ".join(form.get("class", []) or []),
                    form.get("action", "") or "",
                ]
            )
            mentions_contact = any(keyword in _fold(descriptor) for keyword in CONTACT_KEYWORDS)
            if contact_path or has_message_field or mentions_contact:
                page = urlunparse(urlparse(page_url)._replace(fragment="", query=""))
                return ContactCandidate("form", page, page_url, score_confidence(page_url))
        return None

    def _text_contacts(self, text: str, page_url: str, *, is_footer: bool) -> Iterator[ContactCandidate]:
        if not text:
            return
        plain_score = score_confidence(page_url, is_footer=is_footer)
        for match in EMAIL_REGEX.finditer(text):
            email = normalize_email(match.group(0))
            if email:
                yield ContactCandidate("email", email, page_url, plain_score)

        obfuscated_score = score_confidence(page_url, is_obfuscated=True, is_footer=is_footer)
        for match in OBFUSCATED_EMAIL_REGEX.finditer(text):
            email = decode_obfuscated_email(match)
            if email:
                yield ContactCandidate("email", email, page_url, obfuscated_score)

        region = self.default_region or "ZZ"
        for match in phonenumbers.PhoneNumberMatcher(text, region):
            phone = phonenumbers.format_number(match.number, phonenumbers.PhoneNumberFormat.E164)
            yield ContactCandidate("phone", phone, page_url, plain_score)


def contact_page_links(html: Optional[str], page_url: str, limit: Optional[int] = None) -> List[str]:
    """Same-site links that look like contact or about pages, contact pages first."""
    if not html:
        return []
    try:
        soup = BeautifulSoup(html, "html.parser")
    except Exception as exc:  # noqa: BLE001
        logger.warning("Unable to parse %s for contact links: %s", page_url, exc)
        return []

    site = urlparse(page_url).netloc.lower().removeprefix("www.")
    contact: List[str] = []
    about: List[str] = []
    seen: Set[str] = {urlunparse(urlparse(page_url)._replace(query="", fragment=""))}
    for anchor in soup.find_all("a", href=True):
        absolute = urljoin(page_url, anchor["href"].strip())
        parsed = urlparse(absolute)
        if parsed.scheme not in ("http", "https"):
            continue
        if parsed.netloc.lower().removeprefix("www.") != site:
            continue
        normalized = urlunparse((parsed.scheme, parsed.netloc, parsed.path, "", "", ""))
        if normalized in seen:
            continue
        path = _page_path(normalized)
        if any(keyword in path for keyword in CONTACT_KEYWORDS):
            contact.append(normalized)
            seen.add(normalized)
        elif any(keyword in path for keyword in ABOUT_KEYWORDS):
            about.append(normalized)
            seen.add(normalized)

    links = contact + about
    return links[:limit] if limit is not None else links


def _walk_json_ld(data: Any) -> Iterator[Dict[str, Any]]:
    if isinstance(data, list):
        for item in data:
            yield from _walk_json_ld(item)
    elif isinstance(data, dict):
        yield data
        if "@graph" in data:
            yield from _walk_json_ld(data["@graph"])


def _is_business_node(node: Dict[str, Any]) -> bool:
    types = _as_list(node.get("@type"))
    return any(str(value).lower() in LOCAL_BUSINESS_TYPES for value in types)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]
