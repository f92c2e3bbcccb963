"""
Normalization of raw Eventful listings.

Turns one raw upstream event into a NormalizedEvent, or rejects it:
- Only English or undetermined-language events with a start time are kept
- Descriptions are sanitized (markup stripped except img/br, entities
  decoded) and truncated to 1000 characters
- Links are pulled from the raw description before sanitizing
- Category names are stripped of all markup and truncated to 100 characters
- Every other upstream field (price, tickets, popularity, image sizes) is
  carried through unchanged

normalize_event() never raises; anything it cannot handle is rejected.
"""

from datetime import datetime
from html import escape
from typing import Any, Iterable, Optional

import structlog
from bs4 import BeautifulSoup, NavigableString, Tag
from dateutil import parser as date_parser

from .models import EventCategory, NormalizedEvent
from .sources.links import extract_links

logger = structlog.get_logger()


ACCEPTED_LANGUAGES = {"english", "undetermined"}

# Raw keys replaced by their normalized counterparts
NORMALIZED_KEYS = frozenset(NormalizedEvent.model_fields) | {"id"}

DESCRIPTION_MAX_LENGTH = 1000
CATEGORY_NAME_MAX_LENGTH = 100
ELLIPSIS = "..."

# Inline elements that survive description sanitizing
INLINE_TAGS = frozenset({"img", "br"})
IMG_ATTRIBUTES = ("src", "alt", "width", "height")

# Elements dropped together with their content
DROP_WITH_CONTENT = ("script", "style", "noscript", "iframe", "object", "embed", "template")

# Segment = (is_markup, text)
Segment = tuple[bool, str]


def normalize_event(raw: dict[str, Any]) -> Optional[NormalizedEvent]:
    """
    Normalize one raw upstream event.

    Args:
        raw: Event dict as returned by the Eventful search API

    Returns:
        NormalizedEvent, or None when the event is rejected
    """
    try:
        if not is_publishable(raw):
            return None

        start_time = parse_time(raw.get("start_time"))
        if start_time is None:
            return None

        external_id = raw.get("id")
        if not external_id:
            return None

        raw_description = raw.get("description")
        description = sanitize_description(raw_description)

        normalized = dict(
            external_id=str(external_id),
            title=_clean_str(raw.get("title")),
            url=_clean_str(raw.get("url")),
            venue_name=_clean_str(raw.get("venue_name")),
            venue_address=_clean_str(raw.get("venue_address")),
            city_name=_clean_str(raw.get("city_name")),
            region_name=_clean_str(raw.get("region_name")),
            country_name=_clean_str(raw.get("country_name")),
            latitude=_parse_float(raw.get("latitude")),
            longitude=_parse_float(raw.get("longitude")),
            description=description,
            links=extract_links(raw_description) if isinstance(raw_description, str) else [],
            categories=normalize_categories(raw.get("categories")),
            image_url=_image_url(raw.get("image")),
            start_time=start_time,
            stop_time=parse_time(raw.get("stop_time")),
            all_day=_parse_flag(raw.get("all_day")),
            language=str(raw["language"]),
        )
        return NormalizedEvent.model_validate({**passthrough_fields(raw), **normalized})

    except Exception as e:
        # Malformed records are dropped, never raised
        logger.debug(
            "event_rejected_malformed",
            event_id=raw.get("id") if isinstance(raw, dict) else None,
            error=str(e),
        )
        return None


def passthrough_fields(raw: dict[str, Any]) -> dict[str, Any]:
    """Upstream fields published as received (price, tickets, image, ...)."""
    return {key: value for key, value in raw.items() if key not in NORMALIZED_KEYS}


def is_publishable(raw: dict[str, Any]) -> bool:
    """Language and start-time eligibility check."""
    language = raw.get("language")
    if not language or not isinstance(language, str):
        return False
    if language.strip().lower() not in ACCEPTED_LANGUAGES:
        return False
    return bool(raw.get("start_time"))


def sanitize_description(text: Any) -> Optional[str]:
    """Sanitize a raw description; empty results become None."""
    if not isinstance(text, str) or not text:
        return None

    cleaned = sanitize_html(text, DESCRIPTION_MAX_LENGTH, keep_tags=INLINE_TAGS)
    if not cleaned or cleaned == "null":
        return None
    return cleaned


def sanitize_category_name(name: Any) -> str:
    """Strip all markup from a category name and truncate it."""
    if name is None:
        return ""
    return sanitize_html(str(name), CATEGORY_NAME_MAX_LENGTH, keep_tags=frozenset())


def normalize_categories(raw_categories: Any) -> list[EventCategory]:
    """Normalize ``categories.category`` (list, single dict or missing)."""
    if not isinstance(raw_categories, dict):
        return []

    items = raw_categories.get("category")
    if isinstance(items, dict):
        items = [items]
    if not isinstance(items, list):
        return []

    categories = []
    for item in items:
        if not isinstance(item, dict):
            continue
        fields = dict(item)
        fields["name"] = sanitize_category_name(item.get("name"))
        if fields.get("id") is not None:
            fields["id"] = str(fields["id"])
        categories.append(EventCategory(**fields))
    return categories


def sanitize_html(text: str, max_length: int, keep_tags: frozenset = INLINE_TAGS) -> str:
    """
    Strip markup from untrusted HTML and truncate the result.

    Args:
        text: Untrusted HTML or plain text
        max_length: Maximum length of the result, ellipsis included
        keep_tags: Element names rendered back as markup; all other
                  elements are unwrapped to their text

    Returns:
        Sanitized text with entities decoded, outer whitespace stripped,
        ending in "..." when it had to be shortened
    """
    soup = BeautifulSoup(text, "html.parser")
    for element in soup.find_all(list(DROP_WITH_CONTENT)):
        if not element.decomposed:
            element.decompose()

    segments = _strip_edges(list(_segments(soup, keep_tags)))
    return _truncate(segments, max_length)


def parse_time(value: Any) -> Optional[datetime]:
    """Parse an upstream timestamp, or None when absent or unparseable."""
    if isinstance(value, datetime):
        return value
    if not value or not isinstance(value, str):
        return None
    try:
        return date_parser.parse(value)
    except (ValueError, TypeError, OverflowError):
        return None


def _segments(soup: BeautifulSoup, keep_tags: frozenset) -> Iterable[Segment]:
    """Flatten the tree into text and kept-markup segments, in document order."""
    for node in soup.descendants:
        if isinstance(node, Tag):
            if node.name in keep_tags:
                markup = _render_inline(node)
                if markup:
                    yield True, markup
        elif type(node) is NavigableString:
            # Comments, doctypes and CDATA are NavigableString subclasses
            yield False, str(node)


def _render_inline(tag: Tag) -> Optional[str]:
    """Re-serialize a kept inline element with a safe attribute subset."""
    if tag.name == "br":
        return "<br>"

    src = tag.get("src")
    if not isinstance(src, str) or not src.lower().startswith(("http://", "https://")):
        return None

    attributes = []
    for name in IMG_ATTRIBUTES:
        value = tag.get(name)
        if isinstance(value, str) and value:
            attributes.append(f'{name}="{escape(value, quote=True)}"')
    return f"<img {' '.join(attributes)}>"


def _strip_edges(segments: list[Segment]) -> list[Segment]:
    """Trim whitespace at both ends of the text."""
    while segments and not segments[0][0] and not segments[0][1].strip():
        segments.pop(0)
    while segments and not segments[-1][0] and not segments[-1][1].strip():
        segments.pop()
    if segments and not segments[0][0]:
        segments[0] = (False, segments[0][1].lstrip())
    if segments and not segments[-1][0]:
        segments[-1] = (False, segments[-1][1].rstrip())
    return segments


def _truncate(segments: list[Segment], max_length: int) -> str:
    """Join segments, cutting text to fit ``max_length`` including the ellipsis.

    Markup segments are kept whole or dropped, never cut.
    """
    full = "".join(text for _, text in segments)
    if len(full) <= max_length:
        return full

    budget = max(max_length - len(ELLIPSIS), 0)
    parts: list[str] = []
    used = 0
    for is_markup, text in segments:
        room = budget - used
        if room <= 0:
            break
        if len(text) <= room:
            parts.append(text)
            used += len(text)
        elif is_markup:
            break
        else:
            parts.append(text[:room])
            break

    return "".join(parts).rstrip() + ELLIPSIS


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _parse_flag(value: Any) -> bool:
    """Eventful sends flags as "0"/"1"/"2" strings."""
    if isinstance(value, bool):
        return value
    try:
        return int(value) > 0
    except (TypeError, ValueError):
        return False


def _image_url(image: Any) -> Optional[str]:
    """Pick the medium image, falling back to the image's own url."""
    if not isinstance(image, dict):
        return None
    medium = image.get("medium")
    if isinstance(medium, dict) and medium.get("url"):
        return str(medium["url"])
    url = image.get("url")
    return str(url) if url else None
