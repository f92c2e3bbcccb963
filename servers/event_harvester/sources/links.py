"""
Link extraction from raw event descriptions.

Upstream descriptions are untrusted HTML or plain text. We pull out every
URL-like substring (both ``href`` targets and bare URLs in the text) so the
store can show ticket and venue links separately from the sanitized text.
"""

import html
import re
from typing import Optional
from urllib.parse import urlsplit, urlunsplit


# Scheme URLs and bare "www." hosts, stopping at whitespace, quotes and tag brackets
URL_PATTERN = re.compile(
    r"""(?:https?://|www\.)[^\s<>"'`]+""",
    re.IGNORECASE,
)

# Characters that end a sentence rather than a URL
TRAILING_PUNCTUATION = ".,;:!?*"

BRACKETS = {")": "(", "]": "[", "}": "{"}


def extract_links(text: Optional[str]) -> list[str]:
    """
    Extract URLs from a raw description.

    Args:
        text: Raw (unsanitized) description, may contain HTML

    Returns:
        Unique normalized URLs in order of first appearance
        (empty list when text is empty)
    """
    if not text:
        return []

    links: list[str] = []
    seen: set[str] = set()

    for match in URL_PATTERN.finditer(html.unescape(text)):
        url = normalize_link(_trim(match.group()))
        if url and url not in seen:
            seen.add(url)
            links.append(url)

    return links


def normalize_link(candidate: str) -> Optional[str]:
    """
    Normalize one URL candidate.

    - Adds ``http://`` to bare ``www.`` hosts
    - Lowercases scheme and host
    - Drops a lone trailing slash on the path

    Returns:
        Normalized URL, or None when the candidate has no usable host
    """
    if not candidate:
        return None

    if candidate.lower().startswith("www."):
        candidate = f"http://{candidate}"

    try:
        parts = urlsplit(candidate)
        hostname = parts.hostname
        port = parts.port
    except ValueError:
        return None

    if parts.scheme.lower() not in ("http", "https") or not hostname:
        return None
    if "." not in hostname:
        return None

    netloc = hostname.lower()
    if port:
        netloc = f"{netloc}:{port}"
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    path = parts.path
    if path == "/":
        path = ""

    return urlunsplit((parts.scheme.lower(), netloc, path, parts.query, parts.fragment))


def _trim(url: str) -> str:
    """Strip sentence punctuation and unbalanced closing brackets."""
    while url:
        last = url[-1]
        if last in TRAILING_PUNCTUATION:
            url = url[:-1]
        elif last in BRACKETS and url.count(last) > url.count(BRACKETS[last]):
            url = url[:-1]
        else:
            break
    return url
