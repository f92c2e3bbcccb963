"""
Upstream sources.

- eventful: search and taxonomy endpoints of the Eventful API
- links: URL extraction from raw descriptions
"""

from .eventful import EventfulClient, SearchPage, UpstreamError, format_date_window
from .links import extract_links

__all__ = [
    "EventfulClient",
    "SearchPage",
    "UpstreamError",
    "format_date_window",
    "extract_links",
]
