"""
Fetch descriptive book fields from Open Library.

Lookups are by ISBN. The HTTP call is blocking (requests) and runs in a
worker thread so callers can await it.
"""

import asyncio
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import requests

from schemas import BookMetadata

logger = logging.getLogger("library.metadata")

OPEN_LIBRARY_API = "https://openlibrary.org"
DATE_FORMATS = ("%Y-%m-%d", "%B %d, %Y", "%b %d, %Y", "%d %B %Y", "%B %Y", "%Y")


def parse_publish_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value.strip(), fmt).date()
        except ValueError:
            continue
    return None


def _first_name(entries: List[Any]) -> Optional[str]:
    for entry in entries or []:
        if isinstance(entry, dict):
            entry = entry.get("name")
        if isinstance(entry, str) and entry.strip():
            return entry.strip()
    return None


def _description(raw: Any) -> Optional[str]:
    # Open Library returns either a string or {"type": ..., "value": ...}
    if isinstance(raw, dict):
        raw = raw.get("value")
    return raw.strip() if isinstance(raw, str) and raw.strip() else None


def _language(entries: List[Any]) -> Optional[str]:
    for entry in entries or []:
        key = entry.get("key") if isinstance(entry, dict) else entry
        if isinstance(key, str) and key:
            return key.rstrip("/").split("/")[-1]
    return None


def parse_edition(edition: Dict[str, Any]) -> BookMetadata:
    """Map an Open Library edition record onto catalog fields."""
    return BookMetadata(
        title=edition.get("title"),
        author=_first_name([edition.get("by_statement")]),
        publisher=_first_name(edition.get("publishers", [])),
        publish_date=parse_publish_date(edition.get("publish_date")),
        page_count=edition.get("number_of_pages"),
        genre=_first_name(edition.get("subjects", [])),
        language=_language(edition.get("languages", [])),
        description=_description(edition.get("description")),
    )


class OpenLibraryLookup:
    def __init__(self, base_url: str = OPEN_LIBRARY_API, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def fetch_sync(self, identifier: str) -> Optional[BookMetadata]:
        url = f"{self.base_url}/isbn/{identifier}.json"
        try:
            response = requests.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Metadata lookup failed | identifier=%s error=%s", identifier, exc)
            return None
        if response.status_code != 200:
            logger.info("No metadata | identifier=%s status=%s", identifier, response.status_code)
            return None
        try:
            return parse_edition(response.json())
        except ValueError as exc:
            logger.warning("Unreadable metadata | identifier=%s error=%s", identifier, exc)
            return None

    async def fetch(self, identifier: str) -> Optional[BookMetadata]:
        return await asyncio.to_thread(self.fetch_sync, identifier)
