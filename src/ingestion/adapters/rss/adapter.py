"""
RSS/Atom feed adapter.

Fetches the feed with conditional GET (ETag / Last-Modified), parses it
with feedparser and walks entries newest-first until it reaches the last
entry seen on the previous poll.
"""

import calendar
import logging
import re
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

import feedparser
from bs4 import BeautifulSoup

from src.ingestion.base_adapter import BaseAdapter, GetSecret, clean_text, stable_hash
from src.ingestion.errors import TransientSourceError
from src.ingestion.schemas import (
    Attachment,
    IngestItem,
    PollResult,
    TestResult,
    ValidationResult,
    make_attachment,
)

logger = logging.getLogger(__name__)

USER_AGENT = "ingest-engine/1.0 (RSS Reader)"
MAX_DESCRIPTION_CHARS = 1000
IMAGE_URL_PATTERN = re.compile(r"\.(jpg|jpeg|png|gif|webp|svg|avif)(\?|$)", re.IGNORECASE)

metadata = {
    "type": "rss",
    "name": "RSS Feed",
    "description": "Ingest items from RSS and Atom feeds",
    "version": "1.0.0",
    "config_fields": [
        {
            "key": "feed_url",
            "label": "Feed URL",
            "type": "string",
            "required": True,
            "placeholder": "https://example.com/feed.xml",
            "help_text": "The URL of the RSS or Atom feed",
        },
    ],
    "item_fields": [
        {"key": "category", "label": "Category", "type": "string"},
        {"key": "author", "label": "Author", "type": "string"},
        {"key": "has_image", "label": "Has Image", "type": "boolean"},
    ],
}


def _is_image_url(url: str) -> bool:
    return bool(IMAGE_URL_PATTERN.search(url))


def _entry_key(entry: dict[str, Any]) -> str | None:
    for field in ("id", "guid", "link"):
        value = entry.get(field)
        if value:
            return str(value)
    return None


def _entry_timestamp(entry: dict[str, Any]) -> datetime | None:
    for field in ("published_parsed", "updated_parsed", "created_parsed"):
        parsed = entry.get(field)
        if parsed:
            return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)
    return None


def _entry_html(entry: dict[str, Any]) -> str:
    if entry.get("content"):
        return entry["content"][0].get("value", "")
    return entry.get("summary", "")


def _html_to_text(html_content: str) -> str:
    if not html_content:
        return ""
    soup = BeautifulSoup(html_content, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return clean_text(soup.get_text(" "))


def extract_images(entry: dict[str, Any]) -> list[Attachment]:
    """Collect image URLs from enclosures, Media RSS and the first inline <img>."""
    urls: list[str] = []

    for enclosure in entry.get("enclosures", []):
        href = enclosure.get("href") or enclosure.get("url")
        if href and _is_image_url(href):
            urls.append(href)

    for media in entry.get("media_content", []):
        url = media.get("url")
        if url and _is_image_url(url):
            urls.append(url)

    html_content = _entry_html(entry)
    if html_content:
        img = BeautifulSoup(html_content, "html.parser").find("img", src=True)
        if img is not None:
            urls.append(img["src"])

    seen: set[str] = set()
    images = []
    for url in urls:
        if url not in seen:
            seen.add(url)
            images.append(make_attachment(url, "image"))
    return images


def build_description(entry: dict[str, Any]) -> str:
    parts = []
    text = _html_to_text(_entry_html(entry))
    if text:
        parts.append(text[:MAX_DESCRIPTION_CHARS])
    link = entry.get("link")
    if link:
        parts.append(f"\nSource: {link}")
    return "\n".join(parts) or "No description"


class RssAdapter(BaseAdapter):
    """
    RSS/Atom adapter.

    State:
        last_seen_id: item id of the newest entry from the previous poll
        last_seen_date: its publication time (ISO 8601)
        etag, last_modified: validators for conditional GET
    """

    type = "rss"

    def __init__(self, rate_limit: int = 30):
        super().__init__(rate_limit=rate_limit)

    def validate(self, source: Any) -> ValidationResult:
        feed_url = source.settings.get("feed_url")
        if not feed_url:
            return ValidationResult(valid=False, error="feed_url is required")
        parsed = urlparse(feed_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return ValidationResult(valid=False, error=f"Invalid feed_url: {feed_url}")
        return ValidationResult(valid=True)

    async def _fetch(
        self,
        feed_url: str,
        state: dict[str, Any] | None = None,
    ) -> tuple[Any, dict[str, str]] | None:
        """Fetch and parse the feed. Returns None on 304 Not Modified."""
        state = state or {}
        headers = {"User-Agent": USER_AGENT}
        if state.get("etag"):
            headers["If-None-Match"] = state["etag"]
        if state.get("last_modified"):
            headers["If-Modified-Since"] = state["last_modified"]

        await self._rate_limiter.acquire()
        async with self.http_client() as client:
            response = await client.get(feed_url, headers=headers)

        if response.status_code == 304:
            return None

        feed = feedparser.parse(response.text)
        if feed.bozo and not feed.entries:
            raise TransientSourceError(f"Feed parse error for {feed_url}: {feed.bozo_exception}")

        validators = {}
        if response.headers.get("etag"):
            validators["etag"] = response.headers["etag"]
        if response.headers.get("last-modified"):
            validators["last_modified"] = response.headers["last-modified"]
        return feed, validators

    def _to_item(self, entry: dict[str, Any], key: str) -> IngestItem:
        attachments = extract_images(entry)
        tags = entry.get("tags") or []
        category = tags[0].get("term", "") if tags else ""
        author = entry.get("author") or ""
        title = entry.get("title") or "Untitled"
        summary = _html_to_text(entry.get("summary", ""))

        return IngestItem(
            id=f"rss-{stable_hash(key)}",
            title=title,
            description=build_description(entry),
            hash=stable_hash(key + title + summary),
            author=author or None,
            timestamp=_entry_timestamp(entry) or datetime.now(timezone.utc),
            attachments=attachments,
            permalink=entry.get("link"),
            fields={
                "category": category,
                "author": author,
                "has_image": bool(attachments),
            },
        )

    async def poll(
        self,
        source: Any,
        state: dict[str, Any],
        get_secret: GetSecret,
    ) -> PollResult:
        feed_url = self.required_setting(source, "feed_url")
        fetched = await self._fetch(feed_url, state)
        if fetched is None:
            logger.debug(f"{source.id}: feed not modified")
            return PollResult(items=[], state=state)

        feed, validators = fetched
        last_seen_id = state.get("last_seen_id")
        last_seen_date = state.get("last_seen_date")
        cutoff = datetime.fromisoformat(last_seen_date) if last_seen_date else None

        items: list[IngestItem] = []
        newest_id = None
        newest_date = None

        for entry in feed.entries:
            key = _entry_key(entry)
            if key is None:
                continue
            item_id = f"rss-{stable_hash(key)}"
            if item_id == last_seen_id:
                break

            published = _entry_timestamp(entry)
            if cutoff is not None and published is not None and published <= cutoff:
                continue

            items.append(self._to_item(entry, key))
            if newest_id is None:
                newest_id = item_id
                newest_date = (published or datetime.now(timezone.utc)).isoformat()

        new_state = {
            **state,
            **validators,
            "last_seen_id": newest_id or last_seen_id,
            "last_seen_date": newest_date or last_seen_date,
        }
        logger.debug(f"{source.id}: {len(items)} new entries from {feed_url}")
        return PollResult(items=items, state=new_state)

    async def test(self, source: Any, get_secret: GetSecret) -> TestResult:
        validation = self.validate(source)
        if not validation.valid:
            return TestResult(ok=False, message=validation.error or "invalid config")

        feed_url = source.settings["feed_url"]
        try:
            fetched = await self._fetch(feed_url)
        except TransientSourceError as e:
            return TestResult(ok=False, message=f"Feed error: {e}")

        if fetched is None:
            return TestResult(ok=True, message=f"Feed {feed_url} reachable (not modified)")
        feed, _ = fetched
        samples = [
            self._to_item(entry, key)
            for entry in feed.entries[:3]
            if (key := _entry_key(entry)) is not None
        ]
        title = feed.feed.get("title") or feed_url
        return TestResult(
            ok=True,
            message=f'Feed "{title}" has {len(feed.entries)} items',
            sample_items=samples,
        )
