"""RSS/Atom feed adapter.

The source ID is the feed URL. Feeds carry no paging, so the backlog cursor
is a decimal offset into the feed's entry list.
"""

import hashlib
import html
import logging
import re
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable
from urllib.parse import urlparse

import feedparser
import httpx

from calmfeed.errors import AdapterNotFoundError, AdapterTransportError
from calmfeed.models import ContentItem, SourceType, utcnow
from calmfeed.sources.base import (
    ContentAdapter, BacklogPage, SourceValidation, SourceMetadata,
)

logger = logging.getLogger(__name__)

TAG_PATTERN = re.compile(r"<[^>]+>")
IMG_SRC_PATTERN = re.compile(r'<img[^>]+src=["\']([^"\']+)["\']')
DATE_FIELDS = ("published", "updated", "created")


def _parse_date(entry: dict[str, Any]) -> datetime:
    """Entry timestamp as aware UTC; fetch time if the feed gives none."""
    # feedparser normalizes to UTC struct_time in the *_parsed fields
    for name in DATE_FIELDS:
        parsed = entry.get(f"{name}_parsed")
        if parsed:
            try:
                return datetime(*parsed[:6], tzinfo=timezone.utc)
            except (TypeError, ValueError):
                continue

    for name in DATE_FIELDS:
        raw = entry.get(name)
        if not raw:
            continue
        try:
            value = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            continue
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    return utcnow()


def _parse_itunes_duration(value: str | None) -> int | None:
    """Parse podcast durations: "3600", "59:30" or "1:02:03"."""
    if not value:
        return None
    try:
        parts = [int(p) for p in str(value).strip().split(":")]
    except ValueError:
        return None
    if len(parts) > 3:
        return None
    seconds = 0
    for part in parts:
        seconds = seconds * 60 + part
    return seconds


def _plain_text(markup: str) -> str:
    """Strip tags, decode entities and collapse whitespace."""
    text = html.unescape(TAG_PATTERN.sub("", markup))
    return " ".join(text.split())


def _entry_id(entry: dict[str, Any], feed_url: str) -> str:
    """Stable per-feed ID: the guid, else the link, else a title hash."""
    for key in ("id", "link"):
        if entry.get(key):
            return entry[key]
    seed = f"{feed_url}:{entry.get('title', '')}:{entry.get('published', '')}"
    return hashlib.sha256(seed.encode()).hexdigest()[:16]


class RSSAdapter(ContentAdapter):
    """Adapter for RSS and Atom feeds."""

    def __init__(
        self,
        client: httpx.Client | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._client = client or httpx.Client(timeout=30.0, follow_redirects=True)
        self._clock = clock

    @property
    def source_type(self) -> SourceType:
        return SourceType.RSS

    def _fetch_feed(self, url: str) -> tuple[Any, str]:
        """Fetch and parse a feed. Returns (parsed feed, final URL)."""
        try:
            response = self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (404, 410):
                raise AdapterNotFoundError(f"Feed not found: {url}", url) from e
            raise AdapterTransportError(
                f"Failed to fetch feed {url}: HTTP {e.response.status_code}", url
            ) from e
        except httpx.HTTPError as e:
            raise AdapterTransportError(f"Failed to fetch feed {url}: {e}", url) from e

        feed = feedparser.parse(response.content)
        if feed.bozo and not feed.entries and not feed.feed:
            raise AdapterTransportError(f"Invalid feed {url}: {feed.bozo_exception}", url)
        return feed, str(response.url)

    @staticmethod
    def _entry_body(entry: Any) -> str:
        """Richest HTML body the entry carries: content, then summary."""
        if entry.get("content"):
            return entry.content[0].get("value", "")
        return entry.get("summary") or entry.get("description") or ""

    @staticmethod
    def _entry_thumbnail(entry: Any, body: str) -> str | None:
        media = entry.get("media_thumbnail") or []
        if media and media[0].get("url"):
            return media[0]["url"]
        found = IMG_SRC_PATTERN.search(body) if body else None
        return found.group(1) if found else None

    def _to_content_item(self, entry: Any, feed_url: str) -> ContentItem:
        body = self._entry_body(entry)
        return ContentItem(
            source_type=SourceType.RSS,
            source_id=feed_url,
            original_id=_entry_id(entry, feed_url),
            title=_plain_text(entry.get("title", "Untitled")) or "Untitled",
            description=_plain_text(body) or None,
            thumbnail_url=self._entry_thumbnail(entry, body),
            url=entry.get("link", feed_url),
            duration=_parse_itunes_duration(entry.get("itunes_duration")),
            published_at=_parse_date(entry),
        )

    def fetch_recent(self, source_id: str, days: int = 7) -> list[ContentItem]:
        feed, _ = self._fetch_feed(source_id)
        cutoff = self._clock() - timedelta(days=days)

        items = [self._to_content_item(e, source_id) for e in feed.entries]
        recent = [i for i in items if i.published_at >= cutoff]
        logger.info(f"Fetched {len(recent)} recent entries from {source_id}")
        return recent

    def fetch_backlog(
        self,
        source_id: str,
        limit: int = 50,
        page_token: str | None = None,
    ) -> BacklogPage:
        offset = 0
        if page_token:
            try:
                offset = max(int(page_token), 0)
            except ValueError:
                logger.warning(f"Ignoring malformed RSS cursor {page_token!r} for {source_id}")

        feed, _ = self._fetch_feed(source_id)
        entries = feed.entries[offset:offset + limit]
        items = [self._to_content_item(e, source_id) for e in entries]

        end = offset + len(items)
        has_more = bool(items) and end < len(feed.entries)
        return BacklogPage(
            items=items,
            next_page_token=str(end) if has_more else None,
            has_more=has_more,
        )

    def validate_source(self, identifier: str) -> SourceValidation:
        url = identifier.strip()
        if urlparse(url).scheme not in ("http", "https"):
            return SourceValidation(is_valid=False, error_message="Feed URL must be http(s)")

        try:
            feed, final_url = self._fetch_feed(url)
        except AdapterNotFoundError:
            return SourceValidation(is_valid=False, error_message="Feed not found")
        except AdapterTransportError as e:
            return SourceValidation(is_valid=False, error_message=str(e))

        if not feed.entries and not feed.feed.get("title"):
            return SourceValidation(is_valid=False, error_message="No feed found at URL")

        return SourceValidation(
            is_valid=True,
            display_name=_plain_text(feed.feed.get("title", urlparse(final_url).netloc)),
            avatar_url=self._feed_image(feed.feed),
            resolved_id=final_url,
        )

    def get_source_metadata(self, source_id: str) -> SourceMetadata:
        feed, final_url = self._fetch_feed(source_id)
        info = feed.feed
        description = info.get("description", info.get("subtitle", ""))
        return SourceMetadata(
            display_name=_plain_text(info.get("title", urlparse(final_url).netloc)),
            description=_plain_text(description) if description else None,
            avatar_url=self._feed_image(info),
            total_content=len(feed.entries),
        )

    @staticmethod
    def _feed_image(info: Any) -> str | None:
        if info.get("image"):
            return info.image.get("href") or info.image.get("url")
        return info.get("icon")

    def close(self) -> None:
        self._client.close()
