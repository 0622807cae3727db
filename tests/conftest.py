"""Shared fixtures: temporary stores, factories and a scripted adapter."""

import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from calmfeed.models import ContentItem, ContentSource, SourceType
from calmfeed.sources.base import (
    BacklogPage, ContentAdapter, SourceMetadata, SourceValidation,
)
from calmfeed.store import SQLiteStore, FileStore


NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def sqlite_store():
    """Create a temporary SQLite store."""
    with tempfile.TemporaryDirectory() as tmpdir:
        store = SQLiteStore(f"{tmpdir}/test.db")
        yield store
        store.close()


@pytest.fixture
def file_store():
    """Create a temporary file store."""
    with tempfile.TemporaryDirectory() as tmpdir:
        store = FileStore(tmpdir)
        yield store
        store.close()


@pytest.fixture(params=["sqlite", "file"])
def store(request, sqlite_store, file_store):
    """Parameterized fixture that runs tests against both stores."""
    if request.param == "sqlite":
        return sqlite_store
    return file_store


def make_item(
    original_id: str,
    source_id: str = "chan-a",
    source_type: SourceType = SourceType.YOUTUBE,
    title: str | None = None,
    age: timedelta = timedelta(days=1),
    duration: int | None = 600,
    description: str | None = None,
    item_id: str = "",
    now: datetime = NOW,
) -> ContentItem:
    return ContentItem(
        id=item_id,
        source_type=source_type,
        source_id=source_id,
        original_id=original_id,
        title=title or f"Video {original_id}",
        description=description,
        url=f"https://example.com/{original_id}",
        duration=duration,
        published_at=now - age,
        fetched_at=now,
        last_seen_in_feed=now,
    )


def make_source(
    source_id: str = "chan-a",
    user_id: str = "user-1",
    source_type: SourceType = SourceType.YOUTUBE,
    display_name: str | None = None,
    **kwargs,
) -> ContentSource:
    return ContentSource(
        id=kwargs.pop("id", ""),
        user_id=user_id,
        source_type=source_type,
        source_id=source_id,
        display_name=display_name or f"Channel {source_id}",
        added_at=kwargs.pop("added_at", NOW - timedelta(days=30)),
        **kwargs,
    )


class FakeAdapter(ContentAdapter):
    """In-memory adapter with scripted responses.

    `recent` maps source id to the items fetch_recent returns. `backlog`
    maps source id to the full history, served in pages whose cursor is
    the decimal offset. `errors` maps source id to an exception to raise.
    """

    def __init__(self, source_type: SourceType = SourceType.YOUTUBE):
        self._source_type = source_type
        self.recent: dict[str, list[ContentItem]] = {}
        self.backlog: dict[str, list[ContentItem]] = {}
        self.errors: dict[str, Exception] = {}
        self.valid: dict[str, SourceValidation] = {}
        self.backlog_calls: list[tuple[str, int, str | None]] = []
        self.recent_calls: list[str] = []

    @property
    def source_type(self) -> SourceType:
        return self._source_type

    def _copy(self, items: list[ContentItem]) -> list[ContentItem]:
        # Adapters hand out fresh objects with no internal id
        return [
            ContentItem(
                source_type=i.source_type,
                source_id=i.source_id,
                original_id=i.original_id,
                title=i.title,
                url=i.url,
                published_at=i.published_at,
                description=i.description,
                duration=i.duration,
            )
            for i in items
        ]

    def fetch_recent(self, source_id: str, days: int = 7) -> list[ContentItem]:
        self.recent_calls.append(source_id)
        if source_id in self.errors:
            raise self.errors[source_id]
        return self._copy(self.recent.get(source_id, []))

    def fetch_backlog(
        self, source_id: str, limit: int = 50, page_token: str | None = None
    ) -> BacklogPage:
        self.backlog_calls.append((source_id, limit, page_token))
        if source_id in self.errors:
            raise self.errors[source_id]
        history = self.backlog.get(source_id, [])
        offset = int(page_token) if page_token else 0
        page = history[offset:offset + limit]
        end = offset + len(page)
        has_more = bool(page) and end < len(history)
        return BacklogPage(
            items=self._copy(page),
            next_page_token=str(end) if has_more else None,
            has_more=has_more,
        )

    def validate_source(self, identifier: str) -> SourceValidation:
        return self.valid.get(
            identifier,
            SourceValidation(is_valid=False, error_message="Channel not found"),
        )

    def get_source_metadata(self, source_id: str) -> SourceMetadata:
        return SourceMetadata(display_name=source_id)


@pytest.fixture
def fake_adapter():
    return FakeAdapter()
