"""Tests for source management and interaction recording."""

import random

import pytest

from calmfeed.cache import MemoryResponseCache
from calmfeed.errors import (
    AdapterTransportError, ContentNotFoundError, SourceNotFoundError, ValidationError,
)
from calmfeed.feed import FeedGenerator, FeedService
from calmfeed.interactions import InteractionService, title_keywords
from calmfeed.models import FetchStatus, InteractionType, SourceType
from calmfeed.sources.base import SourceValidation
from calmfeed.sources.registry import AdapterRegistry
from calmfeed.subscriptions import SourceService, parse_source_type

from conftest import NOW, FakeAdapter, make_item, make_source


CHANNEL_ID = "UCBJycsmduvYEL83R_U4JriQ"


@pytest.fixture
def source_service(store, fake_adapter):
    fake_adapter.valid["@techreviews"] = SourceValidation(
        is_valid=True,
        display_name="Tech Reviews",
        avatar_url="https://img.example.com/a.jpg",
        resolved_id=CHANNEL_ID,
    )
    return SourceService(store, AdapterRegistry([fake_adapter]))


class TestParseSourceType:
    @pytest.mark.parametrize("value", ["youtube", "YouTube", " YOUTUBE ", SourceType.YOUTUBE])
    def test_accepts(self, value):
        assert parse_source_type(value) == SourceType.YOUTUBE

    def test_rejects(self):
        with pytest.raises(ValidationError, match="Unsupported source type"):
            parse_source_type("myspace")


class TestSourceService:
    def test_add_uses_resolved_id(self, source_service, store):
        source = source_service.add_source("user-1", "youtube", "@techreviews")

        assert source.id
        assert source.source_id == CHANNEL_ID
        assert source.display_name == "Tech Reviews"
        assert source.avatar_url == "https://img.example.com/a.jpg"
        assert source.last_fetch_status == FetchStatus.PENDING
        assert store.get_source_by_key("user-1", SourceType.YOUTUBE, CHANNEL_ID) is not None

    def test_duplicate_rejected(self, source_service):
        source_service.add_source("user-1", "youtube", "@techreviews")
        with pytest.raises(ValidationError, match="Source already added"):
            source_service.add_source("user-1", SourceType.YOUTUBE, "@techreviews")

    def test_same_source_for_another_user(self, source_service):
        source_service.add_source("user-1", "youtube", "@techreviews")
        other = source_service.add_source("user-2", "youtube", "@techreviews")
        assert other.user_id == "user-2"

    def test_invalid_identifier(self, source_service, store):
        with pytest.raises(ValidationError, match="Channel not found"):
            source_service.add_source("user-1", "youtube", "@nobody")
        assert store.list_sources() == []

    def test_adapter_error_becomes_validation_error(self, store):
        class FailingAdapter(FakeAdapter):
            def validate_source(self, identifier):
                raise AdapterTransportError("connection reset")

        service = SourceService(store, AdapterRegistry([FailingAdapter()]))
        with pytest.raises(ValidationError, match="connection reset"):
            service.add_source("user-1", "youtube", "@techreviews")

    def test_type_without_adapter(self, source_service):
        with pytest.raises(ValidationError, match="Unsupported source type: RSS"):
            source_service.add_source("user-1", "rss", "https://example.com/feed")

    def test_foreign_source_is_not_found(self, source_service):
        source = source_service.add_source("user-1", "youtube", "@techreviews")
        with pytest.raises(SourceNotFoundError):
            source_service.get_source("user-2", source.id)
        with pytest.raises(SourceNotFoundError):
            source_service.remove_source("user-2", source.id)

    def test_mute_and_safe(self, source_service, store):
        source = source_service.add_source("user-1", "youtube", "@techreviews")

        muted = source_service.set_muted("user-1", source.id, True)
        assert muted.is_muted
        assert store.get_source(source.id).is_muted

        safe = source_service.set_always_safe("user-1", source.id, True)
        assert safe.always_safe
        assert safe.is_muted

        assert [s.id for s in source_service.list_sources("user-1")] == [source.id]

    def test_remove(self, source_service, store):
        source = source_service.add_source("user-1", "youtube", "@techreviews")
        source_service.remove_source("user-1", source.id)
        assert store.get_source(source.id) is None
        with pytest.raises(SourceNotFoundError):
            source_service.get_source("user-1", source.id)


class TestTitleKeywords:
    @pytest.mark.parametrize("title,expected", [
        ("Ukraine War Update", ["ukraine", "update"]),
        ("The Election Results: what happened?", ["election", "results", "happened"]),
        ("News news NEWS", ["news"]),
        ("a an the of", []),
        ("", []),
    ])
    def test_extraction(self, title, expected):
        assert title_keywords(title) == expected

    def test_capped(self):
        title = "alpha bravo charlie delta echoes foxtrot golfing"
        assert title_keywords(title) == ["alpha", "bravo", "charlie", "delta", "echoes"]


@pytest.fixture
def seeded_item(store):
    store.add_source(make_source("chan-a"))
    store.insert_items([make_item("v1", title="Election Results Tonight")])
    return list(store.find_items_by_keys([(SourceType.YOUTUBE, "v1")]).values())[0]


@pytest.fixture
def feed_service(store):
    return FeedService(
        store,
        cache=MemoryResponseCache(),
        generator=FeedGenerator(rng=random.Random(0), clock=lambda: NOW),
    )


class TestInteractionService:
    def test_watch(self, store, seeded_item):
        service = InteractionService(store)
        interaction = service.record_watch("user-1", seeded_item.id, 300, 1.7)

        assert interaction.type == InteractionType.WATCHED
        assert interaction.completion_rate == 1.0
        assert interaction.watch_duration == 300
        assert interaction.timestamp.tzinfo is not None

    def test_details_are_stored(self, store, seeded_item):
        service = InteractionService(store)
        service.save_content("user-1", seeded_item.id, collection="later")
        service.dismiss_content("user-1", seeded_item.id, reason="not interested")

        dismissed = service.get_history("user-1", type=InteractionType.DISMISSED)[0]
        saved = service.get_history("user-1", type=InteractionType.SAVED)[0]
        assert dismissed.dismiss_reason == "not interested"
        assert saved.collection == "later"

    def test_history_by_type(self, store, seeded_item):
        service = InteractionService(store)
        service.not_now("user-1", seeded_item.id)
        service.record_watch("user-1", seeded_item.id)

        history = service.get_history("user-1", type=InteractionType.NOT_NOW)
        assert [i.type for i in history] == [InteractionType.NOT_NOW]

    def test_unknown_content(self, store):
        service = InteractionService(store)
        with pytest.raises(ContentNotFoundError):
            service.record_watch("user-1", "missing")
        assert service.get_history("user-1") == []

    def test_block_without_keywords(self, store, seeded_item):
        service = InteractionService(store)
        assert service.block_content("user-1", seeded_item.id) == []
        assert store.list_filter_keywords("user-1") == []
        assert service.get_history("user-1")[0].type == InteractionType.BLOCKED

    def test_block_with_keywords(self, store, seeded_item):
        service = InteractionService(store)
        added = service.block_content("user-1", seeded_item.id, extract_keywords=True)

        assert added == ["election", "results", "tonight"]
        keywords = sorted(k.keyword for k in store.list_filter_keywords("user-1"))
        assert keywords == ["election", "results", "tonight"]

    def test_interactions_refresh_cached_feed(self, store, seeded_item, feed_service):
        service = InteractionService(store, feed_service)

        feed = feed_service.get_user_feed("user-1")
        assert [f.content.id for f in feed] == [seeded_item.id]

        service.dismiss_content("user-1", seeded_item.id)

        assert feed_service.get_user_feed("user-1") == []

    def test_blocked_keywords_filter_future_feeds(self, store, seeded_item, feed_service):
        store.insert_items([make_item("v2", title="Election night recap")])
        service = InteractionService(store, feed_service)

        service.block_content("user-1", seeded_item.id, extract_keywords=True)

        assert feed_service.get_user_feed("user-1") == []
