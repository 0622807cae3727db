"""Tests for feed composition and the feed service."""

import random
from datetime import timedelta

import pytest

from calmfeed.cache import MemoryResponseCache
from calmfeed.config import FeedSettings
from calmfeed.feed import FeedGenerator, FeedService, FilterEngine, build_rules
from calmfeed.feed.filtering import KeywordFilterRule
from calmfeed.feed.service import feed_item_from_dict, feed_item_to_dict
from calmfeed.models import (
    FeedItem, FilterKeyword, Interaction, InteractionType, Preferences,
)

from conftest import NOW, make_item, make_source


def _generator(seed: int = 1, **settings) -> FeedGenerator:
    return FeedGenerator(
        settings=FeedSettings(**settings),
        rng=random.Random(seed),
        clock=lambda: NOW,
    )


def _interaction(content_id: str, type_: InteractionType, user_id: str = "user-1"):
    return Interaction(id="", user_id=user_id, content_id=content_id, type=type_)


def _with_ids(items):
    for item in items:
        item.id = f"id-{item.original_id}"
    return items


class TestFeedGenerator:
    def test_empty_items(self):
        assert _generator().generate([make_source()], [], None, []) == []

    @pytest.mark.parametrize("type_", [
        InteractionType.WATCHED,
        InteractionType.DISMISSED,
        InteractionType.SAVED,
        InteractionType.BLOCKED,
    ])
    def test_excluding_interactions(self, type_):
        items = _with_ids([make_item(f"v{i}") for i in range(5)])
        interactions = [_interaction("id-v2", type_)]

        for seed in range(10):
            feed = _generator(seed).generate([make_source()], items, None, interactions)
            assert "id-v2" not in {f.content.id for f in feed}
            assert len(feed) == 4

    def test_not_now_is_not_hard_excluded(self):
        items = _with_ids([make_item("only")])
        interactions = [_interaction("id-only", InteractionType.NOT_NOW)]

        feed = _generator().generate([make_source()], items, None, interactions)

        assert [f.content.id for f in feed] == ["id-only"]
        assert feed[0].is_returning

    def test_not_now_reintroduced_as_fraction_of_feed(self):
        items = _with_ids([make_item(f"v{i}") for i in range(10)])
        deferred = _with_ids([make_item(f"later{i}") for i in range(5)])
        interactions = [_interaction(d.id, InteractionType.NOT_NOW) for d in deferred]

        feed = _generator(not_now_fraction=0.2).generate(
            [make_source()], items + deferred, None, interactions
        )

        returning = [f for f in feed if f.is_returning]
        # floor(10 * 0.2)
        assert len(returning) == 2
        assert {f.content.id for f in returning} <= {d.id for d in deferred}
        assert len(feed) == 12

    def test_not_now_selection_varies_between_calls(self):
        items = _with_ids([make_item(f"v{i}") for i in range(10)])
        deferred = _with_ids([make_item(f"later{i}") for i in range(10)])
        interactions = [_interaction(d.id, InteractionType.NOT_NOW) for d in deferred]

        generator = FeedGenerator(
            settings=FeedSettings(not_now_fraction=0.1),
            rng=random.Random(3),
            clock=lambda: NOW,
        )
        seen = set()
        for _ in range(20):
            feed = generator.generate([make_source()], items + deferred, None, interactions)
            seen.update(f.content.id for f in feed if f.is_returning)
        assert len(seen) > 1

    def test_not_now_plus_watched_is_excluded(self):
        items = _with_ids([make_item("v1")])
        interactions = [
            _interaction("id-v1", InteractionType.NOT_NOW),
            _interaction("id-v1", InteractionType.WATCHED),
        ]
        assert _generator().generate([make_source()], items, None, interactions) == []

    def test_filters_skip_always_safe_sources(self):
        items = _with_ids([
            make_item("a", source_id="chan-a", title="War stories"),
            make_item("b", source_id="chan-b", title="War stories"),
        ])
        sources = [
            make_source("chan-a", always_safe=True),
            make_source("chan-b"),
        ]
        engine = FilterEngine([KeywordFilterRule("war")])

        feed = _generator().generate(sources, items, None, [], engine)

        assert [f.content.original_id for f in feed] == ["a"]

    def test_positions_names_and_flags(self):
        items = _with_ids([
            make_item("fresh", source_id="chan-a", age=timedelta(days=1)),
            make_item("old", source_id="chan-orphan", age=timedelta(days=30)),
        ])
        sources = [make_source("chan-a", display_name="Alpha")]
        prefs = Preferences(user_id="user-1", backlog_ratio=0.5)

        feed = _generator().generate(sources, items, prefs, [])

        assert [f.position for f in feed] == [0, 1]
        by_id = {f.content.original_id: f for f in feed}
        assert by_id["fresh"].source_display_name == "Alpha"
        assert by_id["fresh"].is_new
        assert by_id["old"].source_display_name == "Unknown"
        assert not by_id["old"].is_new

    def test_mix_respects_backlog_ratio(self):
        recent = [make_item(f"r{i}", age=timedelta(days=1)) for i in range(10)]
        backlog = [make_item(f"b{i}", age=timedelta(days=90)) for i in range(10)]
        prefs = Preferences(user_id="user-1", backlog_ratio=0.3)

        feed = _generator(max_items_in_feed=10).generate(
            [make_source()], _with_ids(recent + backlog), prefs, []
        )

        assert len(feed) == 10
        assert sum(1 for f in feed if not f.is_new) == 3

    def test_malformed_preferences_are_clamped(self):
        items = _with_ids([make_item(f"v{i}") for i in range(4)])
        prefs = Preferences(
            user_id="user-1", backlog_ratio=-2.0, max_consecutive_from_source=0
        )
        feed = _generator().generate([make_source()], items, prefs, [])
        assert len(feed) == 4

    def test_end_to_end_filter_exclusion_and_diversity(self):
        items = _with_ids([
            make_item("e1", source_id="chan-a", title="Election results are in"),
            make_item("w1", source_id="chan-b", title="Ukraine War Update"),
            make_item("d1", source_id="chan-b", title="Cooking pasta"),
            make_item("s1", source_id="chan-a", title="Star Wars Movie Review"),
            make_item("p1", source_id="chan-a", title="Woodworking basics"),
            make_item("p2", source_id="chan-b", title="Trail running"),
        ])
        interactions = [
            _interaction("id-e1", InteractionType.WATCHED),
            _interaction("id-d1", InteractionType.DISMISSED),
        ]
        keywords = [
            FilterKeyword(id="1", user_id="user-1", keyword="election"),
            FilterKeyword(id="2", user_id="user-1", keyword="war"),
        ]
        prefs = Preferences(user_id="user-1", max_consecutive_from_source=2)
        sources = [make_source("chan-a"), make_source("chan-b")]
        engine = FilterEngine(build_rules(keywords, prefs))

        for seed in range(20):
            feed = _generator(seed).generate(sources, items, prefs, interactions, engine)

            assert sorted(f.content.original_id for f in feed) == ["p1", "p2", "s1"]
            keys = [f.content.source_key for f in feed]
            for i in range(2, len(keys)):
                assert not (keys[i] == keys[i - 1] == keys[i - 2])


class TestFeedItemSerialization:
    def test_round_trip_keeps_aware_datetimes(self):
        item = make_item("v1", item_id="id-v1", description="desc", duration=None)
        feed_item = FeedItem(
            content=item, position=3, source_display_name="A", is_new=True
        )
        restored = feed_item_from_dict(feed_item_to_dict(feed_item))
        assert restored == feed_item
        assert restored.content.published_at.tzinfo is not None


class TestFeedService:
    @pytest.fixture
    def seeded(self, store):
        store.add_source(make_source("chan-a", user_id="user-1"))
        store.add_source(make_source("chan-b", user_id="user-1", is_muted=True))
        store.add_source(make_source("chan-c", user_id="user-2"))
        store.insert_items([
            make_item("a1", "chan-a", title="Ukraine War Update"),
            make_item("a2", "chan-a"),
            make_item("b1", "chan-b"),
            make_item("c1", "chan-c"),
        ])
        store.add_filter_keyword(FilterKeyword(id="", user_id="user-1", keyword="war"))
        return store

    def _service(self, store, cache=None):
        return FeedService(
            store,
            cache=cache,
            generator=FeedGenerator(rng=random.Random(0), clock=lambda: NOW),
        )

    def test_feed_uses_only_unmuted_own_sources_and_filters(self, seeded):
        feed = self._service(seeded).get_user_feed("user-1", use_cache=False)
        assert [f.content.original_id for f in feed] == ["a2"]

    def test_user_without_sources_gets_empty_feed(self, seeded):
        assert self._service(seeded).get_user_feed("nobody") == []

    def test_missing_preferences_fall_back_to_defaults(self, seeded):
        assert seeded.get_preferences("user-2") is None
        feed = self._service(seeded).get_user_feed("user-2")
        assert [f.content.original_id for f in feed] == ["c1"]

    def test_feed_is_cached_until_refreshed(self, seeded):
        cache = MemoryResponseCache()
        service = self._service(seeded, cache)

        first = service.get_user_feed("user-1")
        seeded.insert_items([make_item("a3", "chan-a")])

        cached = service.get_user_feed("user-1")
        assert [f.content.id for f in cached] == [f.content.id for f in first]

        service.refresh_feed("user-1")
        fresh = service.get_user_feed("user-1")
        assert {f.content.original_id for f in fresh} == {"a2", "a3"}

    def test_feed_capped_at_max_items(self, store):
        store.add_source(make_source("chan-a"))
        store.insert_items([make_item(f"v{i}") for i in range(30)])
        service = FeedService(
            store,
            settings=FeedSettings(max_items_in_feed=10),
            generator=FeedGenerator(
                settings=FeedSettings(max_items_in_feed=10),
                rng=random.Random(0),
                clock=lambda: NOW,
            ),
        )
        assert len(service.get_user_feed("user-1")) == 10
