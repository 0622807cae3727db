"""Tests for the scheduled backlog top-up."""

import random
from datetime import timedelta

import pytest

from calmfeed.backlog import BacklogScheduler
from calmfeed.config import IngestionSettings
from calmfeed.errors import AdapterTransportError
from calmfeed.ingestion import IngestionOrchestrator
from calmfeed.models import FetchStatus, SourceType
from calmfeed.sources.registry import AdapterRegistry

from conftest import NOW, FakeAdapter, make_item, make_source


class Clock:
    def __init__(self):
        self.now = NOW

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def settings():
    return IngestionSettings(daily_backlog_limit=2, backlog_batch_size=10)


@pytest.fixture
def scheduler(store, fake_adapter, settings, clock):
    orchestrator = IngestionOrchestrator(
        store,
        AdapterRegistry([fake_adapter]),
        settings,
        sleep=lambda seconds: None,
        rng=random.Random(0),
        clock=clock,
    )
    return BacklogScheduler(orchestrator, settings, clock=clock)


def _history(source_id, n):
    return [make_item(f"{source_id}-{i}", source_id) for i in range(n)]


class TestBacklogScheduler:
    def test_one_page_per_source(self, scheduler, store, fake_adapter):
        a = store.add_source(make_source("chan-a"))
        store.add_source(make_source("chan-b"))
        fake_adapter.backlog["chan-a"] = _history("chan-a", 5)
        fake_adapter.backlog["chan-b"] = _history("chan-b", 1)

        result = scheduler.run()

        assert result.processed == 2
        assert result.total_fetched == 3
        assert result.completed == 1
        by_id = {r.source_id: r for r in result.results}
        assert by_id["chan-a"].fetched == 2
        assert by_id["chan-a"].total == 2
        assert not by_id["chan-a"].complete
        assert by_id["chan-b"].complete

        saved = store.get_source(a.id)
        assert saved.backlog_page_token == "2"
        assert saved.backlog_fetched_at == NOW

    def test_total_includes_earlier_progress(self, scheduler, store, fake_adapter):
        source = store.add_source(make_source("chan-a"))
        store.update_backlog_state(source.id, "2", False, NOW - timedelta(days=2), 2)
        fake_adapter.backlog["chan-a"] = _history("chan-a", 5)

        result = scheduler.run()

        entry = result.results[0]
        assert entry.fetched == 2
        assert entry.total == 4
        assert fake_adapter.backlog_calls == [("chan-a", 2, "2")]

    def test_debounced_within_interval(self, scheduler, store, clock):
        store.add_source(make_source("chan-a"))

        assert scheduler.run() is not None
        clock.now = NOW + timedelta(hours=1)
        assert scheduler.run() is None
        assert scheduler.last_run_at == NOW

        clock.now = NOW + timedelta(hours=25)
        assert scheduler.run() is not None

    def test_force_ignores_interval(self, scheduler, clock):
        scheduler.run()
        clock.now = NOW + timedelta(minutes=5)
        assert scheduler.run(force=True) is not None

    def test_skips_while_running(self, scheduler):
        scheduler._is_running = True
        assert scheduler.run(force=True) is None

    def test_cooldown_excludes_recently_crawled(self, scheduler, store, fake_adapter, clock):
        store.add_source(make_source("chan-a"))
        fake_adapter.backlog["chan-a"] = _history("chan-a", 10)

        scheduler.run()
        clock.now = NOW + timedelta(hours=1)
        result = scheduler.run(force=True)

        assert result.processed == 0
        assert len(fake_adapter.backlog_calls) == 1

    def test_limit(self, scheduler, store):
        for i in range(5):
            store.add_source(make_source(f"chan-{i}"))
        assert scheduler.run(limit=3).processed == 3

    def test_least_crawled_first(self, scheduler, store, fake_adapter):
        big = store.add_source(make_source("chan-big"))
        store.add_source(make_source("chan-small"))
        store.update_backlog_state(big.id, "50", False, NOW - timedelta(days=3), 50)

        scheduler.run(limit=1)

        assert fake_adapter.backlog_calls[0][0] == "chan-small"

    def test_errors_are_reported_per_source(self, scheduler, store, fake_adapter):
        bad = store.add_source(make_source("chan-a"))
        store.add_source(make_source("chan-b"))
        fake_adapter.errors["chan-a"] = AdapterTransportError("quota exceeded")
        fake_adapter.backlog["chan-b"] = _history("chan-b", 1)

        result = scheduler.run()

        by_id = {r.source_id: r for r in result.results}
        assert by_id["chan-a"].error == "quota exceeded"
        assert by_id["chan-b"].fetched == 1
        assert store.get_source(bad.id).error_message == "quota exceeded"

    def test_unexpected_exception_is_reported_per_source(self, scheduler, store, fake_adapter):
        bad = store.add_source(make_source("chan-a"))
        store.add_source(make_source("chan-b"))
        fake_adapter.errors["chan-a"] = ValueError("Expecting value")
        fake_adapter.backlog["chan-b"] = _history("chan-b", 1)

        result = scheduler.run()

        by_id = {r.source_id: r for r in result.results}
        assert "Expecting value" in by_id["chan-a"].error
        assert by_id["chan-b"].fetched == 1
        assert store.get_source(bad.id).last_fetch_status == FetchStatus.ERROR

    def test_success_clears_previous_error(self, scheduler, store, fake_adapter, clock):
        source = store.add_source(make_source("chan-a"))
        fake_adapter.errors["chan-a"] = AdapterTransportError("quota")
        scheduler.run()
        assert store.get_source(source.id).last_fetch_status == FetchStatus.ERROR

        del fake_adapter.errors["chan-a"]
        fake_adapter.backlog["chan-a"] = _history("chan-a", 1)
        clock.now += timedelta(hours=25)
        result = scheduler.run()

        assert result.results[0].complete
        saved = store.get_source(source.id)
        assert saved.last_fetch_status == FetchStatus.SUCCESS
        assert saved.error_message is None

    def test_missing_adapter(self, scheduler, store):
        store.add_source(make_source("https://example.com/feed", source_type=SourceType.RSS))
        result = scheduler.run()
        assert "No adapter" in result.results[0].error

    def test_nothing_to_do(self, scheduler):
        result = scheduler.run()
        assert result.processed == 0
        assert result.results == []
