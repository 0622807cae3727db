"""Tests for the command-line interface."""

import json
import tempfile

import pytest
from click.testing import CliRunner

from calmfeed.cli import format_duration, main
from calmfeed.models import SourceType
from calmfeed.store import SQLiteStore

from conftest import make_item, make_source


@pytest.fixture
def workspace(monkeypatch):
    """A config file pointing at a temporary store, with no cache."""
    monkeypatch.delenv("YOUTUBE_API_KEY", raising=False)
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = f"{tmpdir}/config.json"
        store_path = f"{tmpdir}/data.db"
        with open(config_path, "w") as f:
            json.dump({"store_type": "sqlite", "store_path": store_path, "cache_type": "none"}, f)
        yield config_path, store_path


@pytest.fixture
def run(workspace):
    config_path, _ = workspace
    runner = CliRunner()

    def invoke(*args):
        return runner.invoke(main, ["--config", config_path, *args])

    return invoke


@pytest.fixture
def seeded_item_id(workspace):
    _, store_path = workspace
    with SQLiteStore(store_path) as store:
        store.add_source(make_source("chan-a", user_id="default", display_name="Alpha"))
        store.insert_items([make_item("v1", "chan-a", title="Woodworking basics")])
        item = store.find_items_by_keys([(SourceType.YOUTUBE, "v1")])
        return list(item.values())[0].id


def test_empty_sources(run):
    result = run("sources", "list")
    assert result.exit_code == 0
    assert "No sources configured" in result.output


def test_empty_feed(run):
    result = run("feed")
    assert result.exit_code == 0
    assert "Nothing in your feed" in result.output


def test_unconfigured_youtube_is_rejected(run):
    result = run("sources", "add", "youtube", "@techreviews")
    assert result.exit_code == 1
    assert "Unsupported source type: YOUTUBE" in result.output


def test_unknown_source(run):
    result = run("sources", "mute", "missing")
    assert result.exit_code == 1
    assert "Content source not found: missing" in result.output


def test_filters(run):
    added = run("filters", "add", "war")
    assert added.exit_code == 0
    assert "Filtering: war" in added.output

    listed = run("filters", "list")
    assert "war" in listed.output
    assert "whole word" in listed.output

    missing = run("filters", "remove", "nope")
    assert missing.exit_code == 1


def test_prefs(run):
    result = run("prefs", "--backlog-ratio", "0.5", "--max-consecutive", "2")
    assert result.exit_code == 0
    assert "Preferences updated" in result.output

    shown = run("prefs")
    assert "50%" in shown.output
    assert "Max in a row per source: 2" in shown.output


def test_prefs_rejects_bad_ratio(run):
    assert run("prefs", "--backlog-ratio", "3").exit_code == 2


def test_feed_and_interactions(run, seeded_item_id):
    feed = run("feed")
    assert feed.exit_code == 0
    assert "1 items in feed" in feed.output

    watched = run("watch", seeded_item_id, "--completion", "0.5")
    assert watched.exit_code == 0
    assert "Watched: Woodworking basics" in watched.output

    assert "Nothing in your feed" in run("feed").output
    assert "WATCHED" in run("history").output


def test_other_user_sees_nothing(run, seeded_item_id):
    assert "Nothing in your feed" in run("--user", "someone-else", "feed").output


def test_unknown_content(run):
    result = run("save", "missing")
    assert result.exit_code == 1
    assert "Content item not found: missing" in result.output


@pytest.mark.parametrize("seconds,expected", [
    (None, "-"),
    (45, "0:45"),
    (933, "15:33"),
    (3723, "1:02:03"),
])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected
