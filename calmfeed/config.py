"""Configuration management for CalmFeed."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from calmfeed.store.factory import StoreType, create_store

if TYPE_CHECKING:
    from calmfeed.cache import ResponseCache
    from calmfeed.store.base import Store


DEFAULT_CONFIG_PATH = "~/.calmfeed/config.json"
DEFAULT_DATA_PATH = "~/.calmfeed/data.db"
DEFAULT_CACHE_PATH = "~/.calmfeed/cache.db"


@dataclass
class FeedSettings:
    """Policy knobs for feed composition."""

    default_backlog_ratio: float = 0.3
    max_consecutive_from_source: int = 3
    max_items_in_feed: int = 200
    recency_window_days: int = 7
    not_now_fraction: float = 0.2
    cache_ttl_seconds: int = 300

    @property
    def recency_window(self) -> timedelta:
        return timedelta(days=self.recency_window_days)


@dataclass
class IngestionSettings:
    """Policy knobs for fetching and backlog crawling."""

    fetch_recent_days: int = 7
    backlog_page_size: int = 100
    backlog_staleness_days: int = 7
    inter_source_delay_min: float = 1.0
    inter_source_delay_max: float = 2.0

    # Scheduled backlog top-up
    daily_backlog_limit: int = 100
    backlog_batch_size: int = 20
    backlog_cooldown_hours: int = 23
    backlog_min_run_interval_hours: int = 24

    @property
    def backlog_staleness(self) -> timedelta:
        return timedelta(days=self.backlog_staleness_days)

    @property
    def backlog_cooldown(self) -> timedelta:
        return timedelta(hours=self.backlog_cooldown_hours)

    @property
    def backlog_min_run_interval(self) -> timedelta:
        return timedelta(hours=self.backlog_min_run_interval_hours)


def _settings_from_dict(cls, data: dict[str, Any] | None):
    """Build a settings dataclass, ignoring unknown keys."""
    if not data:
        return cls()
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


def default_config_path() -> str:
    return os.environ.get("CALMFEED_CONFIG", DEFAULT_CONFIG_PATH)


@dataclass
class Config:
    """Application configuration."""

    store_type: StoreType = StoreType.SQLITE
    store_path: str = DEFAULT_DATA_PATH
    cache_type: str = "sqlite"   # "sqlite", "memory" or "none"
    cache_path: str = DEFAULT_CACHE_PATH
    youtube_api_key: str | None = None
    feed: FeedSettings = field(default_factory=FeedSettings)
    ingestion: IngestionSettings = field(default_factory=IngestionSettings)
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        env_key = os.environ.get("YOUTUBE_API_KEY")
        if env_key:
            self.youtube_api_key = env_key

    @classmethod
    def load(cls, path: str | None = None) -> "Config":
        """Load config from a JSON file, or return defaults if not found."""
        config_path = Path(path or default_config_path()).expanduser()

        if not config_path.exists():
            return cls()

        try:
            data = json.loads(config_path.read_text())
            return cls(
                store_type=StoreType(data.get("store_type", "sqlite")),
                store_path=data.get("store_path", DEFAULT_DATA_PATH),
                cache_type=data.get("cache_type", "sqlite"),
                cache_path=data.get("cache_path", DEFAULT_CACHE_PATH),
                youtube_api_key=data.get("youtube_api_key"),
                feed=_settings_from_dict(FeedSettings, data.get("feed")),
                ingestion=_settings_from_dict(IngestionSettings, data.get("ingestion")),
                extra=data.get("extra", {}),
            )
        except (json.JSONDecodeError, KeyError, ValueError, TypeError):
            return cls()

    def save(self, path: str | None = None) -> None:
        """Save config to a JSON file."""
        config_path = Path(path or default_config_path()).expanduser()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "store_type": self.store_type.value,
            "store_path": self.store_path,
            "cache_type": self.cache_type,
            "cache_path": self.cache_path,
            "youtube_api_key": self.youtube_api_key,
            "feed": asdict(self.feed),
            "ingestion": asdict(self.ingestion),
            "extra": self.extra,
        }
        config_path.write_text(json.dumps(data, indent=2))

    def create_store(self) -> Store:
        """Create a store instance from this config."""
        return create_store(self.store_type, self.store_path)

    def create_cache(self) -> ResponseCache | None:
        """Create the response cache configured here (None = no caching)."""
        from calmfeed.cache import create_cache
        return create_cache(self.cache_type, self.cache_path)
