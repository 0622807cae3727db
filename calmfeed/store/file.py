"""JSON file-based storage backend."""

import json
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator

from calmfeed.models import (
    ContentSource, ContentItem, Interaction, InteractionType,
    Preferences, FilterKeyword, FetchStatus, SourceType,
)
from calmfeed.store.base import Store, ItemKey, SourceKey, synchronized


def _generate_id() -> str:
    """Generate a short unique ID."""
    return uuid.uuid4().hex[:12]


def _datetime_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO format string."""
    return dt.isoformat() if dt else None


def _str_to_datetime(s: str | None) -> datetime | None:
    """Parse ISO format string to datetime."""
    return datetime.fromisoformat(s) if s else None


def _source_to_dict(source: ContentSource) -> dict[str, Any]:
    """Serialize a ContentSource to a dictionary."""
    return {
        "id": source.id,
        "user_id": source.user_id,
        "source_type": source.source_type.value,
        "source_id": source.source_id,
        "display_name": source.display_name,
        "avatar_url": source.avatar_url,
        "is_muted": source.is_muted,
        "always_safe": source.always_safe,
        "added_at": _datetime_to_str(source.added_at),
        "last_fetch_at": _datetime_to_str(source.last_fetch_at),
        "last_fetch_status": source.last_fetch_status.value,
        "error_message": source.error_message,
        "backlog_page_token": source.backlog_page_token,
        "backlog_complete": source.backlog_complete,
        "backlog_fetched_at": _datetime_to_str(source.backlog_fetched_at),
        "backlog_video_count": source.backlog_video_count,
    }


def _dict_to_source(d: dict[str, Any]) -> ContentSource:
    """Deserialize a dictionary to a ContentSource."""
    return ContentSource(
        id=d["id"],
        user_id=d["user_id"],
        source_type=SourceType(d["source_type"]),
        source_id=d["source_id"],
        display_name=d["display_name"],
        avatar_url=d.get("avatar_url"),
        is_muted=d.get("is_muted", False),
        always_safe=d.get("always_safe", False),
        added_at=_str_to_datetime(d["added_at"]),
        last_fetch_at=_str_to_datetime(d.get("last_fetch_at")),
        last_fetch_status=FetchStatus(d.get("last_fetch_status", "pending")),
        error_message=d.get("error_message"),
        backlog_page_token=d.get("backlog_page_token"),
        backlog_complete=d.get("backlog_complete", False),
        backlog_fetched_at=_str_to_datetime(d.get("backlog_fetched_at")),
        backlog_video_count=d.get("backlog_video_count", 0),
    )


def _item_to_dict(item: ContentItem) -> dict[str, Any]:
    """Serialize a ContentItem to a dictionary."""
    return {
        "id": item.id,
        "source_type": item.source_type.value,
        "source_id": item.source_id,
        "original_id": item.original_id,
        "title": item.title,
        "description": item.description,
        "thumbnail_url": item.thumbnail_url,
        "url": item.url,
        "duration": item.duration,
        "published_at": _datetime_to_str(item.published_at),
        "fetched_at": _datetime_to_str(item.fetched_at),
        "last_seen_in_feed": _datetime_to_str(item.last_seen_in_feed),
    }


def _dict_to_item(d: dict[str, Any]) -> ContentItem:
    """Deserialize a dictionary to a ContentItem."""
    return ContentItem(
        id=d["id"],
        source_type=SourceType(d["source_type"]),
        source_id=d["source_id"],
        original_id=d["original_id"],
        title=d["title"],
        description=d.get("description"),
        thumbnail_url=d.get("thumbnail_url"),
        url=d["url"],
        duration=d.get("duration"),
        published_at=_str_to_datetime(d["published_at"]),
        fetched_at=_str_to_datetime(d["fetched_at"]),
        last_seen_in_feed=_str_to_datetime(d["last_seen_in_feed"]),
    )


def _interaction_to_dict(interaction: Interaction) -> dict[str, Any]:
    return {
        "id": interaction.id,
        "user_id": interaction.user_id,
        "content_id": interaction.content_id,
        "type": interaction.type.value,
        "timestamp": _datetime_to_str(interaction.timestamp),
        "watch_duration": interaction.watch_duration,
        "completion_rate": interaction.completion_rate,
        "dismiss_reason": interaction.dismiss_reason,
        "collection": interaction.collection,
    }


def _dict_to_interaction(d: dict[str, Any]) -> Interaction:
    return Interaction(
        id=d["id"],
        user_id=d["user_id"],
        content_id=d["content_id"],
        type=InteractionType(d["type"]),
        timestamp=_str_to_datetime(d["timestamp"]),
        watch_duration=d.get("watch_duration"),
        completion_rate=d.get("completion_rate"),
        dismiss_reason=d.get("dismiss_reason"),
        collection=d.get("collection"),
    )


def _preferences_to_dict(prefs: Preferences) -> dict[str, Any]:
    return {
        "user_id": prefs.user_id,
        "backlog_ratio": prefs.backlog_ratio,
        "max_consecutive_from_source": prefs.max_consecutive_from_source,
        "min_duration": prefs.min_duration,
        "max_duration": prefs.max_duration,
        "theme": prefs.theme,
        "density": prefs.density,
        "auto_play": prefs.auto_play,
        "updated_at": _datetime_to_str(prefs.updated_at),
    }


def _dict_to_preferences(d: dict[str, Any]) -> Preferences:
    return Preferences(
        user_id=d["user_id"],
        backlog_ratio=d["backlog_ratio"],
        max_consecutive_from_source=d["max_consecutive_from_source"],
        min_duration=d.get("min_duration"),
        max_duration=d.get("max_duration"),
        theme=d.get("theme", "dark"),
        density=d.get("density", "cozy"),
        auto_play=d.get("auto_play", False),
        updated_at=_str_to_datetime(d["updated_at"]),
    )


def _keyword_to_dict(kw: FilterKeyword) -> dict[str, Any]:
    return {
        "id": kw.id,
        "user_id": kw.user_id,
        "keyword": kw.keyword,
        "is_wildcard": kw.is_wildcard,
        "created_at": _datetime_to_str(kw.created_at),
    }


def _dict_to_keyword(d: dict[str, Any]) -> FilterKeyword:
    return FilterKeyword(
        id=d["id"],
        user_id=d["user_id"],
        keyword=d["keyword"],
        is_wildcard=d.get("is_wildcard", False),
        created_at=_str_to_datetime(d["created_at"]),
    )


class FileStore(Store):
    """JSON file-backed store. Simple, inspectable, good for testing.

    Writes are flushed to disk after every mutation, or once when the
    outermost transaction exits. A failed transaction reloads the last
    flushed state.
    """

    def __init__(self, data_dir: str):
        self.data_dir = Path(data_dir).expanduser()
        self.sources_file = self.data_dir / "sources.json"
        self.items_file = self.data_dir / "items.json"
        self.interactions_file = self.data_dir / "interactions.json"
        self.preferences_file = self.data_dir / "preferences.json"
        self.keywords_file = self.data_dir / "filter_keywords.json"

        self._lock = threading.RLock()
        self._tx_depth = 0
        self._load()

    def _load(self) -> None:
        """Load data from JSON files."""
        self._sources: dict[str, ContentSource] = {}
        self._items: dict[str, ContentItem] = {}
        self._interactions: list[Interaction] = []
        self._preferences: dict[str, Preferences] = {}
        self._keywords: dict[str, FilterKeyword] = {}

        if self.sources_file.exists():
            data = json.loads(self.sources_file.read_text())
            self._sources = {s["id"]: _dict_to_source(s) for s in data}

        if self.items_file.exists():
            data = json.loads(self.items_file.read_text())
            self._items = {i["id"]: _dict_to_item(i) for i in data}

        if self.interactions_file.exists():
            data = json.loads(self.interactions_file.read_text())
            self._interactions = [_dict_to_interaction(i) for i in data]

        if self.preferences_file.exists():
            data = json.loads(self.preferences_file.read_text())
            self._preferences = {p["user_id"]: _dict_to_preferences(p) for p in data}

        if self.keywords_file.exists():
            data = json.loads(self.keywords_file.read_text())
            self._keywords = {k["id"]: _dict_to_keyword(k) for k in data}

        self._item_index: dict[ItemKey, str] = {
            item.dedup_key: item_id for item_id, item in self._items.items()
        }

    def _save(self) -> None:
        """Persist data to JSON files, unless inside a transaction."""
        if self._tx_depth:
            return

        self.data_dir.mkdir(parents=True, exist_ok=True)

        sources_data = [_source_to_dict(s) for s in self._sources.values()]
        self.sources_file.write_text(json.dumps(sources_data, indent=2))

        items_data = [_item_to_dict(i) for i in self._items.values()]
        self.items_file.write_text(json.dumps(items_data, indent=2))

        interactions_data = [_interaction_to_dict(i) for i in self._interactions]
        self.interactions_file.write_text(json.dumps(interactions_data, indent=2))

        prefs_data = [_preferences_to_dict(p) for p in self._preferences.values()]
        self.preferences_file.write_text(json.dumps(prefs_data, indent=2))

        keywords_data = [_keyword_to_dict(k) for k in self._keywords.values()]
        self.keywords_file.write_text(json.dumps(keywords_data, indent=2))

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            self._tx_depth += 1
            try:
                yield
            except BaseException:
                self._tx_depth -= 1
                if not self._tx_depth:
                    self._load()
                raise
            else:
                self._tx_depth -= 1
                self._save()

    # Sources

    @synchronized
    def add_source(self, source: ContentSource) -> ContentSource:
        """Add a new source. Returns the created source with its ID."""
        existing = self.get_source_by_key(source.user_id, source.source_type, source.source_id)
        if existing:
            raise ValueError(
                f"Source {source.source_type.value}:{source.source_id} already exists"
            )

        if not source.id:
            source.id = _generate_id()

        self._sources[source.id] = replace(source)
        self._save()
        return source

    @synchronized
    def get_source(self, source_pk: str) -> ContentSource | None:
        """Get a source by internal ID."""
        source = self._sources.get(source_pk)
        return replace(source) if source else None

    @synchronized
    def get_source_by_key(
        self, user_id: str, source_type: SourceType, source_id: str
    ) -> ContentSource | None:
        for source in self._sources.values():
            if (
                source.user_id == user_id
                and source.source_type == source_type
                and source.source_id == source_id
            ):
                return replace(source)
        return None

    @synchronized
    def list_sources(
        self, user_id: str | None = None, include_muted: bool = True
    ) -> list[ContentSource]:
        """List sources, newest first."""
        sources = [
            s for s in self._sources.values()
            if (user_id is None or s.user_id == user_id)
            and (include_muted or not s.is_muted)
        ]
        return [replace(s) for s in sorted(sources, key=lambda s: s.added_at, reverse=True)]

    @synchronized
    def update_source(self, source: ContentSource) -> None:
        stored = self._sources.get(source.id)
        if stored is None:
            return
        stored.display_name = source.display_name
        stored.avatar_url = source.avatar_url
        stored.is_muted = source.is_muted
        stored.always_safe = source.always_safe
        self._save()

    @synchronized
    def delete_source(self, source_pk: str) -> None:
        if self._sources.pop(source_pk, None) is not None:
            self._save()

    @synchronized
    def record_fetch_result(
        self,
        source_pk: str,
        status: FetchStatus,
        error_message: str | None,
        at: datetime,
    ) -> None:
        source = self._sources.get(source_pk)
        if source is None:
            return
        source.last_fetch_status = status
        source.error_message = error_message
        source.last_fetch_at = at
        self._save()

    @synchronized
    def update_backlog_state(
        self,
        source_pk: str,
        page_token: str | None,
        complete: bool,
        fetched_at: datetime,
        added_count: int = 0,
    ) -> None:
        source = self._sources.get(source_pk)
        if source is None:
            return
        source.backlog_page_token = page_token
        source.backlog_complete = complete
        source.backlog_fetched_at = fetched_at
        source.backlog_video_count += added_count
        self._save()

    @synchronized
    def get_sources_needing_backlog(
        self, cutoff: datetime, limit: int
    ) -> list[ContentSource]:
        candidates = [
            s for s in self._sources.values()
            if not s.backlog_complete
            and not s.is_muted
            and (s.backlog_fetched_at is None or s.backlog_fetched_at < cutoff)
        ]
        # added_at descending within equal counts: sort twice, stable
        candidates.sort(key=lambda s: s.added_at, reverse=True)
        candidates.sort(key=lambda s: s.backlog_video_count)
        return [replace(s) for s in candidates[:limit]]

    # Items

    @synchronized
    def find_items_by_keys(self, keys: Iterable[ItemKey]) -> dict[ItemKey, ContentItem]:
        found: dict[ItemKey, ContentItem] = {}
        for key in keys:
            item_id = self._item_index.get(key)
            if item_id is not None:
                found[key] = self._items[item_id]
        return found

    @synchronized
    def insert_items(self, items: list[ContentItem]) -> int:
        inserted = 0
        for item in items:
            if item.dedup_key in self._item_index:
                continue
            if not item.id:
                item.id = _generate_id()
            self._items[item.id] = item
            self._item_index[item.dedup_key] = item.id
            inserted += 1

        if inserted:
            self._save()
        return inserted

    @synchronized
    def touch_items(self, keys: Iterable[ItemKey], seen_at: datetime) -> None:
        touched = False
        for key in keys:
            item_id = self._item_index.get(key)
            if item_id is None:
                continue
            item = self._items[item_id]
            if seen_at > item.last_seen_in_feed:
                item.last_seen_in_feed = seen_at
                touched = True

        if touched:
            self._save()

    @synchronized
    def get_item(self, item_id: str) -> ContentItem | None:
        """Get a single item by ID."""
        return self._items.get(item_id)

    @synchronized
    def get_items_for_sources(
        self, keys: Iterable[SourceKey], limit: int
    ) -> list[ContentItem]:
        wanted = set(keys)
        items = [i for i in self._items.values() if i.source_key in wanted]
        items.sort(key=lambda i: i.published_at, reverse=True)
        return items[:max(limit, 0)]

    @synchronized
    def count_items(
        self,
        source_type: SourceType | None = None,
        source_id: str | None = None,
    ) -> int:
        """Count items matching the filters."""
        return sum(
            1 for i in self._items.values()
            if (source_type is None or i.source_type == source_type)
            and (source_id is None or i.source_id == source_id)
        )

    # Interactions

    @synchronized
    def add_interaction(self, interaction: Interaction) -> Interaction:
        if not interaction.id:
            interaction.id = _generate_id()
        self._interactions.append(interaction)
        self._save()
        return interaction

    @synchronized
    def get_interactions(
        self,
        user_id: str,
        type: InteractionType | None = None,
        limit: int | None = None,
    ) -> list[Interaction]:
        result = [
            i for i in self._interactions
            if i.user_id == user_id and (type is None or i.type == type)
        ]
        result.sort(key=lambda i: i.timestamp, reverse=True)
        return result[:limit] if limit is not None else result

    # Preferences

    @synchronized
    def get_preferences(self, user_id: str) -> Preferences | None:
        return self._preferences.get(user_id)

    @synchronized
    def save_preferences(self, preferences: Preferences) -> None:
        self._preferences[preferences.user_id] = preferences
        self._save()

    # Filter keywords

    @synchronized
    def add_filter_keyword(self, keyword: FilterKeyword) -> FilterKeyword:
        """Add a keyword. An existing identical keyword is returned as-is."""
        for existing in self._keywords.values():
            if existing.user_id == keyword.user_id and existing.keyword == keyword.keyword:
                return existing

        if not keyword.id:
            keyword.id = _generate_id()
        self._keywords[keyword.id] = keyword
        self._save()
        return keyword

    @synchronized
    def list_filter_keywords(self, user_id: str) -> list[FilterKeyword]:
        keywords = [k for k in self._keywords.values() if k.user_id == user_id]
        return sorted(keywords, key=lambda k: k.created_at)

    @synchronized
    def delete_filter_keyword(self, user_id: str, keyword_id: str) -> bool:
        keyword = self._keywords.get(keyword_id)
        if keyword is None or keyword.user_id != user_id:
            return False
        del self._keywords[keyword_id]
        self._save()
        return True

    # Lifecycle

    @synchronized
    def close(self) -> None:
        """Flush pending data to disk."""
        self._save()
