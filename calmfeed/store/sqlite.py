"""SQLite storage backend."""

import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator

from calmfeed.models import (
    ContentSource, ContentItem, Interaction, InteractionType,
    Preferences, FilterKeyword, FetchStatus, SourceType,
)
from calmfeed.store.base import Store, ItemKey, SourceKey, synchronized


SCHEMA = """
CREATE TABLE IF NOT EXISTS content_sources (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    source_type TEXT NOT NULL,
    source_id TEXT NOT NULL,
    display_name TEXT NOT NULL,
    avatar_url TEXT,
    is_muted INTEGER DEFAULT 0,
    always_safe INTEGER DEFAULT 0,
    added_at TEXT NOT NULL,
    last_fetch_at TEXT,
    last_fetch_status TEXT DEFAULT 'pending',
    error_message TEXT,
    backlog_page_token TEXT,
    backlog_complete INTEGER DEFAULT 0,
    backlog_fetched_at TEXT,
    backlog_video_count INTEGER DEFAULT 0,
    UNIQUE(user_id, source_type, source_id)
);

CREATE INDEX IF NOT EXISTS idx_sources_user ON content_sources(user_id);
CREATE INDEX IF NOT EXISTS idx_sources_backlog ON content_sources(backlog_complete, backlog_fetched_at);

CREATE TABLE IF NOT EXISTS content_items (
    id TEXT PRIMARY KEY,
    source_type TEXT NOT NULL,
    source_id TEXT NOT NULL,
    original_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    thumbnail_url TEXT,
    url TEXT NOT NULL,
    duration INTEGER,
    published_at TEXT NOT NULL,
    fetched_at TEXT NOT NULL,
    last_seen_in_feed TEXT NOT NULL,
    UNIQUE(source_type, original_id)
);

CREATE INDEX IF NOT EXISTS idx_items_published ON content_items(published_at DESC);
CREATE INDEX IF NOT EXISTS idx_items_source ON content_items(source_id, source_type);

CREATE TABLE IF NOT EXISTS interactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    content_id TEXT NOT NULL REFERENCES content_items(id),
    type TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    watch_duration INTEGER,
    completion_rate REAL,
    dismiss_reason TEXT,
    collection TEXT
);

CREATE INDEX IF NOT EXISTS idx_interactions_user ON interactions(user_id, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_interactions_content ON interactions(content_id);

CREATE TABLE IF NOT EXISTS preferences (
    user_id TEXT PRIMARY KEY,
    backlog_ratio REAL NOT NULL,
    max_consecutive_from_source INTEGER NOT NULL,
    min_duration INTEGER,
    max_duration INTEGER,
    theme TEXT,
    density TEXT,
    auto_play INTEGER DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS filter_keywords (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    keyword TEXT NOT NULL,
    is_wildcard INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    UNIQUE(user_id, keyword)
);
"""

# Keeps bound parameters well under SQLite's variable limit
_CHUNK_SIZE = 400


def _generate_id() -> str:
    """Generate a short unique ID."""
    return uuid.uuid4().hex[:12]


def _datetime_to_str(dt: datetime) -> str:
    """Convert datetime to a sortable UTC ISO string."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _str_to_datetime(s: str | None) -> datetime | None:
    """Parse ISO format string to datetime."""
    return datetime.fromisoformat(s) if s else None


def _chunks(values: list, size: int = _CHUNK_SIZE) -> Iterator[list]:
    for i in range(0, len(values), size):
        yield values[i:i + size]


def _row_to_source(row: sqlite3.Row) -> ContentSource:
    """Convert a database row to a ContentSource."""
    return ContentSource(
        id=row["id"],
        user_id=row["user_id"],
        source_type=SourceType(row["source_type"]),
        source_id=row["source_id"],
        display_name=row["display_name"],
        avatar_url=row["avatar_url"],
        is_muted=bool(row["is_muted"]),
        always_safe=bool(row["always_safe"]),
        added_at=_str_to_datetime(row["added_at"]),
        last_fetch_at=_str_to_datetime(row["last_fetch_at"]),
        last_fetch_status=FetchStatus(row["last_fetch_status"]),
        error_message=row["error_message"],
        backlog_page_token=row["backlog_page_token"],
        backlog_complete=bool(row["backlog_complete"]),
        backlog_fetched_at=_str_to_datetime(row["backlog_fetched_at"]),
        backlog_video_count=row["backlog_video_count"] or 0,
    )


def _row_to_item(row: sqlite3.Row) -> ContentItem:
    """Convert a database row to a ContentItem."""
    return ContentItem(
        id=row["id"],
        source_type=SourceType(row["source_type"]),
        source_id=row["source_id"],
        original_id=row["original_id"],
        title=row["title"],
        description=row["description"],
        thumbnail_url=row["thumbnail_url"],
        url=row["url"],
        duration=row["duration"],
        published_at=_str_to_datetime(row["published_at"]),
        fetched_at=_str_to_datetime(row["fetched_at"]),
        last_seen_in_feed=_str_to_datetime(row["last_seen_in_feed"]),
    )


def _row_to_interaction(row: sqlite3.Row) -> Interaction:
    return Interaction(
        id=row["id"],
        user_id=row["user_id"],
        content_id=row["content_id"],
        type=InteractionType(row["type"]),
        timestamp=_str_to_datetime(row["timestamp"]),
        watch_duration=row["watch_duration"],
        completion_rate=row["completion_rate"],
        dismiss_reason=row["dismiss_reason"],
        collection=row["collection"],
    )


def _row_to_keyword(row: sqlite3.Row) -> FilterKeyword:
    return FilterKeyword(
        id=row["id"],
        user_id=row["user_id"],
        keyword=row["keyword"],
        is_wildcard=bool(row["is_wildcard"]),
        created_at=_str_to_datetime(row["created_at"]),
    )


class SQLiteStore(Store):
    """SQLite-backed store. Good for production single-user."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # check_same_thread=False allows use from multiple threads (FastAPI).
        # Autocommit mode: transactions are opened explicitly in transaction().
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if not exist."""
        self._conn.executescript(SCHEMA)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield
                finally:
                    self._tx_depth -= 1
                return

            self._conn.execute("BEGIN")
            self._tx_depth = 1
            try:
                yield
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._tx_depth = 0

    # Sources

    @synchronized
    def add_source(self, source: ContentSource) -> ContentSource:
        """Add a new source. Returns the created source with its ID."""
        if not source.id:
            source.id = _generate_id()

        try:
            self._conn.execute(
                """
                INSERT INTO content_sources (
                    id, user_id, source_type, source_id, display_name, avatar_url,
                    is_muted, always_safe, added_at, last_fetch_at, last_fetch_status,
                    error_message, backlog_page_token, backlog_complete,
                    backlog_fetched_at, backlog_video_count
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    source.id,
                    source.user_id,
                    source.source_type.value,
                    source.source_id,
                    source.display_name,
                    source.avatar_url,
                    int(source.is_muted),
                    int(source.always_safe),
                    _datetime_to_str(source.added_at),
                    _datetime_to_str(source.last_fetch_at) if source.last_fetch_at else None,
                    source.last_fetch_status.value,
                    source.error_message,
                    source.backlog_page_token,
                    int(source.backlog_complete),
                    _datetime_to_str(source.backlog_fetched_at) if source.backlog_fetched_at else None,
                    source.backlog_video_count,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise ValueError(
                f"Source {source.source_type.value}:{source.source_id} already exists"
            ) from e

        return source

    @synchronized
    def get_source(self, source_pk: str) -> ContentSource | None:
        """Get a source by internal ID."""
        cursor = self._conn.execute(
            "SELECT * FROM content_sources WHERE id = ?", (source_pk,)
        )
        row = cursor.fetchone()
        return _row_to_source(row) if row else None

    @synchronized
    def get_source_by_key(
        self, user_id: str, source_type: SourceType, source_id: str
    ) -> ContentSource | None:
        cursor = self._conn.execute(
            """
            SELECT * FROM content_sources
            WHERE user_id = ? AND source_type = ? AND source_id = ?
            """,
            (user_id, source_type.value, source_id),
        )
        row = cursor.fetchone()
        return _row_to_source(row) if row else None

    @synchronized
    def list_sources(
        self, user_id: str | None = None, include_muted: bool = True
    ) -> list[ContentSource]:
        """List sources, newest first."""
        conditions = []
        params: list = []

        if user_id is not None:
            conditions.append("user_id = ?")
            params.append(user_id)

        if not include_muted:
            conditions.append("is_muted = 0")

        where = "WHERE " + " AND ".join(conditions) if conditions else ""

        cursor = self._conn.execute(
            f"SELECT * FROM content_sources {where} ORDER BY added_at DESC", params
        )
        return [_row_to_source(row) for row in cursor.fetchall()]

    @synchronized
    def update_source(self, source: ContentSource) -> None:
        self._conn.execute(
            """
            UPDATE content_sources
            SET display_name = ?, avatar_url = ?, is_muted = ?, always_safe = ?
            WHERE id = ?
            """,
            (
                source.display_name,
                source.avatar_url,
                int(source.is_muted),
                int(source.always_safe),
                source.id,
            ),
        )

    @synchronized
    def delete_source(self, source_pk: str) -> None:
        self._conn.execute("DELETE FROM content_sources WHERE id = ?", (source_pk,))

    @synchronized
    def record_fetch_result(
        self,
        source_pk: str,
        status: FetchStatus,
        error_message: str | None,
        at: datetime,
    ) -> None:
        self._conn.execute(
            """
            UPDATE content_sources
            SET last_fetch_status = ?, error_message = ?, last_fetch_at = ?
            WHERE id = ?
            """,
            (status.value, error_message, _datetime_to_str(at), source_pk),
        )

    @synchronized
    def update_backlog_state(
        self,
        source_pk: str,
        page_token: str | None,
        complete: bool,
        fetched_at: datetime,
        added_count: int = 0,
    ) -> None:
        self._conn.execute(
            """
            UPDATE content_sources
            SET backlog_page_token = ?,
                backlog_complete = ?,
                backlog_fetched_at = ?,
                backlog_video_count = backlog_video_count + ?
            WHERE id = ?
            """,
            (
                page_token,
                int(complete),
                _datetime_to_str(fetched_at),
                added_count,
                source_pk,
            ),
        )

    @synchronized
    def get_sources_needing_backlog(
        self, cutoff: datetime, limit: int
    ) -> list[ContentSource]:
        cursor = self._conn.execute(
            """
            SELECT * FROM content_sources
            WHERE backlog_complete = 0
              AND is_muted = 0
              AND (backlog_fetched_at IS NULL OR backlog_fetched_at < ?)
            ORDER BY backlog_video_count ASC, added_at DESC
            LIMIT ?
            """,
            (_datetime_to_str(cutoff), limit),
        )
        return [_row_to_source(row) for row in cursor.fetchall()]

    # Items

    @synchronized
    def find_items_by_keys(self, keys: Iterable[ItemKey]) -> dict[ItemKey, ContentItem]:
        by_type: dict[SourceType, list[str]] = {}
        for source_type, original_id in set(keys):
            by_type.setdefault(source_type, []).append(original_id)

        found: dict[ItemKey, ContentItem] = {}
        for source_type, original_ids in by_type.items():
            for chunk in _chunks(original_ids):
                placeholders = ",".join("?" * len(chunk))
                cursor = self._conn.execute(
                    f"""
                    SELECT * FROM content_items
                    WHERE source_type = ? AND original_id IN ({placeholders})
                    """,
                    [source_type.value, *chunk],
                )
                for row in cursor.fetchall():
                    item = _row_to_item(row)
                    found[item.dedup_key] = item
        return found

    @synchronized
    def insert_items(self, items: list[ContentItem]) -> int:
        if not items:
            return 0

        ids = [item.id or _generate_id() for item in items]
        rows = [
            (
                item_id,
                item.source_type.value,
                item.source_id,
                item.original_id,
                item.title,
                item.description,
                item.thumbnail_url,
                item.url,
                item.duration,
                _datetime_to_str(item.published_at),
                _datetime_to_str(item.fetched_at),
                _datetime_to_str(item.last_seen_in_feed),
            )
            for item, item_id in zip(items, ids)
        ]

        with self.transaction():
            before = self._conn.total_changes
            self._conn.executemany(
                """
                INSERT OR IGNORE INTO content_items (
                    id, source_type, source_id, original_id, title, description,
                    thumbnail_url, url, duration, published_at, fetched_at,
                    last_seen_in_feed
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            inserted = self._conn.total_changes - before

            # Ignored duplicates keep no id
            stored: set[str] = set()
            for chunk in _chunks(ids):
                placeholders = ",".join("?" * len(chunk))
                cursor = self._conn.execute(
                    f"SELECT id FROM content_items WHERE id IN ({placeholders})", chunk
                )
                stored.update(row["id"] for row in cursor.fetchall())

        for item, item_id in zip(items, ids):
            if item_id in stored:
                item.id = item_id
        return inserted

    @synchronized
    def touch_items(self, keys: Iterable[ItemKey], seen_at: datetime) -> None:
        seen = _datetime_to_str(seen_at)
        with self.transaction():
            self._conn.executemany(
                """
                UPDATE content_items
                SET last_seen_in_feed = MAX(last_seen_in_feed, ?)
                WHERE source_type = ? AND original_id = ?
                """,
                [(seen, source_type.value, original_id) for source_type, original_id in keys],
            )

    @synchronized
    def get_item(self, item_id: str) -> ContentItem | None:
        """Get a single item by ID."""
        cursor = self._conn.execute("SELECT * FROM content_items WHERE id = ?", (item_id,))
        row = cursor.fetchone()
        return _row_to_item(row) if row else None

    @synchronized
    def get_items_for_sources(
        self, keys: Iterable[SourceKey], limit: int
    ) -> list[ContentItem]:
        keys = list(set(keys))
        if not keys or limit <= 0:
            return []

        items: list[ContentItem] = []
        for chunk in _chunks(keys, _CHUNK_SIZE // 2):
            clause = " OR ".join("(source_id = ? AND source_type = ?)" for _ in chunk)
            params: list = []
            for source_id, source_type in chunk:
                params.extend([source_id, source_type.value])
            params.append(limit)

            cursor = self._conn.execute(
                f"""
                SELECT * FROM content_items
                WHERE {clause}
                ORDER BY published_at DESC
                LIMIT ?
                """,
                params,
            )
            items.extend(_row_to_item(row) for row in cursor.fetchall())

        items.sort(key=lambda i: i.published_at, reverse=True)
        return items[:limit]

    @synchronized
    def count_items(
        self,
        source_type: SourceType | None = None,
        source_id: str | None = None,
    ) -> int:
        """Count items matching the filters."""
        conditions = []
        params: list = []

        if source_type is not None:
            conditions.append("source_type = ?")
            params.append(source_type.value)

        if source_id is not None:
            conditions.append("source_id = ?")
            params.append(source_id)

        where = "WHERE " + " AND ".join(conditions) if conditions else ""

        cursor = self._conn.execute(f"SELECT COUNT(*) FROM content_items {where}", params)
        return cursor.fetchone()[0]

    # Interactions

    @synchronized
    def add_interaction(self, interaction: Interaction) -> Interaction:
        if not interaction.id:
            interaction.id = _generate_id()

        self._conn.execute(
            """
            INSERT INTO interactions (
                id, user_id, content_id, type, timestamp,
                watch_duration, completion_rate, dismiss_reason, collection
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                interaction.id,
                interaction.user_id,
                interaction.content_id,
                interaction.type.value,
                _datetime_to_str(interaction.timestamp),
                interaction.watch_duration,
                interaction.completion_rate,
                interaction.dismiss_reason,
                interaction.collection,
            ),
        )
        return interaction

    @synchronized
    def get_interactions(
        self,
        user_id: str,
        type: InteractionType | None = None,
        limit: int | None = None,
    ) -> list[Interaction]:
        query = "SELECT * FROM interactions WHERE user_id = ?"
        params: list = [user_id]

        if type is not None:
            query += " AND type = ?"
            params.append(type.value)

        query += " ORDER BY timestamp DESC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        cursor = self._conn.execute(query, params)
        return [_row_to_interaction(row) for row in cursor.fetchall()]

    # Preferences

    @synchronized
    def get_preferences(self, user_id: str) -> Preferences | None:
        cursor = self._conn.execute(
            "SELECT * FROM preferences WHERE user_id = ?", (user_id,)
        )
        row = cursor.fetchone()
        if not row:
            return None

        return Preferences(
            user_id=row["user_id"],
            backlog_ratio=row["backlog_ratio"],
            max_consecutive_from_source=row["max_consecutive_from_source"],
            min_duration=row["min_duration"],
            max_duration=row["max_duration"],
            theme=row["theme"],
            density=row["density"],
            auto_play=bool(row["auto_play"]),
            updated_at=_str_to_datetime(row["updated_at"]),
        )

    @synchronized
    def save_preferences(self, preferences: Preferences) -> None:
        self._conn.execute(
            """
            INSERT INTO preferences (
                user_id, backlog_ratio, max_consecutive_from_source,
                min_duration, max_duration, theme, density, auto_play, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                backlog_ratio = excluded.backlog_ratio,
                max_consecutive_from_source = excluded.max_consecutive_from_source,
                min_duration = excluded.min_duration,
                max_duration = excluded.max_duration,
                theme = excluded.theme,
                density = excluded.density,
                auto_play = excluded.auto_play,
                updated_at = excluded.updated_at
            """,
            (
                preferences.user_id,
                preferences.backlog_ratio,
                preferences.max_consecutive_from_source,
                preferences.min_duration,
                preferences.max_duration,
                preferences.theme,
                preferences.density,
                int(preferences.auto_play),
                _datetime_to_str(preferences.updated_at),
            ),
        )

    # Filter keywords

    @synchronized
    def add_filter_keyword(self, keyword: FilterKeyword) -> FilterKeyword:
        """Add a keyword. An existing identical keyword is returned as-is."""
        cursor = self._conn.execute(
            "SELECT * FROM filter_keywords WHERE user_id = ? AND keyword = ?",
            (keyword.user_id, keyword.keyword),
        )
        row = cursor.fetchone()
        if row:
            return _row_to_keyword(row)

        if not keyword.id:
            keyword.id = _generate_id()

        self._conn.execute(
            """
            INSERT INTO filter_keywords (id, user_id, keyword, is_wildcard, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                keyword.id,
                keyword.user_id,
                keyword.keyword,
                int(keyword.is_wildcard),
                _datetime_to_str(keyword.created_at),
            ),
        )
        return keyword

    @synchronized
    def list_filter_keywords(self, user_id: str) -> list[FilterKeyword]:
        cursor = self._conn.execute(
            "SELECT * FROM filter_keywords WHERE user_id = ? ORDER BY created_at",
            (user_id,),
        )
        return [_row_to_keyword(row) for row in cursor.fetchall()]

    @synchronized
    def delete_filter_keyword(self, user_id: str, keyword_id: str) -> bool:
        cursor = self._conn.execute(
            "DELETE FROM filter_keywords WHERE id = ? AND user_id = ?",
            (keyword_id, user_id),
        )
        return cursor.rowcount > 0

    # Lifecycle

    @synchronized
    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
