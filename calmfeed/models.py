"""Core data models for CalmFeed."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from calmfeed.config import FeedSettings


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class SourceType(Enum):
    """Platform a content source lives on."""
    YOUTUBE = "YOUTUBE"
    TWITCH = "TWITCH"
    RSS = "RSS"
    PODCAST = "PODCAST"


class FetchStatus(Enum):
    """Outcome of the most recent fetch attempt for a source."""
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class InteractionType(Enum):
    """Kinds of events a user can perform on a content item."""
    WATCHED = "WATCHED"
    SAVED = "SAVED"
    DISMISSED = "DISMISSED"
    NOT_NOW = "NOT_NOW"    # Soft, temporary deferral
    BLOCKED = "BLOCKED"


# Interactions that remove an item from every future feed
EXCLUDING_INTERACTIONS = frozenset({
    InteractionType.WATCHED,
    InteractionType.DISMISSED,
    InteractionType.SAVED,
    InteractionType.BLOCKED,
})


@dataclass
class ContentItem:
    """A deduplicated piece of content (a video, an episode, a post).

    Identity is the (source_type, original_id) pair. The internal ``id`` is
    assigned by the store on insert; adapters leave it empty.
    """
    source_type: SourceType
    source_id: str                # Channel ID, feed URL, ...
    original_id: str              # Platform-specific ID
    title: str
    url: str
    published_at: datetime
    description: str | None = None
    thumbnail_url: str | None = None
    duration: int | None = None   # Seconds; None = unknown

    id: str = ""
    fetched_at: datetime = field(default_factory=utcnow)
    last_seen_in_feed: datetime = field(default_factory=utcnow)

    @property
    def dedup_key(self) -> tuple[SourceType, str]:
        return (self.source_type, self.original_id)

    @property
    def source_key(self) -> tuple[str, SourceType]:
        return (self.source_id, self.source_type)


@dataclass
class ContentSource:
    """A user's subscription to an external channel or feed."""
    id: str
    user_id: str
    source_type: SourceType
    source_id: str                # Platform-specific identifier
    display_name: str
    avatar_url: str | None = None

    # Behavior flags
    is_muted: bool = False
    always_safe: bool = False     # Skip the user's filters for this source

    # Fetch state
    added_at: datetime = field(default_factory=utcnow)
    last_fetch_at: datetime | None = None
    last_fetch_status: FetchStatus = FetchStatus.PENDING
    error_message: str | None = None

    # Backlog crawl state (mutated only by ingestion)
    backlog_page_token: str | None = None
    backlog_complete: bool = False
    backlog_fetched_at: datetime | None = None
    backlog_video_count: int = 0

    @property
    def key(self) -> tuple[str, SourceType]:
        return (self.source_id, self.source_type)


@dataclass
class Interaction:
    """An append-only record of something a user did with a content item."""
    id: str
    user_id: str
    content_id: str
    type: InteractionType
    timestamp: datetime = field(default_factory=utcnow)

    watch_duration: int | None = None       # WATCHED
    completion_rate: float | None = None    # WATCHED, 0.0-1.0
    dismiss_reason: str | None = None       # DISMISSED
    collection: str | None = None           # SAVED


@dataclass
class FilterKeyword:
    """A keyword the user never wants to see."""
    id: str
    user_id: str
    keyword: str
    is_wildcard: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Preferences:
    """Per-user feed shaping configuration."""
    user_id: str
    backlog_ratio: float = 0.3
    max_consecutive_from_source: int = 3

    # Duration keep-range in seconds
    min_duration: int | None = None
    max_duration: int | None = None

    # UI only
    theme: str = "dark"
    density: str = "cozy"
    auto_play: bool = False

    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def defaults(cls, user_id: str, settings: FeedSettings | None = None) -> "Preferences":
        """Build the documented defaults, optionally from feed settings."""
        if settings is None:
            return cls(user_id=user_id)
        return cls(
            user_id=user_id,
            backlog_ratio=settings.default_backlog_ratio,
            max_consecutive_from_source=settings.max_consecutive_from_source,
        )

    def clamped(self) -> "Preferences":
        """Return a copy with out-of-range values pulled back into range."""
        ratio = self.backlog_ratio
        if ratio is None or ratio != ratio:  # None or NaN
            ratio = 0.0
        ratio = min(1.0, max(0.0, float(ratio)))

        max_consecutive = self.max_consecutive_from_source or 1
        max_consecutive = max(1, int(max_consecutive))

        return replace(
            self,
            backlog_ratio=ratio,
            max_consecutive_from_source=max_consecutive,
        )


@dataclass
class FeedItem:
    """Request-scoped projection of a content item into a feed."""
    content: ContentItem
    position: int
    source_display_name: str
    is_new: bool = False          # Published within the recency window
    is_returning: bool = False    # Reintroduced NOT_NOW item
