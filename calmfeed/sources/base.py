"""Base contract for content adapters.

A content adapter knows how to talk to one external platform and turns its
responses into ContentItems. Adapters are stateless with respect to the
crawl: the backlog cursor is handed back to the caller, which persists it.

To add a new source type:
1. Create a new directory under calmfeed/sources/
2. Implement ContentAdapter in adapter.py
3. Register it in calmfeed/sources/registry.py:create_registry
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from calmfeed.models import ContentItem, SourceType


# =============================================================================
# Data Models
# =============================================================================


@dataclass
class BacklogPage:
    """One page of a source's historical content, returned by fetch_backlog()."""

    items: list[ContentItem] = field(default_factory=list)
    next_page_token: str | None = None  # Opaque, source-specific
    has_more: bool = False

    def __post_init__(self) -> None:
        if not self.has_more and self.next_page_token is not None:
            raise ValueError("next_page_token must be None when has_more is False")

    @property
    def exhausted(self) -> bool:
        """True if the caller should mark the crawl complete."""
        return not self.has_more or not self.items


@dataclass
class SourceValidation:
    """Result of resolving a user-supplied identifier, from validate_source()."""

    is_valid: bool
    display_name: str | None = None
    avatar_url: str | None = None
    error_message: str | None = None
    resolved_id: str | None = None  # Canonical platform ID


@dataclass
class SourceMetadata:
    """Descriptive information about a source, from get_source_metadata()."""

    display_name: str
    description: str | None = None
    avatar_url: str | None = None
    subscriber_count: int | None = None
    total_content: int | None = None


# =============================================================================
# Protocol
# =============================================================================


class ContentAdapter(ABC):
    """Interface for fetching content from one source type.

    Transport failures raise AdapterTransportError; a source that no longer
    exists raises AdapterNotFoundError. Adapters never hide a failure behind
    an empty result.

    Example:
        class MyAdapter(ContentAdapter):
            @property
            def source_type(self) -> SourceType:
                return SourceType.RSS

            def fetch_recent(self, source_id, days=7):
                return [ContentItem(...), ...]

            def fetch_backlog(self, source_id, limit=50, page_token=None):
                return BacklogPage(items=[...], next_page_token="2", has_more=True)

            def validate_source(self, identifier):
                return SourceValidation(is_valid=True, resolved_id=identifier)

            def get_source_metadata(self, source_id):
                return SourceMetadata(display_name="My feed")
    """

    @property
    @abstractmethod
    def source_type(self) -> SourceType:
        """The platform this adapter serves."""
        pass

    @abstractmethod
    def fetch_recent(self, source_id: str, days: int = 7) -> list[ContentItem]:
        """Fetch items published within the last `days`.

        Returns at most what the platform gives back in one call; returning
        fewer items than exist is acceptable.
        """
        pass

    @abstractmethod
    def fetch_backlog(
        self,
        source_id: str,
        limit: int = 50,
        page_token: str | None = None,
    ) -> BacklogPage:
        """Fetch one page of historical items.

        Calling again with the returned next_page_token continues the crawl
        and never returns items from the previous page.

        Args:
            source_id: Platform identifier of the source.
            limit: Maximum number of items in the page.
            page_token: Cursor from the previous page, or None to start.
        """
        pass

    @abstractmethod
    def validate_source(self, identifier: str) -> SourceValidation:
        """Resolve a handle, URL or ID to a canonical source ID.

        Must not fetch content. Invalid identifiers are reported through
        SourceValidation.is_valid, not raised.
        """
        pass

    @abstractmethod
    def get_source_metadata(self, source_id: str) -> SourceMetadata:
        """Describe a source.

        Raises:
            AdapterNotFoundError: If the source no longer exists.
        """
        pass

    def close(self) -> None:
        """Release any held resources (HTTP clients)."""
        pass
