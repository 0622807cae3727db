"""Managing a user's content sources."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from calmfeed.errors import AdapterError, SourceNotFoundError, ValidationError
from calmfeed.models import ContentSource, FetchStatus, SourceType

if TYPE_CHECKING:
    from calmfeed.sources.registry import AdapterRegistry
    from calmfeed.store.base import Store

logger = logging.getLogger(__name__)


def parse_source_type(value: str | SourceType) -> SourceType:
    """Coerce user input ("youtube", "RSS", ...) to a SourceType."""
    if isinstance(value, SourceType):
        return value
    try:
        return SourceType(value.strip().upper())
    except ValueError:
        raise ValidationError(f"Unsupported source type: {value}") from None


class SourceService:
    """Add, remove and toggle a user's subscriptions.

    Every lookup is scoped to the calling user: a source id owned by
    someone else is reported as not found.
    """

    def __init__(self, store: Store, registry: AdapterRegistry):
        self.store = store
        self.registry = registry

    def add_source(
        self, user_id: str, source_type: str | SourceType, identifier: str
    ) -> ContentSource:
        source_type = parse_source_type(source_type)
        logger.info(f"Adding {source_type.value} source {identifier} for {user_id}")

        adapter = self.registry.get_adapter(source_type)
        if adapter is None:
            raise ValidationError(f"Unsupported source type: {source_type.value}")

        try:
            validation = adapter.validate_source(identifier)
        except AdapterError as e:
            raise ValidationError(str(e)) from e
        if not validation.is_valid:
            raise ValidationError(validation.error_message or "Source validation failed")

        # Adapters may canonicalize (@handle -> channel id, redirects -> final URL)
        source_id = validation.resolved_id or identifier

        if self.store.get_source_by_key(user_id, source_type, source_id) is not None:
            raise ValidationError("Source already added")

        source = ContentSource(
            id="",
            user_id=user_id,
            source_type=source_type,
            source_id=source_id,
            display_name=validation.display_name or source_id,
            avatar_url=validation.avatar_url,
            last_fetch_status=FetchStatus.PENDING,
        )
        try:
            source = self.store.add_source(source)
        except ValueError as e:
            # Lost a race with a concurrent add of the same source
            raise ValidationError("Source already added") from e

        logger.info(f"Source added: {source.display_name} ({source.id})")
        return source

    def get_source(self, user_id: str, source_pk: str) -> ContentSource:
        source = self.store.get_source(source_pk)
        if source is None or source.user_id != user_id:
            raise SourceNotFoundError(source_pk)
        return source

    def list_sources(self, user_id: str) -> list[ContentSource]:
        """All of a user's sources, muted ones included, newest first."""
        return self.store.list_sources(user_id=user_id, include_muted=True)

    def remove_source(self, user_id: str, source_pk: str) -> None:
        source = self.get_source(user_id, source_pk)
        self.store.delete_source(source.id)
        logger.info(f"Source removed: {source.display_name} ({source.id})")

    def set_muted(self, user_id: str, source_pk: str, muted: bool) -> ContentSource:
        source = self.get_source(user_id, source_pk)
        source.is_muted = muted
        self.store.update_source(source)
        logger.info(f"Source {source.id} {'muted' if muted else 'unmuted'}")
        return source

    def set_always_safe(
        self, user_id: str, source_pk: str, always_safe: bool
    ) -> ContentSource:
        source = self.get_source(user_id, source_pk)
        source.always_safe = always_safe
        self.store.update_source(source)
        logger.info(f"Source {source.id} always_safe={always_safe}")
        return source
