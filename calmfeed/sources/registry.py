"""Adapter registry keyed by source type.

The orchestrator and the source service look adapters up here; the registry
is the only place that knows which adapters exist.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from calmfeed.models import SourceType
from calmfeed.sources.base import ContentAdapter

if TYPE_CHECKING:
    from calmfeed.cache import ResponseCache
    from calmfeed.config import Config

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Registry mapping each source type to its adapter."""

    def __init__(self, adapters: list[ContentAdapter] | None = None):
        self._adapters_by_type: dict[SourceType, ContentAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ContentAdapter) -> None:
        """Register an adapter. Replaces any adapter for the same type."""
        previous = self._adapters_by_type.get(adapter.source_type)
        if previous is not None:
            logger.info(
                f"Replacing {type(previous).__name__} with {type(adapter).__name__} "
                f"for {adapter.source_type.value}"
            )
        self._adapters_by_type[adapter.source_type] = adapter
        logger.debug(f"Registered adapter: {adapter.source_type.value}")

    def get_adapter(self, source_type: SourceType) -> ContentAdapter | None:
        """Get the adapter for a source type, or None if unsupported."""
        return self._adapters_by_type.get(source_type)

    @property
    def source_types(self) -> list[SourceType]:
        """All source types with a registered adapter."""
        return list(self._adapters_by_type)

    def __contains__(self, source_type: SourceType) -> bool:
        return source_type in self._adapters_by_type

    def close(self) -> None:
        for adapter in self._adapters_by_type.values():
            adapter.close()


def create_registry(config: Config, cache: ResponseCache | None = None) -> AdapterRegistry:
    """Create a registry with the built-in adapters.

    RSS is always available. YouTube needs an API key.
    """
    from calmfeed.sources.rss import RSSAdapter
    from calmfeed.sources.youtube import YouTubeAdapter

    registry = AdapterRegistry()
    registry.register(RSSAdapter())

    if config.youtube_api_key:
        registry.register(YouTubeAdapter(api_key=config.youtube_api_key, cache=cache))
    else:
        logger.info("No YouTube API key configured; YouTube sources disabled")

    return registry
