"""Content adapters for CalmFeed.

Each platform (YouTube, RSS, ...) has an adapter in its own directory.
See calmfeed/sources/base.py for the ContentAdapter contract.
"""

from calmfeed.sources.base import (
    ContentAdapter,
    BacklogPage,
    SourceValidation,
    SourceMetadata,
)
from calmfeed.sources.registry import AdapterRegistry, create_registry

__all__ = [
    # Contract
    "ContentAdapter",
    # Data models
    "BacklogPage",
    "SourceValidation",
    "SourceMetadata",
    # Registry
    "AdapterRegistry",
    "create_registry",
]
