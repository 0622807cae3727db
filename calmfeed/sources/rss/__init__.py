"""RSS/Atom feed source adapter.

Supports:
- RSS 2.0 feeds
- Atom feeds
- Podcast feeds (itunes:duration is read as the item duration)
"""

from calmfeed.sources.rss.adapter import RSSAdapter

__all__ = ["RSSAdapter"]
