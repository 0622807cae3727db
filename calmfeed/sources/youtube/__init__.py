"""YouTube source adapter.

Fetches channel videos via YouTube Data API v3.

Requires:
- YOUTUBE_API_KEY environment variable (or youtube_api_key in config)
"""

from calmfeed.sources.youtube.adapter import YouTubeAdapter, parse_duration

__all__ = ["YouTubeAdapter", "parse_duration"]
