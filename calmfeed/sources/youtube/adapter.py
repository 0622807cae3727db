"""YouTube adapter using the Data API.

Supports channels given as youtube.com/@handle, youtube.com/channel/UC...,
a bare @handle or a bare UC... channel ID.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from calmfeed.cache import ResponseCache
from calmfeed.errors import AdapterNotFoundError, AdapterTransportError
from calmfeed.models import ContentItem, SourceType, utcnow
from calmfeed.sources.base import (
    ContentAdapter, BacklogPage, SourceValidation, SourceMetadata,
)

logger = logging.getLogger(__name__)


# YouTube Data API v3 endpoints
YOUTUBE_API_BASE = "https://www.googleapis.com/youtube/v3"

# The API never returns more than 50 results per call
MAX_PAGE_SIZE = 50

CHANNEL_ID_PATTERN = re.compile(r"^UC[\w-]{22}$")
CHANNEL_URL_PATTERNS = [
    re.compile(r"youtube\.com/channel/(UC[\w-]{22})"),
    re.compile(r"youtube\.com/(@[\w.-]+)"),
    re.compile(r"youtube\.com/c/([\w.-]+)"),
    re.compile(r"youtube\.com/user/([\w.-]+)"),
]
DURATION_PATTERN = re.compile(
    r"^P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?)?$"
)


def parse_duration(duration: str | None) -> int | None:
    """Parse an ISO 8601 duration (PT15M33S) to seconds. None if unparseable."""
    if not duration:
        return None
    match = DURATION_PATTERN.match(duration)
    if not match:
        return None
    days, hours, minutes, seconds = (int(g or 0) for g in match.groups())
    return days * 86400 + hours * 3600 + minutes * 60 + seconds


def _parse_published(value: str | None) -> datetime:
    if not value:
        return utcnow()
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return utcnow()


def _pick_thumbnail(thumbnails: dict[str, Any], *sizes: str) -> str | None:
    for size in sizes:
        url = thumbnails.get(size, {}).get("url")
        if url:
            return url
    return None


def extract_channel_identifier(value: str) -> str:
    """Reduce a channel URL to its ID or @handle. Bare values pass through."""
    value = value.strip()
    for pattern in CHANNEL_URL_PATTERNS:
        match = pattern.search(value)
        if match:
            return match.group(1)
    return value


class YouTubeAdapter(ContentAdapter):
    """Adapter for YouTube channels using the Data API.

    Every GET goes through the response cache when one is given, so repeated
    fetches inside the TTL cost no quota.
    """

    def __init__(
        self,
        api_key: str,
        cache: ResponseCache | None = None,
        client: httpx.Client | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.api_key = api_key
        self.cache = cache
        self._client = client or httpx.Client(timeout=30.0)
        self._clock = clock

    @property
    def source_type(self) -> SourceType:
        return SourceType.YOUTUBE

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------

    def _get(self, operation: str, endpoint: str, params: dict[str, Any]) -> dict:
        """GET an API endpoint, via the cache. Params exclude the API key."""
        if self.cache is not None:
            cached = self.cache.get(operation, {"endpoint": endpoint, **params})
            if cached is not None:
                return cached

        logger.debug(f"YouTube API request: {endpoint} {params}")
        try:
            response = self._client.get(
                f"{YOUTUBE_API_BASE}/{endpoint}",
                params={**params, "key": self.api_key},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 404:
                raise AdapterNotFoundError(f"YouTube {endpoint} not found") from e
            raise AdapterTransportError(
                f"YouTube API error {status} on {endpoint}: {self._error_message(e.response)}"
            ) from e
        except httpx.HTTPError as e:
            raise AdapterTransportError(f"YouTube API request failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise AdapterTransportError(f"YouTube {endpoint} returned a non-JSON body") from e
        if self.cache is not None:
            self.cache.set(operation, {"endpoint": endpoint, **params}, data)
        return data

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json()["error"]["message"]
        except (ValueError, KeyError, TypeError):
            return response.reason_phrase

    def _get_channel(self, channel_id: str) -> dict:
        data = self._get(
            "channel",
            "channels",
            {"part": "snippet,statistics,contentDetails", "id": channel_id},
        )
        if not data.get("items"):
            raise AdapterNotFoundError(f"Channel not found: {channel_id}", channel_id)
        return data["items"][0]

    def _get_channel_by_handle(self, handle: str) -> dict | None:
        data = self._get(
            "channel",
            "channels",
            {"part": "snippet,statistics", "forHandle": handle.lstrip("@")},
        )
        items = data.get("items") or []
        return items[0] if items else None

    def _get_videos(self, video_ids: list[str]) -> list[dict]:
        if not video_ids:
            return []
        data = self._get(
            "videos",
            "videos",
            {"part": "snippet,contentDetails,statistics", "id": ",".join(video_ids)},
        )
        return data.get("items", [])

    def _to_content_item(self, video: dict, channel_id: str) -> ContentItem:
        snippet = video.get("snippet", {})
        video_id = video["id"]
        return ContentItem(
            source_type=SourceType.YOUTUBE,
            source_id=channel_id,
            original_id=video_id,
            title=snippet.get("title", "Untitled"),
            description=snippet.get("description"),
            thumbnail_url=_pick_thumbnail(
                snippet.get("thumbnails", {}), "medium", "high", "default"
            ),
            url=f"https://youtube.com/watch?v={video_id}",
            duration=parse_duration(video.get("contentDetails", {}).get("duration")),
            published_at=_parse_published(snippet.get("publishedAt")),
        )

    # -------------------------------------------------------------------------
    # ContentAdapter
    # -------------------------------------------------------------------------

    def fetch_recent(self, source_id: str, days: int = 7) -> list[ContentItem]:
        published_after = self._clock() - timedelta(days=days)
        logger.info(f"Fetching recent YouTube videos for {source_id} ({days}d)")

        data = self._get(
            "search",
            "search",
            {
                "part": "snippet",
                "channelId": source_id,
                "type": "video",
                "order": "date",
                "maxResults": MAX_PAGE_SIZE,
                "publishedAfter": published_after.astimezone(timezone.utc)
                .strftime("%Y-%m-%dT%H:%M:%SZ"),
            },
        )

        video_ids = [
            item["id"]["videoId"]
            for item in data.get("items", [])
            if item.get("id", {}).get("videoId")
        ]
        videos = self._get_videos(video_ids)
        return [self._to_content_item(v, source_id) for v in videos]

    def fetch_backlog(
        self,
        source_id: str,
        limit: int = 50,
        page_token: str | None = None,
    ) -> BacklogPage:
        channel = self._get_channel(source_id)
        uploads_playlist_id = (
            channel.get("contentDetails", {}).get("relatedPlaylists", {}).get("uploads")
        )
        if not uploads_playlist_id:
            logger.warning(f"No uploads playlist for channel {source_id}")
            return BacklogPage()

        logger.info(f"Fetching YouTube backlog for {source_id} (limit={limit})")

        items: list[ContentItem] = []
        token = page_token
        while len(items) < limit:
            params = {
                "part": "snippet",
                "playlistId": uploads_playlist_id,
                "maxResults": min(limit - len(items), MAX_PAGE_SIZE),
            }
            if token:
                params["pageToken"] = token

            data = self._get("playlist", "playlistItems", params)
            playlist_items = data.get("items", [])
            video_ids = [
                p["snippet"]["resourceId"]["videoId"]
                for p in playlist_items
                if p.get("snippet", {}).get("resourceId", {}).get("videoId")
            ]
            items.extend(
                self._to_content_item(v, source_id) for v in self._get_videos(video_ids)
            )

            token = data.get("nextPageToken")
            if not token or not playlist_items:
                token = None
                break

        logger.info(f"Fetched {len(items)} backlog videos for {source_id}")
        return BacklogPage(items=items, next_page_token=token, has_more=token is not None)

    def validate_source(self, identifier: str) -> SourceValidation:
        value = extract_channel_identifier(identifier)
        if not value:
            return SourceValidation(is_valid=False, error_message="Empty channel identifier")

        try:
            channel = None
            if not CHANNEL_ID_PATTERN.match(value):
                channel = self._get_channel_by_handle(value)
            if channel is None:
                channel = self._get_channel(value)
        except AdapterNotFoundError:
            return SourceValidation(
                is_valid=False,
                error_message="Channel not found. Please check the channel ID or handle.",
            )
        except AdapterTransportError as e:
            logger.error(f"Failed to validate YouTube channel {identifier}: {e}")
            return SourceValidation(is_valid=False, error_message=str(e))

        snippet = channel.get("snippet", {})
        return SourceValidation(
            is_valid=True,
            display_name=snippet.get("title"),
            avatar_url=_pick_thumbnail(snippet.get("thumbnails", {}), "high", "medium", "default"),
            resolved_id=channel["id"],
        )

    def get_source_metadata(self, source_id: str) -> SourceMetadata:
        channel = self._get_channel(source_id)
        snippet = channel.get("snippet", {})
        statistics = channel.get("statistics") or {}

        def _int(value: Any) -> int | None:
            try:
                return int(value)
            except (TypeError, ValueError):
                return None

        return SourceMetadata(
            display_name=snippet.get("title", source_id),
            description=snippet.get("description"),
            avatar_url=_pick_thumbnail(snippet.get("thumbnails", {}), "high", "medium", "default"),
            subscriber_count=_int(statistics.get("subscriberCount")),
            total_content=_int(statistics.get("videoCount")),
        )

    def close(self) -> None:
        self._client.close()
