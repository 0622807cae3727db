"""FastAPI server exposing CalmFeed functionality."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from calmfeed.backlog import BacklogScheduler
from calmfeed.cache import ResponseCache
from calmfeed.config import Config
from calmfeed.errors import AdapterError, CalmFeedError, NotFoundError, ValidationError
from calmfeed.feed import FeedService
from calmfeed.ingestion import IngestionOrchestrator
from calmfeed.interactions import InteractionService
from calmfeed.models import (
    ContentSource, FeedItem, FilterKeyword, InteractionType, Preferences, utcnow,
)
from calmfeed.sources import AdapterRegistry, create_registry
from calmfeed.store import Store
from calmfeed.subscriptions import SourceService

logger = logging.getLogger(__name__)

DEFAULT_USER = "default"


# =============================================================================
# Pydantic models for API
# =============================================================================


class SourceResponse(BaseModel):
    id: str
    source_type: str
    source_id: str
    display_name: str
    avatar_url: str | None
    is_muted: bool
    always_safe: bool
    added_at: datetime
    last_fetch_at: datetime | None
    last_fetch_status: str
    error_message: str | None
    backlog_complete: bool
    backlog_video_count: int
    item_count: int


class AddSourceRequest(BaseModel):
    source_type: str
    identifier: str


class UpdateSourceRequest(BaseModel):
    is_muted: bool | None = None
    always_safe: bool | None = None


class ContentResponse(BaseModel):
    id: str
    source_type: str
    source_id: str
    original_id: str
    title: str
    description: str | None
    thumbnail_url: str | None
    url: str
    duration: int | None
    published_at: datetime


class FeedItemResponse(BaseModel):
    position: int
    source_display_name: str
    is_new: bool
    is_returning: bool
    content: ContentResponse


class FeedResponse(BaseModel):
    items: list[FeedItemResponse]
    total_count: int


class FetchResult(BaseModel):
    source_id: str
    source_name: str
    new_items: int


class FetchStatsResponse(BaseModel):
    total_sources: int
    success_count: int
    error_count: int
    new_items_count: int
    duration_ms: int
    errors: list[tuple[str, str]]


class BacklogSourceResponse(BaseModel):
    source_id: str
    display_name: str
    fetched: int
    total: int
    complete: bool
    error: str | None


class BacklogRunResponse(BaseModel):
    skipped: bool
    processed: int = 0
    total_fetched: int = 0
    completed: int = 0
    results: list[BacklogSourceResponse] = []


class ContentActionRequest(BaseModel):
    watch_duration: int | None = Field(None, ge=0)
    completion_rate: float | None = Field(None, ge=0.0, le=1.0)
    collection: str | None = None
    reason: str | None = None
    extract_keywords: bool = False


class ContentActionResponse(BaseModel):
    content_id: str
    action: str
    keywords: list[str] = []


class FilterKeywordResponse(BaseModel):
    id: str
    keyword: str
    is_wildcard: bool
    created_at: datetime


class AddFilterRequest(BaseModel):
    keyword: str = Field(..., min_length=1)
    is_wildcard: bool = False


class PreferencesResponse(BaseModel):
    backlog_ratio: float
    max_consecutive_from_source: int
    min_duration: int | None
    max_duration: int | None
    theme: str
    density: str
    auto_play: bool
    updated_at: datetime


class UpdatePreferencesRequest(BaseModel):
    """Partial update. Send a duration as null to clear it."""
    backlog_ratio: float | None = Field(None, ge=0.0, le=1.0)
    max_consecutive_from_source: int | None = Field(None, ge=1)
    min_duration: int | None = Field(None, ge=0)
    max_duration: int | None = Field(None, ge=0)
    theme: str | None = None
    density: str | None = None
    auto_play: bool | None = None


CONTENT_ACTIONS = ("watch", "save", "dismiss", "not-now", "block")


# =============================================================================
# Application state
# =============================================================================


class AppState:
    config: Config
    store: Store
    cache: ResponseCache | None
    registry: AdapterRegistry
    sources: SourceService
    feed: FeedService
    interactions: InteractionService
    orchestrator: IngestionOrchestrator
    backlog: BacklogScheduler


state = AppState()


def configure_state(config: Config, store: Store, registry: AdapterRegistry,
                    cache: ResponseCache | None = None) -> None:
    """Wire services onto the shared app state."""
    state.config = config
    state.store = store
    state.cache = cache
    state.registry = registry
    state.sources = SourceService(store, registry)
    state.feed = FeedService(store, cache=cache, settings=config.feed)
    state.interactions = InteractionService(store, state.feed)
    state.orchestrator = IngestionOrchestrator(store, registry, config.ingestion)
    # Long-lived so its debounce spans requests
    state.backlog = BacklogScheduler(state.orchestrator, config.ingestion)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and cleanup application state."""
    config = Config.load()
    cache = config.create_cache()
    configure_state(config, config.create_store(), create_registry(config, cache), cache)

    yield
    state.registry.close()
    if state.cache is not None:
        state.cache.close()
    state.store.close()


# =============================================================================
# FastAPI app
# =============================================================================


app = FastAPI(
    title="CalmFeed API",
    description="Calm, bounded-diversity feed of followed channels",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CalmFeedError)
async def calmfeed_error_handler(request: Request, exc: CalmFeedError):
    if isinstance(exc, ValidationError):
        status_code = 400
    elif isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, AdapterError):
        status_code = 502
    else:
        status_code = 500
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def _source_response(source: ContentSource) -> SourceResponse:
    return SourceResponse(
        id=source.id,
        source_type=source.source_type.value,
        source_id=source.source_id,
        display_name=source.display_name,
        avatar_url=source.avatar_url,
        is_muted=source.is_muted,
        always_safe=source.always_safe,
        added_at=source.added_at,
        last_fetch_at=source.last_fetch_at,
        last_fetch_status=source.last_fetch_status.value,
        error_message=source.error_message,
        backlog_complete=source.backlog_complete,
        backlog_video_count=source.backlog_video_count,
        item_count=state.store.count_items(source.source_type, source.source_id),
    )


def _feed_item_response(feed_item: FeedItem) -> FeedItemResponse:
    item = feed_item.content
    return FeedItemResponse(
        position=feed_item.position,
        source_display_name=feed_item.source_display_name,
        is_new=feed_item.is_new,
        is_returning=feed_item.is_returning,
        content=ContentResponse(
            id=item.id,
            source_type=item.source_type.value,
            source_id=item.source_id,
            original_id=item.original_id,
            title=item.title,
            description=item.description,
            thumbnail_url=item.thumbnail_url,
            url=item.url,
            duration=item.duration,
            published_at=item.published_at,
        ),
    )


# =============================================================================
# Routes: Feed
# =============================================================================


@app.get("/api/feed", response_model=FeedResponse)
def get_feed(
    user_id: str = Query(DEFAULT_USER),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    refresh: bool = Query(False, description="Bypass the cached feed"),
):
    """Get the composed feed."""
    items = state.feed.get_user_feed(user_id, use_cache=not refresh)
    return FeedResponse(
        items=[_feed_item_response(f) for f in items[offset:offset + limit]],
        total_count=len(items),
    )


@app.post("/api/feed/refresh")
def refresh_feed(user_id: str = Query(DEFAULT_USER)):
    """Drop the cached feed so the next request recomposes it."""
    state.feed.refresh_feed(user_id)
    return {"status": "refreshed"}


# =============================================================================
# Routes: Sources
# =============================================================================


@app.get("/api/sources", response_model=list[SourceResponse])
def list_sources(user_id: str = Query(DEFAULT_USER)):
    """List a user's sources."""
    return [_source_response(s) for s in state.sources.list_sources(user_id)]


@app.post("/api/sources", response_model=SourceResponse, status_code=201)
def add_source(request: AddSourceRequest, user_id: str = Query(DEFAULT_USER)):
    """Validate and add a new source. Content arrives on the next fetch."""
    source = state.sources.add_source(user_id, request.source_type, request.identifier)
    return _source_response(source)


@app.get("/api/sources/{source_id}", response_model=SourceResponse)
def get_source(source_id: str, user_id: str = Query(DEFAULT_USER)):
    return _source_response(state.sources.get_source(user_id, source_id))


@app.patch("/api/sources/{source_id}", response_model=SourceResponse)
def update_source(
    source_id: str, request: UpdateSourceRequest, user_id: str = Query(DEFAULT_USER)
):
    """Mute/unmute a source or toggle its filter exemption."""
    source = state.sources.get_source(user_id, source_id)
    if request.is_muted is not None:
        source = state.sources.set_muted(user_id, source_id, request.is_muted)
    if request.always_safe is not None:
        source = state.sources.set_always_safe(user_id, source_id, request.always_safe)
    state.feed.refresh_feed(user_id)
    return _source_response(source)


@app.delete("/api/sources/{source_id}")
def delete_source(source_id: str, user_id: str = Query(DEFAULT_USER)):
    """Remove a source. Its stored items are kept."""
    state.sources.remove_source(user_id, source_id)
    state.feed.refresh_feed(user_id)
    return {"status": "deleted"}


@app.post("/api/sources/{source_id}/fetch", response_model=FetchResult)
def fetch_source(
    source_id: str,
    user_id: str = Query(DEFAULT_USER),
    backlog: bool = Query(False, description="Also fetch a backlog page"),
):
    """Fetch one source now."""
    source = state.sources.get_source(user_id, source_id)
    new_items = state.orchestrator.fetch_source(source.id, force_backlog=backlog)
    state.feed.refresh_feed(user_id)
    return FetchResult(
        source_id=source.id,
        source_name=source.display_name,
        new_items=new_items,
    )


# =============================================================================
# Routes: Scheduled jobs
# =============================================================================


@app.post("/api/cron/fetch-content", response_model=FetchStatsResponse)
def cron_fetch_content():
    """Fetch every unmuted source of every user."""
    logger.info("Starting scheduled content fetch")
    stats = state.orchestrator.fetch_all_sources()
    if state.cache is not None:
        state.cache.invalidate_all("feed")
    return FetchStatsResponse(
        total_sources=stats.total_sources,
        success_count=stats.success_count,
        error_count=stats.error_count,
        new_items_count=stats.new_items_count,
        duration_ms=stats.duration_ms,
        errors=stats.errors,
    )


@app.post("/api/cron/fetch-backlog", response_model=BacklogRunResponse)
def cron_fetch_backlog(
    force: bool = Query(False, description="Ignore the minimum run interval"),
    limit: int | None = Query(None, ge=1),
):
    """Fetch one backlog page for each source that is due."""
    result = state.backlog.run(force=force, limit=limit)
    if result is None:
        return BacklogRunResponse(skipped=True)

    if result.total_fetched and state.cache is not None:
        state.cache.invalidate_all("feed")

    return BacklogRunResponse(
        skipped=False,
        processed=result.processed,
        total_fetched=result.total_fetched,
        completed=result.completed,
        results=[
            BacklogSourceResponse(
                source_id=r.source_id,
                display_name=r.display_name,
                fetched=r.fetched,
                total=r.total,
                complete=r.complete,
                error=r.error,
            )
            for r in result.results
        ],
    )


# =============================================================================
# Routes: Content interactions
# =============================================================================


@app.post("/api/content/{content_id}/{action}", response_model=ContentActionResponse)
def content_action(
    content_id: str,
    action: str,
    request: ContentActionRequest | None = None,
    user_id: str = Query(DEFAULT_USER),
):
    """Record watch, save, dismiss, not-now or block on an item."""
    if action not in CONTENT_ACTIONS:
        raise HTTPException(status_code=404, detail=f"Unknown action: {action}")
    request = request or ContentActionRequest()
    keywords: list[str] = []

    if action == "watch":
        state.interactions.record_watch(
            user_id, content_id, request.watch_duration, request.completion_rate
        )
    elif action == "save":
        state.interactions.save_content(user_id, content_id, request.collection)
    elif action == "dismiss":
        state.interactions.dismiss_content(user_id, content_id, request.reason)
    elif action == "not-now":
        state.interactions.not_now(user_id, content_id)
    else:
        keywords = state.interactions.block_content(
            user_id, content_id, request.extract_keywords
        )

    return ContentActionResponse(content_id=content_id, action=action, keywords=keywords)


@app.get("/api/history")
def get_history(
    user_id: str = Query(DEFAULT_USER),
    type: InteractionType | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
):
    """Recent interactions, newest first."""
    return [
        {
            "id": i.id,
            "content_id": i.content_id,
            "type": i.type.value,
            "timestamp": i.timestamp.isoformat(),
        }
        for i in state.interactions.get_history(user_id, type, limit)
    ]


# =============================================================================
# Routes: Filters and preferences
# =============================================================================


def _filter_response(keyword: FilterKeyword) -> FilterKeywordResponse:
    return FilterKeywordResponse(
        id=keyword.id,
        keyword=keyword.keyword,
        is_wildcard=keyword.is_wildcard,
        created_at=keyword.created_at,
    )


def _preferences_response(preferences: Preferences) -> PreferencesResponse:
    return PreferencesResponse(
        backlog_ratio=preferences.backlog_ratio,
        max_consecutive_from_source=preferences.max_consecutive_from_source,
        min_duration=preferences.min_duration,
        max_duration=preferences.max_duration,
        theme=preferences.theme,
        density=preferences.density,
        auto_play=preferences.auto_play,
        updated_at=preferences.updated_at,
    )


@app.get("/api/filters", response_model=list[FilterKeywordResponse])
def list_filters(user_id: str = Query(DEFAULT_USER)):
    return [_filter_response(k) for k in state.store.list_filter_keywords(user_id)]


@app.post("/api/filters", response_model=FilterKeywordResponse, status_code=201)
def add_filter(request: AddFilterRequest, user_id: str = Query(DEFAULT_USER)):
    """Hide items whose title or description mention a keyword."""
    keyword = request.keyword.strip()
    if not keyword:
        raise ValidationError("Keyword cannot be empty")
    added = state.store.add_filter_keyword(FilterKeyword(
        id="",
        user_id=user_id,
        keyword=keyword,
        is_wildcard=request.is_wildcard or "*" in keyword,
    ))
    state.feed.refresh_feed(user_id)
    return _filter_response(added)


@app.delete("/api/filters/{keyword_id}")
def delete_filter(keyword_id: str, user_id: str = Query(DEFAULT_USER)):
    if not state.store.delete_filter_keyword(user_id, keyword_id):
        raise NotFoundError("Filter keyword", keyword_id)
    state.feed.refresh_feed(user_id)
    return {"status": "deleted"}


@app.get("/api/preferences", response_model=PreferencesResponse)
def get_preferences(user_id: str = Query(DEFAULT_USER)):
    """Stored preferences, or the configured defaults."""
    preferences = state.store.get_preferences(user_id) or Preferences.defaults(
        user_id, state.config.feed
    )
    return _preferences_response(preferences)


@app.api_route("/api/preferences", methods=["PUT", "PATCH"], response_model=PreferencesResponse)
def update_preferences(request: UpdatePreferencesRequest, user_id: str = Query(DEFAULT_USER)):
    """Update the fields present in the body; the cached feed is dropped."""
    preferences = state.store.get_preferences(user_id) or Preferences.defaults(
        user_id, state.config.feed
    )
    for name in request.model_fields_set:
        value = getattr(request, name)
        # Only durations may be cleared with null
        if value is None and name not in ("min_duration", "max_duration"):
            continue
        setattr(preferences, name, value)

    if (
        preferences.min_duration is not None
        and preferences.max_duration is not None
        and preferences.min_duration > preferences.max_duration
    ):
        raise ValidationError("min_duration must not exceed max_duration")

    preferences.updated_at = utcnow()
    state.store.save_preferences(preferences)
    state.feed.refresh_feed(user_id)
    return _preferences_response(preferences)


# =============================================================================
# Health check
# =============================================================================


@app.get("/api/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}
