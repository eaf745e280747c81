"""
API Endpoints for the Audio Feed.

This module defines the REST and WebSocket endpoints of the Audio Feed API:
profile provisioning and editing, audio upload and post publishing, feeds,
likes, plays, comments and the channel catalog.

Routers:
- `router`: Authenticated REST endpoints under `/api`. Mounted by `main.py`
  with the `verify_api_key` dependency.
- `catalog_router`: Public, read-only channel catalog.
- `websocket_router`: `/ws/feed/{kind}` live feed subscriptions. WebSockets
  bypass the HTTP middleware, so the API key is checked here from the
  `api_key` query parameter.

Errors:
Endpoints let repository exceptions propagate; `ErrorHandlingMiddleware`
turns them into JSON error responses with the matching status code.
"""

import asyncio
import logging
import uuid
from typing import Dict, List, Optional

from fastapi import (
    APIRouter,
    Body,
    Depends,
    File,
    Form,
    Query,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from core.exceptions import FeedAPIException
from core.logging_config import log_function_call
from core.models import (
    Channel,
    CommentView,
    Identity,
    LikeState,
    PostDraft,
    PostPage,
    PostView,
    UserProfile,
)
from core.performance import get_metrics_collector
from providers.storage_provider import StorageProvider, upload_hint
from services.channel_service import ChannelCatalog
from services.comment_service import CommentRepository
from services.counter_service import CounterEngine
from services.feed_service import FeedService, FeedSubscription
from services.post_service import PostRepository
from services.profile_service import ProfileRepository
from .dependencies import (
    get_channel_catalog,
    get_comment_repository,
    get_counter_engine,
    get_feed_service,
    get_identity,
    get_optional_identity,
    get_post_repository,
    get_profile_repository,
    get_storage_provider,
    is_valid_api_key,
)

logger = logging.getLogger(__name__)


router = APIRouter(prefix="/api", tags=["Audio Feed"])
catalog_router = APIRouter(prefix="/api", tags=["Channels"])
websocket_router = APIRouter(tags=["WebSocket Communication"])


# Request/Response Models
class ProvisionResponse(BaseModel):
    profile: UserProfile
    created: bool


class UploadResponse(BaseModel):
    url: str


class LikeRequest(BaseModel):
    liked: Optional[bool] = None


class PlayResponse(BaseModel):
    post_id: str
    plays: int


class CommentRequest(BaseModel):
    text: str


def _viewer_id(identity: Optional[Identity]) -> Optional[str]:
    return identity.id if identity else None


# Profiles
@router.post("/auth/provision", response_model=ProvisionResponse)
@log_function_call(logger)
async def provision_profile(
    identity: Identity = Depends(get_identity),
    profiles: ProfileRepository = Depends(get_profile_repository),
):
    """Create the caller's profile on first login; idempotent afterwards"""
    profile, created = await profiles.provision_if_absent(identity)
    if created:
        get_metrics_collector().increment_counter("profiles_provisioned")
    return ProvisionResponse(profile=profile, created=created)


@router.get("/profiles/by-username/{username}", response_model=UserProfile)
async def get_profile_by_username(
    username: str, profiles: ProfileRepository = Depends(get_profile_repository)
):
    return await profiles.fetch_by_username(username)


@router.get("/profiles/{profile_id}", response_model=UserProfile)
async def get_profile(
    profile_id: str, profiles: ProfileRepository = Depends(get_profile_repository)
):
    return await profiles.fetch(profile_id)


@router.patch("/profiles/{profile_id}", response_model=UserProfile)
@log_function_call(logger)
async def update_profile(
    profile_id: str,
    name: Optional[str] = Form(None),
    bio: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    identity: Identity = Depends(get_identity),
    profiles: ProfileRepository = Depends(get_profile_repository),
):
    """Owner-only profile edit; `image` replaces the profile picture"""
    image_bytes = None
    image_content_type = "image/jpeg"
    if image is not None:
        image_bytes = await image.read()
        image_content_type = image.content_type or image_content_type

    return await profiles.update(
        profile_id,
        identity,
        name=name,
        bio=bio,
        image=image_bytes,
        image_content_type=image_content_type,
    )


# Uploads and posts
@router.post("/uploads/audio", response_model=UploadResponse)
@log_function_call(logger)
async def upload_audio(
    file: UploadFile = File(...),
    identity: Identity = Depends(get_identity),
    storage: StorageProvider = Depends(get_storage_provider),
):
    data = await file.read()
    url = await storage.put(
        data, file.content_type or "audio/m4a", upload_hint("audio", file.filename, "recording")
    )
    logger.info(
        f"Audio uploaded by {identity.id}",
        extra={"identity_id": identity.id, "size_bytes": len(data)},
    )
    return UploadResponse(url=url)


@router.post("/posts", response_model=PostView, status_code=201)
@log_function_call(logger)
async def create_post(
    draft: PostDraft,
    identity: Identity = Depends(get_identity),
    posts: PostRepository = Depends(get_post_repository),
):
    """Create a post for audio that was already uploaded"""
    post = await posts.create(draft, identity)
    get_metrics_collector().increment_counter("posts_created")
    return PostView.from_post(post)


@router.post("/posts/publish", response_model=PostView, status_code=201)
@log_function_call(logger)
async def publish_post(
    title: str = Form(...),
    file: UploadFile = File(...),
    description: Optional[str] = Form(None),
    duration: float = Form(0.0),
    tags: Optional[str] = Form(None),
    identity: Identity = Depends(get_identity),
    posts: PostRepository = Depends(get_post_repository),
):
    """Upload audio and create its post in one call"""
    post = await posts.publish(
        identity,
        title=title,
        audio=await file.read(),
        content_type=file.content_type or "audio/m4a",
        description=description,
        duration=duration,
        tags=tags,
        filename=file.filename,
    )
    get_metrics_collector().increment_counter("posts_created")
    return PostView.from_post(post)


@router.get("/posts/recent", response_model=PostPage)
async def list_recent_posts(
    limit: Optional[int] = Query(None),
    cursor: Optional[str] = Query(None),
    identity: Optional[Identity] = Depends(get_optional_identity),
    feeds: FeedService = Depends(get_feed_service),
):
    return await feeds.recent(limit, cursor, _viewer_id(identity))


@router.get("/posts/trending", response_model=PostPage)
async def list_trending_posts(
    limit: Optional[int] = Query(None),
    identity: Optional[Identity] = Depends(get_optional_identity),
    feeds: FeedService = Depends(get_feed_service),
):
    return await feeds.trending(limit, _viewer_id(identity))


@router.get("/posts/{post_id}", response_model=PostView)
async def get_post(
    post_id: str,
    identity: Optional[Identity] = Depends(get_optional_identity),
    posts: PostRepository = Depends(get_post_repository),
    counters: CounterEngine = Depends(get_counter_engine),
):
    post = await posts.get(post_id)
    liked = await counters.liked_post_ids(_viewer_id(identity), [post.id])
    return PostView.from_post(post, is_liked=post.id in liked)


@router.get("/users/{author_id}/posts", response_model=PostPage)
async def list_author_posts(
    author_id: str,
    limit: Optional[int] = Query(None),
    cursor: Optional[str] = Query(None),
    identity: Optional[Identity] = Depends(get_optional_identity),
    feeds: FeedService = Depends(get_feed_service),
):
    return await feeds.by_author(author_id, limit, cursor, _viewer_id(identity))


@router.get("/feed/{kind}", response_model=PostPage)
async def get_feed(
    kind: str,
    limit: Optional[int] = Query(None),
    cursor: Optional[str] = Query(None),
    identity: Optional[Identity] = Depends(get_optional_identity),
    feeds: FeedService = Depends(get_feed_service),
):
    return await feeds.get_feed(kind, limit, cursor, _viewer_id(identity))


# Engagement
@router.post("/posts/{post_id}/like", response_model=LikeState)
async def like_post(
    post_id: str,
    request: Optional[LikeRequest] = Body(None),
    identity: Identity = Depends(get_identity),
    counters: CounterEngine = Depends(get_counter_engine),
):
    """Set the caller's like (`{"liked": bool}`) or toggle it (no body)"""
    intended_state = request.liked if request else None
    return await counters.like(post_id, identity.id, intended_state)


@router.post("/posts/{post_id}/play", response_model=PlayResponse)
async def record_play(
    post_id: str,
    identity: Identity = Depends(get_identity),
    counters: CounterEngine = Depends(get_counter_engine),
):
    plays = await counters.increment_play(post_id)
    return PlayResponse(post_id=post_id, plays=plays)


@router.get("/posts/{post_id}/comments", response_model=List[CommentView])
async def list_comments(
    post_id: str,
    order: str = Query("desc"),
    identity: Optional[Identity] = Depends(get_optional_identity),
    comments: CommentRepository = Depends(get_comment_repository),
):
    return await comments.list(post_id, order, _viewer_id(identity))


@router.post("/posts/{post_id}/comments", response_model=CommentView, status_code=201)
@log_function_call(logger)
async def add_comment(
    post_id: str,
    request: CommentRequest,
    identity: Identity = Depends(get_identity),
    comments: CommentRepository = Depends(get_comment_repository),
):
    comment = await comments.add(post_id, identity, request.text)
    return CommentView.from_comment(comment)


@router.post("/comments/{comment_id}/like", response_model=LikeState)
async def like_comment(
    comment_id: str,
    request: Optional[LikeRequest] = Body(None),
    identity: Identity = Depends(get_identity),
    counters: CounterEngine = Depends(get_counter_engine),
):
    intended_state = request.liked if request else None
    return await counters.like_comment(comment_id, identity.id, intended_state)


# Channel catalog
@catalog_router.get("/channels", response_model=List[Channel])
async def list_channels(
    include_nsfw: bool = Query(True),
    channels: ChannelCatalog = Depends(get_channel_catalog),
):
    return await channels.list_channels(include_nsfw)


@catalog_router.get("/channels/{channel_id}", response_model=Channel)
async def get_channel(
    channel_id: str, channels: ChannelCatalog = Depends(get_channel_catalog)
):
    return await channels.get(channel_id)


# WebSocket connection manager
class ConnectionManager:
    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket, connection_id: str):
        await websocket.accept()
        self.active_connections[connection_id] = websocket
        logger.info(f"WebSocket connected: {connection_id}")

    def disconnect(self, connection_id: str):
        if connection_id in self.active_connections:
            del self.active_connections[connection_id]
            logger.info(f"WebSocket disconnected: {connection_id}")


websocket_manager = ConnectionManager()


async def _pump_diffs(websocket: WebSocket, subscription: FeedSubscription):
    async for diff in subscription:
        await websocket.send_json({"type": "diff", "diff": diff.to_dict()})


async def _close(websocket: WebSocket, code: int, reason: str):
    if websocket.client_state == WebSocketState.CONNECTED:
        await websocket.close(code=code, reason=reason)


async def _answer_client(websocket: WebSocket):
    """Answer pings; anything else that parses as JSON is ignored"""
    while True:
        try:
            data = await websocket.receive_json()
        except (KeyError, ValueError):
            logger.warning("WebSocket client sent a frame that is not JSON text")
            await _close(websocket, 1003, "Expected JSON text messages")
            return
        if isinstance(data, dict) and data.get("type") == "ping":
            await websocket.send_json({"type": "pong"})


@websocket_router.websocket("/ws/feed/{kind}")
async def websocket_feed(
    websocket: WebSocket,
    kind: str,
    api_key: Optional[str] = Query(None),
    limit: Optional[int] = Query(None),
    identity: Optional[Identity] = Depends(get_optional_identity),
    feeds: FeedService = Depends(get_feed_service),
):
    """
    Stream a feed: one `snapshot` message followed by `diff` messages.
    The viewer for `is_liked` comes from the identity headers, like REST.
    """
    if not is_valid_api_key(api_key):
        logger.warning(f"WebSocket authentication failed for feed {kind}")
        await websocket.close(code=4001, reason="Invalid API Key")
        return

    try:
        subscription = await feeds.subscribe(kind, limit, _viewer_id(identity))
    except FeedAPIException as e:
        logger.warning(f"WebSocket subscription rejected: {e.message}")
        await websocket.close(code=4000, reason=e.message)
        return

    connection_id = uuid.uuid4().hex
    await websocket_manager.connect(websocket, connection_id)
    get_metrics_collector().set_gauge(
        "websocket_connections", len(websocket_manager.active_connections)
    )

    tasks = []
    try:
        await websocket.send_json(
            {
                "type": "snapshot",
                "kind": kind,
                "posts": [p.model_dump(mode="json") for p in subscription.snapshot],
            }
        )

        tasks = [
            asyncio.create_task(_pump_diffs(websocket, subscription)),
            asyncio.create_task(_answer_client(websocket)),
        ]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            task.result()

        if subscription.overflowed:
            await _close(websocket, 1013, "Subscriber fell behind")

    except WebSocketDisconnect:
        logger.info(f"WebSocket client left feed {kind}")
    except Exception as e:
        logger.error(f"WebSocket feed {kind} failed: {e}", exc_info=True)
        await _close(websocket, 1011, "Internal error")
    finally:
        subscription.cancel()
        for task in tasks:
            task.cancel()
        websocket_manager.disconnect(connection_id)
        get_metrics_collector().set_gauge(
            "websocket_connections", len(websocket_manager.active_connections)
        )
