"""
Dependency wiring for the FastAPI app.

Services are process-wide singletons held in one `ServiceRegistry`. The
registry is built lazily on first use (or explicitly by the application
lifespan) so that importing the app never touches the database or object
store. Tests swap it through `app.dependency_overrides[get_registry]` or
`set_registry`.

Authentication:
    Requests carry an `X-API-Key` and the identity verified by the upstream
    identity provider in `X-User-Id`, `X-User-Email`, `X-User-Name` and
    `X-User-Photo`.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import Settings, get_settings
from core.database import async_session
from core.exceptions import AuthenticationError
from core.models import Identity
from providers.storage_provider import StorageProvider, build_storage_provider
from services.channel_service import ChannelCatalog
from services.comment_service import CommentRepository
from services.counter_service import CounterEngine
from services.event_bus import FeedEventBus
from services.feed_service import FeedService
from services.post_service import PostRepository
from services.profile_service import ProfileRepository


@dataclass
class ServiceRegistry:
    session_factory: async_sessionmaker
    storage: StorageProvider
    bus: FeedEventBus
    counters: CounterEngine
    posts: PostRepository
    comments: CommentRepository
    profiles: ProfileRepository
    feeds: FeedService
    channels: ChannelCatalog


def build_registry(
    session_factory: Optional[async_sessionmaker] = None,
    storage: Optional[StorageProvider] = None,
    settings: Optional[Settings] = None,
) -> ServiceRegistry:
    settings = settings or get_settings()
    session_factory = session_factory or async_session
    storage = storage or build_storage_provider(settings)

    bus = FeedEventBus(queue_size=settings.subscription_queue_size)
    counters = CounterEngine(session_factory, bus, settings)
    posts = PostRepository(session_factory, storage, bus, settings)
    return ServiceRegistry(
        session_factory=session_factory,
        storage=storage,
        bus=bus,
        counters=counters,
        posts=posts,
        comments=CommentRepository(session_factory, counters, settings),
        profiles=ProfileRepository(session_factory, storage, settings),
        feeds=FeedService(posts, counters, bus, settings),
        channels=ChannelCatalog(session_factory),
    )


_registry: Optional[ServiceRegistry] = None


def get_registry() -> ServiceRegistry:
    """Return the singleton registry, building it on first use"""
    global _registry
    if _registry is None:
        _registry = build_registry()
    return _registry


def set_registry(registry: Optional[ServiceRegistry]):
    global _registry
    _registry = registry


def get_post_repository(registry: ServiceRegistry = Depends(get_registry)) -> PostRepository:
    return registry.posts


def get_counter_engine(registry: ServiceRegistry = Depends(get_registry)) -> CounterEngine:
    return registry.counters


def get_comment_repository(
    registry: ServiceRegistry = Depends(get_registry),
) -> CommentRepository:
    return registry.comments


def get_profile_repository(
    registry: ServiceRegistry = Depends(get_registry),
) -> ProfileRepository:
    return registry.profiles


def get_feed_service(registry: ServiceRegistry = Depends(get_registry)) -> FeedService:
    return registry.feeds


def get_channel_catalog(registry: ServiceRegistry = Depends(get_registry)) -> ChannelCatalog:
    return registry.channels


def get_storage_provider(registry: ServiceRegistry = Depends(get_registry)) -> StorageProvider:
    return registry.storage


def is_valid_api_key(api_key: Optional[str]) -> bool:
    if not api_key:
        return False
    expected_key = get_settings().api_key
    if expected_key is None:
        # For development, allow any key that starts with pk_
        return api_key.startswith("pk_")
    return api_key == expected_key


async def verify_api_key(x_api_key: Optional[str] = Header(None, alias="X-API-Key")) -> str:
    if not x_api_key:
        raise AuthenticationError("Missing API key")
    if not is_valid_api_key(x_api_key):
        raise AuthenticationError("Invalid API key")
    return x_api_key


async def get_optional_identity(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_email: Optional[str] = Header(None, alias="X-User-Email"),
    x_user_name: Optional[str] = Header(None, alias="X-User-Name"),
    x_user_photo: Optional[str] = Header(None, alias="X-User-Photo"),
) -> Optional[Identity]:
    if not x_user_id:
        return None
    return Identity(
        id=x_user_id,
        email=x_user_email,
        display_name=x_user_name,
        photo_url=x_user_photo,
    )


async def get_identity(
    identity: Optional[Identity] = Depends(get_optional_identity),
) -> Identity:
    if identity is None:
        raise AuthenticationError("Missing X-User-Id header")
    return identity
