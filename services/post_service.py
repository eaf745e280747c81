"""
Post Repository.

This module provides the `PostRepository`, which owns audio posts: creating
them from a draft, publishing them together with their audio upload, and
listing them for the feeds.

Key Components:
- `PostRepository.create` / `publish`: Validation, author snapshot and
  insertion. `publish` uploads the audio first and removes the blob again if
  the post cannot be created, so a stored blob always has a post pointing at
  it.
- `list_recent` / `list_by_author`: Keyset pagination over
  `(created_at DESC, id DESC)`. The cursor encodes the last returned sort key,
  so pages stay stable while new posts are being inserted.
- `list_trending`: Most-liked posts, ties broken by recency and id.
- `encode_cursor` / `decode_cursor`: Opaque urlsafe-base64 cursors.

Posts are never updated through this repository. Counter columns belong to
the counter engine.
"""

import base64
import json
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple, Union

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import Settings, get_settings
from core.exceptions import NotFoundError, StorageFailure, ValidationError
from core.models import AudioPost, Identity, PostDraft, as_utc, utc_now
from core.performance import timed
from providers.storage_provider import StorageProvider, upload_hint
from services.event_bus import POST_CREATED, FeedEventBus
from services.profile_service import author_snapshot

logger = logging.getLogger(__name__)


def encode_cursor(post: AudioPost) -> str:
    payload = json.dumps({"created_at": post.created_at.isoformat(), "id": post.id})
    return base64.urlsafe_b64encode(payload.encode()).decode().rstrip("=")


def decode_cursor(cursor: str) -> Tuple[datetime, str]:
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode()).decode())
        return as_utc(datetime.fromisoformat(payload["created_at"])), str(payload["id"])
    except (ValueError, KeyError, TypeError) as e:
        raise ValidationError("cursor", cursor, "Malformed cursor") from e


def normalize_tags(tags: Union[str, Iterable[str], None]) -> List[str]:
    """Accept a list or a comma separated string; trim and drop empty entries"""
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = tags.split(",")
    return [tag.strip() for tag in tags if tag and tag.strip()]


class PostRepository:
    """Creation and ordered listing of audio posts"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        storage: StorageProvider,
        bus: FeedEventBus,
        settings: Optional[Settings] = None,
    ):
        self._session_factory = session_factory
        self._storage = storage
        self._bus = bus
        self._settings = settings or get_settings()

    def check_limit(self, limit: int) -> int:
        if limit < 1 or limit > self._settings.max_page_size:
            raise ValidationError(
                "limit", limit, f"Must be between 1 and {self._settings.max_page_size}"
            )
        return limit

    def _validated(self, draft: PostDraft) -> PostDraft:
        title = (draft.title or "").strip()
        if not title:
            raise ValidationError("title", draft.title, "Title cannot be empty")
        if not draft.audio_url:
            raise ValidationError("audio_url", draft.audio_url, "Audio URL is required")
        if draft.duration < 0:
            raise ValidationError("duration", draft.duration, "Duration cannot be negative")
        description = draft.description.strip() if draft.description else None
        return PostDraft(
            title=title,
            description=description or None,
            audio_url=draft.audio_url,
            duration=draft.duration,
            tags=normalize_tags(draft.tags),
        )

    @timed("post_repository.create")
    async def create(self, draft: PostDraft, identity: Identity) -> AudioPost:
        draft = self._validated(draft)

        async with self._session_factory() as session:
            snapshot = await author_snapshot(session, identity)
            post = AudioPost(
                title=draft.title,
                description=draft.description,
                audio_url=draft.audio_url,
                author_id=identity.id,
                created_at=utc_now(),
                duration=draft.duration,
                tags=draft.tags,
                **snapshot,
            )
            session.add(post)
            await session.commit()

        logger.info(
            f"Created post {post.id} by {identity.id}",
            extra={"post_id": post.id, "author_id": identity.id},
        )
        self._bus.publish(POST_CREATED, post)
        return post

    @timed("post_repository.publish")
    async def publish(
        self,
        identity: Identity,
        title: str,
        audio: bytes,
        content_type: str = "audio/m4a",
        description: Optional[str] = None,
        duration: float = 0.0,
        tags: Union[str, Iterable[str], None] = None,
        filename: Optional[str] = None,
    ) -> AudioPost:
        """Upload `audio` and create the post referencing it, or neither"""
        # Fail fast before uploading anything
        self._validated(
            PostDraft(title=title, audio_url="pending", duration=duration)
        )

        audio_url = await self._storage.put(
            audio, content_type, upload_hint("audio", filename, "recording")
        )
        try:
            return await self.create(
                PostDraft(
                    title=title,
                    description=description,
                    audio_url=audio_url,
                    duration=duration,
                    tags=normalize_tags(tags),
                ),
                identity,
            )
        except Exception:
            await self._discard_blob(audio_url)
            raise

    async def get(self, post_id: str) -> AudioPost:
        async with self._session_factory() as session:
            post = await session.get(AudioPost, post_id)
        if post is None:
            raise NotFoundError("AudioPost", post_id)
        return post

    @timed("post_repository.list_recent")
    async def list_recent(
        self, limit: int, cursor: Optional[str] = None
    ) -> Tuple[List[AudioPost], Optional[str]]:
        return await self._page(limit, cursor)

    @timed("post_repository.list_by_author")
    async def list_by_author(
        self, author_id: str, limit: int, cursor: Optional[str] = None
    ) -> Tuple[List[AudioPost], Optional[str]]:
        return await self._page(limit, cursor, author_id=author_id)

    @timed("post_repository.list_trending")
    async def list_trending(self, limit: int) -> List[AudioPost]:
        self.check_limit(limit)
        stmt = (
            select(AudioPost)
            .order_by(
                AudioPost.likes.desc(), AudioPost.created_at.desc(), AudioPost.id.desc()
            )
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def _page(
        self, limit: int, cursor: Optional[str], author_id: Optional[str] = None
    ) -> Tuple[List[AudioPost], Optional[str]]:
        self.check_limit(limit)
        stmt = select(AudioPost)
        if author_id is not None:
            stmt = stmt.where(AudioPost.author_id == author_id)
        if cursor:
            created_at, post_id = decode_cursor(cursor)
            stmt = stmt.where(
                or_(
                    AudioPost.created_at < created_at,
                    and_(AudioPost.created_at == created_at, AudioPost.id < post_id),
                )
            )
        stmt = stmt.order_by(AudioPost.created_at.desc(), AudioPost.id.desc()).limit(
            limit + 1
        )

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            posts = list(result.scalars().all())

        next_cursor = None
        if len(posts) > limit:
            posts = posts[:limit]
            next_cursor = encode_cursor(posts[-1])
        return posts, next_cursor

    async def _discard_blob(self, url: str):
        try:
            await self._storage.delete(url)
            logger.info(f"Removed audio {url} after failed post creation")
        except StorageFailure as e:
            logger.error(f"Could not delete orphaned audio {url}: {e}")
