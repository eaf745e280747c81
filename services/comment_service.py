"""
Comment Repository.

Comments are append-only. Adding one inserts the comment and bumps the post's
`comments` aggregate in the same transaction, under the post's lock, using the
counter engine's retry and timeout policy; a comment therefore never exists
without being counted, and is never counted twice.
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import Settings, get_settings
from core.exceptions import NotFoundError, ValidationError
from core.models import AudioPost, Comment, CommentView, Identity, utc_now
from core.performance import timed
from services.counter_service import CounterEngine
from services.profile_service import author_snapshot

logger = logging.getLogger(__name__)

ORDERS = ("asc", "desc")


class CommentRepository:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        counters: CounterEngine,
        settings: Optional[Settings] = None,
    ):
        self._session_factory = session_factory
        self._counters = counters
        self._settings = settings or get_settings()

    @timed("comment_repository.add")
    async def add(self, post_id: str, identity: Identity, text: str) -> Comment:
        text = (text or "").strip()
        if not text:
            raise ValidationError("text", text, "Comment cannot be empty")
        if len(text) > self._settings.max_comment_length:
            raise ValidationError(
                "text",
                f"{len(text)} characters",
                f"Comment exceeds {self._settings.max_comment_length} characters",
            )

        async def work(session: AsyncSession):
            post = await session.get(AudioPost, post_id)
            if post is None:
                raise NotFoundError("AudioPost", post_id)

            comment = Comment(
                post_id=post_id,
                author_id=identity.id,
                text=text,
                created_at=utc_now(),
                **(await author_snapshot(session, identity)),
            )
            session.add(comment)
            await session.flush()
            await self._counters.increment_comments(session, post_id)
            await session.refresh(post)
            return comment, post

        async with self._counters.hold_post(post_id):
            comment, post = await self._counters.transact("add_comment", post_id, work)
            self._counters.publish_post_update(post)

        logger.info(
            f"Comment {comment.id} added to post {post_id}",
            extra={"comment_id": comment.id, "post_id": post_id, "author_id": identity.id},
        )
        return comment

    async def list(
        self, post_id: str, order: str = "desc", viewer_id: Optional[str] = None
    ) -> List[CommentView]:
        """Comments of a post in chronological (`asc`) or reverse (`desc`) order"""
        if order not in ORDERS:
            raise ValidationError("order", order, "Must be 'asc' or 'desc'")

        if order == "desc":
            ordering = (Comment.created_at.desc(), Comment.id.desc())
        else:
            ordering = (Comment.created_at.asc(), Comment.id.asc())

        async with self._session_factory() as session:
            if await session.get(AudioPost, post_id) is None:
                raise NotFoundError("AudioPost", post_id)
            result = await session.execute(
                select(Comment).where(Comment.post_id == post_id).order_by(*ordering)
            )
            comments = list(result.scalars().all())

        liked = await self._counters.liked_comment_ids(viewer_id, [c.id for c in comments])
        return [CommentView.from_comment(c, is_liked=c.id in liked) for c in comments]
