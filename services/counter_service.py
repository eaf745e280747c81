"""
Counter & Like Engine.

Every change to a post's `likes`, `plays` or `comments` aggregate and to a
comment's `likes` goes through the `CounterEngine`. Aggregates are only ever
moved by in-database arithmetic (`SET likes = likes + 1`), never by writing a
value computed in Python, so concurrent writers cannot overwrite each other.

Like relations:
    A `post_likes` / `comment_likes` row exists while a viewer likes the
    entity. Setting a like inserts the row with ON CONFLICT DO NOTHING and
    clearing it deletes the row; the statement's row count tells whether the
    relation really changed, and only then does the aggregate move. Repeating
    the same request is therefore a no-op.

Transactions:
    `transact` runs a unit of work in one database transaction and retries it
    on contention errors (`OperationalError`, PostgreSQL serialization and
    deadlock failures) with linear backoff. Running out of attempts, or of
    time, raises `TransactionFailure`; a timed out transaction is rolled back.

Locking and events:
    Mutations of one post are additionally serialized in-process by a keyed
    lock. The post's `version` is bumped in the same statement as the
    aggregate and the committed post is published on the event bus before
    the lock is released, so subscribers see each post's updates in order.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional, Set, TypeVar

from sqlalchemy import case, delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import Settings, get_settings
from core.exceptions import NotFoundError, TransactionFailure
from core.locks import KeyedLock
from core.models import AudioPost, Comment, CommentLike, LikeState, PostLike, utc_now
from core.performance import get_metrics_collector, timed
from services.event_bus import POST_UPDATED, FeedEventBus

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected
_RETRYABLE_SQLSTATES = {"40001", "40P01"}


def _is_retryable(error: DBAPIError) -> bool:
    if isinstance(error, OperationalError):
        return True
    orig = getattr(error, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return sqlstate in _RETRYABLE_SQLSTATES


def _insert_ignoring_duplicates(session: AsyncSession, model):
    """INSERT ... ON CONFLICT DO NOTHING for the session's dialect"""
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model).on_conflict_do_nothing()
    if dialect == "sqlite":
        return sqlite.insert(model).on_conflict_do_nothing()
    raise NotImplementedError(f"Unsupported database dialect: {dialect}")


def _decremented(column):
    return case((column > 0, column - 1), else_=0)


class CounterEngine:
    """Race-free likes, plays and comment aggregates"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        bus: FeedEventBus,
        settings: Optional[Settings] = None,
    ):
        self._session_factory = session_factory
        self._bus = bus
        settings = settings or get_settings()
        self.max_retries = settings.counter_max_retries
        self.retry_backoff = settings.counter_retry_backoff_ms / 1000
        self.timeout = settings.operation_timeout_seconds
        self._post_locks = KeyedLock("post")
        self._comment_locks = KeyedLock("comment")

    @asynccontextmanager
    async def hold_post(self, post_id: str) -> AsyncIterator[None]:
        """Serialize mutations of one post within this process"""
        async with self._post_locks.hold(post_id):
            yield

    async def transact(
        self,
        operation: str,
        key: str,
        work: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        """
        Run `work(session)` inside a transaction with retry and timeout.

        `work` may run more than once and must not have side effects outside
        the session.
        """
        attempts = 0

        async def run() -> T:
            nonlocal attempts
            last_error: Optional[DBAPIError] = None
            while attempts < self.max_retries:
                attempts += 1
                try:
                    async with self._session_factory() as session:
                        async with session.begin():
                            return await work(session)
                except DBAPIError as e:
                    if not _is_retryable(e):
                        raise
                    last_error = e
                    get_metrics_collector().increment_counter(
                        "counter_retries", tags={"operation": operation}
                    )
                    logger.warning(
                        f"{operation} on {key} hit contention, attempt {attempts}/{self.max_retries}",
                        extra={"operation": operation, "key": key, "attempt": attempts},
                    )
                    if attempts < self.max_retries:
                        await asyncio.sleep(self.retry_backoff * attempts)

            raise TransactionFailure(
                operation, key, attempts, str(getattr(last_error, "orig", last_error))
            )

        try:
            return await asyncio.wait_for(run(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(
                f"{operation} on {key} timed out after {self.timeout}s",
                extra={"operation": operation, "key": key, "attempt": attempts},
            )
            raise TransactionFailure(operation, key, attempts, "timed out")

    def publish_post_update(
        self, post: AudioPost, actor_id: Optional[str] = None, liked: Optional[bool] = None
    ):
        self._bus.publish(POST_UPDATED, post, actor_id=actor_id, liked=liked)

    @timed("counter_engine.like")
    async def like(
        self, post_id: str, viewer_id: str, intended_state: Optional[bool] = None
    ) -> LikeState:
        """
        Set the viewer's like on a post, or toggle it when `intended_state`
        is None. The aggregate only moves when the relation changed.
        """

        async def work(session: AsyncSession):
            post = await session.get(AudioPost, post_id)
            if post is None:
                raise NotFoundError("AudioPost", post_id)

            target = intended_state
            if target is None:
                target = await session.get(PostLike, (post_id, viewer_id)) is None

            if target:
                result = await session.execute(
                    _insert_ignoring_duplicates(session, PostLike).values(
                        post_id=post_id, viewer_id=viewer_id, created_at=utc_now()
                    )
                )
                new_likes = AudioPost.likes + 1
            else:
                result = await session.execute(
                    delete(PostLike).where(
                        PostLike.post_id == post_id, PostLike.viewer_id == viewer_id
                    )
                )
                new_likes = _decremented(AudioPost.likes)

            changed = result.rowcount == 1
            if changed:
                await session.execute(
                    update(AudioPost)
                    .where(AudioPost.id == post_id)
                    .values(likes=new_likes, version=AudioPost.version + 1)
                    .execution_options(synchronize_session=False)
                )
                await session.refresh(post)

            return LikeState(
                target_id=post_id, liked=target, likes=post.likes, changed=changed
            ), post

        async with self.hold_post(post_id):
            state, post = await self.transact("like", post_id, work)
            if state.changed:
                self.publish_post_update(post, actor_id=viewer_id, liked=state.liked)

        logger.info(
            f"Like on post {post_id} by {viewer_id}: liked={state.liked} changed={state.changed}",
            extra={"post_id": post_id, "viewer_id": viewer_id, "likes": state.likes},
        )
        return state

    @timed("counter_engine.like_comment")
    async def like_comment(
        self, comment_id: str, viewer_id: str, intended_state: Optional[bool] = None
    ) -> LikeState:
        async def work(session: AsyncSession) -> LikeState:
            comment = await session.get(Comment, comment_id)
            if comment is None:
                raise NotFoundError("Comment", comment_id)

            target = intended_state
            if target is None:
                target = await session.get(CommentLike, (comment_id, viewer_id)) is None

            if target:
                result = await session.execute(
                    _insert_ignoring_duplicates(session, CommentLike).values(
                        comment_id=comment_id, viewer_id=viewer_id, created_at=utc_now()
                    )
                )
                new_likes = Comment.likes + 1
            else:
                result = await session.execute(
                    delete(CommentLike).where(
                        CommentLike.comment_id == comment_id,
                        CommentLike.viewer_id == viewer_id,
                    )
                )
                new_likes = _decremented(Comment.likes)

            changed = result.rowcount == 1
            if changed:
                await session.execute(
                    update(Comment)
                    .where(Comment.id == comment_id)
                    .values(likes=new_likes)
                    .execution_options(synchronize_session=False)
                )
                await session.refresh(comment)

            return LikeState(
                target_id=comment_id, liked=target, likes=comment.likes, changed=changed
            )

        async with self._comment_locks.hold(comment_id):
            return await self.transact("like_comment", comment_id, work)

    @timed("counter_engine.increment_play")
    async def increment_play(self, post_id: str) -> int:
        """Count one play. Retried requests may count twice."""

        async def work(session: AsyncSession) -> AudioPost:
            result = await session.execute(
                update(AudioPost)
                .where(AudioPost.id == post_id)
                .values(plays=AudioPost.plays + 1, version=AudioPost.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError("AudioPost", post_id)
            return await session.get(AudioPost, post_id)

        async with self.hold_post(post_id):
            post = await self.transact("increment_play", post_id, work)
            self.publish_post_update(post)
        return post.plays

    async def increment_comments(self, session: AsyncSession, post_id: str):
        """Bump the comment aggregate inside the caller's transaction"""
        result = await session.execute(
            update(AudioPost)
            .where(AudioPost.id == post_id)
            .values(comments=AudioPost.comments + 1, version=AudioPost.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError("AudioPost", post_id)

    async def liked_post_ids(
        self, viewer_id: Optional[str], post_ids: Iterable[str]
    ) -> Set[str]:
        post_ids = list(post_ids)
        if not viewer_id or not post_ids:
            return set()
        async with self._session_factory() as session:
            result = await session.execute(
                select(PostLike.post_id).where(
                    PostLike.viewer_id == viewer_id, PostLike.post_id.in_(post_ids)
                )
            )
            return set(result.scalars().all())

    async def liked_comment_ids(
        self, viewer_id: Optional[str], comment_ids: Iterable[str]
    ) -> Set[str]:
        comment_ids = list(comment_ids)
        if not viewer_id or not comment_ids:
            return set()
        async with self._session_factory() as session:
            result = await session.execute(
                select(CommentLike.comment_id).where(
                    CommentLike.viewer_id == viewer_id,
                    CommentLike.comment_id.in_(comment_ids),
                )
            )
            return set(result.scalars().all())
