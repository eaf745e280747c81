"""
Feed Query Service.

This module serves the `recent`, `trending` and `following` feeds, both as
paginated queries and as live subscriptions.

Key Components:
- `FeedService`: Query side. Wraps the post repository and decorates every
  post with the requesting viewer's `is_liked` flag.
- `FeedSubscription`: Live view of one feed for one viewer. It starts from a
  snapshot of the feed and then turns bus events into `FeedDiff`s.
- `FeedDiff`: `added`, `modified` or `removed`, with the post as the viewer
  sees it and a per-subscription sequence number.

Subscription lifecycle:
    The subscriber is registered on the bus *before* the snapshot is loaded,
    so a change committed while the snapshot query runs is queued rather than
    lost. Queued events are applied after the snapshot and anything the
    snapshot already reflects is skipped by comparing post versions.

Window:
    A subscription holds at most `limit` posts, ranked by the feed ordering
    (`recent`: newest first; `trending`: most liked, then newest). A post that
    outranks the lowest-ranked member enters the window and pushes that member
    out, which is reported as `removed`. When a member of a full window sinks
    to the bottom (a trending post losing likes), posts outside the window may
    now outrank it, so the window is reloaded from the repository and the
    difference is reported as `removed` and `added` diffs.

The `following` feed has no social graph behind it yet and serves `recent`.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from core.config import Settings, get_settings
from core.exceptions import ValidationError
from core.models import AudioPost, PostPage, PostView
from services.counter_service import CounterEngine
from services.event_bus import CLOSED, FeedEvent, FeedEventBus, Subscriber
from services.post_service import PostRepository

logger = logging.getLogger(__name__)

FEED_KINDS = ("recent", "trending", "following")

DIFF_ADDED = "added"
DIFF_MODIFIED = "modified"
DIFF_REMOVED = "removed"


def recent_rank(post: AudioPost) -> Tuple:
    return (post.created_at, post.id)


def trending_rank(post: AudioPost) -> Tuple:
    return (post.likes, post.created_at, post.id)


RANKS: Dict[str, Callable[[AudioPost], Tuple]] = {
    "recent": recent_rank,
    "trending": trending_rank,
    "following": recent_rank,
}

# Loads the top `limit` posts of a feed and the ids among them the viewer likes
WindowLoader = Callable[[int], Awaitable[Tuple[List[AudioPost], Set[str]]]]


def _or_default(limit: Optional[int], default: int) -> int:
    return default if limit is None else limit


@dataclass(frozen=True)
class FeedDiff:
    type: str
    post: PostView
    sequence: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "sequence": self.sequence,
            "post": self.post.model_dump(mode="json"),
        }


class FeedSubscription:
    """Snapshot plus ordered diffs of one feed for one viewer"""

    def __init__(
        self,
        kind: str,
        limit: int,
        viewer_id: Optional[str],
        bus: FeedEventBus,
        subscriber: Subscriber,
        loader: Optional[WindowLoader] = None,
    ):
        self.kind = kind
        self.limit = limit
        self.viewer_id = viewer_id
        self._bus = bus
        self._subscriber = subscriber
        self._loader = loader
        self._rank = RANKS[kind]
        self._window: Dict[str, AudioPost] = {}
        self._versions: Dict[str, int] = {}
        self._liked: Set[str] = set()
        self._pending: Deque[FeedDiff] = deque()
        self._sequence = 0
        self._cancelled = False
        self._reload_due = False

    def seed(self, posts: Iterable[AudioPost], liked_ids: Iterable[str]):
        self._liked = set(liked_ids)
        for post in posts:
            self._window[post.id] = post
            self._versions[post.id] = post.version

    @property
    def snapshot(self) -> List[PostView]:
        ordered = sorted(self._window.values(), key=self._rank, reverse=True)
        return [self._view(post) for post in ordered]

    @property
    def closed(self) -> bool:
        return self._cancelled or self._subscriber.closed

    @property
    def overflowed(self) -> bool:
        return self._subscriber.overflowed

    @property
    def reload_due(self) -> bool:
        return self._reload_due

    def cancel(self):
        """Stop delivery to this subscription only"""
        if self._cancelled:
            return
        self._cancelled = True
        self._bus.unsubscribe(self._subscriber)
        logger.debug(f"Feed subscription {self._subscriber.id} cancelled")

    async def next(self, timeout: Optional[float] = None) -> Optional[FeedDiff]:
        """
        Wait for the next diff. Returns None once the subscription is closed;
        raises `asyncio.TimeoutError` if nothing arrives within `timeout`.
        """
        while not self._pending:
            if self._cancelled:
                return None
            event = await asyncio.wait_for(self._subscriber.queue.get(), timeout)
            if event is CLOSED:
                self._cancelled = True
                return None
            self._pending.extend(self.apply(event))
            if self._reload_due:
                self._pending.extend(await self.reload())
        return self._pending.popleft()

    def __aiter__(self):
        return self

    async def __anext__(self) -> FeedDiff:
        diff = await self.next()
        if diff is None:
            raise StopAsyncIteration
        return diff

    def apply(self, event: FeedEvent) -> List[FeedDiff]:
        """Fold one bus event into the window and return the resulting diffs"""
        post = event.post
        if post.version <= self._versions.get(post.id, 0):
            return []
        self._versions[post.id] = post.version

        if self.viewer_id and event.actor_id == self.viewer_id and event.liked is not None:
            if event.liked:
                self._liked.add(post.id)
            else:
                self._liked.discard(post.id)

        current = self._window.get(post.id)
        if current is not None:
            self._window[post.id] = post
            if (
                len(self._window) >= self.limit
                and self._rank(post) < self._rank(current)
                and min(self._window.values(), key=self._rank) is post
            ):
                self._reload_due = True
            return [self._diff(DIFF_MODIFIED, post)]

        if len(self._window) < self.limit:
            self._window[post.id] = post
            return [self._diff(DIFF_ADDED, post)]

        lowest = min(self._window.values(), key=self._rank)
        if self._rank(post) <= self._rank(lowest):
            return []

        del self._window[lowest.id]
        self._window[post.id] = post
        return [self._diff(DIFF_ADDED, post), self._diff(DIFF_REMOVED, lowest)]

    async def reload(self) -> List[FeedDiff]:
        """
        Replace the window with the feed's current top posts. Members that
        fell out are reported first, then the posts that took their place.
        """
        self._reload_due = False
        if self._loader is None:
            return []

        posts, liked = await self._loader(self.limit)
        fresh = {post.id: post for post in posts}
        for post_id in fresh:
            if post_id in liked:
                self._liked.add(post_id)
            else:
                self._liked.discard(post_id)

        diffs = []
        for post_id in [i for i in self._window if i not in fresh]:
            diffs.append(self._diff(DIFF_REMOVED, self._window.pop(post_id)))

        for post in sorted(posts, key=self._rank, reverse=True):
            current = self._window.get(post.id)
            if current is not None and post.version <= current.version:
                continue
            self._window[post.id] = post
            self._versions[post.id] = max(post.version, self._versions.get(post.id, 0))
            diffs.append(self._diff(DIFF_ADDED if current is None else DIFF_MODIFIED, post))

        if diffs:
            logger.debug(
                f"Feed subscription {self._subscriber.id} reloaded its window",
                extra={"feed_kind": self.kind, "diffs": len(diffs)},
            )
        return diffs

    def _view(self, post: AudioPost) -> PostView:
        return PostView.from_post(post, is_liked=post.id in self._liked)

    def _diff(self, diff_type: str, post: AudioPost) -> FeedDiff:
        self._sequence += 1
        return FeedDiff(type=diff_type, post=self._view(post), sequence=self._sequence)


class FeedService:
    """Paginated feeds and live feed subscriptions"""

    def __init__(
        self,
        posts: PostRepository,
        counters: CounterEngine,
        bus: FeedEventBus,
        settings: Optional[Settings] = None,
    ):
        self._posts = posts
        self._counters = counters
        self._bus = bus
        self._settings = settings or get_settings()

    async def _views(
        self, posts: List[AudioPost], viewer_id: Optional[str]
    ) -> List[PostView]:
        liked = await self._counters.liked_post_ids(viewer_id, [p.id for p in posts])
        return [PostView.from_post(p, is_liked=p.id in liked) for p in posts]

    async def recent(
        self,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
        viewer_id: Optional[str] = None,
    ) -> PostPage:
        posts, next_cursor = await self._posts.list_recent(
            _or_default(limit, self._settings.default_page_size), cursor
        )
        return PostPage(posts=await self._views(posts, viewer_id), next_cursor=next_cursor)

    async def trending(
        self, limit: Optional[int] = None, viewer_id: Optional[str] = None
    ) -> PostPage:
        posts = await self._posts.list_trending(_or_default(limit, self._settings.trending_size))
        return PostPage(posts=await self._views(posts, viewer_id))

    async def by_author(
        self,
        author_id: str,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
        viewer_id: Optional[str] = None,
    ) -> PostPage:
        posts, next_cursor = await self._posts.list_by_author(
            author_id, _or_default(limit, self._settings.default_page_size), cursor
        )
        return PostPage(posts=await self._views(posts, viewer_id), next_cursor=next_cursor)

    async def get_feed(
        self,
        kind: str,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
        viewer_id: Optional[str] = None,
    ) -> PostPage:
        self._check_kind(kind)
        if kind == "trending":
            if cursor:
                raise ValidationError("cursor", cursor, "The trending feed is not paginated")
            return await self.trending(limit, viewer_id)
        return await self.recent(limit, cursor, viewer_id)

    async def subscribe(
        self, kind: str, limit: Optional[int] = None, viewer_id: Optional[str] = None
    ) -> FeedSubscription:
        """Open a live subscription; its `snapshot` is ready when this returns"""
        self._check_kind(kind)
        if kind == "trending":
            limit = self._posts.check_limit(_or_default(limit, self._settings.trending_size))
        else:
            limit = self._posts.check_limit(_or_default(limit, self._settings.default_page_size))

        async def load(size: int) -> Tuple[List[AudioPost], Set[str]]:
            if kind == "trending":
                posts = await self._posts.list_trending(size)
            else:
                posts, _ = await self._posts.list_recent(size)
            liked = await self._counters.liked_post_ids(viewer_id, [p.id for p in posts])
            return posts, liked

        subscriber = self._bus.subscribe()
        subscription = FeedSubscription(
            kind, limit, viewer_id, self._bus, subscriber, loader=load
        )
        try:
            posts, liked = await load(limit)
        except BaseException:
            subscription.cancel()
            raise

        subscription.seed(posts, liked)
        logger.info(
            f"Feed subscription opened: {kind} (limit={limit})",
            extra={"feed_kind": kind, "viewer_id": viewer_id, "subscriber_id": subscriber.id},
        )
        return subscription

    @staticmethod
    def _check_kind(kind: str):
        if kind not in FEED_KINDS:
            raise ValidationError("kind", kind, f"Must be one of {', '.join(FEED_KINDS)}")
