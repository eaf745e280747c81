"""
Unit tests for the feed query service and live subscriptions.
"""
import pytest

from core.config import Settings
from core.exceptions import ValidationError
from core.models import AudioPost, PostDraft
from services.event_bus import POST_UPDATED, FeedEvent, FeedEventBus
from services.feed_service import DIFF_ADDED, DIFF_MODIFIED, DIFF_REMOVED, FeedSubscription


def draft(title):
    return PostDraft(title=title, audio_url="https://storage.example.test/a.m4a")


async def create_posts(registry, identity, count, prefix="post"):
    return [
        await registry.posts.create(draft(f"{prefix} {i}"), identity)
        for i in range(1, count + 1)
    ]


class TestQueries:
    @pytest.mark.asyncio
    async def test_recent_marks_viewer_likes(self, registry, identity):
        first, second = await create_posts(registry, identity, 2)
        await registry.counters.like(first.id, "viewer-1", True)

        page = await registry.feeds.recent(viewer_id="viewer-1")

        flags = {p.id: p.is_liked for p in page.posts}
        assert flags == {first.id: True, second.id: False}

    @pytest.mark.asyncio
    async def test_anonymous_viewer_sees_no_likes(self, registry, identity):
        (post,) = await create_posts(registry, identity, 1)
        await registry.counters.like(post.id, "viewer-1", True)

        page = await registry.feeds.recent()

        assert page.posts[0].is_liked is False
        assert page.posts[0].likes == 1

    @pytest.mark.asyncio
    async def test_get_feed_kinds(self, registry, identity):
        first, second = await create_posts(registry, identity, 2)
        await registry.counters.like(first.id, "viewer-1", True)

        recent = await registry.feeds.get_feed("recent")
        following = await registry.feeds.get_feed("following")
        trending = await registry.feeds.get_feed("trending")

        assert [p.id for p in recent.posts] == [second.id, first.id]
        assert [p.id for p in following.posts] == [p.id for p in recent.posts]
        assert [p.id for p in trending.posts] == [first.id, second.id]
        assert trending.next_cursor is None

    @pytest.mark.asyncio
    async def test_unknown_feed_kind(self, registry):
        with pytest.raises(ValidationError):
            await registry.feeds.get_feed("popular")

    @pytest.mark.asyncio
    async def test_by_author_pages(self, registry, identity):
        await create_posts(registry, identity, 3)

        page = await registry.feeds.by_author(identity.id, limit=2)
        rest = await registry.feeds.by_author(identity.id, limit=2, cursor=page.next_cursor)

        assert [p.title for p in page.posts] == ["post 3", "post 2"]
        assert [p.title for p in rest.posts] == ["post 1"]


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_snapshot_then_added(self, registry, identity):
        (existing,) = await create_posts(registry, identity, 1)
        subscription = await registry.feeds.subscribe("recent", limit=5)

        new_post = await registry.posts.create(draft("fresh"), identity)
        diff = await subscription.next(timeout=1)

        assert [p.id for p in subscription.snapshot] == [new_post.id, existing.id]
        assert diff.type == DIFF_ADDED
        assert diff.post.id == new_post.id
        assert diff.sequence == 1
        subscription.cancel()

    @pytest.mark.asyncio
    async def test_modified_carries_viewer_like(self, registry, identity):
        (post,) = await create_posts(registry, identity, 1)
        subscription = await registry.feeds.subscribe("recent", limit=5, viewer_id="viewer-1")

        await registry.counters.like(post.id, "viewer-1", True)
        await registry.counters.like(post.id, "viewer-2", True)
        mine = await subscription.next(timeout=1)
        theirs = await subscription.next(timeout=1)

        assert (mine.type, mine.post.likes, mine.post.is_liked) == (DIFF_MODIFIED, 1, True)
        assert (theirs.post.likes, theirs.post.is_liked) == (2, True)
        assert theirs.sequence > mine.sequence
        subscription.cancel()

    @pytest.mark.asyncio
    async def test_full_window_evicts_oldest(self, registry, identity):
        oldest, newest = await create_posts(registry, identity, 2)
        subscription = await registry.feeds.subscribe("recent", limit=2)

        fresh = await registry.posts.create(draft("fresh"), identity)
        added = await subscription.next(timeout=1)
        removed = await subscription.next(timeout=1)

        assert (added.type, added.post.id) == (DIFF_ADDED, fresh.id)
        assert (removed.type, removed.post.id) == (DIFF_REMOVED, oldest.id)
        assert [p.id for p in subscription.snapshot] == [fresh.id, newest.id]
        subscription.cancel()

    @pytest.mark.asyncio
    async def test_trending_promotion(self, registry, identity):
        first, second, third = await create_posts(registry, identity, 3)
        subscription = await registry.feeds.subscribe("trending", limit=2)
        assert {p.id for p in subscription.snapshot} == {third.id, second.id}

        await registry.counters.like(first.id, "viewer-1", True)
        added = await subscription.next(timeout=1)
        removed = await subscription.next(timeout=1)

        assert (added.type, added.post.id) == (DIFF_ADDED, first.id)
        assert (removed.type, removed.post.id) == (DIFF_REMOVED, second.id)
        subscription.cancel()

    @pytest.mark.asyncio
    async def test_trending_member_losing_likes_is_replaced(self, registry, identity):
        a, b, c = await create_posts(registry, identity, 3)
        await registry.counters.like(a.id, "viewer-1", True)
        await registry.counters.like(a.id, "viewer-2", True)
        await registry.counters.like(b.id, "viewer-1", True)
        subscription = await registry.feeds.subscribe("trending", limit=2, viewer_id="viewer-2")
        assert [p.id for p in subscription.snapshot] == [a.id, b.id]

        await registry.counters.like(a.id, "viewer-1", False)
        diffs = [await subscription.next(timeout=1)]
        await registry.counters.like(a.id, "viewer-2", False)
        diffs += [await subscription.next(timeout=1) for _ in range(3)]

        assert [(d.type, d.post.id, d.post.likes) for d in diffs] == [
            (DIFF_MODIFIED, a.id, 1),
            (DIFF_MODIFIED, a.id, 0),
            (DIFF_REMOVED, a.id, 0),
            (DIFF_ADDED, c.id, 0),
        ]
        assert [d.sequence for d in diffs] == [1, 2, 3, 4]
        trending = await registry.feeds.trending(limit=2)
        assert [p.id for p in subscription.snapshot] == [p.id for p in trending.posts]
        subscription.cancel()

    @pytest.mark.asyncio
    async def test_reload_marks_viewer_likes(self, registry, identity):
        a, b, c = await create_posts(registry, identity, 3)
        await registry.counters.like(a.id, "viewer-1", True)
        await registry.counters.like(b.id, "viewer-2", True)
        subscription = await registry.feeds.subscribe("trending", limit=1, viewer_id="viewer-2")
        assert [p.id for p in subscription.snapshot] == [b.id]

        await registry.counters.like(b.id, "viewer-2", False)
        modified = await subscription.next(timeout=1)
        removed = await subscription.next(timeout=1)
        added = await subscription.next(timeout=1)

        assert (modified.type, modified.post.is_liked) == (DIFF_MODIFIED, False)
        assert (removed.type, removed.post.id) == (DIFF_REMOVED, b.id)
        assert (added.type, added.post.id, added.post.likes) == (DIFF_ADDED, a.id, 1)
        assert added.post.is_liked is False
        subscription.cancel()

    @pytest.mark.asyncio
    async def test_cancel_stops_delivery(self, registry, identity):
        subscription = await registry.feeds.subscribe("recent", limit=5)
        other = await registry.feeds.subscribe("recent", limit=5)

        subscription.cancel()
        post = await registry.posts.create(draft("after cancel"), identity)

        assert await subscription.next(timeout=1) is None
        assert (await other.next(timeout=1)).post.id == post.id
        assert len(registry.bus) == 1
        other.cancel()

    @pytest.mark.asyncio
    async def test_async_iteration_ends_on_cancel(self, registry, identity):
        subscription = await registry.feeds.subscribe("recent", limit=5)
        await registry.posts.create(draft("one"), identity)

        seen = []
        async for diff in subscription:
            seen.append(diff.post.title)
            subscription.cancel()

        assert seen == ["one"]

    @pytest.mark.asyncio
    async def test_overflow_cancels_subscriber(self, session_factory, storage, identity):
        from api.dependencies import build_registry

        registry = build_registry(
            session_factory, storage, Settings(subscription_queue_size=1)
        )
        subscription = await registry.feeds.subscribe("recent", limit=5)

        await registry.posts.create(draft("one"), identity)
        await registry.posts.create(draft("two"), identity)

        assert subscription.overflowed is True
        assert await subscription.next(timeout=1) is None
        assert len(registry.bus) == 0

    @pytest.mark.asyncio
    async def test_invalid_subscription(self, registry):
        with pytest.raises(ValidationError):
            await registry.feeds.subscribe("popular")
        with pytest.raises(ValidationError):
            await registry.feeds.subscribe("recent", limit=1000)
        assert len(registry.bus) == 0


class TestWindow:
    def make_post(self, post_id, version=1, likes=0):
        return AudioPost(
            id=post_id,
            title=post_id,
            audio_url="https://storage.example.test/a.m4a",
            author_id="author",
            author_name="Author",
            author_username="author",
            likes=likes,
            version=version,
        )

    def make_subscription(self, kind="recent", limit=3):
        bus = FeedEventBus()
        return FeedSubscription(kind, limit, "viewer-1", bus, bus.subscribe())

    def test_stale_versions_are_skipped(self):
        subscription = self.make_subscription()
        subscription.seed([self.make_post("a", version=3)], [])

        stale = FeedEvent(1, POST_UPDATED, self.make_post("a", version=2))
        fresh = FeedEvent(2, POST_UPDATED, self.make_post("a", version=4))

        assert subscription.apply(stale) == []
        assert [d.type for d in subscription.apply(fresh)] == [DIFF_MODIFIED]

    def test_stale_event_does_not_flip_like(self):
        subscription = self.make_subscription()
        subscription.seed([self.make_post("a", version=3, likes=1)], ["a"])

        stale = FeedEvent(1, POST_UPDATED, self.make_post("a", version=2), "viewer-1", False)
        subscription.apply(stale)

        assert subscription.snapshot[0].is_liked is True

    def test_lower_ranked_post_ignored_when_full(self):
        subscription = self.make_subscription("trending", limit=1)
        subscription.seed([self.make_post("a", likes=5)], [])

        event = FeedEvent(1, POST_UPDATED, self.make_post("b", likes=1))

        assert subscription.apply(event) == []

    def test_sinking_member_flags_reload(self):
        subscription = self.make_subscription("trending", limit=2)
        subscription.seed(
            [self.make_post("a", likes=3), self.make_post("b", likes=2)], []
        )

        event = FeedEvent(1, POST_UPDATED, self.make_post("a", version=2, likes=1))

        assert [d.type for d in subscription.apply(event)] == [DIFF_MODIFIED]
        assert subscription.reload_due is True

    def test_member_staying_above_bottom_needs_no_reload(self):
        subscription = self.make_subscription("trending", limit=2)
        subscription.seed(
            [self.make_post("a", likes=5), self.make_post("b", likes=1)], []
        )

        event = FeedEvent(1, POST_UPDATED, self.make_post("a", version=2, likes=4))
        subscription.apply(event)

        assert subscription.reload_due is False

    @pytest.mark.asyncio
    async def test_reload_without_loader_keeps_window(self):
        subscription = self.make_subscription("trending", limit=1)
        subscription.seed([self.make_post("a", likes=1)], [])
        subscription.apply(FeedEvent(1, POST_UPDATED, self.make_post("a", version=2)))

        assert await subscription.reload() == []
        assert subscription.reload_due is False
        assert [p.id for p in subscription.snapshot] == ["a"]
