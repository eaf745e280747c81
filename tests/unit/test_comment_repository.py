"""
Unit tests for the comment repository.
"""
import asyncio

import pytest

from core.exceptions import NotFoundError, ValidationError
from core.models import PostDraft


@pytest.fixture
async def post(registry, identity):
    return await registry.posts.create(
        PostDraft(title="Commented", audio_url="https://storage.example.test/a.m4a"),
        identity,
    )


@pytest.mark.asyncio
async def test_add_increments_aggregate_once(registry, identity, post):
    comment = await registry.comments.add(post.id, identity, "  first!  ")

    assert comment.text == "first!"
    assert comment.author_name == "Jane Doe"
    assert (await registry.posts.get(post.id)).comments == 1


@pytest.mark.asyncio
async def test_newest_comment_listed_first(registry, identity, other_identity, post):
    await registry.comments.add(post.id, identity, "older")
    newest = await registry.comments.add(post.id, other_identity, "newer")

    desc = await registry.comments.list(post.id)
    asc = await registry.comments.list(post.id, order="asc")

    assert desc[0].id == newest.id
    assert [c.text for c in asc] == ["older", "newer"]


@pytest.mark.asyncio
async def test_concurrent_comments_all_counted(registry, identity, post):
    await asyncio.gather(
        *(registry.comments.add(post.id, identity, f"comment {i}") for i in range(10))
    )

    assert (await registry.posts.get(post.id)).comments == 10
    assert len(await registry.comments.list(post.id)) == 10


@pytest.mark.asyncio
async def test_add_publishes_post_update(registry, identity, post):
    subscriber = registry.bus.subscribe()

    await registry.comments.add(post.id, identity, "hello")

    event = subscriber.queue.get_nowait()
    assert event.post.comments == 1
    assert event.post.version == post.version + 1


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   ", "x" * 2001])
async def test_invalid_text(registry, identity, post, text):
    with pytest.raises(ValidationError):
        await registry.comments.add(post.id, identity, text)

    assert (await registry.posts.get(post.id)).comments == 0


@pytest.mark.asyncio
async def test_unknown_post(registry, identity):
    with pytest.raises(NotFoundError):
        await registry.comments.add("missing", identity, "hello")
    with pytest.raises(NotFoundError):
        await registry.comments.list("missing")


@pytest.mark.asyncio
async def test_is_liked_is_viewer_relative(registry, identity, post):
    comment = await registry.comments.add(post.id, identity, "like me")
    await registry.counters.like_comment(comment.id, "viewer-1", True)

    for_liker = await registry.comments.list(post.id, viewer_id="viewer-1")
    for_other = await registry.comments.list(post.id, viewer_id="viewer-2")

    assert for_liker[0].is_liked is True
    assert for_liker[0].likes == 1
    assert for_other[0].is_liked is False


@pytest.mark.asyncio
async def test_invalid_order(registry, post):
    with pytest.raises(ValidationError):
        await registry.comments.list(post.id, order="sideways")
