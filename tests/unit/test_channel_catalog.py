"""
Unit tests for the channel catalog.
"""
import pytest

from core.exceptions import NotFoundError
from services.channel_service import DEFAULT_CHANNELS


@pytest.mark.asyncio
async def test_seed_is_idempotent(registry):
    assert await registry.channels.seed_default_channels() == len(DEFAULT_CHANNELS)
    assert await registry.channels.seed_default_channels() == 0

    channels = await registry.channels.list_channels()
    assert len(channels) == len(DEFAULT_CHANNELS)


@pytest.mark.asyncio
async def test_list_ordered_by_name(registry):
    await registry.channels.seed_default_channels()

    names = [c.name for c in await registry.channels.list_channels()]

    assert names == sorted(names)


@pytest.mark.asyncio
async def test_nsfw_filter(registry):
    await registry.channels.seed_default_channels()

    safe = await registry.channels.list_channels(include_nsfw=False)

    assert "NSFW" not in {c.name for c in safe}
    assert len(safe) == len(DEFAULT_CHANNELS) - 1


@pytest.mark.asyncio
async def test_get(registry):
    await registry.channels.seed_default_channels()
    music = next(c for c in await registry.channels.list_channels() if c.name == "Music")

    assert (await registry.channels.get(music.id)).icon_name == "music.note"
    with pytest.raises(NotFoundError):
        await registry.channels.get("missing")
