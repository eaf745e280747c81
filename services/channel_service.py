"""
Channel Catalog.

Read-mostly catalog of the categorical channels posts can be grouped under.
The default channels are seeded at startup; the API exposes them read-only.
"""

import logging
from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import NotFoundError
from core.models import Channel

logger = logging.getLogger(__name__)

DEFAULT_CHANNELS = [
    {
        "name": "This Happened Today",
        "description": "Share your daily stories and experiences",
        "icon_name": "calendar",
    },
    {
        "name": "Sports",
        "description": "All things sports - commentary, reactions, and highlights",
        "icon_name": "sportscourt",
    },
    {
        "name": "Music",
        "description": "Share your musical creations and covers",
        "icon_name": "music.note",
    },
    {
        "name": "Comedy",
        "description": "Funny moments, jokes, and entertainment",
        "icon_name": "face.smiling",
    },
    {
        "name": "News & Politics",
        "description": "Current events and political commentary",
        "icon_name": "newspaper",
    },
    {
        "name": "NSFW",
        "description": "Adult content - 18+ only",
        "icon_name": "exclamationmark.triangle",
        "is_nsfw": True,
    },
]


class ChannelCatalog:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def seed_default_channels(self) -> int:
        """Insert any default channel that is missing. Returns how many were added."""
        async with self._session_factory() as session:
            result = await session.execute(select(Channel.name))
            existing = set(result.scalars().all())
            missing = [c for c in DEFAULT_CHANNELS if c["name"] not in existing]
            for channel in missing:
                session.add(Channel(**channel))
            await session.commit()

        if missing:
            logger.info(f"Seeded {len(missing)} default channels")
        return len(missing)

    async def list_channels(self, include_nsfw: bool = True) -> List[Channel]:
        stmt = select(Channel).order_by(Channel.name)
        if not include_nsfw:
            stmt = stmt.where(Channel.is_nsfw.is_(False))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get(self, channel_id: str) -> Channel:
        async with self._session_factory() as session:
            channel = await session.get(Channel, channel_id)
        if channel is None:
            raise NotFoundError("Channel", channel_id)
        return channel
