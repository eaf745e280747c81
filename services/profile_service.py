"""
User Profile Repository.

Profiles are provisioned the first time an identity authenticates and are
afterwards only changed by their owner. The identity provider's id is the
profile's primary key, so a second concurrent provisioning attempt can never
create a duplicate: it either finds the row or loses the insert race and reads
the winner's row.

Key Components:
- `ProfileRepository`: `provision_if_absent`, `fetch`, `fetch_by_username` and
  `update` (with optional profile image upload through the object store).
- `generate_username`: Username derivation from the email local part.
- `author_snapshot`: Author display fields denormalized onto posts and
  comments at creation time.
"""

import logging
import random
import re
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import Settings, get_settings
from core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StorageFailure,
    ValidationError,
)
from core.locks import KeyedLock
from core.models import Identity, UserProfile, utc_now
from core.performance import timed
from providers.storage_provider import StorageProvider

logger = logging.getLogger(__name__)

USERNAME_ATTEMPTS = 5
_USERNAME_STRIP = re.compile(r"[^a-zA-Z0-9_]")


def generate_username(email: Optional[str]) -> str:
    """`jane.doe@x.io` -> `janedoe123`; `user4821` when nothing usable is left"""
    local_part = _USERNAME_STRIP.sub("", (email or "").split("@")[0])
    if local_part:
        return f"{local_part}{random.randint(100, 999)}"
    return f"user{random.randint(1000, 9999)}"


async def author_snapshot(session: AsyncSession, identity: Identity) -> Dict[str, Any]:
    """
    Author display fields for a record created by `identity` right now.

    Uses the provisioned profile when there is one, otherwise falls back to
    what the identity provider handed over.
    """
    profile = await session.get(UserProfile, identity.id)
    if profile is not None:
        return {
            "author_name": profile.name,
            "author_username": profile.username,
            "author_profile_image_url": profile.profile_image_url,
        }
    return {
        "author_name": identity.display_name or "User",
        "author_username": (identity.email or "").split("@")[0] or identity.id,
        "author_profile_image_url": identity.photo_url,
    }


class ProfileRepository:
    """Provisioning, lookup and owner-only updates of user profiles"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        storage: StorageProvider,
        settings: Optional[Settings] = None,
    ):
        self._session_factory = session_factory
        self._storage = storage
        self._settings = settings or get_settings()
        self._locks = KeyedLock("identity")

    @timed("profile_repository.provision")
    async def provision_if_absent(self, identity: Identity) -> Tuple[UserProfile, bool]:
        """
        Return the profile for `identity`, creating it on first call.

        Returns:
            (profile, created): `created` is False when the profile already
            existed or another request provisioned it concurrently.
        """
        if not identity.id:
            raise ValidationError("id", identity.id, "Identity id is required")

        async with self._locks.hold(identity.id):
            existing = await self._get(identity.id)
            if existing is not None:
                return existing, False

            for attempt in range(1, USERNAME_ATTEMPTS + 1):
                profile = UserProfile(
                    id=identity.id,
                    username=generate_username(identity.email),
                    name=identity.display_name or "User",
                    email=identity.email or "",
                    bio="",
                    profile_image_url=identity.photo_url,
                    created_at=utc_now(),
                )
                try:
                    await self._insert(profile)
                except ConflictError:
                    # Either another worker provisioned this identity or the
                    # generated username is taken
                    existing = await self._get(identity.id)
                    if existing is not None:
                        logger.info(f"Profile {identity.id} provisioned concurrently")
                        return existing, False
                    logger.debug(
                        f"Username {profile.username} taken, retrying",
                        extra={"attempt": attempt},
                    )
                    continue

                logger.info(
                    f"Provisioned profile {profile.id} as @{profile.username}",
                    extra={"profile_id": profile.id, "username": profile.username},
                )
                return profile, True

        raise ConflictError("UserProfile username", identity.email or identity.id)

    async def fetch(self, profile_id: str) -> UserProfile:
        profile = await self._get(profile_id)
        if profile is None:
            raise NotFoundError("UserProfile", profile_id)
        return profile

    async def fetch_by_username(self, username: str) -> UserProfile:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserProfile).where(UserProfile.username == username)
            )
            profile = result.scalars().first()
        if profile is None:
            raise NotFoundError("UserProfile", username)
        return profile

    @timed("profile_repository.update")
    async def update(
        self,
        profile_id: str,
        identity: Identity,
        name: Optional[str] = None,
        bio: Optional[str] = None,
        image: Optional[bytes] = None,
        image_content_type: str = "image/jpeg",
    ) -> UserProfile:
        """
        Apply an owner's profile edit.

        The image, if any, is uploaded first; a storage failure leaves the
        profile untouched. The remaining fields and `updated_at` are then
        written as a single row update. If that write fails the new image is
        deleted again.
        """
        if identity.id != profile_id:
            raise AuthorizationError(identity.id, f"profile {profile_id}")

        patch: Dict[str, Any] = {}
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError("name", name, "Name cannot be empty")
            patch["name"] = name
        if bio is not None:
            patch["bio"] = bio.strip()

        await self.fetch(profile_id)

        image_url = None
        if image is not None:
            image_url = await self._storage.put(
                image, image_content_type, f"profile_images/{profile_id}/profile"
            )
            patch["profile_image_url"] = image_url

        patch["updated_at"] = utc_now()
        try:
            async with self._locks.hold(profile_id):
                async with self._session_factory() as session:
                    async with session.begin():
                        result = await session.execute(
                            update(UserProfile)
                            .where(UserProfile.id == profile_id)
                            .values(**patch)
                        )
                        if result.rowcount == 0:
                            raise NotFoundError("UserProfile", profile_id)
        except Exception:
            if image_url:
                await self._discard_blob(image_url)
            raise

        logger.info(
            f"Updated profile {profile_id}",
            extra={"profile_id": profile_id, "fields": sorted(patch)},
        )
        return await self.fetch(profile_id)

    async def _get(self, profile_id: str) -> Optional[UserProfile]:
        async with self._session_factory() as session:
            return await session.get(UserProfile, profile_id)

    async def _insert(self, profile: UserProfile):
        async with self._session_factory() as session:
            session.add(profile)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ConflictError("UserProfile", profile.id) from e

    async def _discard_blob(self, url: str):
        try:
            await self._storage.delete(url)
        except StorageFailure as e:
            logger.error(f"Could not delete orphaned profile image {url}: {e}")
