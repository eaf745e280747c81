"""
Unit tests for the user profile repository.
"""
import asyncio
import re
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from core.exceptions import AuthorizationError, NotFoundError, StorageFailure, ValidationError
from core.models import Identity
from services.profile_service import ProfileRepository, generate_username


class TestGenerateUsername:
    def test_strips_disallowed_characters(self):
        assert re.fullmatch(r"janedoe\d{3}", generate_username("jane.doe@example.com"))

    def test_suffix_range(self):
        suffix = int(generate_username("sam@example.com")[3:])
        assert 100 <= suffix <= 999

    @pytest.mark.parametrize("email", [None, "", "...@example.com"])
    def test_fallback(self, email):
        assert re.fullmatch(r"user\d{4}", generate_username(email))


class TestProvisioning:
    @pytest.mark.asyncio
    async def test_first_login_creates_profile(self, registry, identity):
        profile, created = await registry.profiles.provision_if_absent(identity)

        assert created is True
        assert profile.id == identity.id
        assert profile.name == "Jane Doe"
        assert profile.email == identity.email
        assert profile.bio == ""
        assert profile.profile_image_url == identity.photo_url
        assert profile.username.startswith("janedoe")

    @pytest.mark.asyncio
    async def test_second_login_returns_existing(self, registry, identity):
        first, _ = await registry.profiles.provision_if_absent(identity)
        again, created = await registry.profiles.provision_if_absent(
            identity.model_copy(update={"display_name": "Changed"})
        )

        assert created is False
        assert again.username == first.username
        assert again.name == "Jane Doe"

    @pytest.mark.asyncio
    async def test_name_defaults_to_user(self, registry):
        profile, _ = await registry.profiles.provision_if_absent(Identity(id="anon"))

        assert profile.name == "User"
        assert re.fullmatch(r"user\d{4}", profile.username)

    @pytest.mark.asyncio
    async def test_concurrent_provisioning_creates_one(self, registry, identity):
        results = await asyncio.gather(
            *(registry.profiles.provision_if_absent(identity) for _ in range(10))
        )

        assert sum(created for _, created in results) == 1
        assert len({profile.username for profile, _ in results}) == 1

    @pytest.mark.asyncio
    async def test_concurrent_provisioning_across_workers(
        self, session_factory, storage, test_settings, identity
    ):
        # Separate repositories share no in-process lock
        workers = [ProfileRepository(session_factory, storage, test_settings) for _ in range(3)]

        results = await asyncio.gather(*(w.provision_if_absent(identity) for w in workers))

        assert sum(created for _, created in results) == 1
        assert len({profile.username for profile, _ in results}) == 1

    @pytest.mark.asyncio
    async def test_fetch_by_username(self, registry, identity):
        profile, _ = await registry.profiles.provision_if_absent(identity)

        found = await registry.profiles.fetch_by_username(profile.username)

        assert found.id == identity.id

    @pytest.mark.asyncio
    async def test_fetch_missing(self, registry):
        with pytest.raises(NotFoundError):
            await registry.profiles.fetch("nobody")
        with pytest.raises(NotFoundError):
            await registry.profiles.fetch_by_username("nobody")


class TestUpdate:
    @pytest.mark.asyncio
    async def test_update_fields(self, registry, identity):
        profile, _ = await registry.profiles.provision_if_absent(identity)

        updated = await registry.profiles.update(
            identity.id, identity, name=" Jane D. ", bio="Podcaster"
        )

        assert updated.name == "Jane D."
        assert updated.bio == "Podcaster"
        assert updated.username == profile.username
        assert updated.updated_at is not None

    @pytest.mark.asyncio
    async def test_update_with_image(self, registry, identity, storage):
        await registry.profiles.provision_if_absent(identity)

        updated = await registry.profiles.update(
            identity.id, identity, image=b"jpeg-bytes", image_content_type="image/jpeg"
        )

        assert f"/profile_images/{identity.id}/" in updated.profile_image_url
        assert storage.get(updated.profile_image_url) == b"jpeg-bytes"

    @pytest.mark.asyncio
    async def test_only_owner_may_update(self, registry, identity, other_identity):
        await registry.profiles.provision_if_absent(identity)

        with pytest.raises(AuthorizationError):
            await registry.profiles.update(identity.id, other_identity, name="Hijacked")

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self, registry, identity):
        await registry.profiles.provision_if_absent(identity)

        with pytest.raises(ValidationError):
            await registry.profiles.update(identity.id, identity, name="   ")

    @pytest.mark.asyncio
    async def test_failed_upload_leaves_profile_unchanged(self, registry, identity, storage):
        before, _ = await registry.profiles.provision_if_absent(identity)

        with patch.object(storage, "put", AsyncMock(side_effect=StorageFailure("bucket down"))):
            with pytest.raises(StorageFailure):
                await registry.profiles.update(
                    identity.id, identity, name="New Name", image=b"jpeg-bytes"
                )

        after = await registry.profiles.fetch(identity.id)
        assert after.name == before.name
        assert after.profile_image_url == before.profile_image_url
        assert after.updated_at is None

    @pytest.mark.asyncio
    async def test_failed_patch_removes_uploaded_image(
        self, session_factory, storage, test_settings, identity
    ):
        repo = ProfileRepository(session_factory, storage, test_settings)
        await repo.provision_if_absent(identity)

        calls = []

        def flaky_factory():
            calls.append(1)
            # The second session is the one applying the patch
            if len(calls) == 2:
                raise OperationalError("UPDATE user_profiles", {}, Exception("disk I/O error"))
            return session_factory()

        repo._session_factory = flaky_factory

        with pytest.raises(OperationalError):
            await repo.update(identity.id, identity, name="New", image=b"jpeg-bytes")

        assert storage.objects == {}
        repo._session_factory = session_factory
        assert (await repo.fetch(identity.id)).name == "Jane Doe"
