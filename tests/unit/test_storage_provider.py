"""
Unit tests for the object storage providers.
"""
import asyncio
import os
from unittest.mock import Mock, patch

import pytest
from botocore.exceptions import ClientError

from core.config import Settings
from core.exceptions import StorageFailure, ValidationError
from providers.storage_provider import (
    InMemoryStorageProvider,
    LocalFileStorageProvider,
    S3StorageProvider,
    build_storage_provider,
    upload_hint,
)


class TestInMemoryStorageProvider:
    @pytest.mark.asyncio
    async def test_put_returns_url_under_base(self):
        storage = InMemoryStorageProvider("https://cdn.test/media")

        url = await storage.put(b"RIFF....", "audio/m4a", "audio/take.m4a")

        assert url.startswith("https://cdn.test/media/audio/")
        assert url.endswith(".m4a")
        assert storage.get(url) == b"RIFF...."

    @pytest.mark.asyncio
    async def test_each_put_gets_a_fresh_path(self):
        storage = InMemoryStorageProvider()

        first = await storage.put(b"a", "audio/m4a", "audio/take.m4a")
        second = await storage.put(b"b", "audio/m4a", "audio/take.m4a")

        assert first != second
        assert len(storage.objects) == 2

    @pytest.mark.asyncio
    async def test_extension_from_content_type(self):
        storage = InMemoryStorageProvider()

        url = await storage.put(b"img", "image/png", "profile_images/user-1/profile")

        assert "/profile_images/user-1/" in url
        assert url.endswith(".png")

    @pytest.mark.asyncio
    async def test_empty_payload_rejected(self):
        storage = InMemoryStorageProvider()

        with pytest.raises(ValidationError):
            await storage.put(b"", "audio/m4a", "audio/take.m4a")
        assert storage.objects == {}

    @pytest.mark.asyncio
    async def test_oversized_payload_rejected(self):
        storage = InMemoryStorageProvider(max_upload_bytes=4)

        with pytest.raises(ValidationError):
            await storage.put(b"12345", "audio/m4a", "audio/take.m4a")

    @pytest.mark.asyncio
    async def test_delete_by_url_and_missing_is_noop(self):
        storage = InMemoryStorageProvider()
        url = await storage.put(b"data", "audio/m4a", "audio/take.m4a")

        await storage.delete(url)
        await storage.delete(url)

        assert storage.get(url) is None

    @pytest.mark.asyncio
    async def test_slow_write_times_out(self):
        class SlowStorage(InMemoryStorageProvider):
            async def _write(self, path, data, content_type):
                await asyncio.sleep(1)

        storage = SlowStorage(timeout_seconds=0.01)

        with pytest.raises(StorageFailure) as exc_info:
            await storage.put(b"data", "audio/m4a", "audio/take.m4a")
        assert "timed out" in exc_info.value.message


class TestLocalFileStorageProvider:
    @pytest.mark.asyncio
    async def test_put_writes_file(self, tmp_path):
        storage = LocalFileStorageProvider(str(tmp_path), "http://localhost:8002/media")

        url = await storage.put(b"audio-bytes", "audio/m4a", "audio/take.m4a")

        path = storage.path_for(url)
        with open(tmp_path / path, "rb") as f:
            assert f.read() == b"audio-bytes"
        # No temp files left next to the object
        assert os.listdir(tmp_path / "audio") == [os.path.basename(path)]

    @pytest.mark.asyncio
    async def test_failed_rename_leaves_nothing_behind(self, tmp_path):
        storage = LocalFileStorageProvider(str(tmp_path), "http://localhost:8002/media")

        with patch("providers.storage_provider.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StorageFailure):
                await storage.put(b"audio-bytes", "audio/m4a", "audio/take.m4a")

        assert os.listdir(tmp_path / "audio") == []

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path):
        storage = LocalFileStorageProvider(str(tmp_path), "http://localhost:8002/media")
        url = await storage.put(b"audio-bytes", "audio/m4a", "audio/take.m4a")

        await storage.delete(url)
        await storage.delete(url)

        assert not (tmp_path / storage.path_for(url)).exists()

    @pytest.mark.asyncio
    async def test_path_outside_root_rejected(self, tmp_path):
        storage = LocalFileStorageProvider(str(tmp_path), "http://localhost:8002/media")

        with pytest.raises(StorageFailure):
            await storage.delete("../outside.txt")


    @pytest.mark.asyncio
    async def test_traversal_hint_rejected_before_writing(self, tmp_path):
        storage = LocalFileStorageProvider(str(tmp_path / "media"), "http://localhost:8002/media")

        with pytest.raises(ValidationError):
            await storage.put(b"audio", "audio/m4a", "audio/../../escape.m4a")

        assert not (tmp_path / "escape.m4a").exists()


class TestUploadHint:
    @pytest.mark.parametrize(
        "filename",
        ["take.m4a", "a/b/take.m4a", "../../take.m4a", "..\\..\\take.m4a", "/abs/take.m4a"],
    )
    def test_only_base_name_is_kept(self, filename):
        assert upload_hint("audio", filename) == "audio/take.m4a"

    @pytest.mark.parametrize("filename", [None, "", "..", "dir/"])
    def test_falls_back_to_default(self, filename):
        assert upload_hint("audio", filename, "recording") == "audio/recording"

    @pytest.mark.asyncio
    async def test_client_directories_do_not_reach_storage(self):
        storage = InMemoryStorageProvider("https://cdn.test")

        url = await storage.put(b"audio", "audio/m4a", upload_hint("audio", "x/y/../take.m4a"))

        path = storage.path_for(url)
        assert path.startswith("audio/") and path.count("/") == 1
        assert path.endswith(".m4a")


class TestS3StorageProvider:
    @pytest.mark.asyncio
    async def test_put_object(self):
        client = Mock()
        storage = S3StorageProvider(bucket="audio-bucket", region="eu-west-1", client=client)

        url = await storage.put(b"data", "audio/m4a", "audio/take.m4a")

        kwargs = client.put_object.call_args.kwargs
        assert kwargs["Bucket"] == "audio-bucket"
        assert kwargs["Body"] == b"data"
        assert kwargs["ContentType"] == "audio/m4a"
        assert url == f"https://audio-bucket.s3.eu-west-1.amazonaws.com/{kwargs['Key']}"

    @pytest.mark.asyncio
    async def test_client_error_becomes_storage_failure(self):
        client = Mock()
        client.put_object.side_effect = ClientError(
            {"Error": {"Code": "500", "Message": "backend down"}}, "PutObject"
        )
        storage = S3StorageProvider(bucket="audio-bucket", client=client)

        with pytest.raises(StorageFailure):
            await storage.put(b"data", "audio/m4a", "audio/take.m4a")

    @pytest.mark.asyncio
    async def test_delete_uses_object_key(self):
        client = Mock()
        storage = S3StorageProvider(
            bucket="audio-bucket", endpoint="http://minio:9000", client=client
        )
        url = await storage.put(b"data", "audio/m4a", "audio/take.m4a")

        await storage.delete(url)

        key = client.put_object.call_args.kwargs["Key"]
        client.delete_object.assert_called_once_with(Bucket="audio-bucket", Key=key)
        assert url == f"http://minio:9000/audio-bucket/{key}"


class TestBuildStorageProvider:
    def test_memory_backend(self):
        settings = Settings(storage_backend="memory")
        assert isinstance(build_storage_provider(settings), InMemoryStorageProvider)

    def test_local_backend(self, tmp_path):
        settings = Settings(storage_backend="local", storage_root=str(tmp_path))
        assert isinstance(build_storage_provider(settings), LocalFileStorageProvider)

    def test_s3_requires_bucket(self):
        settings = Settings(storage_backend="s3", s3_bucket=None)
        with pytest.raises(ValueError):
            build_storage_provider(settings)
