"""Test the upload facade"""

import asyncio
import hashlib
import io
import time
from unittest.mock import MagicMock

import pytest

from services.exceptions import NetworkImageError, StoreReadError, UploadValidationError
from services.storage_service import LocalObjectStore
from services.upload_service import UploadService, parse_submission


def chunk_fields(**overrides):
    fields = {
        "package": b"chunk",
        "hash": "abc",
        "total": "2",
        "index": "0",
        "suffix": "png",
        "name": "photo.png",
        "size": "15",
    }
    fields.update(overrides)
    return {key: value for key, value in fields.items() if value is not None}


class TestParseSubmission:

    @pytest.mark.parametrize("field", ["package", "hash", "total", "index", "suffix", "name", "size"])
    def test_required_fields(self, field):
        with pytest.raises(UploadValidationError) as exc_info:
            parse_submission(chunk_fields(**{field: None}))

        assert exc_info.value.code == 422
        assert field in exc_info.value.message

    def test_index_beyond_total(self):
        with pytest.raises(UploadValidationError):
            parse_submission(chunk_fields(index="3"))

    def test_hash_must_be_a_single_path_segment(self):
        with pytest.raises(UploadValidationError):
            parse_submission(chunk_fields(hash="../etc"))

    def test_package_must_be_binary(self):
        with pytest.raises(UploadValidationError):
            parse_submission(chunk_fields(package="not a file"))

    def test_mime_type_inferred_from_suffix(self):
        assert parse_submission(chunk_fields()).mime_type == "image/png"
        assert parse_submission(chunk_fields(suffix="xyz123")).mime_type == "application/octet-stream"
        assert parse_submission(chunk_fields(mime_type="image/x-custom")).mime_type == "image/x-custom"

    def test_form_strings_are_coerced(self):
        submission = parse_submission(chunk_fields(index="2"))

        assert submission.index == 2
        assert submission.total == 2
        assert submission.package.read() == b"chunk"


class TestChunkUpload:

    @pytest.mark.asyncio
    async def test_progress_then_completion_envelopes(self, upload_service, local_store):
        first = await upload_service.chunk_upload(chunk_fields(package=b"a", index="0"))
        second = await upload_service.chunk_upload(chunk_fields(package=b"b", index="1"))
        final = await upload_service.chunk_upload(chunk_fields(package=b"c", index="2"))

        assert first == {
            "code": 201,
            "message": "success",
            "data": {"current_chunk": 0, "total_chunk": 2, "next_chunk": 1, "percent": 0.0},
        }
        assert second["data"]["next_chunk"] == 2
        assert final["code"] == 200
        assert final["data"]["mime_type"] == "image/png"
        assert final["data"]["original_name"] == "photo.png"
        assert local_store.read(final["data"]["url"]) == b"abc"

    @pytest.mark.asyncio
    async def test_invalid_submission_never_reaches_engine(self, settings, storage_factory):
        engine = MagicMock()
        service = UploadService(settings, storage=storage_factory, engine=engine)

        with pytest.raises(UploadValidationError):
            await service.chunk_upload(chunk_fields(hash=None))

        engine.submit.assert_not_called()


class SlowStore(LocalObjectStore):
    """Local store whose writes take a while"""

    def __init__(self, root, delay):
        super().__init__(root)
        self.delay = delay
        self.writes = 0

    def write_stream(self, key, stream):
        self.writes += 1
        time.sleep(self.delay)
        super().write_stream(key, stream)


class TestConcurrency:

    @pytest.fixture
    def slow_store(self, settings, storage_factory):
        store = SlowStore(settings.local_storage_root, delay=0.5)
        storage_factory.register("local", store)
        return store

    @pytest.mark.asyncio
    async def test_store_write_does_not_block_event_loop(self, upload_service, slow_store):
        await upload_service.chunk_upload(chunk_fields(package=b"a", index="0", total="1"))
        gaps = []

        async def ticker(done):
            last = time.monotonic()
            while not done.is_set():
                await asyncio.sleep(0.01)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        done = asyncio.Event()
        ticking = asyncio.create_task(ticker(done))
        final = await upload_service.chunk_upload(chunk_fields(package=b"b", index="1", total="1"))
        done.set()
        await ticking

        assert final["code"] == 200
        assert max(gaps) < 0.25

    @pytest.mark.asyncio
    async def test_simultaneous_finalize_stores_once(self, upload_service, slow_store):
        await upload_service.chunk_upload(chunk_fields(package=b"a", index="0", total="1"))

        first, second = await asyncio.gather(
            upload_service.chunk_upload(chunk_fields(package=b"b", index="1", total="1")),
            upload_service.chunk_upload(chunk_fields(package=b"b", index="1", total="1")),
        )

        assert first["code"] == second["code"] == 200
        assert first["data"]["url"] == second["data"]["url"]
        assert slow_store.writes == 1
        assert slow_store.read(first["data"]["url"]) == b"ab"


class TestSingleUpload:

    @pytest.mark.asyncio
    async def test_upload_whole_file(self, upload_service, local_store):
        content = b"\x89PNG whole file"
        result = await upload_service.upload(io.BytesIO(content), "Photo.PNG")

        content_hash = hashlib.md5(content).hexdigest()
        assert result.hash == content_hash
        assert result.suffix == "png"
        assert result.mime_type == "image/png"
        assert result.size_byte == len(content)
        assert result.object_name == f"{hashlib.md5(content_hash.encode()).hexdigest()}.png"
        assert local_store.read(result.url) == content

    @pytest.mark.asyncio
    async def test_upload_requires_extension(self, upload_service):
        with pytest.raises(UploadValidationError):
            await upload_service.upload(io.BytesIO(b"x"), "README")


class TestNetworkImage:

    @pytest.mark.asyncio
    async def test_saves_png(self, upload_service, image_server, local_store):
        image_server["https://img.example.com/cat.png"] = ("image/png", b"png-bytes")

        result = await upload_service.save_network_image("https://img.example.com/cat.png")

        assert result.mime_type == "image/png"
        assert result.suffix == "png"
        assert result.original_name == f"{hashlib.md5(b'png-bytes').hexdigest()}.png"
        assert local_store.read(result.url) == b"png-bytes"

    @pytest.mark.asyncio
    async def test_rejects_other_types(self, upload_service, image_server):
        image_server["https://img.example.com/page"] = ("text/html; charset=utf-8", b"<html>")

        with pytest.raises(NetworkImageError) as exc_info:
            await upload_service.save_network_image("https://img.example.com/page")

        assert exc_info.value.code == 400
        assert "text/html" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_fetch_failure(self, upload_service):
        with pytest.raises(NetworkImageError) as exc_info:
            await upload_service.save_network_image("https://unreachable.example.com/a.jpg")

        assert exc_info.value.code == 502


class TestStoreAccess:

    @pytest.mark.asyncio
    async def test_read(self, upload_service, local_store):
        local_store.write("upload/a.txt", b"abc")

        assert await upload_service.read("upload/a.txt") == b"abc"
        with pytest.raises(StoreReadError):
            await upload_service.read("upload/missing.txt")

    @pytest.mark.asyncio
    async def test_directories(self, upload_service):
        assert await upload_service.create_directory("albums/2026") is True

        contents = await upload_service.get_directory("albums", recursive=False)

        assert [(e.path, e.type) for e in contents] == [("albums/2026", "dir")]
        assert await upload_service.get_directory("missing", recursive=True) is None
