"""Pytest configuration and fixtures"""

from datetime import datetime

import httpx
import pytest

from config import Settings
from models.upload_models import ChunkSubmission
from services.merge_lock import LocalMergeLock
from services.reassembly_engine import ReassemblyEngine
from services.staging_area import StagingArea
from services.storage_service import LocalObjectStore, StorageFactory
from services.upload_service import UploadService

FIXED_NOW = datetime(2026, 10, 18, 12, 30)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        staging_dir=str(tmp_path / "runtime" / "chunk"),
        local_storage_root=str(tmp_path / "storage"),
    )


@pytest.fixture
def staging(settings):
    return StagingArea(settings.staging_dir)


@pytest.fixture
def local_store(settings):
    return LocalObjectStore(settings.local_storage_root)


@pytest.fixture
def storage_factory(local_store):
    factory = StorageFactory(default="local")
    factory.register("local", local_store)
    return factory


@pytest.fixture
def engine(staging, storage_factory):
    return ReassemblyEngine(staging, storage_factory, LocalMergeLock(), clock=lambda: FIXED_NOW)


@pytest.fixture
def image_server():
    """Responses served to the service's HTTP client, keyed by URL"""
    return {}


@pytest.fixture
def upload_service(settings, storage_factory, engine, image_server):
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) not in image_server:
            raise httpx.ConnectError("connection refused", request=request)
        content_type, body = image_server[str(request.url)]
        return httpx.Response(200, headers={"content-type": content_type}, content=body)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return UploadService(settings, storage=storage_factory, engine=engine, http_client=client)


@pytest.fixture
def make_submission():
    """Build a validated chunk submission"""
    def build(content_hash, index, total, payload, suffix="bin", **extra):
        fields = {
            "package": payload,
            "hash": content_hash,
            "total": total,
            "index": index,
            "suffix": suffix,
            "name": f"file.{suffix}",
            "size": extra.pop("size", 0),
        }
        fields.update(extra)
        return ChunkSubmission(**fields)
    return build
