# services/upload_service.py
import asyncio
import hashlib
import logging
import os
import tempfile
from datetime import datetime
from typing import Any, BinaryIO, Dict, List, Optional

import httpx
from pydantic import ValidationError

from config import Settings
from models.upload_models import (
    ChunkProgress,
    ChunkSubmission,
    StorageEntry,
    UploadResponse,
    UploadResult,
    guess_mime_type,
)
from services.exceptions import NetworkImageError, StoreError, UploadValidationError
from services.merge_lock import create_merge_lock
from services.reassembly_engine import ReassemblyEngine, upload_location
from services.staging_area import StagingArea
from services.storage_service import ObjectStore, StorageFactory

logger = logging.getLogger(__name__)

NETWORK_IMAGE_TYPES = {"image/jpeg": "jpg", "image/png": "png"}
HASH_BUFFER_SIZE = 1024 * 1024


def parse_submission(data: Dict[str, Any]) -> ChunkSubmission:
    """Validate a raw chunk submission mapping in one step"""
    try:
        return ChunkSubmission(**data)
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or "submission"
        message = "Field required" if error["type"] == "missing" else error["msg"]
        raise UploadValidationError(f"{field}: {message}") from None


class UploadService:
    def __init__(
        self,
        settings: Settings,
        storage: Optional[StorageFactory] = None,
        engine: Optional[ReassemblyEngine] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.storage = storage or StorageFactory.from_settings(settings)
        self.engine = engine or ReassemblyEngine(
            StagingArea(settings.staging_dir),
            self.storage,
            create_merge_lock(settings),
        )
        self.http_client = http_client or httpx.AsyncClient(timeout=settings.network_timeout, follow_redirects=True)

    async def close(self):
        await self.http_client.aclose()

    def get_filesystem(self, storage: Optional[str] = None) -> ObjectStore:
        return self.storage.get(storage)

    async def chunk_upload(self, data: Dict[str, Any], storage: Optional[str] = None) -> dict:
        """Accept one chunk of a chunked upload.

        Returns a 201 envelope carrying the next chunk to send while the
        upload is incomplete, and a 200 envelope with the stored file once
        every chunk has been merged.
        """
        submission = parse_submission(data)
        # Staging and store I/O are blocking, keep them off the event loop
        result = await asyncio.to_thread(self.engine.submit, submission, storage)
        if isinstance(result, ChunkProgress):
            return UploadResponse[ChunkProgress](code=201, data=result).model_dump()
        return UploadResponse[UploadResult](code=200, data=result).model_dump()

    async def upload(
        self,
        stream: BinaryIO,
        filename: str,
        mime_type: Optional[str] = None,
        storage: Optional[str] = None,
    ) -> UploadResult:
        """Store a whole file in one call"""
        return await asyncio.to_thread(self._store_file, stream, filename, mime_type, storage)

    def _store_file(
        self,
        stream: BinaryIO,
        filename: str,
        mime_type: Optional[str],
        storage: Optional[str],
    ) -> UploadResult:
        store_name = self.storage.resolve_name(storage)
        store = self.get_filesystem(store_name)
        suffix = os.path.splitext(filename)[1].lstrip(".").lower()
        if not suffix:
            raise UploadValidationError("file: a file extension is required")

        digest = hashlib.md5()
        size = 0
        for block in iter(lambda: stream.read(HASH_BUFFER_SIZE), b""):
            digest.update(block)
            size += len(block)
        content_hash = digest.hexdigest()
        stream.seek(0)

        object_name, location = upload_location(content_hash, suffix, datetime.now())
        store.write_stream(location, stream)
        logger.info(f"Stored {filename} ({size} bytes) at {store_name}:{location}")

        return UploadResult(
            hash=content_hash,
            mime_type=mime_type or guess_mime_type(suffix),
            storage=store_name,
            storage_path=location,
            original_name=filename,
            object_name=object_name,
            suffix=suffix,
            size_byte=size,
            url=location,
        )

    async def save_network_image(self, url: str, storage: Optional[str] = None) -> UploadResult:
        """Download a jpeg or png image and store it"""
        try:
            response = await self.http_client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NetworkImageError(f"Unable to fetch {url}: {e}", 502) from e

        mime_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        if mime_type not in NETWORK_IMAGE_TYPES:
            raise NetworkImageError(f"Only supports image/jpeg or image/png given:{mime_type}", 400)

        suffix = NETWORK_IMAGE_TYPES[mime_type]
        with tempfile.SpooledTemporaryFile(max_size=HASH_BUFFER_SIZE * 8) as buffer:
            buffer.write(response.content)
            buffer.seek(0)
            result = await self.upload(buffer, f"{hashlib.md5(response.content).hexdigest()}.{suffix}", mime_type, storage)
        logger.info(f"Imported network image {url} as {result.url}")
        return result

    async def read(self, location: str, storage: Optional[str] = None) -> bytes:
        store = self.get_filesystem(storage)
        return await asyncio.to_thread(store.read, location)

    async def create_directory(self, location: str, storage: Optional[str] = None) -> bool:
        store = self.get_filesystem(storage)
        try:
            await asyncio.to_thread(store.create_directory, location)
        except StoreError as e:
            logger.warning(f"Failed to create directory {location}: {e.message}")
            return False
        return True

    async def get_directory(self, path: str, recursive: bool, storage: Optional[str] = None) -> Optional[List[StorageEntry]]:
        store = self.get_filesystem(storage)
        try:
            return await asyncio.to_thread(store.list_contents, path, recursive)
        except StoreError as e:
            logger.warning(f"Failed to list directory {path}: {e.message}")
            return None
