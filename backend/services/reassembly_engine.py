# services/reassembly_engine.py
import hashlib
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

from models.upload_models import ChunkProgress, ChunkSubmission, SessionState, UploadResult
from services.chunk_tracker import first_missing, next_missing
from services.exceptions import MissingFragmentError, StagingError, StoreError
from services.staging_area import StagingArea, StagingSession
from services.storage_service import ObjectStore, StorageFactory

logger = logging.getLogger(__name__)

UPLOAD_ROOT = "upload"


def upload_location(content_hash: str, suffix: str, now: datetime) -> Tuple[str, str]:
    """Return ``(object_name, key)`` for a stored upload.

    The object name depends only on the content hash, so completing the
    same upload twice on one day targets the same key.
    """
    object_name = f"{hashlib.md5(content_hash.encode()).hexdigest()}.{suffix}"
    return object_name, f"{UPLOAD_ROOT}/{now:%Y%m%d}/{object_name}"


class ReassemblyEngine:
    """Receives chunks into staging and turns complete sessions into stored objects"""

    def __init__(
        self,
        staging: StagingArea,
        storage: StorageFactory,
        merge_lock,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.staging = staging
        self.storage = storage
        self.merge_lock = merge_lock
        self.clock = clock

    def submit(self, submission: ChunkSubmission, storage: Optional[str] = None) -> Union[ChunkProgress, UploadResult]:
        """Handle one chunk; returns progress until the upload is complete"""
        store_name = self.storage.resolve_name(storage)
        store = self.storage.get(store_name)

        session = self.staging.session(submission.hash)
        session.open()

        next_chunk = next_missing(session.directory, submission.index, submission.total)
        if session.has_chunk(submission.index) and next_chunk is not None:
            logger.debug(f"Chunk {submission.index} of {submission.hash} already received")
            return self._progress(submission, next_chunk)

        if session.store_chunk(submission.index, submission.package):
            logger.debug(f"Stored chunk {submission.index}/{submission.total} of {submission.hash}")

        if submission.index != submission.total and next_chunk is not None:
            return self._progress(submission, next_chunk)

        return self.finalize(session, submission, store, store_name)

    def finalize(
        self,
        session: StagingSession,
        submission: ChunkSubmission,
        store: ObjectStore,
        store_name: str,
    ) -> Union[ChunkProgress, UploadResult]:
        """Merge the session and write it to the store, once per content hash at a time"""
        object_name, location = upload_location(submission.hash, submission.suffix, self.clock())

        with self.merge_lock.hold(submission.hash):
            if not session.exists():
                # A concurrent request finished this session while we waited
                if store.exists(location):
                    logger.info(f"Upload {submission.hash} was already finalized at {location}")
                    return self._result(submission, store_name, object_name, location)
                raise MissingFragmentError(submission.hash, submission.index)

            missing = first_missing(session.directory, submission.total)
            if missing is not None:
                if store.exists(location):
                    # Retried chunk of an upload that already completed
                    session.destroy()
                    logger.info(f"Upload {submission.hash} is already stored at {location}, dropping retried chunk")
                    return self._result(submission, store_name, object_name, location)
                return self._progress(submission, missing)

            session.state = SessionState.MERGING
            merge_path = self.merge_chunks(session, submission.total, submission.suffix)

            try:
                with open(merge_path, "rb") as merged:
                    store.write_stream(location, merged)
            except StoreError as e:
                session.discard_merge(submission.suffix)
                session.state = SessionState.FAILED
                logger.error(f"Storing merged upload {submission.hash} at {location} failed: {e.message}")
                raise

            session.destroy()
            session.state = SessionState.COMPLETED
            logger.info(f"Upload {submission.hash} completed: {submission.total + 1} chunks stored at {store_name}:{location}")

        return self._result(submission, store_name, object_name, location)

    def merge_chunks(self, session: StagingSession, total: int, suffix: str) -> Path:
        """Concatenate chunks ``0..total`` in index order into the merge file"""
        merge_path = session.merge_path(suffix)
        try:
            with open(merge_path, "wb") as merged:
                for index in range(total + 1):
                    try:
                        with open(session.chunk_path(index), "rb") as chunk:
                            shutil.copyfileobj(chunk, merged)
                    except FileNotFoundError:
                        raise MissingFragmentError(session.content_hash, index) from None
        except MissingFragmentError as e:
            session.discard_merge(suffix)
            session.state = SessionState.FAILED
            logger.error(f"Merge of {session.content_hash} failed: chunk {e.index} is missing")
            raise
        except OSError as e:
            session.discard_merge(suffix)
            session.state = SessionState.FAILED
            logger.error(f"Merge of {session.content_hash} failed: {e}")
            raise StagingError(f"Unable to merge upload {session.content_hash}: {e.strerror}", 500, e.errno) from e
        return merge_path

    @staticmethod
    def _progress(submission: ChunkSubmission, next_chunk: int) -> ChunkProgress:
        return ChunkProgress(
            current_chunk=submission.index,
            total_chunk=submission.total,
            next_chunk=next_chunk,
            percent=round(submission.index / submission.total, 2),
        )

    @staticmethod
    def _result(submission: ChunkSubmission, store_name: str, object_name: str, location: str) -> UploadResult:
        return UploadResult(
            hash=submission.hash,
            mime_type=submission.mime_type,
            storage=store_name,
            storage_path=location,
            original_name=submission.name,
            object_name=object_name,
            suffix=submission.suffix,
            size_byte=submission.size,
            url=location,
        )
