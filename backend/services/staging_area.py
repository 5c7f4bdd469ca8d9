# services/staging_area.py
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import BinaryIO, Iterator

from models.upload_models import SessionState
from services.chunk_tracker import chunk_file_name

logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 1024 * 1024


class StagingSession:
    """Scratch directory for one chunked upload, keyed by content hash.

    The directory itself is the persisted session; ``state`` only tracks
    where the current request has taken it.
    """

    def __init__(self, root: Path, content_hash: str):
        self.content_hash = content_hash
        self.directory = root / content_hash
        self.state = SessionState.EMPTY

    def exists(self) -> bool:
        return self.directory.is_dir()

    def open(self):
        """Create the directory, reusing one left by an earlier attempt"""
        self.directory.mkdir(mode=0o755, parents=True, exist_ok=True)
        self.state = SessionState.RECEIVING

    def chunk_path(self, index: int) -> Path:
        return self.directory / chunk_file_name(index)

    def has_chunk(self, index: int) -> bool:
        return self.chunk_path(index).is_file()

    def store_chunk(self, index: int, payload: BinaryIO) -> bool:
        """Persist a chunk unless one is already stored for ``index``.

        The payload goes to a temp file first and is hard linked into place,
        so a partially written chunk never shows up under its final name.
        Returns False when the index was already present.
        """
        target = self.chunk_path(index)
        if target.exists():
            return False
        tmp_path = self.directory / f".{index}.{uuid.uuid4().hex}.tmp"
        try:
            with open(tmp_path, "wb") as tmp:
                shutil.copyfileobj(payload, tmp, COPY_BUFFER_SIZE)
            os.link(tmp_path, target)
        except FileExistsError:
            logger.info(f"Chunk {index} of {self.content_hash} arrived concurrently, keeping first copy")
            return False
        finally:
            tmp_path.unlink(missing_ok=True)
        return True

    def merge_path(self, suffix: str) -> Path:
        return self.directory / f"merge.{suffix}"

    def discard_merge(self, suffix: str):
        self.merge_path(suffix).unlink(missing_ok=True)

    def destroy(self):
        shutil.rmtree(self.directory, ignore_errors=True)


class StagingArea:
    """Root directory holding all staging sessions"""

    def __init__(self, root: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def session(self, content_hash: str) -> StagingSession:
        return StagingSession(self.root, content_hash)

    def sessions(self) -> Iterator[StagingSession]:
        for entry in sorted(self.root.iterdir()):
            if entry.is_dir():
                yield StagingSession(self.root, entry.name)
