# services/chunk_tracker.py
"""Chunk presence tracking.

Presence is always read from the session directory, never cached, so a
restarted process picks up exactly where the client left off. Chunk
indices span ``0..total`` inclusive.
"""
from pathlib import Path
from typing import Optional, Set

CHUNK_SUFFIX = ".chunk"


def chunk_file_name(index: int) -> str:
    return f"{index}{CHUNK_SUFFIX}"


def has_chunk(session_dir: Path, index: int) -> bool:
    return (session_dir / chunk_file_name(index)).is_file()


def next_missing(session_dir: Path, current_index: int, total: int) -> Optional[int]:
    """Return the first index after ``current_index`` with no chunk file.

    Only scans forward: the client is expected to send the returned index
    next, so earlier indices are not revisited here.
    """
    for index in range(current_index + 1, total + 1):
        if not has_chunk(session_dir, index):
            return index
    return None


def first_missing(session_dir: Path, total: int) -> Optional[int]:
    return next_missing(session_dir, -1, total)


def present_indices(session_dir: Path, total: int) -> Set[int]:
    return {index for index in range(total + 1) if has_chunk(session_dir, index)}


def is_complete(session_dir: Path, total: int) -> bool:
    return first_missing(session_dir, total) is None
