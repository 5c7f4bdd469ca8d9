# services/exceptions.py
from typing import Any, Optional


class UploadError(Exception):
    """Base error for upload operations.

    ``code`` is an HTTP style status used by the API layer; ``context``
    keeps the backend's own error code when the failure came from a store.
    """

    def __init__(self, message: str, code: int = 500, context: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.context = context


class UploadValidationError(UploadError):
    def __init__(self, message: str):
        super().__init__(message, 422)


class MissingFragmentError(UploadError):
    def __init__(self, content_hash: str, index: int):
        super().__init__(f"Chunk {index} of upload {content_hash} is missing, upload failed", 500)
        self.content_hash = content_hash
        self.index = index


class StagingError(UploadError):
    pass


class MergeInProgressError(UploadError):
    def __init__(self, content_hash: str):
        super().__init__(f"Upload {content_hash} is already being merged", 409)


class UnknownStorageError(UploadError):
    def __init__(self, storage: str):
        super().__init__(f"Storage backend '{storage}' is not configured", 400)


class NetworkImageError(UploadError):
    pass


class StoreError(UploadError):
    pass


class StoreWriteError(StoreError):
    pass


class StoreReadError(StoreError):
    pass
