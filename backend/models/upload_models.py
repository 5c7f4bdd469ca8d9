# models/upload_models.py
import io
import mimetypes
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_MIME_TYPE = "application/octet-stream"


class SessionState(str, Enum):
    EMPTY = "empty"
    RECEIVING = "receiving"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"


class ChunkSubmission(BaseModel):
    """One fragment of a chunked upload.

    ``hash`` is the client declared hash of the complete file and is only
    used as the session key. Indices run from 0 to ``total`` inclusive.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    package: Any = Field(exclude=True)
    hash: str = Field(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_-]+$")
    total: int = Field(ge=1)
    index: int = Field(ge=0)
    suffix: str = Field(min_length=1, max_length=16, pattern=r"^[A-Za-z0-9]+$")
    name: str = Field(min_length=1)
    size: int = Field(ge=0)
    mime_type: Optional[str] = None

    @field_validator("package")
    @classmethod
    def _binary_stream(cls, value: Any) -> Any:
        if isinstance(value, (bytes, bytearray)):
            return io.BytesIO(bytes(value))
        if value is None or not callable(getattr(value, "read", None)):
            raise ValueError("package must be a file")
        return value

    @field_validator("suffix")
    @classmethod
    def _lower_suffix(cls, value: str) -> str:
        return value.lower()

    @model_validator(mode="after")
    def _check_index_and_mime(self) -> "ChunkSubmission":
        if self.index > self.total:
            raise ValueError(f"index {self.index} is greater than total {self.total}")
        if not self.mime_type:
            self.mime_type = guess_mime_type(self.suffix)
        return self


class UploadResult(BaseModel):
    hash: str
    mime_type: str
    storage: str
    storage_path: str
    original_name: Optional[str] = None
    object_name: str
    suffix: str
    size_byte: int
    url: str


class ChunkProgress(BaseModel):
    current_chunk: int
    total_chunk: int
    next_chunk: int
    percent: float


DataT = TypeVar("DataT")


class UploadResponse(BaseModel, Generic[DataT]):
    code: int
    message: str = "success"
    data: DataT


class StorageEntry(BaseModel):
    path: str
    type: str  # "file" or "dir"
    size: Optional[int] = None


class NetworkImageRequest(BaseModel):
    url: str
    storage: Optional[str] = None


class DirectoryCreateRequest(BaseModel):
    location: str
    storage: Optional[str] = None


def guess_mime_type(suffix: str) -> str:
    mime_type, _ = mimetypes.guess_type(f"file.{suffix}")
    return mime_type or DEFAULT_MIME_TYPE
