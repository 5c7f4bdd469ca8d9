# services/storage_service.py
import logging
import os
import shutil
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from config import Settings
from models.upload_models import StorageEntry
from services.exceptions import StoreError, StoreReadError, StoreWriteError, UnknownStorageError

logger = logging.getLogger(__name__)


class ObjectStore(ABC):
    """Key addressed blob storage"""

    @abstractmethod
    def write(self, key: str, content: bytes) -> None: ...

    @abstractmethod
    def write_stream(self, key: str, stream: BinaryIO) -> None: ...

    @abstractmethod
    def read(self, key: str) -> bytes: ...

    @abstractmethod
    def append(self, key: str, content: bytes) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def create_directory(self, path: str) -> None: ...

    @abstractmethod
    def delete_directory(self, path: str) -> None: ...

    @abstractmethod
    def list_contents(self, path: str, recursive: bool = False) -> List[StorageEntry]: ...


class LocalObjectStore(ObjectStore):
    """Object store backed by a directory on the local filesystem"""

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key.lstrip("/")).resolve()
        if path != self.root and self.root not in path.parents:
            raise StoreError(f"Key escapes storage root: {key}", 400)
        return path

    def _key(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def write(self, key: str, content: bytes) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        except OSError as e:
            raise StoreWriteError(f"Unable to write {key}: {e.strerror}", 500, e.errno) from e

    def write_stream(self, key: str, stream: BinaryIO) -> None:
        path = self._path(key)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "wb") as target:
                shutil.copyfileobj(stream, target)
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StoreWriteError(f"Unable to write {key}: {e.strerror}", 500, e.errno) from e

    def read(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except OSError as e:
            raise StoreReadError(f"Unable to read {key}: {e.strerror}", 500, e.errno) from e

    def append(self, key: str, content: bytes) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "ab") as target:
                target.write(content)
        except OSError as e:
            raise StoreWriteError(f"Unable to append to {key}: {e.strerror}", 500, e.errno) from e

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StoreError(f"Unable to delete {key}: {e.strerror}", 500, e.errno) from e

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def create_directory(self, path: str) -> None:
        try:
            self._path(path).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreWriteError(f"Unable to create directory {path}: {e.strerror}", 500, e.errno) from e

    def delete_directory(self, path: str) -> None:
        target = self._path(path)
        if target == self.root:
            raise StoreError("Refusing to delete the storage root", 400)
        try:
            shutil.rmtree(target)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StoreError(f"Unable to delete directory {path}: {e.strerror}", 500, e.errno) from e

    def list_contents(self, path: str, recursive: bool = False) -> List[StorageEntry]:
        base = self._path(path)
        if not base.is_dir():
            raise StoreReadError(f"Directory not found: {path}", 404)
        children = base.rglob("*") if recursive else base.iterdir()
        entries = []
        for child in sorted(children):
            if child.name.startswith("."):
                continue
            if child.is_dir():
                entries.append(StorageEntry(path=self._key(child), type="dir"))
            else:
                entries.append(StorageEntry(path=self._key(child), type="file", size=child.stat().st_size))
        return entries


class S3ObjectStore(ObjectStore):
    """Object store backed by an S3 bucket"""

    def __init__(self, bucket_name: str, s3_client=None, **client_kwargs):
        self.bucket_name = bucket_name
        self.s3_client = s3_client or boto3.client(
            "s3",
            config=boto3.session.Config(signature_version='s3v4'),
            **client_kwargs
        )

    @staticmethod
    def _error_code(e: Exception) -> Optional[str]:
        if isinstance(e, ClientError):
            return e.response.get("Error", {}).get("Code")
        return None

    @staticmethod
    def _prefix(path: str) -> str:
        path = path.strip("/")
        return f"{path}/" if path else ""

    def write(self, key: str, content: bytes) -> None:
        try:
            self.s3_client.put_object(Bucket=self.bucket_name, Key=key.lstrip("/"), Body=content)
        except (ClientError, BotoCoreError) as e:
            raise StoreWriteError(f"S3 write failed for {key}: {e}", 500, self._error_code(e)) from e

    def write_stream(self, key: str, stream: BinaryIO) -> None:
        try:
            self.s3_client.upload_fileobj(stream, self.bucket_name, key.lstrip("/"))
        except (ClientError, BotoCoreError) as e:
            raise StoreWriteError(f"S3 write failed for {key}: {e}", 500, self._error_code(e)) from e

    def read(self, key: str) -> bytes:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key.lstrip("/"))
            return response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise StoreReadError(f"S3 read failed for {key}: {e}", 500, self._error_code(e)) from e

    def append(self, key: str, content: bytes) -> None:
        # S3 objects are immutable, so append rewrites the whole object
        existing = self.read(key) if self.exists(key) else b""
        self.write(key, existing + content)

    def delete(self, key: str) -> None:
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key.lstrip("/"))
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"S3 delete failed for {key}: {e}", 500, self._error_code(e)) from e

    def exists(self, key: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key.lstrip("/"))
            return True
        except ClientError as e:
            if self._error_code(e) in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StoreReadError(f"S3 head failed for {key}: {e}", 500, self._error_code(e)) from e

    def create_directory(self, path: str) -> None:
        self.write(self._prefix(path), b"")

    def _iter_objects(self, prefix: str, delimiter: Optional[str] = None):
        paginator = self.s3_client.get_paginator("list_objects_v2")
        params = {"Bucket": self.bucket_name, "Prefix": prefix}
        if delimiter:
            params["Delimiter"] = delimiter
        for page in paginator.paginate(**params):
            yield page

    def delete_directory(self, path: str) -> None:
        prefix = self._prefix(path)
        if not prefix:
            raise StoreError("Refusing to delete the bucket root", 400)
        try:
            for page in self._iter_objects(prefix):
                keys = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
                if keys:
                    self.s3_client.delete_objects(Bucket=self.bucket_name, Delete={"Objects": keys})
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"S3 delete failed for {path}: {e}", 500, self._error_code(e)) from e

    def list_contents(self, path: str, recursive: bool = False) -> List[StorageEntry]:
        prefix = self._prefix(path)
        entries = []
        try:
            for page in self._iter_objects(prefix, None if recursive else "/"):
                for common in page.get("CommonPrefixes", []):
                    entries.append(StorageEntry(path=common["Prefix"].rstrip("/"), type="dir"))
                for obj in page.get("Contents", []):
                    if obj["Key"] == prefix:
                        continue
                    if obj["Key"].endswith("/"):
                        entries.append(StorageEntry(path=obj["Key"].rstrip("/"), type="dir"))
                    else:
                        entries.append(StorageEntry(path=obj["Key"], type="file", size=obj.get("Size")))
        except (ClientError, BotoCoreError) as e:
            raise StoreReadError(f"S3 listing failed for {path}: {e}", 500, self._error_code(e)) from e
        return entries


class StorageFactory:
    """Resolves configured storage backends by name"""

    def __init__(self, default: str = "local"):
        self.default = default
        self._stores: Dict[str, ObjectStore] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "StorageFactory":
        factory = cls(default=settings.storage_default)
        factory.register("local", LocalObjectStore(settings.local_storage_root))
        if settings.bucket_name:
            factory.register("s3", S3ObjectStore(
                settings.bucket_name,
                region_name=settings.aws_region,
                aws_access_key_id=settings.aws_access_key,
                aws_secret_access_key=settings.aws_secret_key,
            ))
        logger.info(f"Storage backends configured: {', '.join(factory.names())} (default: {factory.default})")
        return factory

    def register(self, name: str, store: ObjectStore):
        self._stores[name] = store

    def names(self) -> List[str]:
        return sorted(self._stores)

    def resolve_name(self, storage: Optional[str] = None) -> str:
        return storage or self.default

    def get(self, storage: Optional[str] = None) -> ObjectStore:
        name = self.resolve_name(storage)
        try:
            return self._stores[name]
        except KeyError:
            raise UnknownStorageError(name) from None
