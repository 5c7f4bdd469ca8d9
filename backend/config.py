# config.py
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    """Service settings read from the environment (and .env if present)"""

    # Chunk staging
    staging_dir: str = Field(default="runtime/chunk")
    staging_ttl_hours: float = Field(default=24, gt=0)
    cleanup_interval_seconds: int = Field(default=6 * 60 * 60, gt=0)

    # Object storage
    storage_default: str = "local"
    local_storage_root: str = "storage"
    aws_access_key: Optional[str] = None
    aws_secret_key: Optional[str] = None
    aws_region: str = "us-east-1"
    bucket_name: Optional[str] = None

    # Merge lock
    merge_lock_backend: str = Field(default="local", pattern="^(local|redis)$")
    merge_lock_timeout: int = Field(default=300, gt=0)
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_password: str = ""

    network_timeout: float = 10.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        values = {}
        for name in cls.model_fields:
            raw = os.getenv(name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        return cls(**values)


settings = Settings.from_env()
