"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=3020, env="PORT", ge=1024, le=65535)
    debug: bool = Field(default=False, env="DEBUG")
    workers: int = Field(default=1, env="WORKERS", ge=1, le=8)
    environment: str = Field(default="development", env="ENVIRONMENT", min_length=1)
    cors_origins: List[str] = Field(default=["*"], env="CORS_ORIGINS")

    # Key/Value Store
    store_backend: Literal["redis", "sql", "memory"] = Field(default="sql", env="STORE_BACKEND")
    cache_namespace: str = Field(default="img-server", env="CACHE_NAMESPACE", min_length=1)
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    database_url: str = Field(default="sqlite+aiosqlite:///./data/images.db", env="DATABASE_URL")
    database_echo: bool = Field(default=False, env="DATABASE_ECHO")
    database_pool_size: int = Field(default=20, env="DATABASE_POOL_SIZE", ge=5, le=100)
    database_max_overflow: int = Field(default=30, env="DATABASE_MAX_OVERFLOW", ge=10, le=100)
    store_ping_timeout: float = Field(default=5.0, env="STORE_PING_TIMEOUT", ge=0.1, le=60.0)

    # Lock
    lock_poll_interval_ms: int = Field(default=200, env="LOCK_POLL_INTERVAL_MS", ge=1)
    lock_wait_timeout_ms: Optional[int] = Field(default=None, env="LOCK_WAIT_TIMEOUT_MS", ge=1)
    max_lock_rounds: int = Field(default=3, env="MAX_LOCK_ROUNDS", ge=1, le=10)

    # Blob Store
    blob_backend: Literal["s3", "local"] = Field(default="local", env="BLOB_BACKEND")
    s3_bucket: Optional[str] = Field(default=None, env="S3_BUCKET")
    s3_region: str = Field(default="us-east-1", env="S3_REGION")
    cdn_root: Optional[str] = Field(default=None, env="CDN_ROOT")
    local_blob_root: str = Field(default="./data/blobs", env="LOCAL_BLOB_ROOT")
    tmp_dir: str = Field(default="/tmp", env="TMP_DIR")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @model_validator(mode="after")
    def validate_backends(self):
        """Reject backend selections that are missing their connection target."""
        if self.store_backend == "redis" and not self.redis_url:
            raise ValueError("REDIS_URL is required when STORE_BACKEND=redis")
        if self.blob_backend == "s3" and not self.s3_bucket:
            raise ValueError("S3_BUCKET is required when BLOB_BACKEND=s3")
        return self

    @property
    def wait_timeout_ms(self) -> int:
        """Lease length and wait deadline, 10x the poll interval unless set."""
        return self.lock_wait_timeout_ms or 10 * self.lock_poll_interval_ms

    @property
    def public_root(self) -> str:
        """Root URL that version paths are appended to."""
        if self.cdn_root:
            return self.cdn_root
        if self.blob_backend == "s3":
            return f"https://s3.amazonaws.com/{self.s3_bucket}/"
        return "/blobs/"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
