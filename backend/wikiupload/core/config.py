from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    project_name: str = "WikiUpload"
    api_prefix: str = "/api"

    database_url: str = Field(
        default="postgresql+asyncpg://wikiupload:wikiupload@db:5432/wikiupload",
        description="SQLAlchemy async database URL",
    )
    redis_url: str = Field(default="redis://redis:6379/0", description="Redis connection URL")

    storage_root: Path = Field(
        default=Path(__file__).resolve().parents[3] / "Storage",
        description="Base directory for stash and published files",
    )
    tmp_dir_name: str = Field(default="uploads/tmp")
    stash_dir_name: str = Field(default="uploads/stash")
    files_dir_name: str = Field(default="files")
    public_files_url: str = Field(default="/files")

    # Chunked uploads
    min_upload_chunk_size: int = Field(default=1024, ge=1)
    max_upload_size: int = Field(default=4 * 1024 * 1024 * 1024, ge=1)
    upload_size_warning: int | None = Field(default=None, ge=1)
    enable_async_uploads: bool = False
    stash_max_age_hours: int = Field(default=48, ge=1)

    # File name and type policy
    max_filename_bytes: int = Field(default=240, ge=1)
    check_file_extensions: bool = True
    strict_file_extensions: bool = True
    file_extensions: List[str] = Field(
        default_factory=lambda: ["png", "gif", "jpg", "jpeg", "webp", "svg", "pdf", "ogg", "webm", "txt"]
    )
    file_blacklist: List[str] = Field(
        default_factory=lambda: [
            "html", "htm", "js", "jsb", "mhtml", "mht", "xhtml", "xht",
            "php", "phtml", "php3", "php4", "php5", "phps", "phar",
            "shtml", "jhtml", "pl", "py", "cgi",
            "exe", "scr", "dll", "msi", "vbs", "bat", "com", "pif", "cmd", "vxd", "cpl",
        ]
    )
    windows_nonascii_restricted: bool = False
    verify_mime_type: bool = True

    # Copy uploads
    allow_copy_uploads: bool = False
    copy_upload_domains: List[str] = Field(default_factory=list)
    copy_upload_timeout: float = Field(default=25.0, gt=0)

    # Publishing
    upload_rate_limit: int | None = Field(default=None, ge=1)
    upload_rate_window_seconds: int = Field(default=60, ge=1)
    allowed_change_tags: List[str] = Field(default_factory=list)

    jwt_secret: str = Field(default="change-me-please", min_length=10)
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60 * 12)

    admin_email: str = Field(default="admin@example.com")
    admin_password: str | None = Field(default=None)
    admin_password_hash: str = Field(
        default="$2b$12$dl8Ne6PFc.CD1gVYLRNvJeXp9jR8GStlMsJGcZ4opecQcsao4s46y",
        description="bcrypt hash for default admin password 'changeme'",
    )

    celery_broker_url: str | None = None
    celery_result_backend: str | None = None

    cors_allowed_origins: List[str] = Field(default_factory=lambda: ["*"])

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    @field_validator("storage_root", mode="before")
    @classmethod
    def _build_storage_root(cls, value: Path | str) -> Path:
        return Path(value)

    @field_validator("file_extensions", "file_blacklist", mode="after")
    @classmethod
    def _normalize_extensions(cls, value: List[str]) -> List[str]:
        return [ext.lower().lstrip(".") for ext in value]

    @property
    def tmp_dir(self) -> Path:
        return self.storage_root / self.tmp_dir_name

    @property
    def stash_dir(self) -> Path:
        return self.storage_root / self.stash_dir_name

    @property
    def files_dir(self) -> Path:
        return self.storage_root / self.files_dir_name

    @property
    def celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url

    @property
    def celery_backend(self) -> str:
        return self.celery_result_backend or self.redis_url

    @property
    def effective_admin_password_hash(self) -> str:
        if self.admin_password:
            from wikiupload.utils.security import get_password_hash

            return get_password_hash(self.admin_password)
        return self.admin_password_hash


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
