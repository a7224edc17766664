from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Enum, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from wikiupload.db.base import Base

if TYPE_CHECKING:  # pragma: no cover - for type checkers only
    from wikiupload.models.user import User


class UploadStage(str, enum.Enum):
    UPLOADING = "uploading"
    QUEUED = "queued"
    ASSEMBLING = "assembling"
    PUBLISH = "publish"
    DONE = "done"


class UploadResult(str, enum.Enum):
    CONTINUE = "Continue"
    POLL = "Poll"
    SUCCESS = "Success"
    WARNING = "Warning"
    FAILURE = "Failure"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadResult.SUCCESS, UploadResult.FAILURE)


class UploadSession(Base):
    """Progress of a multi-request upload, keyed by the filekey handed to the client."""

    __tablename__ = "upload_sessions"

    filekey: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    stage: Mapped[UploadStage] = mapped_column(Enum(UploadStage), default=UploadStage.UPLOADING, nullable=False)
    result: Mapped[UploadResult] = mapped_column(Enum(UploadResult), default=UploadResult.CONTINUE, nullable=False)
    offset: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    filename: Mapped[str | None] = mapped_column(String(512), nullable=True)
    status: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    owner: Mapped["User"] = relationship("User", back_populates="upload_sessions")

    def to_progress(self) -> dict[str, Any]:
        progress: dict[str, Any] = {
            "result": self.result.value,
            "stage": self.stage.value,
            "filekey": self.filekey,
        }
        if self.result == UploadResult.CONTINUE:
            progress["offset"] = self.offset
        for key in ("filekey", "filename", "fileinfo"):
            if self.status.get(key):
                progress[key] = self.status[key]
        return progress


class StashedFile(Base):
    """A stashed upload: either a complete file or the chunks received so far."""

    __tablename__ = "stashed_files"

    filekey: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    is_partial: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    chunk_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sha1: Mapped[str | None] = mapped_column(String(64), nullable=True)
    original_filename: Mapped[str | None] = mapped_column(String(512), nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    storage_path: Mapped[str] = mapped_column(String(1024), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    owner: Mapped["User"] = relationship("User", back_populates="stashed_files")
