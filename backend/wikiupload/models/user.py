from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from wikiupload.db.base import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    can_upload: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_reupload: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    block_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    watch_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    watch_uploads: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    watch_creations: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    upload_sessions: Mapped[list["UploadSession"]] = relationship(back_populates="owner", cascade="all, delete")
    stashed_files: Mapped[list["StashedFile"]] = relationship(back_populates="owner", cascade="all, delete")


from wikiupload.models.upload import StashedFile, UploadSession  # noqa: E402  # circular import guard
