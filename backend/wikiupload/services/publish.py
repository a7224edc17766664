from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable
from urllib.parse import quote

from fastapi import status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from wikiupload.core.config import settings
from wikiupload.core.errors import ApiError
from wikiupload.models.file import PublishedFile, UploadRecord, WatchedFile
from wikiupload.models.user import User
from wikiupload.services.storage import storage_service
from wikiupload.services.verification import normalize_filename

logger = logging.getLogger(__name__)


async def get_published(db: AsyncSession, name: str) -> PublishedFile | None:
    result = await db.execute(select(PublishedFile).where(PublishedFile.name == normalize_filename(name)))
    return result.scalar_one_or_none()


async def list_published(db: AsyncSession, *, owner: User | None = None) -> list[PublishedFile]:
    stmt = select(PublishedFile).order_by(PublishedFile.updated_at.desc())
    if owner is not None:
        stmt = stmt.where(PublishedFile.owner_id == owner.id)
    result = await db.execute(stmt)
    return list(result.scalars())


def check_title_permissions(user: User, existing: PublishedFile | None) -> ApiError | None:
    """Return the error preventing ``user`` from writing to the target name, if any."""
    if existing is None or user.is_admin:
        return None
    if not user.can_reupload:
        return ApiError("You are not allowed to overwrite existing files", "fileexists-forbidden")
    if existing.owner_id != user.id:
        return ApiError("You may only overwrite files you uploaded yourself", "fileexists-forbidden")
    return None


async def is_throttled(db: AsyncSession, user: User) -> bool:
    if settings.upload_rate_limit is None or user.is_admin:
        return False
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=settings.upload_rate_window_seconds)
    count = await db.scalar(
        select(func.count(UploadRecord.id)).where(UploadRecord.user_id == user.id, UploadRecord.created_at >= cutoff)
    )
    return (count or 0) >= settings.upload_rate_limit


def check_tags(tags: Iterable[str]) -> None:
    disallowed = [tag for tag in tags if tag not in settings.allowed_change_tags]
    if disallowed:
        raise ApiError(
            "Tags may not be applied: " + ", ".join(disallowed),
            "tags-apply-not-allowed",
            {"tags": disallowed},
            status_code=status.HTTP_403_FORBIDDEN,
        )


async def is_watching(db: AsyncSession, user: User, name: str) -> bool:
    found = await db.scalar(select(WatchedFile.id).where(WatchedFile.user_id == user.id, WatchedFile.name == name))
    return found is not None


async def resolve_watch(
    db: AsyncSession,
    user: User,
    name: str,
    *,
    watchlist: str,
    watch: bool = False,
) -> bool:
    name = normalize_filename(name)
    if watch or watchlist == "watch":
        return True
    currently_watching = await is_watching(db, user, name)
    if watchlist == "nochange":
        return currently_watching
    if currently_watching or user.watch_default:
        return True
    if await get_published(db, name) is None:
        return user.watch_uploads or user.watch_creations
    return False


def file_info(file: PublishedFile) -> dict[str, Any]:
    return {
        "name": file.name,
        "size": file.size,
        "sha1": file.sha1,
        "mime": file.mime_type,
        "url": f"{settings.public_files_url}/{quote(file.name.replace(' ', '_'))}",
        "revision": file.revision,
        "timestamp": file.updated_at.isoformat() if file.updated_at else None,
        "comment": file.comment,
    }


async def publish_file(
    db: AsyncSession,
    user: User,
    source_path: Path,
    *,
    filename: str,
    sha1: str,
    mime_type: str | None,
    comment: str,
    text: str | None,
    tags: list[str],
    watch: bool,
) -> PublishedFile:
    """Commit stashed or temporary bytes as the current version of ``filename``."""
    name = normalize_filename(filename)
    published = await get_published(db, name)
    if published is None:
        published = PublishedFile(
            id=uuid.uuid4(),
            name=name,
            owner_id=user.id,
            description=text if text is not None else comment,
            revision=1,
        )
        target = storage_service.final_file_path(str(published.id))
    else:
        target = Path(published.storage_path)
        published.revision += 1
        if text is not None:
            published.description = text

    size = await storage_service.copy_file(source_path, target)
    published.size = size
    published.sha1 = sha1
    published.mime_type = mime_type
    published.storage_path = str(target)
    published.comment = comment
    published.tags = list(tags)
    published.updated_at = datetime.now(timezone.utc)
    db.add(published)

    db.add(UploadRecord(user_id=user.id, name=name, sha1=sha1, size=size, comment=comment))
    if watch and not await is_watching(db, user, name):
        db.add(WatchedFile(user_id=user.id, name=name))
    await db.commit()
    await db.refresh(published)
    logger.info("Published %s revision %d (%d bytes) for user %s", name, published.revision, size, user.id)
    return published
