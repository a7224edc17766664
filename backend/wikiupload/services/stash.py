from __future__ import annotations

import logging
import mimetypes
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from wikiupload.core.errors import ConsistencyError, StashError, StashErrorKind
from wikiupload.models.upload import StashedFile, UploadResult, UploadSession, UploadStage
from wikiupload.models.user import User
from wikiupload.services.storage import storage_service

logger = logging.getLogger(__name__)

FILEKEY_PATTERN = re.compile(r"^[\w\-.]+\.\w*$")
MAX_FILEKEY_LENGTH = 255


@dataclass
class UploadProgress:
    """A status write for an upload session; ``None`` fields keep their stored value."""

    result: UploadResult
    stage: UploadStage
    offset: int | None = None
    file_size: int | None = None
    filename: str | None = None
    status: dict[str, Any] = field(default_factory=lambda: {"ok": True})


def is_valid_key(filekey: str | None) -> bool:
    return bool(filekey) and len(filekey) <= MAX_FILEKEY_LENGTH and bool(FILEKEY_PATTERN.match(filekey))


def generate_filekey(filename: str | None = None) -> str:
    extension = ""
    if filename and "." in filename:
        extension = re.sub(r"\W", "", filename.rsplit(".", 1)[1]).lower()
    stamp = format(int(time.time() * 1000), "x")
    return f"{stamp}{secrets.token_hex(4)}.{secrets.token_hex(3)}.{extension}"


def _require_owner(owner: User | None) -> User:
    if owner is None:
        raise StashError(StashErrorKind.NOT_LOGGED_IN, "the stash requires a logged-in user")
    return owner


async def stash_file(
    db: AsyncSession,
    owner: User | None,
    source_path: Path,
    *,
    is_partial: bool,
    filename: str | None = None,
    mime_type: str | None = None,
    move: bool = False,
) -> StashedFile:
    owner = _require_owner(owner)
    if not source_path.exists():
        raise StashError(StashErrorKind.NOT_FOUND, f"source file {source_path.name} is missing")
    size = source_path.stat().st_size
    if size == 0:
        raise StashError(StashErrorKind.ZERO_LENGTH, filename or source_path.name)

    filekey = generate_filekey(filename)
    sha1: str | None = None
    try:
        if is_partial:
            await storage_service.write_chunk(filekey, 0, source_path)
            storage_path = storage_service.stash_entry_dir(filekey)
        else:
            storage_path = storage_service.stash_data_path(filekey)
            if move:
                await storage_service.move_file(source_path, storage_path)
            else:
                await storage_service.copy_file(source_path, storage_path)
            sha1 = await storage_service.compute_sha1(storage_path)
    except OSError as exc:
        await storage_service.remove_entry(filekey)
        raise StashError(StashErrorKind.STORAGE_FAILURE, str(exc)) from exc

    if mime_type is None and filename:
        mime_type = mimetypes.guess_type(filename)[0]

    record = StashedFile(
        filekey=filekey,
        owner_id=owner.id,
        is_partial=is_partial,
        size=size,
        chunk_count=1 if is_partial else 0,
        sha1=sha1,
        original_filename=filename,
        mime_type=mime_type,
        storage_path=str(storage_path),
    )
    db.add(record)
    await db.commit()
    await db.refresh(record)
    logger.info("Stashed %s file %s (%d bytes) for user %s", "partial" if is_partial else "complete", filekey, size, owner.id)
    return record


async def get_file(db: AsyncSession, owner: User | None, filekey: str) -> StashedFile:
    owner = _require_owner(owner)
    if not is_valid_key(filekey):
        raise StashError(StashErrorKind.BAD_KEY, filekey)
    record = await db.get(StashedFile, filekey)
    if record is None:
        raise StashError(StashErrorKind.NO_SUCH_KEY, filekey)
    if record.owner_id != owner.id:
        raise StashError(StashErrorKind.WRONG_OWNER, f"{filekey} belongs to another user")
    if not Path(record.storage_path).exists():
        raise StashError(StashErrorKind.NOT_FOUND, filekey)
    return record


async def append_chunk(db: AsyncSession, owner: User | None, filekey: str, chunk_path: Path) -> StashedFile:
    record = await get_file(db, owner, filekey)
    if not record.is_partial:
        raise StashError(StashErrorKind.BAD_KEY, f"{filekey} is not a chunked upload")
    size = chunk_path.stat().st_size
    if size == 0:
        raise StashError(StashErrorKind.ZERO_LENGTH, f"chunk {record.chunk_count} of {filekey}")
    try:
        await storage_service.write_chunk(filekey, record.chunk_count, chunk_path)
    except OSError as exc:
        raise StashError(StashErrorKind.STORAGE_FAILURE, str(exc)) from exc

    record.chunk_count += 1
    record.size += size
    await db.commit()
    logger.debug("Appended chunk %d (%d bytes) to %s", record.chunk_count - 1, size, filekey)
    return record


async def remove_file(db: AsyncSession, filekey: str) -> None:
    record = await db.get(StashedFile, filekey)
    if record is not None:
        await db.delete(record)
        await db.commit()
    await storage_service.remove_entry(filekey)


async def get_session_status(db: AsyncSession, owner: User | None, filekey: str) -> UploadSession | None:
    owner = _require_owner(owner)
    session = await db.get(UploadSession, filekey, populate_existing=True)
    if session is None:
        return None
    if session.owner_id != owner.id:
        raise StashError(StashErrorKind.WRONG_OWNER, f"upload session {filekey} belongs to another user")
    return session


async def set_session_status(
    db: AsyncSession,
    owner: User | None,
    filekey: str,
    progress: UploadProgress | None,
) -> UploadSession | None:
    owner = _require_owner(owner)
    session = await get_session_status(db, owner, filekey)
    if progress is None:
        if session is not None:
            await db.delete(session)
            await db.commit()
        return None

    if session is None:
        session = UploadSession(filekey=filekey, owner_id=owner.id, offset=0, status={})
        db.add(session)
    elif session.result.is_terminal:
        raise ConsistencyError(
            f"Upload session {filekey} already finished with {session.result.value}", "stashfailed"
        )

    offset = progress.offset if progress.offset is not None else session.offset
    file_size = progress.file_size if progress.file_size is not None else session.file_size
    if offset < session.offset:
        raise ConsistencyError(
            f"Offset of {filekey} may not move back from {session.offset} to {offset}", "stashfailed"
        )
    if file_size is not None and offset > file_size:
        raise ConsistencyError(f"Offset {offset} exceeds the declared size {file_size}", "stashfailed")

    session.result = progress.result
    session.stage = progress.stage
    session.offset = offset
    session.file_size = file_size
    if progress.filename is not None:
        session.filename = progress.filename
    session.status = dict(progress.status)
    await db.commit()
    return session


async def cleanup_expired(db: AsyncSession, max_age: timedelta) -> int:
    """Remove stash entries and sessions untouched for longer than ``max_age``."""
    cutoff = datetime.now(timezone.utc) - max_age
    result = await db.execute(select(StashedFile.filekey).where(StashedFile.updated_at < cutoff))
    filekeys = [filekey for (filekey,) in result]
    for filekey in filekeys:
        await remove_file(db, filekey)
    await db.execute(delete(UploadSession).where(UploadSession.updated_at < cutoff))
    await db.commit()
    if filekeys:
        logger.info("Removed %d expired stash entries", len(filekeys))
    return len(filekeys)
