from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from wikiupload.core.config import settings
from wikiupload.core.errors import ApiError, ClientError, ConsistencyError, StashError, StashErrorKind
from wikiupload.models.upload import StashedFile, UploadResult, UploadStage
from wikiupload.models.user import User
from wikiupload.services import stash
from wikiupload.services.storage import storage_service
from wikiupload.services.verification import PolicyCheck, UploadCandidate, verify_upload, verification_error

logger = logging.getLogger(__name__)


@dataclass
class ChunkOutcome:
    filekey: str
    offset: int
    complete: bool


def failure_status(error: ApiError, **extra: Any) -> dict[str, Any]:
    status: dict[str, Any] = {"ok": False, "code": error.code, "info": error.info, "data": dict(error.data)}
    status.update(extra)
    return status


class ChunkAssembler:
    """Validates, stores and concatenates the chunks of one user's uploads."""

    def __init__(
        self,
        db: AsyncSession,
        user: User | None,
        *,
        policy_checks: Sequence[PolicyCheck] | None = None,
    ) -> None:
        self.db = db
        self.user = user
        self.policy_checks = policy_checks

    @staticmethod
    def check_bounds(offset: int, chunk_size: int, file_size: int) -> None:
        total = offset + chunk_size
        if total > file_size:
            raise ClientError("Offset plus current chunk is greater than claimed file size", "invalid-chunk")
        min_size = settings.min_upload_chunk_size
        if total != file_size and chunk_size < min_size:
            raise ClientError(f"Minimum chunk size is {min_size} bytes for non-final chunks", "chunk-too-small")

    async def add_chunk(
        self,
        chunk_path: Path,
        *,
        filename: str,
        file_size: int,
        offset: int,
        filekey: str | None = None,
    ) -> ChunkOutcome:
        chunk_size = chunk_path.stat().st_size
        self.check_bounds(offset, chunk_size, file_size)
        total = offset + chunk_size

        if offset == 0:
            if filekey is not None:
                raise ClientError("Cannot supply a filekey when offset is 0", "badparams")
            record = await stash.stash_file(self.db, self.user, chunk_path, is_partial=True, filename=filename)
            filekey = record.filekey
        else:
            if filekey is None:
                raise ClientError("Must supply a filekey when offset is non-zero", "badparams")
            await self._append(filekey, chunk_path, offset)

        complete = total == file_size
        if not complete:
            await stash.set_session_status(
                self.db,
                self.user,
                filekey,
                stash.UploadProgress(
                    result=UploadResult.CONTINUE,
                    stage=UploadStage.UPLOADING,
                    offset=total,
                    file_size=file_size,
                    filename=filename,
                ),
            )
        return ChunkOutcome(filekey=filekey, offset=total, complete=complete)

    async def _append(self, filekey: str, chunk_path: Path, offset: int) -> None:
        session = await stash.get_session_status(self.db, self.user, filekey)
        if session is None:
            raise ConsistencyError("No chunked upload session with this key", "stashfailed")
        if session.result != UploadResult.CONTINUE or session.stage != UploadStage.UPLOADING:
            raise ConsistencyError("Chunked upload is already completed, check status for details", "stashfailed")
        if offset != session.offset:
            raise ConsistencyError(
                f"Offset mismatch: expected {session.offset}, got {offset}",
                "stashfailed",
                {"offset": session.offset},
            )
        try:
            await stash.append_chunk(self.db, self.user, filekey, chunk_path)
        except StashError as exc:
            raise ApiError(exc.info, "stashfailed", {"offset": session.offset}) from exc

    async def queue(self, filekey: str, *, filename: str, file_size: int) -> None:
        await stash.set_session_status(
            self.db,
            self.user,
            filekey,
            stash.UploadProgress(
                result=UploadResult.POLL,
                stage=UploadStage.QUEUED,
                offset=file_size,
                file_size=file_size,
                filename=filename,
            ),
        )

    async def assemble(self, filekey: str, *, filename: str) -> StashedFile:
        """Concatenate the chunks of ``filekey`` into a new, complete stash entry.

        Any failure is written to the session as ``Failure``/``assembling``
        before a ``stashfailed`` error is raised. The old entry is left in
        place; the caller removes it once the new key is recorded.
        """
        record = await stash.get_file(self.db, self.user, filekey)
        try:
            return await self._concatenate(record, filename=filename)
        except ApiError as exc:
            await self.db.rollback()
            error = ApiError(
                exc.info, "stashfailed", {**exc.data, "details": [exc.code]}, status_code=exc.status_code
            )
            extra = {"verification": exc.verification} if isinstance(exc, _VerificationFailed) else {}
            await record_failure(self.db, self.user, filekey, UploadStage.ASSEMBLING, failure_status(error, **extra))
            raise error from exc

    async def _concatenate(self, record: StashedFile, *, filename: str) -> StashedFile:
        filekey = record.filekey
        if not record.is_partial:
            raise StashError(StashErrorKind.BAD_KEY, f"{filekey} has already been assembled")
        session = await stash.get_session_status(self.db, self.user, filekey)
        expected = session.file_size if session is not None and session.file_size is not None else record.size

        target = storage_service.new_temp_path(".assembled")
        try:
            try:
                merged = await storage_service.merge_chunks(filekey, record.chunk_count, target)
            except OSError as exc:
                raise StashError(StashErrorKind.STORAGE_FAILURE, str(exc)) from exc
            if merged != expected:
                raise ConsistencyError(
                    f"Assembled {merged} bytes but {expected} were declared", "stashfailed"
                )

            candidate = UploadCandidate(filename=filename, size=merged, path=target, mime_type=record.mime_type)
            verification = await verify_upload(candidate, self.policy_checks)
            if not verification.ok:
                raise _VerificationFailed(verification_error(verification), verification.to_dict())

            assembled = await stash.stash_file(
                self.db,
                self.user,
                target,
                is_partial=False,
                filename=filename,
                mime_type=record.mime_type,
                move=True,
            )
        finally:
            await storage_service.remove_path(target)

        logger.info("Assembled %d chunks of %s into %s (%d bytes)", record.chunk_count, filekey, assembled.filekey, merged)
        return assembled


class _VerificationFailed(ApiError):
    def __init__(self, error: ApiError, verification: dict[str, Any]) -> None:
        super().__init__(error.info, error.code, error.data, status_code=error.status_code)
        self.verification = verification


async def record_failure(
    db: AsyncSession,
    user: User | None,
    filekey: str,
    stage: UploadStage,
    status: dict[str, Any],
) -> None:
    """Persist a ``Failure`` result unless the session already reached a terminal one."""
    session = await stash.get_session_status(db, user, filekey)
    if session is not None and session.result.is_terminal:
        return
    await stash.set_session_status(
        db,
        user,
        filekey,
        stash.UploadProgress(result=UploadResult.FAILURE, stage=stage, status=status),
    )
