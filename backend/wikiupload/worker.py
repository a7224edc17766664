from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from pathlib import Path

from celery import Celery

from wikiupload.core.config import settings
from wikiupload.core.errors import ApiError, ConsistencyError
from wikiupload.db.session import async_session_factory
from wikiupload.models.upload import UploadResult, UploadStage
from wikiupload.models.user import User
from wikiupload.services import publish, stash
from wikiupload.services.chunks import ChunkAssembler, failure_status, record_failure
from wikiupload.services.verification import (
    UploadCandidate,
    registered_policy_checks,
    verification_error,
    verify_upload,
)
from wikiupload.services.warnings import check_warnings

logger = logging.getLogger(__name__)

celery_app = Celery(
    "wikiupload",
    broker=settings.celery_broker,
    backend=settings.celery_backend,
)
celery_app.conf.update(task_serializer="json", result_serializer="json", accept_content=["json"])
celery_app.conf.beat_schedule = {
    "cleanup-expired-stash": {"task": "cleanup_expired_stash", "schedule": 3600.0},
}


def _internal_error(exc: Exception) -> ApiError:
    return ApiError(f"{type(exc).__name__}: {exc}", "internal-error", status_code=500)


async def _assemble_upload_chunks(user_id: uuid.UUID, filename: str, filekey: str) -> None:
    async with async_session_factory() as db:
        user: User | None = await db.get(User, user_id)
        if user is None:
            logger.error("User %s not found for assembly of %s", user_id, filekey)
            return
        session = await stash.get_session_status(db, user, filekey)
        if session is None or session.result != UploadResult.POLL:
            logger.info("Nothing to assemble for %s", filekey)
            return

        await stash.set_session_status(
            db,
            user,
            filekey,
            stash.UploadProgress(result=UploadResult.POLL, stage=UploadStage.ASSEMBLING, filename=filename),
        )
        try:
            assembled = await ChunkAssembler(db, user).assemble(filekey, filename=filename)
        except ApiError as exc:
            logger.warning("Assembly of %s failed: %s", filekey, exc.info)
            await record_failure(db, user, filekey, UploadStage.ASSEMBLING, failure_status(exc))
            return
        except Exception as exc:
            logger.exception("Assembly of %s failed", filekey)
            await db.rollback()
            await record_failure(db, user, filekey, UploadStage.ASSEMBLING, failure_status(_internal_error(exc)))
            raise

        warnings = await check_warnings(db, filename=filename, size=assembled.size, sha1=assembled.sha1)
        status = {"ok": True, "filekey": assembled.filekey, "filename": filename}
        if warnings:
            status["warnings"] = warnings
        try:
            await stash.set_session_status(
                db,
                user,
                filekey,
                stash.UploadProgress(result=UploadResult.SUCCESS, stage=UploadStage.DONE, status=status),
            )
        except ConsistencyError as exc:
            # Another run finished this session first; its result stands.
            logger.warning("Discarding assembly %s of %s: %s", assembled.filekey, filekey, exc.info)
            await stash.remove_file(db, assembled.filekey)
            return
        await stash.remove_file(db, filekey)
        logger.info("Chunked upload %s assembled as %s", filekey, assembled.filekey)


async def _publish_stashed_file(
    user_id: uuid.UUID,
    filename: str,
    filekey: str,
    comment: str,
    tags: list[str],
    text: str | None,
    watch: bool,
) -> None:
    async with async_session_factory() as db:
        user: User | None = await db.get(User, user_id)
        if user is None:
            logger.error("User %s not found for publishing %s", user_id, filekey)
            return
        session = await stash.get_session_status(db, user, filekey)
        if session is None or session.result != UploadResult.POLL:
            logger.info("Nothing to publish for %s", filekey)
            return

        await stash.set_session_status(
            db,
            user,
            filekey,
            stash.UploadProgress(result=UploadResult.POLL, stage=UploadStage.PUBLISH, filename=filename),
        )
        try:
            record = await stash.get_file(db, user, filekey)
            path = Path(record.storage_path)
            candidate = UploadCandidate(filename=filename, size=record.size, path=path, mime_type=record.mime_type)
            verification = await verify_upload(candidate, registered_policy_checks())
            if not verification.ok:
                logger.warning("Verification of %s failed: %s", filekey, verification.status.value)
                await record_failure(
                    db,
                    user,
                    filekey,
                    UploadStage.PUBLISH,
                    failure_status(verification_error(verification), verification=verification.to_dict()),
                )
                return
            published = await publish.publish_file(
                db,
                user,
                path,
                filename=filename,
                sha1=record.sha1,
                mime_type=record.mime_type,
                comment=comment,
                text=text,
                tags=tags,
                watch=watch,
            )
        except ApiError as exc:
            logger.warning("Publishing %s failed: %s", filekey, exc.info)
            await db.rollback()
            await record_failure(db, user, filekey, UploadStage.PUBLISH, failure_status(exc))
            return
        except Exception as exc:
            logger.exception("Publishing %s failed", filekey)
            await db.rollback()
            await record_failure(db, user, filekey, UploadStage.PUBLISH, failure_status(_internal_error(exc)))
            raise

        status = {"ok": True, "filename": published.name, "fileinfo": publish.file_info(published)}
        await stash.set_session_status(
            db,
            user,
            filekey,
            stash.UploadProgress(result=UploadResult.SUCCESS, stage=UploadStage.DONE, status=status),
        )
        await stash.remove_file(db, filekey)


async def _cleanup_expired_stash() -> int:
    async with async_session_factory() as db:
        return await stash.cleanup_expired(db, timedelta(hours=settings.stash_max_age_hours))


@celery_app.task(name="assemble_upload_chunks")
def assemble_upload_chunks_task(user_id: str, filename: str, filekey: str) -> None:
    asyncio.run(_assemble_upload_chunks(uuid.UUID(user_id), filename, filekey))


@celery_app.task(name="publish_stashed_file")
def publish_stashed_file_task(
    user_id: str,
    filename: str,
    filekey: str,
    comment: str,
    tags: list[str],
    text: str | None,
    watch: bool,
) -> None:
    asyncio.run(_publish_stashed_file(uuid.UUID(user_id), filename, filekey, comment, tags, text, watch))


@celery_app.task(name="cleanup_expired_stash")
def cleanup_expired_stash_task() -> int:
    return asyncio.run(_cleanup_expired_stash())
