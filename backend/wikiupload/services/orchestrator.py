from __future__ import annotations

import enum
import logging
from typing import Any, Sequence

from fastapi import UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from wikiupload.core.config import settings
from wikiupload.core.errors import (
    ApiError,
    ClientError,
    FatalContentError,
    RecoverableContentError,
    UploadPermissionError,
    translate_stash_exception,
)
from wikiupload.models.upload import UploadResult, UploadStage
from wikiupload.models.user import User
from wikiupload.schemas.upload import UploadParams
from wikiupload.services import publish, stash
from wikiupload.services.chunks import ChunkAssembler
from wikiupload.services.sources import (
    ChunkUploadSource,
    FileUploadSource,
    StashUploadSource,
    UploadSource,
    UrlUploadSource,
)
from wikiupload.services.verification import (
    PolicyCheck,
    VerificationResult,
    check_filename,
    is_recoverable,
    normalize_filename,
    registered_policy_checks,
    verification_error,
    verify_upload,
)
from wikiupload.services.warnings import check_warnings
from wikiupload.worker import assemble_upload_chunks_task, publish_stashed_file_task

logger = logging.getLogger(__name__)


class StashFailureMode(str, enum.Enum):
    # The stash is the point of the request: failing to stash fails the request.
    CRITICAL = "critical"
    # The stash only saves the client a re-upload: failures become a "stashfailed" field.
    OPTIONAL = "optional"


class UploadOrchestrator:
    """Runs one upload request from source selection to the final result."""

    def __init__(
        self,
        db: AsyncSession,
        user: User | None,
        params: UploadParams,
        *,
        file: UploadFile | None = None,
        chunk: UploadFile | None = None,
        policy_checks: Sequence[PolicyCheck] | None = None,
    ) -> None:
        self.db = db
        self.user = user
        self.params = params.model_copy()
        self.file = file
        self.chunk = chunk
        self.policy_checks = registered_policy_checks() if policy_checks is None else list(policy_checks)
        self.source: UploadSource | None = None

        self.params.async_ = self.params.async_ and settings.enable_async_uploads
        if not self.params.filekey and self.params.sessionkey:
            self.params.filekey = self.params.sessionkey

    async def execute(self) -> dict[str, Any]:
        params = self.params
        if self.chunk is None:
            self._require_only_one_source()
        if params.filekey and params.checkstatus:
            return await self._status_report(params.filekey)

        try:
            self.source = await self._select_source()
            self._check_permissions()
            await self.source.fetch()
            await self._verify()
            if not params.stash:
                await self._verify_title_permissions()
            return await self._context_result()
        finally:
            if self.source is not None:
                await self.source.cleanup()

    def _require_only_one_source(self) -> None:
        given = [
            name
            for name, value in (("filekey", self.params.filekey), ("file", self.file), ("url", self.params.url))
            if value
        ]
        if len(given) > 1:
            raise ClientError(
                "The parameters filekey, file, url can not be used together",
                "invalidparammix",
                {"params": given},
            )
        if not given:
            raise ClientError("One of the parameters filekey, file, url is required", "missingparam")

    async def _status_report(self, filekey: str) -> dict[str, Any]:
        session = await stash.get_session_status(self.db, self.user, filekey)
        if session is None:
            raise ClientError("No result in status data", "missingresult")
        stored = session.status or {}
        if stored.get("ok") is False:
            if stored.get("verification") and stored.get("code") != "stashfailed":
                raise verification_error(VerificationResult.from_dict(stored["verification"]))
            raise ApiError(stored.get("info") or "Upload failed", stored.get("code") or "stashfailed", stored.get("data"))
        progress = session.to_progress()
        if stored.get("warnings"):
            progress["warnings"] = stored["warnings"]
        return progress

    async def _select_source(self) -> UploadSource:
        params = self.params
        if not params.filename:
            raise ClientError("The filename parameter must be set", "missingparam", {"param": "filename"})

        if self.chunk is not None:
            if params.filesize is None:
                raise ClientError("The filesize parameter must be set", "missingparam", {"param": "filesize"})
            if params.filekey:
                if params.offset == 0:
                    raise ClientError("Cannot supply a filekey when offset is 0", "badparams")
                if params.offset is None:
                    raise ClientError("The offset parameter must be set", "missingparam", {"param": "offset"})
                if not stash.is_valid_key(params.filekey):
                    raise ClientError("Not a valid file key", "invalid-file-key")
            elif params.offset not in (None, 0):
                raise ClientError("Must supply a filekey when offset is non-zero", "badparams")
            return await ChunkUploadSource.from_upload(params.filename, self.chunk)

        if params.filekey:
            if not stash.is_valid_key(params.filekey):
                raise ClientError("Not a valid file key", "invalid-file-key")
            source = StashUploadSource(params.filename, params.filekey)
            await source.load(self.db, self.user)
            return source

        if self.file is not None:
            return await FileUploadSource.from_upload(params.filename, self.file)

        if not UrlUploadSource.is_enabled():
            raise ClientError("Uploads by URL are not enabled", "copyuploaddisabled")
        if not UrlUploadSource.is_allowed_host(params.url):
            raise ClientError("Uploads by URL are not allowed from this domain", "copyuploadbaddomain")
        if not UrlUploadSource.is_allowed_url(params.url):
            raise ClientError("Uploads by URL are not allowed from this URL", "copyuploadbadurl")
        return UrlUploadSource(params.filename, params.url)

    def _check_permissions(self) -> None:
        user = self.user
        if user is None:
            raise UploadPermissionError(
                "You must be logged in to upload files", "mustbeloggedin", status_code=status.HTTP_401_UNAUTHORIZED
            )
        if not user.can_upload or not user.is_active:
            raise UploadPermissionError("You don't have permission to upload files", "permissiondenied")
        if user.is_blocked:
            raise UploadPermissionError(
                "You have been blocked from uploading files",
                "blocked",
                {"blockinfo": {"blockreason": user.block_reason or ""}},
            )

    async def _verify(self) -> None:
        params = self.params
        if self.chunk is not None:
            if params.filesize > settings.max_upload_size:
                raise FatalContentError(
                    "The file you submitted was too large",
                    "file-too-large",
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                )
            title = check_filename(params.filename)
            if not title.ok:
                raise ApiError(
                    "Invalid file title supplied",
                    "internal-error",
                    {"details": [verification_error(title).code]},
                )
        elif params.async_ and params.filekey:
            logger.debug("Deferring verification of %s to the publish job", params.filekey)
        else:
            result = await verify_upload(await self.source.candidate(), self.policy_checks)
            if not result.ok:
                await self._check_verification(result)

    async def _check_verification(self, result: VerificationResult) -> None:
        error = verification_error(result)
        if is_recoverable(error):
            await self._die_recoverable(error, "filename")
        raise error

    async def _verify_title_permissions(self) -> None:
        existing = await publish.get_published(self.db, self.params.filename)
        error = publish.check_title_permissions(self.user, existing)
        if error is not None:
            await self._die_recoverable(error, "filename")

    async def _die_recoverable(self, error: ApiError, parameter: str | None) -> None:
        data: dict[str, Any] = {}
        await self._perform_stash(StashFailureMode.OPTIONAL, data)
        if parameter is not None:
            data["invalidparameter"] = parameter
        data.update(error.data)
        raise RecoverableContentError(error.info, error.code, data, status_code=error.status_code)

    async def _perform_stash(self, mode: StashFailureMode, data: dict[str, Any]) -> str | None:
        try:
            if self.chunk is not None:
                filekey = await self._stash_chunk()
            else:
                filekey = (await self.source.try_stash(self.db, self.user, is_partial=False)).filekey
        except Exception as exc:  # noqa: BLE001 - every stash failure is reported, never raised raw
            await self.db.rollback()
            info, code = translate_stash_exception(exc)
            logger.debug("Stashing temporary file failed: %s", info)
            if mode == StashFailureMode.CRITICAL:
                if isinstance(exc, ApiError):
                    raise
                raise ApiError(info, code, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR) from exc
            data["stashfailed"] = info
            return None

        data["filekey"] = filekey
        data["sessionkey"] = filekey
        return filekey

    async def _stash_chunk(self) -> str:
        """Keep a rejected chunk under a key the client can continue from."""
        params = self.params
        if params.filekey:
            # A later chunk: its session is untouched and stays continuable.
            return params.filekey
        outcome = await ChunkAssembler(self.db, self.user, policy_checks=self.policy_checks).add_chunk(
            self.source.local_path,
            filename=params.filename,
            file_size=params.filesize,
            offset=0,
        )
        if not outcome.complete:
            return outcome.filekey
        # The whole file fit in one chunk: stash it as a complete file instead.
        await stash.remove_file(self.db, outcome.filekey)
        return (await self.source.try_stash(self.db, self.user, is_partial=False)).filekey

    async def _context_result(self) -> dict[str, Any]:
        params = self.params
        warnings: dict[str, Any] = {}
        if self.chunk is None:
            warnings = await check_warnings(
                self.db,
                filename=params.filename,
                size=self.source.size,
                sha1=await self.source.content_sha1(),
            )

        if warnings and not params.ignorewarnings:
            return await self._warnings_result(warnings)
        if self.chunk is not None:
            return await self._chunk_result(warnings)
        if params.stash:
            return await self._stash_result(warnings)

        if await publish.is_throttled(self.db, self.user):
            raise ApiError(
                "You've exceeded your rate limit. Please wait some time and try again.",
                "actionthrottledtext",
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            )
        return await self._perform_upload(warnings)

    async def _warnings_result(self, warnings: dict[str, Any]) -> dict[str, Any]:
        result: dict[str, Any] = {"result": UploadResult.WARNING.value, "warnings": warnings}
        await self._perform_stash(StashFailureMode.OPTIONAL, result)
        return result

    async def _stash_result(self, warnings: dict[str, Any]) -> dict[str, Any]:
        result: dict[str, Any] = {"result": UploadResult.SUCCESS.value}
        if warnings:
            result["warnings"] = warnings
        await self._perform_stash(StashFailureMode.CRITICAL, result)
        return result

    async def _chunk_result(self, warnings: dict[str, Any]) -> dict[str, Any]:
        params = self.params
        result: dict[str, Any] = {}
        if warnings:
            result["warnings"] = warnings

        assembler = ChunkAssembler(self.db, self.user, policy_checks=self.policy_checks)
        outcome = await assembler.add_chunk(
            self.source.local_path,
            filename=params.filename,
            file_size=params.filesize,
            offset=params.offset or 0,
            filekey=params.filekey,
        )
        filekey = outcome.filekey

        if not outcome.complete:
            result["result"] = UploadResult.CONTINUE.value
            result["offset"] = outcome.offset
        elif params.async_:
            await assembler.queue(filekey, filename=params.filename, file_size=params.filesize)
            assemble_upload_chunks_task.delay(str(self.user.id), params.filename, filekey)
            result["result"] = UploadResult.POLL.value
            result["stage"] = UploadStage.QUEUED.value
        else:
            assembled = await assembler.assemble(filekey, filename=params.filename)
            # Duplicate and exists warnings need the complete file.
            warnings = await check_warnings(
                self.db, filename=params.filename, size=assembled.size, sha1=assembled.sha1
            )
            if warnings:
                result["warnings"] = warnings
            # The assembled file has a new key; the chunked one is gone.
            await stash.set_session_status(self.db, self.user, filekey, None)
            await stash.remove_file(self.db, filekey)
            filekey = assembled.filekey
            result["result"] = UploadResult.SUCCESS.value

        result["filekey"] = filekey
        result["sessionkey"] = filekey
        return result

    async def _perform_upload(self, warnings: dict[str, Any]) -> dict[str, Any]:
        params = self.params
        text = params.text if params.text is not None else params.comment
        if params.tags:
            publish.check_tags(params.tags)
        watch = await publish.resolve_watch(
            self.db, self.user, params.filename, watchlist=params.watchlist, watch=params.watch
        )

        result: dict[str, Any] = {}
        if params.async_:
            if isinstance(self.source, StashUploadSource):
                filekey = self.source.filekey
            else:
                filekey = await self._perform_stash(StashFailureMode.CRITICAL, result)
            await self._queue_publish(filekey, text=text, watch=watch)
            result["filekey"] = filekey
            result["sessionkey"] = filekey
            result["result"] = UploadResult.POLL.value
            result["stage"] = UploadStage.QUEUED.value
        else:
            try:
                published = await publish.publish_file(
                    self.db,
                    self.user,
                    self.source.local_path,
                    filename=params.filename,
                    sha1=await self.source.content_sha1(),
                    mime_type=self.source.mime_type,
                    comment=params.comment,
                    text=text,
                    tags=params.tags,
                    watch=watch,
                )
            except OSError as exc:
                await self.db.rollback()
                logger.error("Publishing %s failed: %s", params.filename, exc)
                await self._die_recoverable(
                    ApiError(str(exc), "internal-error", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR), None
                )
            if isinstance(self.source, StashUploadSource):
                await stash.remove_file(self.db, self.source.filekey)
            result["result"] = UploadResult.SUCCESS.value
            result["fileinfo"] = publish.file_info(published)

        result["filename"] = normalize_filename(params.filename)
        if warnings:
            result["warnings"] = warnings
        return result

    async def _queue_publish(self, filekey: str, *, text: str, watch: bool) -> None:
        params = self.params
        session = await stash.get_session_status(self.db, self.user, filekey)
        if session is not None and session.result == UploadResult.POLL:
            raise ApiError(
                "Upload from stash already in progress.", "publishfailed", status_code=status.HTTP_409_CONFLICT
            )
        if session is not None and session.result.is_terminal:
            # A finished attempt (e.g. a failed earlier publish) does not block a new one.
            await stash.set_session_status(self.db, self.user, filekey, None)
        await stash.set_session_status(
            self.db,
            self.user,
            filekey,
            stash.UploadProgress(result=UploadResult.POLL, stage=UploadStage.QUEUED, filename=params.filename),
        )
        publish_stashed_file_task.delay(
            str(self.user.id),
            params.filename,
            filekey,
            params.comment,
            list(params.tags),
            text,
            watch,
        )
