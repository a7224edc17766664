"""Where the bytes of an upload come from.

Exactly one ``UploadSource`` is selected per request and handed to the
orchestrator. Each source knows how to obtain a local copy of its bytes,
describe itself as an ``UploadCandidate``, stash itself and clean up.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import IO
from urllib.parse import urlparse

import httpx
from fastapi import UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from wikiupload.core.config import settings
from wikiupload.core.errors import ApiError, FatalContentError, StashError, StashErrorKind
from wikiupload.models.upload import StashedFile
from wikiupload.models.user import User
from wikiupload.services import stash
from wikiupload.services.storage import storage_service
from wikiupload.services.verification import UploadCandidate

logger = logging.getLogger(__name__)


async def _spool_to_temp(handle: IO[bytes]) -> Path:
    path = storage_service.new_temp_path()

    def _write() -> None:
        handle.seek(0)
        with open(path, "wb") as out_handle:
            shutil.copyfileobj(handle, out_handle, 1024 * 1024)

    await asyncio.to_thread(_write)
    return path


class UploadSource:
    kind = "base"

    def __init__(self, filename: str | None) -> None:
        self.filename = filename
        self.temp_path: Path | None = None
        self.mime_type: str | None = None

    @property
    def local_path(self) -> Path | None:
        return self.temp_path

    @property
    def size(self) -> int:
        path = self.local_path
        return path.stat().st_size if path is not None and path.exists() else 0

    async def fetch(self) -> None:
        """Make the bytes available locally; a no-op unless they live elsewhere."""

    async def candidate(self) -> UploadCandidate:
        return UploadCandidate(
            filename=self.filename or "",
            size=self.size,
            path=self.local_path,
            mime_type=self.mime_type,
        )

    async def content_sha1(self) -> str | None:
        path = self.local_path
        if path is None or not path.exists():
            return None
        return await storage_service.compute_sha1(path)

    async def try_stash(self, db: AsyncSession, user: User | None, *, is_partial: bool) -> StashedFile:
        if self.local_path is None:
            raise ApiError("Invalid stashed file", "stashfailed")
        return await stash.stash_file(
            db,
            user,
            self.local_path,
            is_partial=is_partial,
            filename=self.filename,
            mime_type=self.mime_type,
        )

    async def cleanup(self) -> None:
        if self.temp_path is not None:
            await storage_service.remove_path(self.temp_path)
            self.temp_path = None


class FileUploadSource(UploadSource):
    """A whole file posted in the request body."""

    kind = "file"

    @classmethod
    async def from_upload(cls, filename: str | None, upload: UploadFile) -> "FileUploadSource":
        source = cls(filename)
        source.mime_type = upload.content_type
        source.temp_path = await _spool_to_temp(upload.file)
        return source


class ChunkUploadSource(FileUploadSource):
    """One byte range of a larger file."""

    kind = "chunk"


class UrlUploadSource(UploadSource):
    """A file copied from a remote URL on ``fetch``."""

    kind = "url"
    transport: httpx.AsyncBaseTransport | None = None

    def __init__(self, filename: str | None, url: str) -> None:
        super().__init__(filename)
        self.url = url

    @staticmethod
    def is_enabled() -> bool:
        return settings.allow_copy_uploads

    @staticmethod
    def is_allowed_host(url: str) -> bool:
        if not settings.copy_upload_domains:
            return True
        host = (urlparse(url).hostname or "").lower()
        for domain in settings.copy_upload_domains:
            domain = domain.lower()
            if domain.startswith("*."):
                if host.endswith(domain[1:]):
                    return True
            elif host == domain:
                return True
        return False

    @staticmethod
    def is_allowed_url(url: str) -> bool:
        parsed = urlparse(url)
        return parsed.scheme in ("http", "https") and bool(parsed.hostname)

    async def fetch(self) -> None:
        path = storage_service.new_temp_path()
        self.temp_path = path
        received = 0
        try:
            async with httpx.AsyncClient(
                timeout=settings.copy_upload_timeout, follow_redirects=True, transport=self.transport
            ) as client:
                async with client.stream("GET", self.url) as response:
                    response.raise_for_status()
                    self.mime_type = response.headers.get("content-type", "").split(";")[0] or None
                    handle = await asyncio.to_thread(open, path, "wb")
                    try:
                        async for data in response.aiter_bytes():
                            received += len(data)
                            if received > settings.max_upload_size:
                                raise FatalContentError(
                                    "The file you submitted was too large",
                                    "file-too-large",
                                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                                )
                            await asyncio.to_thread(handle.write, data)
                    finally:
                        await asyncio.to_thread(handle.close)
        except httpx.TimeoutException as exc:
            raise ApiError(
                "Error fetching file from remote source",
                "http-timed-out",
                {"url": self.url},
                status_code=status.HTTP_502_BAD_GATEWAY,
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise ApiError(
                "Error fetching file from remote source",
                "http-bad-status",
                {"url": self.url, "status": exc.response.status_code},
                status_code=status.HTTP_502_BAD_GATEWAY,
            ) from exc
        except httpx.HTTPError as exc:
            raise ApiError(
                "Error fetching file from remote source",
                "http-request-error",
                {"url": self.url},
                status_code=status.HTTP_502_BAD_GATEWAY,
            ) from exc
        logger.info("Fetched %d bytes from %s", received, self.url)


class StashUploadSource(UploadSource):
    """A file stashed by an earlier request, addressed by its filekey."""

    kind = "stash"

    def __init__(self, filename: str | None, filekey: str) -> None:
        super().__init__(filename)
        self.filekey = filekey
        self.record: StashedFile | None = None

    async def load(self, db: AsyncSession, user: User | None) -> None:
        self.record = await stash.get_file(db, user, self.filekey)
        if self.record.is_partial:
            raise StashError(StashErrorKind.BAD_KEY, f"{self.filekey} is an unfinished chunked upload")
        self.mime_type = self.record.mime_type

    @property
    def local_path(self) -> Path | None:
        if self.record is None:
            return None
        return Path(self.record.storage_path)

    @property
    def size(self) -> int:
        return self.record.size if self.record is not None else 0

    async def content_sha1(self) -> str | None:
        if self.record is not None and self.record.sha1:
            return self.record.sha1
        return await super().content_sha1()

    async def try_stash(self, db: AsyncSession, user: User | None, *, is_partial: bool) -> StashedFile:
        if self.record is None:
            await self.load(db, user)
        return self.record

    async def cleanup(self) -> None:
        # The stash entry outlives the request; only publishing removes it.
        return None
