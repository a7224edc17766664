from __future__ import annotations

import enum
from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse


class ApiError(Exception):
    """An error reported to the client as ``{"error": {"code", "info", ...data}}``."""

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(
        self,
        info: str,
        code: str,
        data: dict[str, Any] | None = None,
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(info)
        self.info = info
        self.code = code
        self.data: dict[str, Any] = dict(data or {})
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        # Extra data sits at the root of the error object, next to code and info.
        body: dict[str, Any] = {"code": self.code, "info": self.info}
        for key, value in self.data.items():
            body.setdefault(key, value)
        return body


class ClientError(ApiError):
    """Bad, missing or mutually exclusive request parameters."""


class RecoverableContentError(ApiError):
    """The client can retry with a different value for ``invalidparameter``."""


class FatalContentError(ApiError):
    """Empty, oversized or banned content; there is no retry path."""


class UploadPermissionError(ApiError):
    status_code = status.HTTP_403_FORBIDDEN


class ConsistencyError(ApiError):
    """Offset mismatch, stale resubmission or an illegal session transition."""

    status_code = status.HTTP_409_CONFLICT


class StashErrorKind(str, enum.Enum):
    NOT_FOUND = "not-found"
    BAD_KEY = "bad-key"
    STORAGE_FAILURE = "storage-failure"
    ZERO_LENGTH = "zero-length"
    NOT_LOGGED_IN = "not-logged-in"
    WRONG_OWNER = "wrong-owner"
    NO_SUCH_KEY = "no-such-key"


_STASH_ERROR_CODES: dict[StashErrorKind, tuple[str, str, int]] = {
    StashErrorKind.NOT_FOUND: (
        "Could not find the file in the stash: ",
        "stashedfilenotfound",
        status.HTTP_404_NOT_FOUND,
    ),
    StashErrorKind.BAD_KEY: (
        "File key of improper format or otherwise invalid: ",
        "stashpathinvalid",
        status.HTTP_400_BAD_REQUEST,
    ),
    StashErrorKind.STORAGE_FAILURE: (
        "Could not store upload in the stash: ",
        "stashfilestorage",
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    ),
    StashErrorKind.ZERO_LENGTH: (
        "File is of zero length, and could not be stored in the stash: ",
        "stashzerolength",
        status.HTTP_400_BAD_REQUEST,
    ),
    StashErrorKind.NOT_LOGGED_IN: ("Not logged in: ", "stashnotloggedin", status.HTTP_401_UNAUTHORIZED),
    StashErrorKind.WRONG_OWNER: ("Wrong owner: ", "stashwrongowner", status.HTTP_403_FORBIDDEN),
    StashErrorKind.NO_SUCH_KEY: ("No such filekey: ", "stashnosuchfilekey", status.HTTP_404_NOT_FOUND),
}


class StashError(ApiError):
    def __init__(self, kind: StashErrorKind, message: str) -> None:
        prefix, code, status_code = _STASH_ERROR_CODES[kind]
        super().__init__(prefix + message, code, status_code=status_code)
        self.kind = kind
        self.message = message


def translate_stash_exception(exc: Exception) -> tuple[str, str]:
    """Map any exception raised while stashing to a stable ``(info, code)`` pair."""
    if isinstance(exc, StashError):
        return exc.info, exc.code
    return f"{type(exc).__name__}: {exc}", "stasherror"


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})
