"""Pre-acceptance checks run against an upload candidate.

``verify_upload`` never raises for a bad file; it returns a
``VerificationResult`` and ``verification_error`` turns a failed result into
the matching ``ApiError``. Recoverable kinds map to
``RecoverableContentError`` so the caller can stash the bytes before
reporting.
"""
from __future__ import annotations

import enum
import logging
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Sequence

from fastapi import status

from wikiupload.core.config import settings
from wikiupload.core.errors import ApiError, FatalContentError, RecoverableContentError
from wikiupload.services.storage import storage_service

logger = logging.getLogger(__name__)

STRIPPED_FILENAME_CHARS = re.compile(r"[:/\\]")
ILLEGAL_TITLE_CHARS = re.compile(r"[#<>\[\]|{}\x00-\x1f\x7f]")

# Leading bytes expected for extensions whose format has a fixed signature.
FILE_SIGNATURES: dict[str, tuple[bytes, ...]] = {
    "png": (b"\x89PNG\r\n\x1a\n",),
    "gif": (b"GIF87a", b"GIF89a"),
    "jpg": (b"\xff\xd8\xff",),
    "jpeg": (b"\xff\xd8\xff",),
    "pdf": (b"%PDF-",),
    "ogg": (b"OggS",),
    "webm": (b"\x1a\x45\xdf\xa3",),
}
SCRIPT_MARKERS = (b"<script", b"<html", b"<head", b"<body", b"<iframe", b"javascript:")


class VerificationStatus(str, enum.Enum):
    OK = "ok"
    EMPTY_FILE = "empty-file"
    FILE_TOO_LARGE = "file-too-large"
    MIN_LENGTH_PARTNAME = "min-length-partname"
    ILLEGAL_FILENAME = "illegal-filename"
    FILENAME_TOO_LONG = "filename-too-long"
    FILETYPE_MISSING = "filetype-missing"
    FILETYPE_BADTYPE = "filetype-badtype"
    WINDOWS_NONASCII_FILENAME = "windows-nonascii-filename"
    VERIFICATION_ERROR = "verification-error"
    HOOK_ABORTED = "hook-aborted"


@dataclass(frozen=True)
class VerificationResult:
    status: VerificationStatus = VerificationStatus.OK
    filtered: str | None = None
    final_ext: str | None = None
    blacklisted_ext: tuple[str, ...] = ()
    details: tuple[Any, ...] = ()
    error: Any = None

    @property
    def ok(self) -> bool:
        return self.status == VerificationStatus.OK

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["blacklisted_ext"] = list(self.blacklisted_ext)
        data["details"] = list(self.details)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VerificationResult":
        return cls(
            status=VerificationStatus(data["status"]),
            filtered=data.get("filtered"),
            final_ext=data.get("final_ext"),
            blacklisted_ext=tuple(data.get("blacklisted_ext") or ()),
            details=tuple(data.get("details") or ()),
            error=data.get("error"),
        )


OK_RESULT = VerificationResult()


@dataclass
class UploadCandidate:
    filename: str
    size: int
    path: Path | None = None
    mime_type: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


PolicyCheck = Callable[[UploadCandidate], VerificationResult]

_registered_policy_checks: list[PolicyCheck] = []


def register_policy_check(check: PolicyCheck) -> PolicyCheck:
    """Add a custom check run after the built-in ones. Usable as a decorator."""
    _registered_policy_checks.append(check)
    return check


def registered_policy_checks() -> list[PolicyCheck]:
    return list(_registered_policy_checks)


def normalize_filename(name: str) -> str:
    """Canonical form of a target name: ``_`` as space, single spaces, first letter upper-cased."""
    name = STRIPPED_FILENAME_CHARS.sub("-", name)
    name = re.sub(r"[\s_]+", " ", name).strip()
    return name[:1].upper() + name[1:]


def split_extension(name: str) -> tuple[str, str]:
    if "." not in name:
        return name, ""
    partname, ext = name.rsplit(".", 1)
    return partname, ext.strip().lower()


def check_filename(filename: str) -> VerificationResult:
    """Validate the target name alone, without looking at any content."""
    normalized = normalize_filename(filename)
    partname, ext = split_extension(normalized)

    if len(partname.strip()) < 1:
        return VerificationResult(VerificationStatus.MIN_LENGTH_PARTNAME)
    if ILLEGAL_TITLE_CHARS.search(normalized):
        return VerificationResult(
            VerificationStatus.ILLEGAL_FILENAME,
            filtered=ILLEGAL_TITLE_CHARS.sub("-", normalized),
        )
    if len(normalized.encode("utf-8")) > settings.max_filename_bytes:
        return VerificationResult(VerificationStatus.FILENAME_TOO_LONG)
    if not ext:
        return VerificationResult(VerificationStatus.FILETYPE_MISSING)

    if settings.check_file_extensions:
        # A blacklisted extension anywhere in the name counts, e.g. "x.php.png".
        extensions = [part.lower() for part in normalized.split(".")[1:]]
        blacklisted = tuple(dict.fromkeys(e for e in extensions if e in settings.file_blacklist))
        if blacklisted or (settings.strict_file_extensions and ext not in settings.file_extensions):
            return VerificationResult(
                VerificationStatus.FILETYPE_BADTYPE, final_ext=ext, blacklisted_ext=blacklisted
            )

    if settings.windows_nonascii_restricted and not normalized.isascii():
        return VerificationResult(VerificationStatus.WINDOWS_NONASCII_FILENAME)
    return VerificationResult(VerificationStatus.OK, final_ext=ext)


async def check_content(candidate: UploadCandidate, final_ext: str) -> VerificationResult:
    if not settings.verify_mime_type or candidate.path is None:
        return OK_RESULT
    head = await storage_service.read_head(candidate.path, 1024)

    signatures = FILE_SIGNATURES.get(final_ext)
    if signatures and not head.startswith(signatures):
        return VerificationResult(
            VerificationStatus.VERIFICATION_ERROR,
            final_ext=final_ext,
            details=("filetype-mime-mismatch", final_ext),
        )
    if final_ext == "webp" and not (head.startswith(b"RIFF") and head[8:12] == b"WEBP"):
        return VerificationResult(
            VerificationStatus.VERIFICATION_ERROR,
            final_ext=final_ext,
            details=("filetype-mime-mismatch", final_ext),
        )
    if final_ext != "txt":
        lowered = head.lower()
        if any(marker in lowered for marker in SCRIPT_MARKERS):
            return VerificationResult(VerificationStatus.VERIFICATION_ERROR, details=("uploadscripted",))
    return OK_RESULT


async def verify_upload(
    candidate: UploadCandidate,
    policy_checks: Sequence[PolicyCheck] | None = None,
) -> VerificationResult:
    if candidate.size == 0:
        return VerificationResult(VerificationStatus.EMPTY_FILE)
    if candidate.size > settings.max_upload_size:
        return VerificationResult(VerificationStatus.FILE_TOO_LARGE)

    result = check_filename(candidate.filename)
    if not result.ok:
        return result

    content_result = await check_content(candidate, result.final_ext or "")
    if not content_result.ok:
        return content_result

    checks = registered_policy_checks() if policy_checks is None else policy_checks
    for check in checks:
        hook_result = check(candidate)
        if hook_result is not None and not hook_result.ok:
            logger.info("Policy check %s rejected %s", getattr(check, "__name__", check), candidate.filename)
            return VerificationResult(
                VerificationStatus.HOOK_ABORTED,
                final_ext=result.final_ext,
                error=hook_result.error if hook_result.error is not None else "",
            )
    return result


def verification_error(result: VerificationResult) -> ApiError:
    """Build the client-facing error for a failed verification."""
    kind = result.status
    if kind == VerificationStatus.MIN_LENGTH_PARTNAME:
        return RecoverableContentError("The filename is too short", "filename-tooshort")
    if kind == VerificationStatus.ILLEGAL_FILENAME:
        return RecoverableContentError(
            "The filename is not allowed", "illegal-filename", {"filename": result.filtered}
        )
    if kind == VerificationStatus.FILENAME_TOO_LONG:
        return RecoverableContentError("The filename is too long", "filename-toolong")
    if kind == VerificationStatus.FILETYPE_MISSING:
        return RecoverableContentError("The file is missing an extension", "filetype-missing")
    if kind == VerificationStatus.WINDOWS_NONASCII_FILENAME:
        return RecoverableContentError(
            "The filename may not contain special characters", "windows-nonascii-filename"
        )

    if kind == VerificationStatus.EMPTY_FILE:
        return FatalContentError("The file you submitted was empty", "empty-file")
    if kind == VerificationStatus.FILE_TOO_LARGE:
        return FatalContentError(
            "The file you submitted was too large",
            "file-too-large",
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
        )
    if kind == VerificationStatus.FILETYPE_BADTYPE:
        data: dict[str, Any] = {
            "filetype": result.final_ext,
            "allowed": list(dict.fromkeys(settings.file_extensions)),
        }
        if result.blacklisted_ext:
            info = "Filetype not permitted: " + ", ".join(result.blacklisted_ext)
            data["blacklisted"] = list(result.blacklisted_ext)
        else:
            info = f"Filetype not permitted: {result.final_ext}"
        return FatalContentError(info, "filetype-banned", data)
    if kind == VerificationStatus.VERIFICATION_ERROR:
        details = list(result.details)
        summary = " ".join(str(detail) for detail in details)
        return FatalContentError(
            f"This file did not pass file verification: {summary}",
            "verification-error",
            {"details": details},
        )
    if kind == VerificationStatus.HOOK_ABORTED:
        if isinstance(result.error, (list, tuple)) and result.error:
            params = [str(item) for item in result.error]
        elif result.error:
            params = [str(result.error)]
        else:
            params = ["hookaborted"]
        return FatalContentError(" ".join(params), "hookaborted", {"details": result.error})
    return FatalContentError(
        "An unknown error occurred", "unknown-error", {"details": {"code": kind.value}}
    )


def is_recoverable(error: ApiError) -> bool:
    return isinstance(error, RecoverableContentError)
