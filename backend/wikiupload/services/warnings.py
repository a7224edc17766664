from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from wikiupload.core.config import settings
from wikiupload.models.file import PublishedFile
from wikiupload.services.verification import normalize_filename


async def check_warnings(
    db: AsyncSession,
    *,
    filename: str,
    size: int,
    sha1: str | None,
) -> dict[str, Any]:
    """Advisory checks that need real content; an empty dict means none apply."""
    warnings: dict[str, Any] = {}
    name = normalize_filename(filename)

    # Capitalization and underscores are presentation only.
    comparable = filename.replace("_", " ")
    comparable = comparable[:1].upper() + comparable[1:]
    if name != comparable:
        warnings["badfilename"] = name
    if settings.upload_size_warning and size > settings.upload_size_warning:
        warnings["large-file"] = [settings.upload_size_warning, size]
    if size == 0:
        warnings["emptyfile"] = True

    existing = await db.scalar(select(PublishedFile.name).where(PublishedFile.name == name))
    if existing is not None:
        warnings["exists"] = existing
    else:
        other_case = await db.scalar(
            select(PublishedFile.name).where(func.lower(PublishedFile.name) == name.lower()).limit(1)
        )
        if other_case is not None:
            warnings["exists-normalized"] = other_case

    if sha1:
        result = await db.execute(
            select(PublishedFile.name)
            .where(PublishedFile.sha1 == sha1, PublishedFile.name != name)
            .order_by(PublishedFile.name)
        )
        duplicates = [dupe for (dupe,) in result]
        if duplicates:
            warnings["duplicate"] = duplicates
    return warnings
