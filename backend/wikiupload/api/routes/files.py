from __future__ import annotations

import uuid
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from wikiupload.api import deps
from wikiupload.core.config import settings
from wikiupload.db.session import get_db_session
from wikiupload.models.file import PublishedFile
from wikiupload.models.user import User
from wikiupload.schemas.file import FileListResponse, FileResponse as FileSchema
from wikiupload.services import publish as publish_service
from wikiupload.services import users as user_service

router = APIRouter(prefix="/files", tags=["files"])
public_router = APIRouter(tags=["download"])


async def _get_file_or_404(db: AsyncSession, name: str) -> PublishedFile:
    file = await publish_service.get_published(db, name)
    if not file:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    return file


@router.get("/", response_model=FileListResponse)
async def list_files(
    owner_id: uuid.UUID | None = Query(default=None),
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(deps.get_current_user),
) -> FileListResponse:
    owner: User | None = None
    if owner_id is not None:
        owner = await user_service.get_user_by_id(db, owner_id)
        if owner is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    files = await publish_service.list_published(db, owner=owner)
    return FileListResponse(files=[FileSchema.model_validate(file) for file in files])


@router.get("/{name}", response_model=FileSchema)
async def get_file_metadata(
    name: str,
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(deps.get_current_user),
) -> FileSchema:
    return FileSchema.model_validate(await _get_file_or_404(db, name))


@public_router.get(settings.public_files_url.rstrip("/") + "/{name}")
async def download_file(name: str, db: AsyncSession = Depends(get_db_session)) -> FileResponse:
    published = await _get_file_or_404(db, name)
    file_path = Path(published.storage_path)
    if not file_path.exists():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File missing")
    return FileResponse(
        path=file_path,
        media_type=published.mime_type or "application/octet-stream",
        filename=published.name,
    )
