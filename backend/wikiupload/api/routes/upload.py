from __future__ import annotations

from typing import Any, List

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import ValidationError

from wikiupload.api import deps
from wikiupload.core.errors import ClientError
from wikiupload.models.user import User
from wikiupload.schemas.upload import UploadParams, UploadResponse
from wikiupload.services.orchestrator import UploadOrchestrator

router = APIRouter(tags=["upload"])


@router.post("/upload", response_model=UploadResponse, response_model_exclude_none=True)
async def upload(
    db: deps.DatabaseSessionDep,
    current_user: User | None = Depends(deps.get_optional_user),
    filename: str | None = Form(default=None),
    comment: str = Form(default=""),
    text: str | None = Form(default=None),
    tags: List[str] = Form(default=[]),
    watch: bool = Form(default=False),
    watchlist: str = Form(default="preferences"),
    ignorewarnings: bool = Form(default=False),
    url: str | None = Form(default=None),
    filekey: str | None = Form(default=None),
    sessionkey: str | None = Form(default=None),
    stash: bool = Form(default=False),
    filesize: int | None = Form(default=None),
    offset: int | None = Form(default=None),
    async_: bool = Form(default=False, alias="async"),
    checkstatus: bool = Form(default=False),
    file: UploadFile | None = File(default=None),
    chunk: UploadFile | None = File(default=None),
) -> dict[str, Any]:
    try:
        params = UploadParams(
            filename=filename,
            comment=comment,
            text=text,
            tags=tags,
            watch=watch,
            watchlist=watchlist,
            ignorewarnings=ignorewarnings,
            url=url,
            filekey=filekey,
            sessionkey=sessionkey,
            stash=stash,
            filesize=filesize,
            offset=offset,
            async_=async_,
            checkstatus=checkstatus,
        )
    except ValidationError as exc:
        problem = exc.errors()[0]
        param = ".".join(str(part) for part in problem["loc"])
        raise ClientError(f"Invalid value for parameter {param}: {problem['msg']}", "badvalue", {"param": param}) from exc

    orchestrator = UploadOrchestrator(db, current_user, params, file=file, chunk=chunk)
    return await orchestrator.execute()
