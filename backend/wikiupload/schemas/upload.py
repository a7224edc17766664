from __future__ import annotations

from typing import Any, List, Literal

from pydantic import BaseModel, ConfigDict, Field


class UploadParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: str | None = None
    comment: str = ""
    text: str | None = None
    tags: List[str] = Field(default_factory=list)
    watch: bool = False
    watchlist: Literal["watch", "preferences", "nochange"] = "preferences"
    ignorewarnings: bool = False
    url: str | None = None
    filekey: str | None = None
    sessionkey: str | None = None
    stash: bool = False
    filesize: int | None = Field(default=None, ge=0)
    offset: int | None = Field(default=None, ge=0)
    async_: bool = Field(default=False, alias="async")
    checkstatus: bool = False


class UploadResponse(BaseModel):
    result: str
    filekey: str | None = None
    sessionkey: str | None = None
    offset: int | None = None
    stage: str | None = None
    filename: str | None = None
    warnings: dict[str, Any] | None = None
    fileinfo: dict[str, Any] | None = None
    stashfailed: str | None = None
