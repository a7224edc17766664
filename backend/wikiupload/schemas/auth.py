from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from wikiupload.schemas.user import UserResponse


class TokenRequest(BaseModel):
    username: str
    password: str
    remember_me: bool = False


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserResponse
