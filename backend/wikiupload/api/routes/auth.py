from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, status

from wikiupload.api import deps
from wikiupload.core.config import settings
from wikiupload.models.user import User
from wikiupload.schemas.auth import TokenRequest, TokenResponse
from wikiupload.schemas.user import UserResponse
from wikiupload.services import users as user_service
from wikiupload.utils.security import create_access_token, verify_password

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/token", response_model=TokenResponse)
async def login_for_access_token(payload: TokenRequest, db: deps.DatabaseSessionDep) -> TokenResponse:
    user = await user_service.get_user_by_email(db, payload.username)
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account pending activation")

    expires_minutes = settings.access_token_expire_minutes
    if payload.remember_me:
        expires_minutes = max(expires_minutes, 60 * 24 * 30)
    token, expires_at = create_access_token(
        subject=str(user.id),
        expires_delta=timedelta(minutes=expires_minutes),
    )
    return TokenResponse(access_token=token, expires_at=expires_at, user=UserResponse.model_validate(user))


@router.get("/me", response_model=UserResponse)
async def read_current_user(current_user: User = Depends(deps.get_current_user)) -> UserResponse:
    return UserResponse.model_validate(current_user)
