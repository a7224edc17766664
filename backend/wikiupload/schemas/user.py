from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, EmailStr


class UserResponse(BaseModel):
    id: uuid.UUID
    email: EmailStr
    is_admin: bool
    is_active: bool
    can_upload: bool
    can_reupload: bool
    is_blocked: bool
    watch_default: bool
    watch_uploads: bool
    watch_creations: bool
    created_at: datetime

    class Config:
        from_attributes = True
