from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from wikiupload.models.user import User


async def ensure_admin_user(
    db: AsyncSession,
    *,
    email: str,
    password_hash: str,
) -> None:
    stmt = select(User).where(User.email == email.lower())
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()
    if user is None:
        db.add(
            User(
                email=email.lower(),
                password_hash=password_hash,
                is_admin=True,
                is_active=True,
            )
        )
        await db.commit()
    elif not user.is_admin:
        user.is_admin = True
        user.is_active = True
        if password_hash:
            user.password_hash = password_hash
        await db.commit()


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(User.email == email.lower()))
    return result.scalar_one_or_none()


async def get_user_by_id(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    return await db.get(User, user_id)
