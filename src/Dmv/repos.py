# repos.py

from __future__ import annotations

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from Dmv import models


async def get_user_timezone(s: AsyncSession, user_id: str) -> str | None:
    q = await s.execute(select(models.UserConfigRow.timezone).where(models.UserConfigRow.id == user_id))
    return q.scalar_one_or_none()


async def upsert_user_timezone(s: AsyncSession, user_id: str, timezone: str) -> models.UserConfigRow:
    # Portable across sqlite/postgres: merge by primary key
    obj = await s.get(models.UserConfigRow, user_id)
    if obj is None:
        obj = models.UserConfigRow(id=user_id, timezone=timezone)
        s.add(obj)
    else:
        obj.timezone = timezone
    await s.flush()
    return obj


async def healthcheck(s: AsyncSession) -> None:
    await s.execute(text("SELECT 1"))
