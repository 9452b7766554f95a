import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from examdesk.core.errors import NotFoundError
from examdesk.models.orm import User, UserRole


async def get_profile(db: AsyncSession, user_id: uuid.UUID) -> dict:
    user = await db.get(User, user_id)
    if not user:
        raise NotFoundError("User")
    return user.to_dict()


async def update_profile(db: AsyncSession, user_id: uuid.UUID, name: str | None = None) -> dict:
    user = await db.get(User, user_id)
    if not user:
        raise NotFoundError("User")
    if name is not None:
        user.name = name
    await db.flush()
    return user.to_dict()


async def user_stats(db: AsyncSession) -> dict:
    rows = (await db.execute(select(User.role, func.count()).group_by(User.role))).all()
    counts = {role.value: count for role, count in rows}
    guru = counts.get(UserRole.GURU.value, 0)
    murid = counts.get(UserRole.MURID.value, 0)
    return {"total": guru + murid, "guru": guru, "murid": murid}
