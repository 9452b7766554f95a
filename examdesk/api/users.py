from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from examdesk.core.auth import TokenData, get_current_user, require_roles
from examdesk.core.database import get_db
from examdesk.core.responses import ok
from examdesk.models.orm import UserRole
from examdesk.services import users as users_service

router = APIRouter()


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=255)

    @field_validator("name")
    @classmethod
    def name_not_null(cls, v):
        if v is None:
            raise ValueError("name cannot be null")
        return v


@router.get("/profile")
async def get_profile(user: TokenData = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return ok(await users_service.get_profile(db, user.user_id))


@router.put("/profile")
async def update_profile(payload: ProfileUpdate, user: TokenData = Depends(get_current_user),
                         db: AsyncSession = Depends(get_db)):
    data = await users_service.update_profile(db, user.user_id, payload.name)
    return ok(data, "Profile updated successfully")


@router.get("/stats", dependencies=[Depends(require_roles(UserRole.GURU))])
async def user_stats(db: AsyncSession = Depends(get_db)):
    return ok(await users_service.user_stats(db))
