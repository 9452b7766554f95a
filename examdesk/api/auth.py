from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from examdesk.api.deps import get_app_settings
from examdesk.core.auth import TokenData, get_current_user, validate_password_strength
from examdesk.core.config import Settings
from examdesk.core.database import get_db
from examdesk.core.responses import ok
from examdesk.middleware.rate_limit import auth_rate_limit
from examdesk.models.orm import UserRole
from examdesk.services import auth as auth_service

router = APIRouter()


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    password: str
    role: UserRole

    @field_validator("password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        return validate_password_strength(v)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        return validate_password_strength(v)


@router.post("/register", status_code=201, dependencies=[Depends(auth_rate_limit)])
async def register(payload: RegisterRequest, db: AsyncSession = Depends(get_db),
                   settings: Settings = Depends(get_app_settings)):
    data = await auth_service.register(db, settings, payload.name, payload.email, payload.password, payload.role)
    return ok(data, "Registration successful")


@router.post("/login", dependencies=[Depends(auth_rate_limit)])
async def login(payload: LoginRequest, db: AsyncSession = Depends(get_db),
                settings: Settings = Depends(get_app_settings)):
    return ok(await auth_service.login(db, settings, payload.email, payload.password), "Login successful")


@router.post("/refresh", dependencies=[Depends(auth_rate_limit)])
async def refresh(payload: RefreshRequest, db: AsyncSession = Depends(get_db),
                  settings: Settings = Depends(get_app_settings)):
    return ok(await auth_service.refresh(db, settings, payload.refresh_token), "Token refreshed")


@router.post("/logout")
async def logout(payload: RefreshRequest, user: TokenData = Depends(get_current_user),
                 db: AsyncSession = Depends(get_db)):
    await auth_service.logout(db, user.user_id, payload.refresh_token)
    return ok(message="Logged out successfully")


@router.post("/logout-all")
async def logout_all(user: TokenData = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    await auth_service.logout_all(db, user.user_id)
    return ok(message="Logged out from all devices")


@router.post("/change-password", dependencies=[Depends(auth_rate_limit)])
async def change_password(payload: ChangePasswordRequest, user: TokenData = Depends(get_current_user),
                          db: AsyncSession = Depends(get_db)):
    await auth_service.change_password(db, user.user_id, payload.current_password, payload.new_password)
    return ok(message="Password changed successfully. Please log in again.")


@router.get("/me")
async def me(user: TokenData = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return ok(await auth_service.get_me(db, user.user_id))
