from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from passlib.context import CryptContext
from pydantic import BaseModel
from typing import Literal, Optional
import re
import uuid
import jwt
from datetime import datetime, timedelta, timezone
from examdesk.core.config import Settings, settings as default_settings
from examdesk.core.errors import ForbiddenError, UnauthorizedError

TokenType = Literal["access", "refresh"]


class TokenData(BaseModel):
    sub: str
    email: str
    role: str
    type: TokenType = "access"

    @property
    def user_id(self) -> uuid.UUID:
        return uuid.UUID(self.sub)


bearer = HTTPBearer(auto_error=False)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=default_settings.BCRYPT_ROUNDS)

PASSWORD_RULES = (
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"[0-9]"), "Password must contain at least one number"),
)


def validate_password_strength(password: str, min_length: int = 8) -> str:
    """Raise ValueError with the first failing rule; used from pydantic validators."""
    if len(password) < min_length:
        raise ValueError(f"Password must be at least {min_length} characters")
    for pattern, message in PASSWORD_RULES:
        if not pattern.search(password):
            raise ValueError(message)
    return password


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_token(user_id: str, email: str, role: str, token_type: TokenType, ttl: timedelta,
                 settings: Settings = default_settings) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "email": email,
        "role": role,
        "type": token_type,
        "jti": uuid.uuid4().hex,
        "iat": int(now.timestamp()),
        "exp": int((now + ttl).timestamp()),
    }
    return jwt.encode(payload, settings.SECRET_KEY.get_secret_value(), algorithm=settings.ALGORITHM)


def create_access_token(user_id: str, email: str, role: str, settings: Settings = default_settings) -> str:
    ttl = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    return create_token(user_id, email, role, "access", ttl, settings)


def create_refresh_token(user_id: str, email: str, role: str, settings: Settings = default_settings) -> str:
    ttl = timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
    return create_token(user_id, email, role, "refresh", ttl, settings)


def decode_token(token: str, expected_type: TokenType = "access", settings: Settings = default_settings) -> TokenData:
    """Decode and type-check a token; any failure is an UnauthorizedError."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY.get_secret_value(), algorithms=[settings.ALGORITHM])
        data = TokenData(sub=payload["sub"], email=payload.get("email", ""), role=payload.get("role", ""),
                         type=payload.get("type", "access"))
    except (jwt.PyJWTError, KeyError, ValueError):
        raise UnauthorizedError("Invalid or expired token")
    if data.type != expected_type:
        raise UnauthorizedError("Invalid token type")
    return data


def get_current_user(request: Request, creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> TokenData:
    if creds is None or not creds.credentials:
        raise UnauthorizedError("Invalid or expired token")
    return decode_token(creds.credentials, "access", request.app.state.settings)


def require_roles(*required: str):
    allowed = {getattr(role, "value", role) for role in required}

    def checker(user: TokenData = Depends(get_current_user)):
        if user.role not in allowed:
            raise ForbiddenError("Insufficient role")
        return user
    return checker
