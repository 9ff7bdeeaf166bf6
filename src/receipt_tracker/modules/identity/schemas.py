from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, EmailStr, Field

from receipt_tracker.modules.identity.models import UserRole

MIN_PASSWORD_LENGTH = 8


class UserOut(BaseModel):
    id: uuid.UUID
    email: EmailStr
    full_name: str | None
    role: UserRole
    is_active: bool
    created_at: datetime
    last_login_at: datetime | None = None


class UserCreate(BaseModel):
    email: EmailStr
    full_name: str | None = Field(default=None, max_length=200)
    password: str = Field(min_length=MIN_PASSWORD_LENGTH)
    role: UserRole = UserRole.USER


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
