# backend/safaridb/apps/accounts/schemas.py

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .models import SettingDataType

# ---------------------------------------------------------------------------
# LOGIN
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    # Blank values are accepted here and rejected by the login engine with
    # INVALID_INPUT, so every rejection has the same response shape.
    identifier: Optional[str] = Field(None, description="Username or email")
    password: Optional[str] = None


class LoginResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_token_expires_in: int
    refresh_token_expires_in: int
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime


class MfaRequiredResponse(BaseModel):
    mfa_required: bool = True
    temp_token: str
    message: str = "MFA verification required"


# ---------------------------------------------------------------------------
# ADMIN: SECURITY SETTINGS
# ---------------------------------------------------------------------------


class SecuritySettingRead(BaseModel):
    setting_key: str
    setting_value: str
    data_type: SettingDataType
    description: Optional[str] = None
    category: Optional[str] = None
    active: bool
    is_system_default: bool
    updated_at: datetime

    class Config:
        from_attributes = True


class SecuritySettingUpdate(BaseModel):
    setting_value: Optional[str] = None
    active: Optional[bool] = None


# ---------------------------------------------------------------------------
# ADMIN: ACCOUNT LOCKOUT
# ---------------------------------------------------------------------------


class SecurityProfileRead(BaseModel):
    user_id: str
    username: str
    email: str
    enabled: bool
    locked: bool
    locked_at: Optional[datetime] = None
    failed_attempts: int
    last_failure_at: Optional[datetime] = None
    credentials_expire_at: Optional[datetime] = None
    mfa_enabled: bool
    mfa_confirmed: bool

    class Config:
        from_attributes = True


class RateLimitStats(BaseModel):
    buckets: int
    throttled: int
    max_buckets: int
