"""Pydantic schemas for the auth routes.

Learn: request bodies are validated here only for shape (lengths,
required fields). Semantic checks such as the email format and the code
format belong to the verification authority, which reports them with
its own exceptions.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


# ─── Email codes ──────────────────────────────────────────


class SendCodeRequest(BaseModel):
    email: str = Field(max_length=320)


class SendCodeResponse(BaseModel):
    message: str
    expires_in: int


class VerifyCodeRequest(BaseModel):
    email: str = Field(max_length=320)
    code: str = Field(max_length=16)
    device_info: Optional[str] = Field(None, max_length=1024)


# ─── Apple ────────────────────────────────────────────────


class PersonName(BaseModel):
    given_name: Optional[str] = None
    family_name: Optional[str] = None


class AppleAuthRequest(BaseModel):
    identity_token: str
    authorization_code: Optional[str] = None
    full_name: Optional[PersonName] = None
    email: Optional[str] = Field(None, max_length=320)
    device_info: Optional[str] = Field(None, max_length=1024)


# ─── Sessions ─────────────────────────────────────────────


class RefreshRequest(BaseModel):
    refresh_token: str


class LogoutRequest(BaseModel):
    refresh_token: str


class MessageResponse(BaseModel):
    message: str


# ─── Users ────────────────────────────────────────────────


class UserRead(BaseModel):
    id: uuid.UUID
    email: Optional[str] = None
    email_verified: bool
    display_name: Optional[str] = None
    ai_usage_policy: str
    auth_providers: list[str] = Field(default_factory=list)
    created_at: datetime

    model_config = {"from_attributes": True}


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserRead
