from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class TokenRequest(BaseModel):
    """Login request. Missing fields are reported as 400, not 422."""

    username: Optional[str] = Field(default=None, max_length=320)
    password: Optional[str] = Field(default=None, max_length=1024)

    @field_validator("username", mode="before")
    @classmethod
    def normalize_username(cls, value: Optional[str]) -> Optional[str]:
        if isinstance(value, str):
            return value.strip() or None
        return value


class TokenResponse(BaseModel):
    """Access token response. The refresh token only travels in the cookie."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    owner_id: int


class VerifyResponse(BaseModel):
    owner_id: int


class MessageResponse(BaseModel):
    message: str


class SessionResponse(BaseModel):
    """One refresh token session. Never carries the token or its hash."""

    id: int
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    expires_at: datetime
    rotation_count: int = 0
    is_current: bool = False


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    total: int
