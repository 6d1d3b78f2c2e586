from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel


class TokenRecord(BaseModel):
    """Decrypted credential set for one chat."""

    user_id: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TokenErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    MISSING_CREDENTIALS = "missing_credentials"
    PROVIDER_ERROR = "provider_error"


class RefreshResult(BaseModel):
    success: bool
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    expires_in: Optional[int] = None
    # True when a still-valid stored token was returned without a provider call
    reused: bool = False
    error: Optional[str] = None
    error_kind: Optional[TokenErrorKind] = None
    details: Optional[Any] = None


class TokenResult(BaseModel):
    """What callers of ``TokenRefresher.get_valid`` receive."""

    success: bool
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    was_refreshed: bool = False
    error: Optional[str] = None
    error_kind: Optional[TokenErrorKind] = None
    details: Optional[Any] = None
    needs_reconnect: bool = False


class ProviderTokens(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 3600
    api_domain: Optional[str] = None
    token_type: Optional[str] = None
