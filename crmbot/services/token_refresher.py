from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable, Optional
import weakref

from sqlalchemy.orm import Session

from crmbot.core.config import get_settings
from crmbot.core.crypto import mask_secret
from crmbot.core.db import SessionLocal
from crmbot.core.errors import ProviderError
from crmbot.schemas.token import RefreshResult, TokenErrorKind, TokenRecord, TokenResult
from crmbot.services.token_store import TokenStore, expires_within
from crmbot.services.zoho_oauth import ZohoOAuthClient


logger = logging.getLogger(__name__)

_REQUIRED_FOR_REFRESH = ("refresh_token", "client_id", "client_secret")


class TokenRefresher:
    """Hands out usable access tokens, minting new ones through the refresh grant.

    ``get_valid`` is the only way CRM callers should obtain an access token:

    - no record                         -> needs reconnect
    - more than the margin left         -> stored token, no provider call
    - expired or inside the margin      -> refresh, then the new token
    - refresh rejected / unreachable    -> needs reconnect, stored row untouched

    Refreshes for one chat are serialized on a per-chat lock; a caller that
    waited on the lock re-reads the row and reuses a token minted meanwhile.
    Locks are held weakly and disappear once no coroutine is using them.
    """

    def __init__(
        self,
        oauth: Optional[ZohoOAuthClient] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        expiry_margin: Optional[timedelta] = None,
    ) -> None:
        self.oauth = oauth or ZohoOAuthClient()
        self.session_factory = session_factory
        self.expiry_margin = expiry_margin or timedelta(seconds=get_settings().token_expiry_margin_seconds)
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _load(self, user_id: str) -> Optional[TokenRecord]:
        with self.session_factory() as db:
            return TokenStore(db, self.expiry_margin).get(user_id)

    def _save(self, record: TokenRecord) -> None:
        with self.session_factory() as db:
            TokenStore(db, self.expiry_margin).save(record)

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def needs_refresh(self, record: Optional[TokenRecord], now: Optional[datetime] = None) -> bool:
        if record is None:
            return True
        return expires_within(record.expires_at, self.expiry_margin, now)

    async def refresh(self, user_id: str | int, force: bool = True) -> RefreshResult:
        """Mint a new access token for the chat through the refresh grant.

        With ``force=False`` a token outside the expiry margin is returned as-is.
        A caller that had to wait for another refresh of the same chat reuses the
        token that refresh minted instead of calling the provider again.
        """
        uid = str(user_id)
        lock = self._lock_for(uid)
        waited = lock.locked()
        async with lock:
            record = self._load(uid)
            if record is not None and (waited or not force) and not self.needs_refresh(record):
                logger.info("token.refresh user=%s skipped, token still valid", uid)
                remaining = (record.expires_at - datetime.now(timezone.utc)).total_seconds()
                return RefreshResult(
                    success=True,
                    access_token=record.access_token,
                    expires_at=record.expires_at,
                    expires_in=max(int(remaining), 0),
                    reused=True,
                )
            return await self._refresh_record(uid, record)

    async def _refresh_record(self, uid: str, record: Optional[TokenRecord]) -> RefreshResult:
        # caller holds the chat's lock and passes the row it read under that lock
        if record is None:
            logger.warning("token.refresh user=%s no_tokens", uid)
            return RefreshResult(success=False, error="No tokens found for this chat ID", error_kind=TokenErrorKind.NOT_FOUND)

        missing = [name for name in _REQUIRED_FOR_REFRESH if not getattr(record, name)]
        if missing:
            logger.warning("token.refresh user=%s missing=%s", uid, ",".join(missing))
            return RefreshResult(
                success=False,
                error="Missing required refresh credentials",
                error_kind=TokenErrorKind.MISSING_CREDENTIALS,
                details={"missing": missing},
            )

        logger.info("token.refresh user=%s start", uid)
        try:
            tokens = await self.oauth.refresh(record.client_id, record.client_secret, record.refresh_token)
        except ProviderError as exc:
            logger.error("token.refresh user=%s failed error=%s details=%s", uid, exc.message, exc.details)
            return RefreshResult(success=False, error=exc.message, error_kind=TokenErrorKind.PROVIDER_ERROR, details=exc.details)

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=tokens.expires_in)
        self._save(
            record.model_copy(
                update={
                    "access_token": tokens.access_token,
                    "refresh_token": tokens.refresh_token or record.refresh_token,
                    "expires_at": expires_at,
                }
            )
        )
        logger.info("token.refresh user=%s ok token=%s expires_at=%s", uid, mask_secret(tokens.access_token), expires_at.isoformat())
        return RefreshResult(success=True, access_token=tokens.access_token, expires_at=expires_at, expires_in=tokens.expires_in)

    async def get_valid(self, user_id: str | int) -> TokenResult:
        uid = str(user_id)
        record = self._load(uid)
        if record is None:
            return TokenResult(
                success=False,
                error="No tokens found for this chat ID",
                error_kind=TokenErrorKind.NOT_FOUND,
                needs_reconnect=True,
            )
        if not self.needs_refresh(record):
            return TokenResult(success=True, access_token=record.access_token, expires_at=record.expires_at, was_refreshed=False)

        logger.info("token.get_valid user=%s expiring expires_at=%s", uid, record.expires_at)
        async with self._lock_for(uid):
            current = self._load(uid)
            if current is not None and not self.needs_refresh(current):
                # refreshed by a concurrent caller while this one waited
                return TokenResult(
                    success=True,
                    access_token=current.access_token,
                    expires_at=current.expires_at,
                    was_refreshed=current.access_token != record.access_token,
                )
            result = await self._refresh_record(uid, current)

        if result.success:
            return TokenResult(success=True, access_token=result.access_token, expires_at=result.expires_at, was_refreshed=True)
        return TokenResult(
            success=False,
            error=result.error,
            error_kind=result.error_kind,
            details=result.details,
            needs_reconnect=True,
        )
