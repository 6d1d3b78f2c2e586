from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crmbot.core.config import get_settings
from crmbot.core.crypto import seal, seal_optional, unseal, unseal_optional
from crmbot.core.db import upsert_insert
from crmbot.core.errors import StorageError
from crmbot.models.token import OAuthToken
from crmbot.schemas.token import TokenRecord


logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a stored timestamp to an aware UTC datetime.

    SQLite drops tzinfo on the way out; everything written here is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def expires_within(expires_at: Optional[datetime], margin: timedelta, now: Optional[datetime] = None) -> bool:
    """True when ``expires_at`` is missing or at most ``margin`` away from ``now``."""
    if expires_at is None:
        return True
    now = now or datetime.now(timezone.utc)
    return as_utc(expires_at) - now <= margin


class TokenStore:
    """Keyed storage for one credential record per Telegram chat."""

    def __init__(self, db: Session, expiry_margin: Optional[timedelta] = None) -> None:
        self.db = db
        self.expiry_margin = expiry_margin or timedelta(seconds=get_settings().token_expiry_margin_seconds)

    def save(self, record: TokenRecord) -> int:
        """Insert the record or overwrite the existing one for the same chat.

        The conflict branch runs inside the database (``ON CONFLICT DO UPDATE``),
        so concurrent saves for one key never interleave partial writes.
        """
        now = datetime.now(timezone.utc)
        values = {
            "telegram_user_id": str(record.user_id),
            "access_token": seal(record.access_token, "access_token"),
            "refresh_token": seal_optional(record.refresh_token, "refresh_token"),
            "expires_at": as_utc(record.expires_at),
            "client_id": record.client_id,
            "client_secret": seal_optional(record.client_secret, "client_secret"),
            "created_at": now,
            "updated_at": now,
        }
        insert = upsert_insert(self.db)
        try:
            stmt = insert(OAuthToken).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[OAuthToken.telegram_user_id],
                set_={
                    "access_token": stmt.excluded.access_token,
                    "refresh_token": stmt.excluded.refresh_token,
                    "expires_at": stmt.excluded.expires_at,
                    "client_id": stmt.excluded.client_id,
                    "client_secret": stmt.excluded.client_secret,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            result = self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("token_store.save failed user=%s error=%s", record.user_id, exc)
            raise StorageError(f"failed to save tokens: {exc}") from exc
        logger.info("token_store.save user=%s expires_at=%s", record.user_id, values["expires_at"])
        return result.rowcount

    def get(self, user_id: str | int) -> Optional[TokenRecord]:
        try:
            rec = self.db.execute(
                select(OAuthToken).where(OAuthToken.telegram_user_id == str(user_id)).limit(1)
            ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("token_store.get failed user=%s error=%s", user_id, exc)
            raise StorageError(f"failed to load tokens: {exc}") from exc
        if rec is None:
            return None
        return TokenRecord(
            user_id=rec.telegram_user_id,
            access_token=unseal(rec.access_token, "access_token"),
            refresh_token=unseal_optional(rec.refresh_token, "refresh_token"),
            expires_at=as_utc(rec.expires_at),
            client_id=rec.client_id,
            client_secret=unseal_optional(rec.client_secret, "client_secret"),
            created_at=as_utc(rec.created_at),
            updated_at=as_utc(rec.updated_at),
        )

    def is_expired(self, user_id: str | int, now: Optional[datetime] = None) -> bool:
        rec = self.get(user_id)
        if rec is None:
            return True
        return expires_within(rec.expires_at, self.expiry_margin, now)

    def list_expirations(self) -> list[tuple[str, datetime]]:
        """All ``(user_id, expires_at)`` pairs that carry an expiry."""
        try:
            rows = self.db.execute(
                select(OAuthToken.telegram_user_id, OAuthToken.expires_at).where(OAuthToken.expires_at.isnot(None))
            ).all()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError(f"failed to list tokens: {exc}") from exc
        return [(user_id, as_utc(expires_at)) for user_id, expires_at in rows]
