from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crmbot.core.config import get_settings
from crmbot.core.db import upsert_insert
from crmbot.core.errors import StorageError
from crmbot.models.conversation import ConversationState
from crmbot.services.token_store import as_utc


logger = logging.getLogger(__name__)


class Step(str, Enum):
    NONE = "none"
    AWAITING_JSON = "awaiting_json"


class ConversationStore:
    """Pending multi-step state per chat, persisted next to the credentials."""

    def __init__(self, db: Session, timeout: Optional[timedelta] = None) -> None:
        self.db = db
        self.timeout = timeout or timedelta(seconds=get_settings().conversation_timeout_seconds)

    def get_step(self, chat_id: str | int, now: Optional[datetime] = None) -> Step:
        try:
            rec = self.db.execute(
                select(ConversationState).where(ConversationState.chat_id == str(chat_id))
            ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError(f"failed to load conversation state: {exc}") from exc
        if rec is None:
            return Step.NONE
        now = now or datetime.now(timezone.utc)
        expires_at = as_utc(rec.expires_at)
        if expires_at is not None and expires_at <= now:
            return Step.NONE
        return Step(rec.step)

    def set_step(self, chat_id: str | int, step: Step, now: Optional[datetime] = None) -> None:
        now = now or datetime.now(timezone.utc)
        values = {
            "chat_id": str(chat_id),
            "step": step.value,
            "expires_at": now + self.timeout if step is not Step.NONE else None,
            "updated_at": now,
        }
        insert = upsert_insert(self.db)
        stmt = insert(ConversationState).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ConversationState.chat_id],
            set_={
                "step": stmt.excluded.step,
                "expires_at": stmt.excluded.expires_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        try:
            self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError(f"failed to save conversation state: {exc}") from exc
        logger.info("conversation.set_step chat=%s step=%s", chat_id, step.value)

    def clear(self, chat_id: str | int) -> None:
        try:
            self.db.execute(delete(ConversationState).where(ConversationState.chat_id == str(chat_id)))
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError(f"failed to clear conversation state: {exc}") from exc
