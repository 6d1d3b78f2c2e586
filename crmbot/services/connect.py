from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
import logging
from typing import Callable

from pydantic import ValidationError
from sqlalchemy.orm import Session

from crmbot.core.db import SessionLocal
from crmbot.core.errors import SelfClientError
from crmbot.schemas.telegram import SelfClient
from crmbot.schemas.token import TokenRecord
from crmbot.services.token_store import TokenStore
from crmbot.services.zoho_oauth import ZohoOAuthClient


logger = logging.getLogger(__name__)


def parse_self_client(text: str) -> SelfClient:
    """Parse the pasted ``self_client.json``; raises SelfClientError on bad input."""
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise SelfClientError("invalid JSON") from exc
    if not isinstance(data, dict):
        raise SelfClientError("invalid JSON")
    try:
        return SelfClient.model_validate(data)
    except ValidationError as exc:
        missing = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        raise SelfClientError("missing required fields", missing=missing) from exc


async def connect(
    chat_id: str | int,
    self_client: SelfClient,
    oauth: ZohoOAuthClient,
    session_factory: Callable[[], Session] = SessionLocal,
) -> TokenRecord:
    """Exchange the one-time code and store the resulting credentials for the chat.

    ProviderError from the exchange propagates; nothing is written in that case.
    """
    tokens = await oauth.exchange_code(self_client.client_id, self_client.client_secret, self_client.code)
    record = TokenRecord(
        user_id=str(chat_id),
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=tokens.expires_in),
        client_id=self_client.client_id,
        client_secret=self_client.client_secret,
    )
    with session_factory() as db:
        TokenStore(db).save(record)
    logger.info("connect.ok chat=%s expires_in=%s", chat_id, tokens.expires_in)
    return record
