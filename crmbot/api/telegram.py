from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from crmbot.schemas.telegram import Update
from crmbot.services.commands import BotContext, dispatch


logger = logging.getLogger(__name__)

router = APIRouter(tags=["telegram"])


def get_bot(request: Request) -> BotContext:
    return request.app.state.bot


@router.post("/telegram-webhook", response_class=PlainTextResponse)
async def telegram_webhook(payload: Dict[str, Any] = Body(...), bot: BotContext = Depends(get_bot)) -> PlainTextResponse:
    # Telegram retries non-2xx deliveries, so every outcome is acknowledged with 200
    try:
        update = Update.model_validate(payload)
    except ValidationError:
        logger.info("webhook.ignored malformed update")
        return PlainTextResponse("OK")
    message = update.message or update.edited_message
    if message is None or not message.text:
        return PlainTextResponse("OK")

    try:
        outcome = await dispatch(bot, message.chat.id, message.text)
    except Exception:
        logger.exception("webhook.dispatch failed chat=%s", message.chat.id)
        return PlainTextResponse("Error")
    return PlainTextResponse(outcome)
