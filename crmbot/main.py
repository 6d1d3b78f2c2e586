from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
import logging
from typing import Callable, Optional

import httpx
from fastapi import FastAPI
from sqlalchemy.orm import Session

from crmbot.api.health import router as health_router
from crmbot.api.telegram import router as telegram_router
from crmbot.core.config import get_settings
from crmbot.core.db import SessionLocal, init_db
from crmbot.core.log import setup_logging
from crmbot.services.commands import BotContext
from crmbot.services.crm_client import ZohoCrmClient
from crmbot.services.refresh_loop import BackgroundRefresher
from crmbot.services.telegram_client import TelegramClient
from crmbot.services.token_refresher import TokenRefresher
from crmbot.services.zoho_oauth import ZohoOAuthClient


logger = logging.getLogger(__name__)


def build_context(http: Optional[httpx.AsyncClient] = None, session_factory: Callable[[], Session] = SessionLocal) -> BotContext:
    oauth = ZohoOAuthClient(http=http)
    return BotContext(
        telegram=TelegramClient(http=http),
        oauth=oauth,
        crm=ZohoCrmClient(http=http),
        refresher=TokenRefresher(oauth=oauth, session_factory=session_factory),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.log_level)
    init_db()
    http = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    app.state.bot = build_context(http)

    if settings.webhook_url and settings.telegram_token:
        await app.state.bot.telegram.set_webhook(settings.webhook_url)
    elif not settings.telegram_token:
        logger.warning("APP_TELEGRAM_TOKEN is not set; replies will fail")

    refresh_task: Optional[asyncio.Task] = None
    if settings.background_refresh_enabled:
        refresh_task = asyncio.create_task(BackgroundRefresher(app.state.bot.refresher).run())
        logger.info("background token refresh started interval=%ss", settings.refresh_interval_seconds)
    try:
        yield
    finally:
        if refresh_task is not None:
            refresh_task.cancel()
            with suppress(asyncio.CancelledError):
                await refresh_task
        await http.aclose()


app = FastAPI(title=get_settings().app_name, version="0.1.0", lifespan=lifespan)

app.include_router(health_router)
app.include_router(telegram_router)
