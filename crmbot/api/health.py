from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from crmbot.core.config import get_settings


router = APIRouter(tags=["system"])


@router.get("/")
def root() -> JSONResponse:
    return JSONResponse({
        "status": "Bot is running!",
        "app": get_settings().app_name,
        "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
    })


@router.get("/health")
def health() -> JSONResponse:
    return JSONResponse({"status": "healthy", "bot": "telegram-zoho-bot"})
