from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from crmbot.core.config import get_settings


logger = logging.getLogger(__name__)


class TelegramClient:
    def __init__(self, http: Optional[httpx.AsyncClient] = None, token: Optional[str] = None, api_url: Optional[str] = None) -> None:
        settings = get_settings()
        self._http = http
        self.token = token if token is not None else settings.telegram_token
        self.api_url = (api_url or settings.telegram_api_url).rstrip("/")
        self.timeout = settings.http_timeout_seconds

    def _method_url(self, method: str) -> str:
        return f"{self.api_url}/bot{self.token}/{method}"

    async def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            if self._http is not None:
                resp = await self._http.post(self._method_url(method), json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as http:
                    resp = await http.post(self._method_url(method), json=payload)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("telegram.%s error=%r", method, exc)
            return {"ok": False, "description": str(exc)}
        if not data.get("ok"):
            logger.error("telegram.%s failed status=%s description=%s", method, resp.status_code, data.get("description"))
        return data

    async def send_message(self, chat_id: int | str, text: str) -> Dict[str, Any]:
        return await self._call("sendMessage", {"chat_id": chat_id, "text": text, "disable_web_page_preview": True})

    async def set_webhook(self, base_url: str) -> bool:
        url = f"{base_url.rstrip('/')}/telegram-webhook"
        data = await self._call("setWebhook", {"url": url})
        if data.get("ok"):
            logger.info("telegram.set_webhook url=%s", url)
        return bool(data.get("ok"))
