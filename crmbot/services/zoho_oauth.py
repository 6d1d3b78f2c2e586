from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from crmbot.core.config import get_settings
from crmbot.core.errors import ProviderError
from crmbot.schemas.token import ProviderTokens


logger = logging.getLogger(__name__)


class ZohoOAuthClient:
    """Calls the Zoho accounts token endpoint (authorization_code / refresh_token grants)."""

    def __init__(self, http: Optional[httpx.AsyncClient] = None, accounts_url: Optional[str] = None, timeout: Optional[float] = None) -> None:
        settings = get_settings()
        self._http = http
        self.accounts_url = (accounts_url or settings.zoho_accounts_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds

    @property
    def token_url(self) -> str:
        return f"{self.accounts_url}/oauth/v2/token"

    async def exchange_code(self, client_id: str, client_secret: str, code: str, redirect_uri: Optional[str] = None) -> ProviderTokens:
        form = {
            "grant_type": "authorization_code",
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri or get_settings().zoho_redirect_uri,
            "code": code,
        }
        return await self._token_request(form)

    async def refresh(self, client_id: str, client_secret: str, refresh_token: str) -> ProviderTokens:
        form = {
            "grant_type": "refresh_token",
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
        }
        return await self._token_request(form)

    async def _token_request(self, form: Dict[str, str]) -> ProviderTokens:
        grant = form["grant_type"]
        try:
            if self._http is not None:
                resp = await self._http.post(self.token_url, data=form, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as http:
                    resp = await http.post(self.token_url, data=form)
        except httpx.HTTPError as exc:
            logger.error("zoho.token grant=%s transport_error=%r", grant, exc)
            raise ProviderError(f"token endpoint unreachable: {exc}") from exc

        payload = _json_or_text(resp)
        if resp.status_code >= 400:
            logger.error("zoho.token grant=%s status=%s payload=%s", grant, resp.status_code, payload)
            raise ProviderError(f"token endpoint returned HTTP {resp.status_code}", details=payload, status_code=resp.status_code)
        # Zoho answers some rejections (invalid_code, invalid_client) with HTTP 200
        if not isinstance(payload, dict) or payload.get("error") or not payload.get("access_token"):
            error = payload.get("error") if isinstance(payload, dict) else None
            logger.error("zoho.token grant=%s status=%s error=%s", grant, resp.status_code, error)
            raise ProviderError(error or "token endpoint returned no access_token", details=payload, status_code=resp.status_code)
        try:
            tokens = ProviderTokens.model_validate(payload)
        except ValidationError as exc:
            raise ProviderError("malformed token response", details=payload, status_code=resp.status_code) from exc
        logger.info("zoho.token grant=%s ok expires_in=%s refresh_token=%s", grant, tokens.expires_in, "received" if tokens.refresh_token else "absent")
        return tokens


def _json_or_text(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text
