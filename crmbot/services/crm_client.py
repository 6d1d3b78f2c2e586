from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from crmbot.core.config import get_settings
from crmbot.core.errors import CrmError


logger = logging.getLogger(__name__)


class ZohoCrmClient:
    """Thin wrapper over the Zoho CRM v2 REST API.

    The access token is passed per call; obtain it from ``TokenRefresher.get_valid``.
    """

    def __init__(self, http: Optional[httpx.AsyncClient] = None, api_url: Optional[str] = None, timeout: Optional[float] = None) -> None:
        settings = get_settings()
        self._http = http
        self.api_url = (api_url or settings.zoho_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds

    @staticmethod
    def _headers(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Zoho-oauthtoken {access_token.strip()}"}

    async def _request(self, method: str, path: str, access_token: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.api_url}{path}"
        try:
            if self._http is not None:
                resp = await self._http.request(method, url, headers=self._headers(access_token), timeout=self.timeout, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as http:
                    resp = await http.request(method, url, headers=self._headers(access_token), **kwargs)
        except httpx.HTTPError as exc:
            logger.error("crm.%s %s transport_error=%r", method.lower(), path, exc)
            raise CrmError(f"CRM unreachable: {exc}") from exc
        if resp.status_code >= 400:
            try:
                details: Any = resp.json()
            except ValueError:
                details = resp.text
            message = details.get("message") if isinstance(details, dict) else None
            logger.error("crm.%s %s status=%s details=%s", method.lower(), path, resp.status_code, details)
            raise CrmError(message or f"CRM returned HTTP {resp.status_code}", status_code=resp.status_code, details=details)
        return resp

    async def list_leads(self, access_token: str, per_page: int = 5) -> List[Dict[str, Any]]:
        resp = await self._request(
            "GET",
            "/crm/v2/Leads",
            access_token,
            params={"sort_by": "Created_Time", "sort_order": "desc", "per_page": per_page},
        )
        # 204 No Content: the module has no records
        if resp.status_code == 204 or not resp.content:
            return []
        return resp.json().get("data") or []

    async def create_lead(self, access_token: str, name: str, email: str) -> Dict[str, Any]:
        # Last_Name is the only mandatory field on the Leads module
        body = {"data": [{"Last_Name": name, "Email": email, "Lead_Source": "Telegram"}]}
        resp = await self._request("POST", "/crm/v2/Leads", access_token, json=body)
        data = (resp.json().get("data") or [{}])[0]
        if data.get("code") not in (None, "SUCCESS"):
            raise CrmError(data.get("message") or data.get("code"), status_code=resp.status_code, details=data)
        return data

    async def get_org(self, access_token: str) -> Dict[str, Any]:
        resp = await self._request("GET", "/crm/v2/org", access_token)
        orgs = resp.json().get("org") or [{}]
        return orgs[0]
