"""Shared fixtures: an isolated SQLite database per test and fake HTTP backends."""

from __future__ import annotations

import json
import os
from typing import Callable, List
from urllib.parse import parse_qs

# must be set before crmbot.core.db builds its module-level engine
os.environ.setdefault("APP_DATABASE_URL", "sqlite://")
os.environ.setdefault("APP_BACKGROUND_REFRESH_ENABLED", "false")
os.environ.setdefault("APP_TELEGRAM_TOKEN", "test-bot-token")
os.environ.setdefault("APP_ENC_MASTER_KEY", "unit-test-master-key")

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from crmbot.core.db import get_engine, init_db
from crmbot.services.crm_client import ZohoCrmClient
from crmbot.services.telegram_client import TelegramClient
from crmbot.services.token_refresher import TokenRefresher
from crmbot.services.zoho_oauth import ZohoOAuthClient

ACCOUNTS_URL = "https://accounts.zoho.test"
API_URL = "https://crm.zoho.test"
TELEGRAM_URL = "https://telegram.test"
TOKEN_URL = f"{ACCOUNTS_URL}/oauth/v2/token"


@pytest.fixture
def engine(tmp_path):
    db_engine = get_engine(f"sqlite:///{tmp_path / 'crmbot.sqlite3'}")
    init_db(bind=db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def broken_session_factory(tmp_path):
    """Sessions bound to a database whose tables were never created."""
    db_engine = get_engine(f"sqlite:///{tmp_path / 'empty.sqlite3'}")
    yield sessionmaker(bind=db_engine)
    db_engine.dispose()


def form_of(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def json_of(request: httpx.Request) -> dict:
    return json.loads(request.content.decode())


class FakeBackend:
    """Records every outbound request and answers with per-URL responders."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.token_responses: List[httpx.Response] = []
        self.crm_handler: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(204)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url == TOKEN_URL:
            if self.token_responses:
                return self.token_responses.pop(0)
            return httpx.Response(200, json={"access_token": "new-access", "expires_in": 3600})
        if url.startswith(TELEGRAM_URL):
            return httpx.Response(200, json={"ok": True, "result": {}})
        if url.startswith(API_URL):
            return self.crm_handler(request)
        return httpx.Response(404, json={"error": "unexpected url"})

    def calls_to(self, prefix: str) -> List[httpx.Request]:
        return [r for r in self.requests if str(r.url).startswith(prefix)]

    @property
    def token_calls(self) -> List[httpx.Request]:
        return self.calls_to(TOKEN_URL)

    @property
    def sent_messages(self) -> List[str]:
        return [json_of(r)["text"] for r in self.calls_to(f"{TELEGRAM_URL}/bot") if r.url.path.endswith("/sendMessage")]


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
async def http(backend):
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))
    yield client
    await client.aclose()


@pytest.fixture
def oauth(http) -> ZohoOAuthClient:
    return ZohoOAuthClient(http=http, accounts_url=ACCOUNTS_URL, timeout=5)


@pytest.fixture
def refresher(oauth, session_factory) -> TokenRefresher:
    return TokenRefresher(oauth=oauth, session_factory=session_factory)


@pytest.fixture
def crm(http) -> ZohoCrmClient:
    return ZohoCrmClient(http=http, api_url=API_URL, timeout=5)


@pytest.fixture
def telegram(http) -> TelegramClient:
    return TelegramClient(http=http, token="test-bot-token", api_url=TELEGRAM_URL)
