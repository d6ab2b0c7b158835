"""Shared fixtures: isolated config, temporary database, fake providers."""
from typing import Any, Dict, List, Optional
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from chatdesk.config import Config, reset_config, set_config
from chatdesk.services import providers as providers_pkg
from chatdesk.services.auth_service import reset_auth_service
from chatdesk.services.database import close_database, init_database
from chatdesk.services.providers import router as router_module
from chatdesk.services.providers.base import ProviderClient, StreamChunk


GOOGLE_CLIENT_ID = "chatdesk-test.apps.googleusercontent.com"


class FakeProvider(ProviderClient):
    """Replays scripted chunks; raises `error` after them when set."""

    def __init__(self, name="gemini", chunks=None, error=None, text="", configured=True):
        self.name = name
        self.chunks: List[StreamChunk] = list(chunks or [])
        self.error: Optional[Exception] = error
        self.text = text
        self.configured = configured
        self.calls: List[Dict[str, Any]] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def stream_generate(self, model, contents, config=None):
        self.calls.append({"model": model, "contents": contents, "config": config})
        for chunk in self.chunks:
            yield chunk
        if self.error:
            raise self.error

    async def generate(self, model, contents, config=None):
        self.calls.append({"model": model, "contents": contents, "config": config})
        if self.error:
            raise self.error
        return self.text


@pytest.fixture
def cfg(tmp_path):
    cfg = Config()
    cfg.app.log_level = "WARNING"
    cfg.database.url = f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    cfg.auth.jwt_secret = "test-secret"
    cfg.auth.bcrypt_rounds = 4
    cfg.auth.google_client_id = GOOGLE_CLIENT_ID
    cfg.gemini.api_key = "test-gemini-key"
    cfg.openai.api_key = ""
    cfg.deepseek.api_key = ""
    cfg.chat.history_dir = str(tmp_path / "history")
    cfg.rate_limits.storage = "memory"
    cfg.rate_limits.endpoints.auth_login = "1000/minute"
    cfg.rate_limits.endpoints.auth_register = "1000/minute"
    cfg.rate_limits.endpoints.chat = "1000/minute"
    cfg.ui.enabled = False
    set_config(cfg)
    reset_auth_service()
    router_module._router = None

    yield cfg

    reset_auth_service()
    router_module._router = None
    reset_config()


@pytest.fixture
async def db(cfg):
    await init_database()
    yield
    await close_database()


@pytest.fixture
def app(cfg):
    from chatdesk.app import create_app
    from chatdesk.middleware.rate_limiter import get_limiter

    limiter = get_limiter()
    limiter.enabled = True
    limiter.reset()
    return create_app(with_ui=False)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def google_tokens(cfg):
    """
    Replaces Google's ID-token check. Returns `issue(email, ...)`, which
    mints a credential the patched verifier accepts; anything else is
    rejected the way google-auth rejects a bad signature.
    """
    issued: Dict[str, Dict[str, Any]] = {}

    def issue(email, name="Ana", verified=True, audience=GOOGLE_CLIENT_ID):
        credential = f"google-id-token-{len(issued)}"
        issued[credential] = {
            "iss": "https://accounts.google.com",
            "aud": audience,
            "sub": str(100 + len(issued)),
            "email": email,
            "email_verified": verified,
            "name": name,
        }
        return credential

    def verify(credential, request, audience):
        claims = issued.get(credential)
        if claims is None:
            raise ValueError("Could not verify token signature.")
        if claims["aud"] != audience:
            raise ValueError("Token has wrong audience")
        return claims

    with patch("chatdesk.services.auth_service.id_token.verify_oauth2_token", side_effect=verify):
        yield issue


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def provider_router(app, cfg, fake_provider):
    """Routes every model to `fake_provider` for the duration of a test."""
    router = providers_pkg.ProviderRouter({"gemini": fake_provider}, routing=cfg.routing)
    app.dependency_overrides[providers_pkg.get_provider_router] = lambda: router
    yield router
    app.dependency_overrides.clear()


def register_user(client, name="Ana", email="ana@example.com", password="secret123"):
    response = client.post("/api/register", json={"name": name, "email": email, "password": password})
    assert response.status_code == 201, response.text
    return response.json()


def auth_headers(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
