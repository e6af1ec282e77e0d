from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from http.cookies import SimpleCookie
from typing import Any, Callable

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient

from backend.app import lti
from backend.app.identity_store import IdentityStore, Platform
from backend.app.main import _resolve_lti_service, app, get_settings
from backend.app.settings import Settings


CANVAS_ISSUER = "https://canvas.instructure.com"
CANVAS_CLIENT_ID = "client-123"
CANVAS_JWKS = "https://canvas.instructure.com/api/lti/security/jwks"
CANVAS_AUTH = "https://canvas.instructure.com/api/lti/authorize_redirect"
SESSION_SECRET = "test-session-secret-0123456789abcdef"


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class DummyResponse:
    def __init__(self, url: str, payload: Any, status_code: int = 200) -> None:
        self.url = url
        self.status_code = status_code
        self._payload = payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise httpx.HTTPStatusError(
                f"status {self.status_code}",
                request=httpx.Request("GET", self.url),
                response=self,  # type: ignore[arg-type]
            )

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class JWKSServer:
    """Stands in for platform JWKS endpoints reached through ``httpx.AsyncClient``."""

    def __init__(self) -> None:
        self.documents: dict[str, Any] = {}
        self.requests: list[str] = []
        self.fail_with: Exception | None = None
        self.status_code = 200

    def client_factory(self) -> type:
        server = self

        class DummyAsyncClient:
            def __init__(self, *args: Any, **kwargs: Any) -> None:
                self.kwargs = kwargs

            async def __aenter__(self) -> "DummyAsyncClient":
                return self

            async def __aexit__(self, exc_type, exc, tb) -> bool:  # type: ignore[override]
                return False

            async def get(self, url: str, **_: Any) -> DummyResponse:
                server.requests.append(url)
                if server.fail_with is not None:
                    raise server.fail_with
                return DummyResponse(url, server.documents.get(url, {"keys": []}), server.status_code)

        return DummyAsyncClient


@pytest.fixture(scope="session")
def platform_rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def tool_rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture()
def platform_keys(platform_rsa_key) -> lti.LTIKeyManager:
    """Signing keys of the simulated LMS."""

    return lti.LTIKeyManager(platform_rsa_key, "platform-kid")


@pytest.fixture()
def jwks_server(monkeypatch, platform_keys) -> JWKSServer:
    server = JWKSServer()
    server.documents[CANVAS_JWKS] = platform_keys.jwks_document()
    monkeypatch.setattr(lti.httpx, "AsyncClient", server.client_factory())
    return server


@pytest.fixture()
def identity_store(tmp_path) -> IdentityStore:
    return IdentityStore(tmp_path / "identity.json")


@pytest.fixture()
def canvas_platform(identity_store) -> Platform:
    return identity_store.create_platform(
        {
            "issuer": CANVAS_ISSUER,
            "client_id": CANVAS_CLIENT_ID,
            "deployment_id": "deploy-1",
            "jwks_endpoint": CANVAS_JWKS,
            "authorization_endpoint": CANVAS_AUTH,
            "name": "Canvas",
        }
    )


@pytest.fixture()
def state_clock() -> FakeClock:
    return FakeClock(datetime.now(timezone.utc))


@pytest.fixture()
def lti_service(identity_store, canvas_platform, tool_rsa_key, jwks_server, state_clock) -> lti.LTIService:
    return lti.LTIService(
        store=identity_store,
        key_manager=lti.LTIKeyManager(tool_rsa_key, "tool-kid"),
        session_manager=lti.SessionManager(SESSION_SECRET, 86400),
        state_store=lti.LTIStateStore(600, clock=state_clock),
        validator=lti.LTITokenValidator(timeout=10.0),
        frontend_url="https://journal.example/",
    )


@pytest.fixture()
def app_settings(tmp_path) -> Settings:
    return Settings(
        session_secret=SESSION_SECRET,
        storage_path=tmp_path / "identity.json",
        api_auth_token="admin-token",
    )


@pytest.fixture()
def client(lti_service, app_settings):
    app.dependency_overrides[_resolve_lti_service] = lambda: lti_service
    app.dependency_overrides[get_settings] = lambda: app_settings
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def id_token_factory(platform_keys) -> Callable[..., str]:
    """Build a platform-signed launch id_token; keyword arguments override claims."""

    def factory(expected_nonce: str, /, *, signer: lti.LTIKeyManager | None = None, **overrides: Any) -> str:
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": CANVAS_ISSUER,
            "aud": CANVAS_CLIENT_ID,
            "sub": "canvas-user-42",
            "iat": now,
            "exp": now + 300,
            "nonce": expected_nonce,
            "name": "Ada Lovelace",
            "email": "ada@example.edu",
            lti.MESSAGE_TYPE_CLAIM: lti.RESOURCE_LINK_REQUEST,
            lti.VERSION_CLAIM: "1.3.0",
            lti.DEPLOYMENT_ID_CLAIM: "deploy-1",
            lti.ROLES_CLAIM: [lti.INSTRUCTOR_ROLES[0]],
            lti.CONTEXT_CLAIM: {"id": "course-77", "label": "GEO101", "title": "World Geography"},
        }
        for key, value in overrides.items():
            if value is None:
                claims.pop(key, None)
            else:
                claims[key] = value
        return (signer or platform_keys).sign(claims)

    return factory


def session_cookie(response) -> SimpleCookie:
    cookie: SimpleCookie = SimpleCookie()
    for header in response.headers.get_list("set-cookie"):
        cookie.load(header)
    return cookie
