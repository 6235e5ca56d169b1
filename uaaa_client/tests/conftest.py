"""
Pytest fixtures for uaaa_client: in-memory storage, a stub identity provider behind
httpx.MockTransport, RS256-signed test tokens, and a controllable clock.
"""
import asyncio
import itertools
from urllib.parse import parse_qsl

import httpx
import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric.rsa import generate_private_key

from uaaa_client.config import AuthConfig
from uaaa_client.locks import CrossInstanceLock
from uaaa_client.session import AuthManager
from uaaa_client.storage import SessionStorage
from uaaa_client.tokens import ClientToken, TokenStore

ISSUER = "https://id.example"
CLIENT_APP_ID = "client-app"
SERVER_APP_ID = "server-app"
ISSUER_APP_ID = "issuer-app"

# Fixed "now" for tests, in ms
T0 = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class FakeProvider:
    """Identity provider stub: discovery document plus a queue of token endpoint responses."""

    def __init__(self):
        self.requests: list[tuple[str, str, dict]] = []
        self.discovery_status = 200
        self.discovery_body: object = {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/authorize",
            "token_endpoint": f"{ISSUER}/token",
            "userinfo_endpoint": f"{ISSUER}/userinfo",
            "end_session_endpoint": f"{ISSUER}/logout",
            "jwks_uri": f"{ISSUER}/.well-known/jwks.json",
            "response_types_supported": ["code"],
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": ["RS256"],
        }
        self.token_responses: list[tuple[int, dict]] = []
        # refresh_token value -> response, checked before the shared queue
        self.refresh_responses: dict[str, tuple[int, dict]] = {}
        self.delay = 0.0
        # When set, token endpoint requests wait for it before answering
        self.gate: asyncio.Event | None = None

    async def handler(self, request: httpx.Request) -> httpx.Response:
        body = (await request.aread()).decode()
        form = dict(parse_qsl(body)) if request.method == "POST" else {}
        self.requests.append((request.method, request.url.path, form))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.gate is not None and request.url.path == "/token":
            await self.gate.wait()
        if request.url.path == "/.well-known/openid-configuration":
            if isinstance(self.discovery_body, str):
                return httpx.Response(self.discovery_status, text=self.discovery_body)
            return httpx.Response(self.discovery_status, json=self.discovery_body)
        if request.url.path == "/token":
            if form.get("refresh_token") in self.refresh_responses:
                status, payload = self.refresh_responses.pop(form["refresh_token"])
                return httpx.Response(status, json=payload)
            if not self.token_responses:
                return httpx.Response(400, json={"error": "invalid_grant"})
            status, payload = self.token_responses.pop(0)
            return httpx.Response(status, json=payload)
        return httpx.Response(404)

    def calls(self, path: str) -> list[dict]:
        return [form for _, p, form in self.requests if p == path]


@pytest.fixture(scope="session")
def signing_key():
    return generate_private_key(65537, 2048, default_backend())


@pytest.fixture
def make_token(signing_key):
    """make_token(level=0, iat=..., exp=..., **claims) -> signed JWT string. Times in seconds."""
    counter = itertools.count(1)

    def _make(level: int = 0, iat: int | None = None, exp: int | None = None, **claims) -> str:
        iat = T0 // 1000 if iat is None else iat
        exp = iat + 600 if exp is None else exp
        payload = {
            "iss": ISSUER,
            "sub": "user-1",
            "aud": CLIENT_APP_ID,
            "client_id": CLIENT_APP_ID,
            "sid": "session-1",
            "jti": f"jti-{next(counter)}",
            "perm": [f"uperm://{SERVER_APP_ID}/**"],
            "level": level,
            "iat": iat,
            "exp": exp,
        }
        payload.update(claims)
        return jwt.encode(payload, signing_key, algorithm="RS256", headers={"kid": "test-key"})

    return _make


@pytest.fixture
def config(tmp_path):
    return AuthConfig(
        issuer=ISSUER,
        client_app_id=CLIENT_APP_ID,
        server_app_id=SERVER_APP_ID,
        issuer_app_id=ISSUER_APP_ID,
        app_origin="https://app.example",
        storage_url="sqlite:///:memory:",
        lock_dir=str(tmp_path / "locks"),
    )


@pytest.fixture
def storage():
    s = SessionStorage("sqlite:///:memory:")
    yield s
    s.dispose()


@pytest.fixture
def store(storage):
    return TokenStore(storage)


@pytest.fixture
def lock(config):
    return CrossInstanceLock("tokens", config.lock_dir)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def http_client(provider):
    return httpx.AsyncClient(transport=httpx.MockTransport(provider.handler))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def seed_token(store, make_token):
    """Install a token directly in the store and make its level current."""

    def _seed(level: int = 0, refresh_token: str | None = "rt-0", **claims) -> ClientToken:
        token = ClientToken.from_raw(make_token(level=level, **claims), refresh_token)
        store.put(level, token)
        store.security_level = max(store.security_level, level)
        return token

    return _seed


@pytest.fixture
def make_manager(config, storage, http_client, clock):
    """Build an AuthManager over the shared test storage, stub provider and fake clock."""

    def _make(**kwargs) -> AuthManager:
        kwargs.setdefault("storage", storage)
        kwargs.setdefault("http_client", http_client)
        kwargs.setdefault("clock", clock)
        return AuthManager(config, **kwargs)

    return _make
