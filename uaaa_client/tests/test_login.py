"""Tests for the PKCE login flow: authorization request, callback checks and code exchange."""
from urllib.parse import parse_qs, urlsplit

import pytest

from conftest import CLIENT_APP_ID, ISSUER
from uaaa_client.discovery import DiscoveryCache
from uaaa_client.errors import MissingLoginState, NetworkError, StateMismatch, TokenExchangeFailed
from uaaa_client.login import LoginController
from uaaa_client.pkce import generate_code_challenge


@pytest.fixture
def controller(config, store, storage, lock, http_client):
    discovery = DiscoveryCache(config.issuer, storage, http_client)
    return LoginController(config, store, discovery, lock, http_client, storage)


def _query(url: str) -> dict[str, list[str]]:
    return parse_qs(urlsplit(url).query)


@pytest.mark.asyncio
async def test_start_login_builds_authorization_url(controller):
    url = await controller.start_login("/dashboard")
    assert url.startswith(f"{ISSUER}/authorize?")
    params = _query(url)
    assert params["client_id"] == [CLIENT_APP_ID]
    assert params["response_type"] == ["code"]
    assert params["confidential"] == ["0"]
    assert params["redirect_uri"] == ["https://app.example/auth/callback"]
    assert params["code_challenge_method"] == ["S256"]
    assert params["scope"] == [
        "openid profile email uperm%3A%2F%2Fserver-app%2F** uperm%3A%2F%2Fissuer-app%2Fsession%2Fclaim"
    ]


@pytest.mark.asyncio
async def test_start_login_persists_login_state(controller):
    url = await controller.start_login("/dashboard")
    params = _query(url)
    state = controller.login_state
    assert state.redirect == "/dashboard"
    assert params["state"] == [state.state]
    assert params["code_challenge"] == [generate_code_challenge(state.code_verifier)]


@pytest.mark.asyncio
async def test_start_login_custom_permissions_and_params(controller):
    url = await controller.start_login(
        "/",
        permissions=["{{client}}/profile", {"path": "{{server}}/admin", "optional": True}],
        additional_params={"prompt": "login"},
        callback="https://app.example/custom/callback",
    )
    params = _query(url)
    assert params["scope"] == [
        "openid profile email uperm%3A%2F%2Fclient-app%2Fprofile uperm%2Boptional%3A%2F%2Fserver-app%2Fadmin"
    ]
    assert params["prompt"] == ["login"]
    assert params["redirect_uri"] == ["https://app.example/custom/callback"]


@pytest.mark.asyncio
async def test_second_start_login_supersedes_first(controller):
    first = _query(await controller.start_login("/a"))["state"][0]
    second = _query(await controller.start_login("/b"))["state"][0]
    assert first != second
    assert controller.login_state.state == second
    with pytest.raises(StateMismatch):
        await controller.finish_login("code", first)


@pytest.mark.asyncio
async def test_finish_login_without_login_state(controller, provider):
    with pytest.raises(MissingLoginState):
        await controller.finish_login("code", "state")
    assert provider.requests == []


@pytest.mark.asyncio
async def test_finish_login_state_mismatch_makes_no_request(controller, provider):
    await controller.start_login("/")
    requests_before = len(provider.requests)
    with pytest.raises(StateMismatch):
        await controller.finish_login("code", "wrong-state")
    assert len(provider.requests) == requests_before
    assert provider.calls("/token") == []


@pytest.mark.asyncio
async def test_pkce_round_trip_installs_token_at_level(controller, store, provider, make_token):
    access_token = make_token(level=2)
    provider.token_responses.append(
        (200, {"access_token": access_token, "refresh_token": "rt-login", "id_token": "id-token"})
    )
    url = await controller.start_login("/after-login")
    state = _query(url)["state"][0]
    verifier = controller.login_state.code_verifier

    redirect = await controller.finish_login("auth-code", state)

    assert redirect == "/after-login"
    assert provider.calls("/token")[0] == {
        "grant_type": "authorization_code",
        "code": "auth-code",
        "client_id": CLIENT_APP_ID,
        "redirect_uri": "https://app.example/auth/callback",
        "code_verifier": verifier,
    }
    assert store.security_level == 2
    assert store.get(2).token == access_token
    assert store.get(2).refresh_token == "rt-login"
    assert store.id_token == "id-token"


@pytest.mark.asyncio
async def test_activate_runs_before_commit(controller, store, provider, make_token):
    access_token = make_token(level=1)
    provider.token_responses.append((200, {"access_token": access_token, "refresh_token": "rt"}))
    state = _query(await controller.start_login("/"))["state"][0]
    seen = []

    async def activate(token: str):
        seen.append((token, store.get(1)))

    await controller.finish_login("code", state, activate=activate)
    assert seen == [(access_token, None)]
    assert store.get(1).token == access_token


@pytest.mark.asyncio
async def test_failing_activate_stores_no_token(controller, store, provider, make_token):
    provider.token_responses.append((200, {"access_token": make_token(level=1)}))
    state = _query(await controller.start_login("/"))["state"][0]

    async def activate(token: str):
        raise RuntimeError("claim failed")

    with pytest.raises(RuntimeError):
        await controller.finish_login("code", state, activate=activate)
    assert store.tokens() == []
    assert store.security_level == -1


@pytest.mark.asyncio
async def test_exchange_failure(controller, store, provider):
    provider.token_responses.append((400, {"error": "invalid_grant"}))
    state = _query(await controller.start_login("/"))["state"][0]
    with pytest.raises(TokenExchangeFailed) as exc_info:
        await controller.finish_login("bad-code", state)
    assert exc_info.value.status_code == 400
    assert isinstance(exc_info.value, NetworkError)
    assert store.security_level == -1


@pytest.mark.asyncio
async def test_discovery_failure_propagates(controller, provider):
    provider.discovery_status = 500
    with pytest.raises(NetworkError):
        await controller.start_login("/")
    assert controller.login_state is None
