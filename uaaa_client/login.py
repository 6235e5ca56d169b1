"""
Login flow controller: authorization request with PKCE, then code exchange on callback.
Pending login lives in one persisted slot; a second start_login replaces the first.
"""
import logging
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable

import httpx
import jwt

from uaaa_client.config import AuthConfig
from uaaa_client.discovery import DiscoveryCache
from uaaa_client.errors import MissingLoginState, NetworkError, StateMismatch, TokenExchangeFailed
from uaaa_client.locks import CrossInstanceLock
from uaaa_client.pkce import (
    DEFAULT_PERMISSIONS,
    build_authorize_url,
    build_scope,
    generate_code_challenge,
    generate_code_verifier,
    generate_state,
    map_permission,
)
from uaaa_client.storage import PersistedValue, SessionStorage
from uaaa_client.tokens import ClientToken, TokenStore

logger = logging.getLogger(__name__)

LOGIN_STATE_KEY = "login_state"

Permission = str | dict


@dataclass
class LoginState:
    code_verifier: str
    state: str
    redirect: str

    @classmethod
    def from_dict(cls, data: dict) -> "LoginState":
        return cls(code_verifier=data["code_verifier"], state=data["state"], redirect=data["redirect"])

    def to_dict(self) -> dict:
        return asdict(self)


class LoginController:
    def __init__(
        self,
        config: AuthConfig,
        store: TokenStore,
        discovery: DiscoveryCache,
        lock: CrossInstanceLock,
        http_client: httpx.AsyncClient,
        storage: SessionStorage,
    ):
        self._config = config
        self._store = store
        self._discovery = discovery
        self._lock = lock
        self._http = http_client
        self._login_state = PersistedValue(
            storage, LOGIN_STATE_KEY, None, decode=LoginState.from_dict, encode=LoginState.to_dict
        )

    @property
    def login_state(self) -> LoginState | None:
        return self._login_state.value

    async def start_login(
        self,
        redirect: str,
        permissions: list[Permission] | None = None,
        additional_params: dict[str, str] | None = None,
        callback: str | None = None,
    ) -> str:
        """Persist a new login state and return the authorization URL to send the user to."""
        scopes = [
            map_permission(
                p,
                client_app_id=self._config.client_app_id,
                server_app_id=self._config.server_app_id,
                issuer_app_id=self._config.issuer_app_id,
            )
            for p in (DEFAULT_PERMISSIONS if permissions is None else permissions)
        ]
        logger.debug("Mapped permissions: %s", ", ".join(scopes))

        openid_config = await self._discovery.load_config()
        code_verifier = generate_code_verifier()
        state = generate_state()
        url = build_authorize_url(
            authorization_endpoint=openid_config.authorization_endpoint,
            client_id=self._config.client_app_id,
            redirect_uri=callback or self._config.callback_url,
            scope=build_scope(scopes),
            state=state,
            code_challenge=generate_code_challenge(code_verifier),
            additional_params=additional_params,
        )
        self._login_state.value = LoginState(code_verifier=code_verifier, state=state, redirect=redirect)
        logger.info("Starting login, redirect after callback to %s", redirect)
        return url

    async def finish_login(
        self,
        code: str,
        state: str,
        activate: Callable[[str], Awaitable[None]] | None = None,
        callback: str | None = None,
    ) -> str:
        """
        Exchange the authorization code and install the token at its level.
        activate(access_token) runs before the token is committed; if it raises, nothing is stored.
        Returns the redirect given to start_login.
        """
        login_state = self._login_state.value
        if login_state is None:
            raise MissingLoginState("Login state not found")
        if state != login_state.state:
            raise StateMismatch("Invalid state")

        openid_config = await self._discovery.load_config()
        try:
            r = await self._http.post(
                openid_config.token_endpoint,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_id": self._config.client_app_id,
                    "redirect_uri": callback or self._config.callback_url,
                    "code_verifier": login_state.code_verifier,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise TokenExchangeFailed(f"Failed to get token: {e}") from e
        if not r.is_success:
            raise TokenExchangeFailed(f"Failed to get token: {r.status_code}", status_code=r.status_code)
        try:
            data = r.json()
            access_token = data["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            raise NetworkError(f"Unusable token response: {e}") from e

        self._store.id_token = data.get("id_token") or ""
        if activate is not None:
            await activate(access_token)
        await self._apply_token(access_token, data.get("refresh_token"))
        return login_state.redirect

    async def _apply_token(self, access_token: str, refresh_token: str | None) -> None:
        try:
            token = ClientToken.from_raw(access_token, refresh_token)
        except jwt.InvalidTokenError as e:
            raise NetworkError(f"Access token is not a JWT: {e}") from e
        level = token.decoded.level
        async with self._lock.hold():
            self._store.put(level, token)
            self._store.security_level = level
        logger.info("Applied token jti=%s level=%s", token.decoded.jti, level)
