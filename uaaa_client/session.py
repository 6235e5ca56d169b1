"""
AuthManager: the public session API (get_auth_token, start_login, finish_login, logout).

Derived values (security_level, effective_token, app_id, user_id, is_logged_in) are read from
storage on every access; they are never cached on the manager.
"""
import asyncio
import html
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import httpx

from uaaa_client.config import AuthConfig
from uaaa_client.discovery import DiscoveryCache, OpenIdConfig
from uaaa_client.locks import CrossInstanceLock
from uaaa_client.login import LoginController, Permission
from uaaa_client.refresh import RefreshEngine
from uaaa_client.storage import SessionStorage
from uaaa_client.tokens import EXPIRY_MARGIN_MS, UNAUTHENTICATED, ClientToken, TokenStore, now_ms

logger = logging.getLogger(__name__)

REFRESH_DEBOUNCE_SECONDS = 1.0


class Debouncer:
    """
    Trailing-edge debounce for a coroutine function: each call restarts the timer, and the
    function runs once the timer expires. Runs are fire-and-forget; errors are logged.
    A run already in progress is never cancelled.
    """

    def __init__(self, func: Callable[[], Awaitable[object]], wait: float):
        self._func = func
        self._wait = wait
        self._handle: asyncio.TimerHandle | None = None
        self._running: set[asyncio.Task] = set()

    def __call__(self) -> None:
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self._wait, self._fire)

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def _fire(self) -> None:
        self._handle = None
        task = asyncio.ensure_future(self._run())
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run(self) -> None:
        try:
            await self._func()
        except Exception:
            logger.exception("Background token refresh failed")

    async def aclose(self) -> None:
        """Drop a pending run and wait for any run in progress."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)


@dataclass
class LogoutRequest:
    """End-session request the browser must POST as a full-page navigation."""

    action: str
    fields: dict[str, str] = field(default_factory=dict)

    def render_form(self) -> str:
        """Self-submitting HTML form for the end-session endpoint."""
        inputs = "\n".join(
            f'    <input type="hidden" name="{html.escape(k)}" value="{html.escape(v)}"/>'
            for k, v in self.fields.items()
        )
        return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Logging out</title></head>
<body>
  <form method="POST" action="{html.escape(self.action)}" target="_self">
{inputs}
    <noscript><button type="submit">Continue</button></noscript>
  </form>
  <script>document.forms[0].submit();</script>
</body>
</html>"""


class AuthManager:
    def __init__(
        self,
        config: AuthConfig | None = None,
        *,
        storage: SessionStorage | None = None,
        http_client: httpx.AsyncClient | None = None,
        lock: CrossInstanceLock | None = None,
        clock: Callable[[], int] = now_ms,
        refresh_debounce: float = REFRESH_DEBOUNCE_SECONDS,
    ):
        self.config = config or AuthConfig.from_env()
        self.storage = storage or SessionStorage(self.config.storage_url)
        self._http = http_client or httpx.AsyncClient(timeout=self.config.http_timeout)
        self._owns_http = http_client is None
        self.lock = lock or CrossInstanceLock("tokens", self.config.lock_dir)
        self._clock = clock

        self.tokens = TokenStore(self.storage)
        self.discovery = DiscoveryCache(self.config.issuer, self.storage, self._http)
        self.refresher = RefreshEngine(self.config, self.tokens, self.discovery, self.lock, self._http, clock)
        self.login = LoginController(self.config, self.tokens, self.discovery, self.lock, self._http, self.storage)

        self._refresh_debounced = Debouncer(self.refresher.lock_and_refresh_all, refresh_debounce)
        self._tokens_init: asyncio.Task | None = None

    async def __aenter__(self) -> "AuthManager":
        await self.ready()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def ready(self) -> None:
        """Wait for the initial refresh pass, starting it on first call."""
        if self._tokens_init is None:
            self._tokens_init = asyncio.ensure_future(self.refresher.lock_and_refresh_all())
        await asyncio.shield(self._tokens_init)

    async def aclose(self) -> None:
        await self._refresh_debounced.aclose()
        if self._owns_http:
            await self._http.aclose()

    # --- derived values ---

    @property
    def security_level(self) -> int:
        return self.tokens.security_level

    @property
    def effective_token(self) -> ClientToken | None:
        return self.tokens.effective_token()

    @property
    def app_id(self) -> str:
        token = self.effective_token
        return token.decoded.client_id if token else ""

    @property
    def user_id(self) -> str:
        token = self.effective_token
        return token.decoded.sub if token else ""

    @property
    def is_logged_in(self) -> bool:
        return self.security_level != UNAUTHENTICATED

    # --- operations ---

    async def load_openid_config(self) -> OpenIdConfig:
        return await self.discovery.load_config()

    async def get_auth_token(self, app_id: str | None = None) -> ClientToken | None:
        """
        Weakest sufficient token for app_id (default: this app) at the current security level.
        Returns None when no token can be obtained.
        """
        if app_id is None:
            app_id = self.app_id
        await self.ready()
        effective = self.effective_token
        if (effective.decoded.exp if effective else 0) * 1000 - self._clock() < EXPIRY_MARGIN_MS:
            logger.debug("Force refresh current token")
            await self.refresher.lock_and_refresh_all()
        self._refresh_debounced()

        effective = self.effective_token
        if effective is not None and effective.decoded.has_audience(app_id):
            return effective

        async with self.lock.hold():
            cached = self.tokens.prune_cached(self._clock())
        level = self.security_level
        for token in cached:
            if token.decoded.has_audience(app_id) and token.decoded.level == level:
                return token

        logger.debug("Force refresh current token to %s", app_id)
        await self.refresher.lock_and_refresh_level(level, app_id, force=True)
        return self.effective_token

    async def start_login(
        self,
        redirect: str,
        permissions: list[Permission] | None = None,
        additional_params: dict[str, str] | None = None,
        callback: str | None = None,
    ) -> str:
        return await self.login.start_login(redirect, permissions, additional_params, callback)

    async def finish_login(
        self,
        code: str,
        state: str,
        activate: Callable[[str], Awaitable[None]] | None = None,
        callback: str | None = None,
    ) -> str:
        return await self.login.finish_login(code, state, activate, callback)

    async def logout(self, callback: str | None = None) -> LogoutRequest:
        """Clear every token and return the end-session form the browser must submit."""
        id_token = self.tokens.id_token
        openid_config = await self.discovery.load_config()
        async with self.lock.hold():
            logger.info("Logging out")
            self.tokens.clear()
        return LogoutRequest(
            action=openid_config.end_session_endpoint,
            fields={
                "id_token_hint": id_token,
                "client_id": self.config.client_app_id,
                "post_logout_redirect_uri": callback or self.config.logout_callback_url,
            },
        )
