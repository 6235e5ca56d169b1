"""
Refresh engine: per-level refresh_token grant with rotation into the cached pool.

Policy:
- a token is refreshed once more than half its lifetime is used (or when forced);
- a refresh that no longer extends expiry marks the new token expire_soon, and it is never refreshed again;
- a failed refresh drops the refresh token; the access token then lives out its natural expiry;
- a token within EXPIRY_MARGIN_MS of expiry that was not refreshed is removed.
"""
import asyncio
import logging
from typing import Callable

import httpx
import jwt

from uaaa_client.config import AuthConfig
from uaaa_client.discovery import DiscoveryCache
from uaaa_client.errors import NetworkError, RefreshFailed
from uaaa_client.locks import CrossInstanceLock
from uaaa_client.tokens import EXPIRY_MARGIN_MS, UNAUTHENTICATED, ClientToken, TokenStore, now_ms

logger = logging.getLogger(__name__)


class RefreshEngine:
    def __init__(
        self,
        config: AuthConfig,
        store: TokenStore,
        discovery: DiscoveryCache,
        lock: CrossInstanceLock,
        http_client: httpx.AsyncClient,
        clock: Callable[[], int] = now_ms,
    ):
        self._config = config
        self._store = store
        self._discovery = discovery
        self._lock = lock
        self._http = http_client
        self._clock = clock

    def _current_app_id(self) -> str:
        token = self._store.effective_token()
        return token.decoded.client_id if token else ""

    async def _request_refresh(self, refresh_token: str, target: str) -> ClientToken:
        """refresh_token grant for target audience. Raises RefreshFailed on any failure."""
        try:
            openid_config = await self._discovery.load_config()
            r = await self._http.post(
                openid_config.token_endpoint,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self._config.client_app_id,
                    "target_app_id": target,
                },
                headers={"Accept": "application/json"},
            )
        except (NetworkError, httpx.HTTPError) as e:
            raise RefreshFailed(f"Failed to refresh token: {e}") from e
        if not r.is_success:
            raise RefreshFailed(f"Failed to refresh token: {r.status_code}", status_code=r.status_code)
        try:
            data = r.json()
            return ClientToken.from_raw(data["access_token"], data.get("refresh_token"))
        except (ValueError, KeyError, TypeError, jwt.InvalidTokenError) as e:
            raise RefreshFailed(f"Unusable refresh response: {e}") from e

    async def refresh_level(
        self,
        level: int,
        target: str | None = None,
        force: bool = False,
        now: int | None = None,
    ) -> None:
        """Refresh the token at level if due. Caller holds the lock."""
        token = self._store.get(level)
        if token is None:
            return
        if target is None:
            target = self._current_app_id()
        if now is None:
            now = self._clock()
        remaining = token.decoded.remaining_ms(now)
        if not force and remaining > token.decoded.lifetime_ms / 2:
            return
        logger.debug("Refreshing token level=%s target=%s", level, target)
        if token.refresh_token and not token.expire_soon:
            try:
                refreshed = await self._request_refresh(token.refresh_token, target)
                if now - token.decoded.iat * 1000 >= EXPIRY_MARGIN_MS and refreshed.decoded.exp <= token.decoded.exp:
                    # Provider stopped extending this session; do not try again
                    refreshed.expire_soon = True
                try:
                    self._store.put(level, refreshed)
                except ValueError as e:
                    raise RefreshFailed(str(e)) from e
                self._store.cache(token)
                logger.info("Token level=%s refreshed to %s", level, target)
                return
            except RefreshFailed as e:
                self._store.drop_refresh_token(level)
                logger.warning("Token level=%s failed to refresh: %s", level, e)
        if remaining < EXPIRY_MARGIN_MS:
            logger.info("Token level=%s dropped remaining=%sms", level, remaining)
            self._store.remove(level)

    async def refresh_all(self, now: int | None = None) -> int:
        """Refresh every level up to the current one against a single `now`; returns the new level."""
        level = self._store.security_level
        if level == UNAUTHENTICATED:
            return level
        if now is None:
            now = self._clock()
        logger.debug("Refreshing tokens at %s", now)
        target = self._current_app_id()
        results = await asyncio.gather(
            *(self.refresh_level(i, target, now=now) for i in range(level + 1)),
            return_exceptions=True,
        )
        new_level = self._store.recompute_security_level(now)
        logger.debug("Security level is %s", new_level)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return new_level

    async def lock_and_refresh_level(
        self,
        level: int,
        target: str | None = None,
        force: bool = False,
        now: int | None = None,
    ) -> None:
        async with self._lock.hold():
            await self.refresh_level(level, target, force, now)

    async def lock_and_refresh_all(self) -> int:
        async with self._lock.hold():
            return await self.refresh_all()
