"""
OpenID Connect discovery document, fetched once and kept in persistent storage.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass, field, fields
from typing import Any

import httpx

from uaaa_client.errors import NetworkError
from uaaa_client.storage import PersistedValue, SessionStorage

logger = logging.getLogger(__name__)

OPENID_CONFIG_KEY = "openid_config"


@dataclass(frozen=True)
class OpenIdConfig:
    issuer: str = ""
    authorization_endpoint: str = ""
    token_endpoint: str = ""
    userinfo_endpoint: str = ""
    end_session_endpoint: str = ""
    jwks_uri: str = ""
    response_types_supported: list[str] = field(default_factory=list)
    subject_types_supported: list[str] = field(default_factory=list)
    id_token_signing_alg_values_supported: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OpenIdConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def discovery_url(issuer: str) -> str:
    return f"{issuer.rstrip('/')}/.well-known/openid-configuration"


class DiscoveryCache:
    """
    load_config() returns the stored document, or fetches it. Concurrent callers during a
    fetch share the one pending request (per instance; other processes may fetch their own).
    """

    def __init__(self, issuer: str, storage: SessionStorage, http_client: httpx.AsyncClient):
        self.issuer = issuer
        self._cached = PersistedValue(storage, OPENID_CONFIG_KEY, None, decode=OpenIdConfig.from_dict)
        self._http = http_client
        self._pending: asyncio.Task | None = None

    async def load_config(self) -> OpenIdConfig:
        cached = self._cached.value
        if cached is not None:
            return cached
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._fetch())
        # Shield so one cancelled caller does not cancel the fetch the others are waiting on
        return await asyncio.shield(self._pending)

    async def _fetch(self) -> OpenIdConfig:
        url = discovery_url(self.issuer)
        try:
            logger.debug("Fetching discovery document %s", url)
            try:
                r = await self._http.get(url, headers={"Accept": "application/json"})
            except httpx.HTTPError as e:
                raise NetworkError(f"Discovery request failed: {e}") from e
            if not r.is_success:
                raise NetworkError(f"Discovery request failed: {r.status_code}")
            try:
                data = r.json()
            except ValueError as e:
                raise NetworkError(f"Discovery document is not JSON: {e}") from e
            if not isinstance(data, dict):
                raise NetworkError("Discovery document is not a JSON object")
            config = OpenIdConfig.from_dict(data)
            self._cached.value = config.to_dict()
            logger.info("Loaded discovery document for %s", config.issuer or self.issuer)
            return config
        finally:
            # Release the slot; on success later calls hit the stored copy, on failure they retry
            self._pending = None
