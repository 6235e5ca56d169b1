"""
Token store: one access token per security level, plus a pool of superseded tokens for other audiences.
Store rows are persisted; every accessor re-reads storage so another instance's writes are seen.
Mutating methods are only called with the "tokens" lock held.
"""
import logging
import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any

import jwt

from uaaa_client.storage import PersistedValue, SessionStorage

logger = logging.getLogger(__name__)

# Tokens this close to expiry are treated as dead (ms)
EXPIRY_MARGIN_MS = 3_000

UNAUTHENTICATED = -1


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class TokenClaims:
    iss: str = ""
    sub: str = ""
    aud: str | list[str] = ""
    client_id: str = ""
    sid: str = ""
    jti: str = ""
    perm: list[str] = field(default_factory=list)
    level: int = 0
    exp: int = 0
    iat: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenClaims":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def remaining_ms(self, now: int) -> int:
        return self.exp * 1000 - now

    @property
    def lifetime_ms(self) -> int:
        return (self.exp - self.iat) * 1000

    def has_audience(self, app_id: str) -> bool:
        if isinstance(self.aud, list):
            return app_id in self.aud
        return self.aud == app_id


def parse_jwt(token: str) -> TokenClaims:
    """Decode the payload segment without verifying it; the resource server verifies."""
    return TokenClaims.from_dict(jwt.decode(token, options={"verify_signature": False}))


@dataclass
class ClientToken:
    token: str
    decoded: TokenClaims
    refresh_token: str | None = None
    expire_soon: bool = False

    @classmethod
    def from_raw(cls, token: str, refresh_token: str | None = None) -> "ClientToken":
        return cls(token=token, decoded=parse_jwt(token), refresh_token=refresh_token or None)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClientToken":
        return cls(
            token=data["token"],
            decoded=TokenClaims.from_dict(data.get("decoded") or {}),
            refresh_token=data.get("refresh_token"),
            expire_soon=bool(data.get("expire_soon", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"token": self.token, "decoded": asdict(self.decoded)}
        if self.refresh_token:
            data["refresh_token"] = self.refresh_token
        if self.expire_soon:
            data["expire_soon"] = True
        return data


def _decode_slots(raw: list) -> list[ClientToken | None]:
    return [ClientToken.from_dict(t) if t else None for t in raw]


def _encode_slots(tokens: list[ClientToken | None]) -> list:
    return [t.to_dict() if t else None for t in tokens]


def _decode_pool(raw: list) -> list[ClientToken]:
    return [ClientToken.from_dict(t) for t in raw if t]


def _encode_pool(tokens: list[ClientToken]) -> list:
    return [t.to_dict() for t in tokens]


class TokenStore:
    def __init__(self, storage: SessionStorage):
        self._tokens = PersistedValue(storage, "tokens", list, decode=_decode_slots, encode=_encode_slots)
        self._cached = PersistedValue(storage, "cached_tokens", list, decode=_decode_pool, encode=_encode_pool)
        self._level = PersistedValue(storage, "level", UNAUTHENTICATED)
        self._id_token = PersistedValue(storage, "id_token", "")

    # --- primary tokens ---

    def tokens(self) -> list[ClientToken | None]:
        return self._tokens.value

    def get(self, level: int) -> ClientToken | None:
        if level < 0:
            return None
        tokens = self._tokens.value
        return tokens[level] if level < len(tokens) else None

    def put(self, level: int, token: ClientToken) -> None:
        """Store token at level. A token claiming a different level is rejected."""
        if level < 0 or token.decoded.level != level:
            raise ValueError(f"Token {token.decoded.jti} has level {token.decoded.level}, not {level}")
        tokens = self._tokens.value
        if len(tokens) <= level:
            tokens.extend([None] * (level + 1 - len(tokens)))
        tokens[level] = token
        self._tokens.value = tokens

    def remove(self, level: int) -> None:
        tokens = self._tokens.value
        if 0 <= level < len(tokens):
            tokens[level] = None
            while tokens and tokens[-1] is None:
                tokens.pop()
            self._tokens.value = tokens

    def drop_refresh_token(self, level: int) -> None:
        token = self.get(level)
        if token is not None and token.refresh_token:
            token.refresh_token = None
            self.put(level, token)

    # --- security level ---

    @property
    def security_level(self) -> int:
        return self._level.value

    @security_level.setter
    def security_level(self, level: int) -> None:
        self._level.value = level

    def effective_token(self) -> ClientToken | None:
        return self.get(self.security_level)

    def recompute_security_level(self, now: int) -> int:
        """Highest level holding an unexpired token, or -1."""
        level = UNAUTHENTICATED
        for i, token in enumerate(self._tokens.value):
            if token and token.decoded.exp * 1000 > now:
                level = i
        self._level.value = level
        return level

    # --- cached pool ---

    def cache(self, token: ClientToken) -> None:
        pool = self._cached.value
        pool.append(token)
        self._cached.value = pool

    def prune_cached(self, now: int) -> list[ClientToken]:
        """Drop pooled tokens within EXPIRY_MARGIN_MS of expiry and return the rest."""
        kept = []
        for token in self._cached.value:
            remaining = token.decoded.remaining_ms(now)
            if remaining < EXPIRY_MARGIN_MS:
                logger.debug("Cached token dropped jti=%s remaining=%sms", token.decoded.jti, remaining)
                continue
            kept.append(token)
        self._cached.value = kept
        return kept

    def cached(self) -> list[ClientToken]:
        return self._cached.value

    # --- identity token ---

    @property
    def id_token(self) -> str:
        return self._id_token.value

    @id_token.setter
    def id_token(self, value: str) -> None:
        self._id_token.value = value

    def clear(self) -> None:
        self._tokens.value = []
        self._cached.value = []
        self._level.value = UNAUTHENTICATED
        self._id_token.value = ""
