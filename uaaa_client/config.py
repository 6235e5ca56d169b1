"""
Session manager configuration. Defaults come from the environment; explicit values win.
No secrets here: the client is public (PKCE), so only identifiers and URLs are configured.
"""
import os
from dataclasses import dataclass, replace
from urllib.parse import urljoin

# OIDC issuer; discovery document is served under {ISSUER}/.well-known/openid-configuration
ISSUER = os.environ.get("UAAA_ISSUER", "http://127.0.0.1:9000").rstrip("/")

# App ids used for client_id and permission templates ({{client}}, {{server}}, {{issuer}})
CLIENT_APP_ID = os.environ.get("UAAA_CLIENT_APP_ID", "uaaa-client")
SERVER_APP_ID = os.environ.get("UAAA_SERVER_APP_ID", "uaaa-server")
ISSUER_APP_ID = os.environ.get("UAAA_ISSUER_APP_ID", "uaaa")

# Origin the fixed callback paths are resolved against
APP_ORIGIN = os.environ.get("UAAA_APP_ORIGIN", "http://127.0.0.1:8000").rstrip("/")

CALLBACK_PATH = "/auth/callback"
LOGOUT_CALLBACK_PATH = "/auth/logout"

# Shared by every process of the same session; SQLite file so separate processes see one store
STORAGE_URL = os.environ.get("UAAA_STORAGE_URL", "sqlite:///./uaaa_session.db")

# Directory holding <name>.lock files for the cross-instance lock
LOCK_DIR = os.environ.get("UAAA_LOCK_DIR", ".uaaa_locks")

HTTP_TIMEOUT = float(os.environ.get("UAAA_HTTP_TIMEOUT", "10.0"))


@dataclass(frozen=True)
class AuthConfig:
    issuer: str = ISSUER
    client_app_id: str = CLIENT_APP_ID
    server_app_id: str = SERVER_APP_ID
    issuer_app_id: str = ISSUER_APP_ID
    app_origin: str = APP_ORIGIN
    storage_url: str = STORAGE_URL
    lock_dir: str = LOCK_DIR
    http_timeout: float = HTTP_TIMEOUT

    @classmethod
    def from_env(cls, **overrides) -> "AuthConfig":
        """Environment defaults with explicit (non-None) overrides merged on top."""
        return replace(cls(), **{k: v for k, v in overrides.items() if v is not None})

    @property
    def callback_url(self) -> str:
        return urljoin(self.app_origin + "/", CALLBACK_PATH)

    @property
    def logout_callback_url(self) -> str:
        return urljoin(self.app_origin + "/", LOGOUT_CALLBACK_PATH)
