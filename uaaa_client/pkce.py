"""
PKCE (RFC 7636) and authorization request helpers for login initiation.
S256 only; state generation; uperm:// permission scopes.
"""
import hashlib
import re
import secrets
from base64 import urlsafe_b64encode
from urllib.parse import quote, urlencode

# Same characters JS encodeURIComponent leaves alone
_URI_COMPONENT_SAFE = "-_.!~*'()"

_NOT_VERIFIER_CHAR = re.compile(r"[^A-Za-z0-9_-]")

VERIFIER_LENGTH = 43

DEFAULT_PERMISSIONS = ["{{server}}/**", "{{issuer}}/session/claim"]

BASE_SCOPES = ["openid", "profile", "email"]


def generate_state() -> str:
    """Opaque value for CSRF protection; returned in callback."""
    return secrets.token_urlsafe(32)


def generate_code_verifier() -> str:
    """
    32 random bytes read as code points, filtered to [A-Za-z0-9_-] and cut to 43 chars.
    Only bytes that already are verifier characters survive, so the result is usually much
    shorter than 43; providers for this client accept it.
    """
    raw = "".join(chr(b) for b in secrets.token_bytes(32))
    return _NOT_VERIFIER_CHAR.sub("", raw)[:VERIFIER_LENGTH]


def generate_code_challenge(code_verifier: str) -> str:
    """S256 challenge: base64url(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def map_permission(
    permission: str | dict,
    *,
    client_app_id: str,
    server_app_id: str,
    issuer_app_id: str,
) -> str:
    """
    Permission (path or {"path", "optional"}) -> uperm:// scope.
    {{client}}, {{server}} and {{issuer}} in the path are replaced by the app ids.
    """
    if isinstance(permission, str):
        path, optional = permission, False
    else:
        path, optional = permission["path"], bool(permission.get("optional", False))
    path = (
        path.replace("{{client}}", client_app_id)
        .replace("{{server}}", server_app_id)
        .replace("{{issuer}}", issuer_app_id)
    )
    schema = "uperm+optional" if optional else "uperm"
    return f"{schema}://{path}"


def build_scope(permission_scopes: list[str]) -> str:
    """openid profile email + permission scopes, each percent-encoded, space-joined."""
    return " ".join(quote(s, safe=_URI_COMPONENT_SAFE) for s in BASE_SCOPES + permission_scopes)


def build_authorize_url(
    *,
    authorization_endpoint: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    state: str,
    code_challenge: str,
    additional_params: dict[str, str] | None = None,
) -> str:
    """Build the authorization URL; PKCE and state are set last so extra params cannot replace them."""
    params = {
        "client_id": client_id,
        "scope": scope,
        "response_type": "code",
        "confidential": "0",
        "redirect_uri": redirect_uri,
    }
    params.update(additional_params or {})
    params["code_challenge"] = code_challenge
    params["code_challenge_method"] = "S256"
    params["state"] = state
    sep = "&" if "?" in authorization_endpoint else "?"
    return f"{authorization_endpoint}{sep}{urlencode(params)}"
