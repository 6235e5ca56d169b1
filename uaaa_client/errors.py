"""
Exceptions raised by the session manager.
Discovery and code-exchange failures propagate to the caller; RefreshFailed is recovered inside the refresh engine.
"""


class AuthError(Exception):
    """Base class for session manager errors."""


class NetworkError(AuthError):
    """Discovery or token endpoint unreachable, non-2xx, or returned an unusable body."""


class TokenExchangeFailed(NetworkError):
    """Authorization code exchange rejected by the token endpoint."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class LoginError(AuthError):
    """Login callback cannot be matched to a pending login; the flow must restart."""


class MissingLoginState(LoginError):
    """finish_login called without a preceding start_login."""


class StateMismatch(LoginError):
    """Callback state does not match the stored one (stale callback or CSRF)."""


class RefreshFailed(AuthError):
    """Refresh grant rejected; the refresh token is dropped and the access token left to expire."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
