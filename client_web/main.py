"""
Client Web App: browser-facing routes around the uaaa_client session manager.
GET /, /start-login, /auth/callback, /logout, /auth/logout, /call-me.
"""
import html
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

import httpx
from fastapi import Depends, FastAPI
from fastapi.responses import HTMLResponse, RedirectResponse

from client_web.config import HOST, PORT, RESOURCE_SERVER_URL
from uaaa_client.errors import LoginError, NetworkError
from uaaa_client.session import AuthManager

logger = logging.getLogger(__name__)

# Single shared manager; created on first use so importing the app has no side effects
_auth_manager: AuthManager | None = None


def get_auth_manager() -> AuthManager:
    global _auth_manager
    if _auth_manager is None:
        _auth_manager = AuthManager()
    return _auth_manager


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Close the shared manager on shutdown. Its initial refresh runs on the first request."""
    yield
    if _auth_manager is not None:
        await _auth_manager.aclose()


app = FastAPI(title="Client Web", version="0.4.0", lifespan=lifespan)

Manager = Annotated[AuthManager, Depends(get_auth_manager)]


def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
  <h1>{html.escape(title)}</h1>
  {body}
  <p><a href="/">Home</a></p>
</body>
</html>""",
        status_code=status_code,
    )


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "client_web"}


@app.get("/", response_class=HTMLResponse)
async def home(auth: Manager):
    """Home page: login status and links."""
    await auth.ready()
    if auth.is_logged_in:
        status = f"Logged in as <code>{html.escape(auth.user_id)}</code> (level {auth.security_level})"
    else:
        status = "Not logged in"
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>OAuth Client</title></head>
<body>
  <h1>OAuth2 + OIDC Client</h1>
  <p>{status}</p>
  <p><a href="/start-login">Log in</a> | <a href="/logout">Log out</a></p>
  <p><a href="/call-me">Call /me</a> (resource server; requires login)</p>
</body>
</html>"""
    )


@app.get("/start-login")
async def start_login(auth: Manager, redirect: str = "/"):
    """Store PKCE login state and redirect to the authorization endpoint."""
    try:
        url = await auth.start_login(redirect)
    except NetworkError as e:
        return _page("Login error", f"<p>{html.escape(str(e))}</p>", status_code=502)
    return RedirectResponse(url=url, status_code=302)


@app.get("/auth/callback", response_class=HTMLResponse)
async def callback(
    auth: Manager,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
):
    """Handle redirect from the identity provider: exchange code, then go to the stored redirect."""
    if error:
        return _page("Login error", f"<p>{html.escape(error_description or error)}</p>", status_code=400)
    if not state:
        return _page("Error", "<p>Missing state parameter.</p>", status_code=400)
    if not code:
        return _page("Error", "<p>Missing code parameter.</p>", status_code=400)
    try:
        redirect = await auth.finish_login(code, state)
    except LoginError as e:
        logger.info("Rejected login callback: %s", e)
        return _page("Error", "<p>Invalid or expired state. Please try logging in again.</p>", status_code=400)
    except NetworkError as e:
        return _page("Token exchange failed", f"<p>{html.escape(str(e))}</p>", status_code=502)
    return RedirectResponse(url=redirect, status_code=302)


@app.get("/logout", response_class=HTMLResponse)
async def logout(auth: Manager):
    """Clear local tokens and post the end-session form to the identity provider."""
    try:
        request = await auth.logout()
    except NetworkError as e:
        return _page("Logout error", f"<p>{html.escape(str(e))}</p>", status_code=502)
    return HTMLResponse(request.render_form())


@app.get("/auth/logout", response_class=HTMLResponse)
def logged_out():
    """Landing page after the identity provider ends the session."""
    return _page("Logged out", "<p>You are logged out.</p>")


@app.get("/call-me", response_class=HTMLResponse)
async def call_me(auth: Manager):
    """Call resource server GET /me with the current access token."""
    token = await auth.get_auth_token()
    if token is None:
        return _page("Call /me", '<p>No tokens. <a href="/start-login">Log in</a> first.</p>')

    try:
        async with httpx.AsyncClient(timeout=auth.config.http_timeout) as client:
            r = await client.get(
                f"{RESOURCE_SERVER_URL}/me",
                headers={"Authorization": f"Bearer {token.token}"},
            )
    except httpx.HTTPError as e:
        return _page("Call /me", f"<p>Request failed: {html.escape(str(e))}</p>", status_code=502)

    if r.headers.get("content-type", "").startswith("application/json"):
        body_str = html.escape(json.dumps(r.json(), indent=2))
    else:
        body_str = html.escape(r.text[:500] if r.text else "(no body)")
    return _page(
        "Call /me",
        f'<p>Status: {r.status_code}</p>\n  <pre>{body_str}</pre>\n  <p><a href="/call-me">Call /me again</a></p>',
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "client_web.main:app",
        host=HOST,
        port=PORT,
        reload=True,
    )
