"""
Client Web configuration. Identity provider settings live in uaaa_client.config (UAAA_* env vars).
"""
import os

# Resource Server base URL called by /call-me
RESOURCE_SERVER_URL = os.environ.get("OAUTH_RESOURCE_SERVER_URL", "http://127.0.0.1:7000").rstrip("/")

HOST = os.environ.get("CLIENT_WEB_HOST", "127.0.0.1")
PORT = int(os.environ.get("CLIENT_WEB_PORT", "8000"))
