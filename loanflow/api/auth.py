"""
x-api-key guard for the chat surface. An empty API_KEY leaves the API open
for local development.
"""
import hmac

from fastapi import Header, HTTPException

from loanflow.observability.logging import log
from loanflow.settings import settings


def require_api_key(x_api_key: str = Header(default="", alias="x-api-key")) -> None:
    expected = settings.API_KEY
    if not expected:
        return
    if not x_api_key:
        log(event="auth_rejected", reason="missing_key")
        raise HTTPException(status_code=401, detail="Missing API key")
    if not hmac.compare_digest(x_api_key.encode("utf-8"), expected.encode("utf-8")):
        log(event="auth_rejected", reason="key_mismatch")
        raise HTTPException(status_code=401, detail="Invalid API key")
