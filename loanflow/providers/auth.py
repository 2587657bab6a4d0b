import base64
import hashlib
import hmac
import uuid
from datetime import datetime
from typing import Dict, Optional

from loanflow.errors import AuthenticationError
from loanflow.utils.time import provider_timestamp

SIGNED_METHODS = {"GET", "POST", "PUT"}


def signing_payload(method: str, timestamp: str, body: Optional[str]) -> str:
    """GET signs the timestamp alone; POST/PUT sign "<json-body>.<timestamp>"."""
    method = method.upper()
    if method not in SIGNED_METHODS:
        raise AuthenticationError(f"Unsupported HTTP method for signing: {method}")
    if method == "GET":
        return timestamp
    if body is None:
        raise AuthenticationError(f"Request body is required to sign a {method} request")
    return f"{body}.{timestamp}"


def sign(secret_key: str, method: str, timestamp: str, body: Optional[str] = None) -> str:
    if not secret_key:
        raise AuthenticationError("DSP_SECRET_KEY is not configured")
    data = signing_payload(method, timestamp, body)
    digest = hmac.new(secret_key.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def auth_headers(
    secret_key: str,
    channel_code: str,
    method: str,
    body: Optional[str] = None,
    at: Optional[datetime] = None,
) -> Dict[str, str]:
    if not channel_code:
        raise AuthenticationError("DSP_CHANNEL_CODE is not configured")
    ts = provider_timestamp(at)
    return {
        "X-Timestamp": ts,
        "X-SourcingChannelCode": channel_code,
        "X-Signature": sign(secret_key, method, ts, body),
        "X-Request-ID": uuid.uuid4().hex,
    }
