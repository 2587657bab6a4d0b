import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from loanflow.errors import ApiError, AuthenticationError, TransientProviderError
from loanflow.observability.logging import log
from loanflow.providers.auth import auth_headers
from loanflow.providers.operations import OPERATIONS, Operation
from loanflow.settings import settings

# Provider-specific names for "the handle of the thing you just created"
REFERENCE_KEYS = ("utilityReferenceId", "fetchRequestId", "pledgeRequestId", "fenixLoanAccountId", "opportunityId")


@dataclass
class ProviderResult:
    referenceId: Optional[str] = None
    status: Optional[str] = None
    subStatus: Optional[str] = None
    webUrl: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


def normalize_response(payload: Any) -> ProviderResult:
    data = payload
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        data = payload["data"]
    if not isinstance(data, dict):
        return ProviderResult(details={"value": data} if data is not None else {})
    ref = next((str(data[k]) for k in REFERENCE_KEYS if data.get(k)), None)
    status = data.get("status")
    return ProviderResult(
        referenceId=ref,
        status=str(status).upper() if status else None,
        subStatus=data.get("subStatus"),
        webUrl=data.get("webUrl") or data.get("redirectUrl"),
        details=data,
    )


def _error_message(status_code: int, body: Any) -> str:
    if isinstance(body, dict):
        for k in ("fenixErrorCode", "message", "error"):
            if body.get(k):
                return f"Provider error {status_code}: {body[k]}"
    return f"Provider error {status_code}"


def _body_of(resp: httpx.Response) -> Any:
    if not resp.content:
        return {}
    try:
        return resp.json()
    except ValueError:
        return {"raw": resp.text[:500]}


class ProviderClient:
    """
    Signed async client for the lending provider.

    Raises AuthenticationError (missing credentials or 401), TransientProviderError
    (network, timeout, 429, 5xx) or ApiError (any other 4xx). Retrying is the
    executor's job, never this client's.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        secret_key: Optional[str] = None,
        channel_code: Optional[str] = None,
        timeout: Optional[float] = None,
        long_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.PROVIDER_BASE_URL).rstrip("/")
        self.secret_key = secret_key if secret_key is not None else settings.DSP_SECRET_KEY
        self.channel_code = channel_code if channel_code is not None else settings.DSP_CHANNEL_CODE
        self.timeout = float(timeout or settings.PROVIDER_TIMEOUT_SEC)
        self.long_timeout = float(long_timeout or settings.PROVIDER_LONG_TIMEOUT_SEC)
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def call(self, operation_name: str, params: Dict[str, Any]) -> ProviderResult:
        op: Operation = OPERATIONS[operation_name]
        try:
            path, body = op.render(params)
        except KeyError as e:
            raise ApiError(str(e.args[0]), status=0) from None
        payload = await self.request(
            op.method, path, body, timeout=self.long_timeout if op.long_running else None,
            operation=operation_name,
        )
        return normalize_response(payload)

    async def request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        operation: str = "",
    ) -> Any:
        method = method.upper()
        # The signature covers these exact bytes, so serialize once and send them as-is
        body_text = json.dumps(body, separators=(",", ":"), ensure_ascii=False) if method in ("POST", "PUT") else None
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        headers.update(auth_headers(self.secret_key, self.channel_code, method, body_text))

        start = time.time()
        try:
            resp = await self._client.request(
                method,
                path,
                content=body_text.encode("utf-8") if body_text is not None else None,
                headers=headers,
                timeout=timeout or self.timeout,
            )
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            log(event="provider_call", operation=operation, method=method, path=path,
                ok=False, errorType=type(e).__name__, elapsedMs=int((time.time() - start) * 1000))
            raise TransientProviderError(f"Provider unreachable: {type(e).__name__}", status=0) from e

        elapsed = int((time.time() - start) * 1000)
        code = resp.status_code
        log(event="provider_call", operation=operation, method=method, path=path,
            statusCode=code, ok=resp.is_success, elapsedMs=elapsed,
            requestId=headers.get("X-Request-ID"))

        if resp.is_success:
            return _body_of(resp)

        body_out = _body_of(resp)
        if code == 401:
            raise AuthenticationError(_error_message(code, body_out))
        if code == 429 or code >= 500:
            raise TransientProviderError(_error_message(code, body_out), status=code, details=body_out)
        raise ApiError(_error_message(code, body_out), status=code, details=body_out)
