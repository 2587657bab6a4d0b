import asyncio
import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone

import httpx
import pytest

from loanflow.errors import ApiError, AuthenticationError, TransientProviderError
from loanflow.providers.auth import auth_headers, sign, signing_payload
from loanflow.providers.client import ProviderClient, normalize_response
from loanflow.providers.operations import OPERATIONS

SECRET = "s3cret"


def _client(handler):
    return ProviderClient(
        base_url="https://provider.test/los/api/v1",
        secret_key=SECRET,
        channel_code="CHAN",
        transport=httpx.MockTransport(handler),
    )


def _expected_signature(data: str) -> str:
    digest = hmac.new(SECRET.encode(), data.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def test_signing_payload_per_method():
    assert signing_payload("get", "20260101120000", None) == "20260101120000"
    assert signing_payload("POST", "20260101120000", '{"a":1}') == '{"a":1}.20260101120000'
    with pytest.raises(AuthenticationError):
        signing_payload("DELETE", "20260101120000", None)
    with pytest.raises(AuthenticationError):
        signing_payload("PUT", "20260101120000", None)


def test_auth_headers_carry_verifiable_signature():
    at = datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
    h = auth_headers(SECRET, "CHAN", "POST", '{"x":1}', at=at)
    assert h["X-Timestamp"] == "20260304050607"
    assert h["X-SourcingChannelCode"] == "CHAN"
    assert h["X-Signature"] == _expected_signature('{"x":1}.20260304050607')
    assert len(h["X-Request-ID"]) == 32


def test_missing_credentials_raise_authentication_error():
    with pytest.raises(AuthenticationError):
        sign("", "GET", "20260101120000")
    with pytest.raises(AuthenticationError):
        auth_headers(SECRET, "", "GET")


def test_post_signs_the_exact_bytes_sent():
    seen = {}

    def handler(request: httpx.Request):
        seen["request"] = request
        return httpx.Response(200, json={"data": {"utilityReferenceId": "U-1", "status": "pending"}})

    client = _client(handler)
    result = asyncio.run(client.call("initiate_kyc", {"opportunityId": "OPP-1", "redirectionUrl": "https://r.example"}))

    request = seen["request"]
    assert request.method == "POST"
    assert request.url.path == "/los/api/v1/utility/kyc/init"
    body = request.content.decode()
    assert json.loads(body) == {"opportunityId": "OPP-1", "redirectionUrl": "https://r.example"}
    ts = request.headers["X-Timestamp"]
    assert request.headers["X-Signature"] == _expected_signature(f"{body}.{ts}")
    assert result.referenceId == "U-1"
    assert result.status == "PENDING"


def test_get_renders_path_and_signs_timestamp():
    seen = {}

    def handler(request: httpx.Request):
        seen["request"] = request
        return httpx.Response(200, json={"status": "APPROVED", "subStatus": None})

    result = asyncio.run(_client(handler).call("get_kyc_status", {"utilityReferenceId": "U 1"}))

    request = seen["request"]
    assert request.method == "GET"
    assert request.url.raw_path.decode().endswith("/utility/kyc/U%201")
    assert request.content == b""
    assert request.headers["X-Signature"] == _expected_signature(request.headers["X-Timestamp"])
    assert result.status == "APPROVED"


def test_missing_path_parameter_is_an_api_error():
    client = _client(lambda request: httpx.Response(200, json={}))
    with pytest.raises(ApiError):
        asyncio.run(client.call("get_mandate_status", {}))


@pytest.mark.parametrize("status,exc", [
    (401, AuthenticationError),
    (429, TransientProviderError),
    (500, TransientProviderError),
    (503, TransientProviderError),
    (400, ApiError),
    (422, ApiError),
])
def test_error_status_mapping(status, exc):
    client = _client(lambda request: httpx.Response(status, json={"fenixErrorCode": "E42"}))
    with pytest.raises(exc) as info:
        asyncio.run(client.call("create_lead", {"mobileNumber": "9876543210"}))
    assert "E42" in str(info.value)
    if status in (400, 422):
        assert not isinstance(info.value, TransientProviderError)
        assert info.value.status == status
        assert info.value.details == {"fenixErrorCode": "E42"}


def test_network_failure_is_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransientProviderError) as info:
        asyncio.run(_client(handler).call("create_lead", {}))
    assert info.value.status == 0


def test_normalize_response_picks_first_reference_key():
    r = normalize_response({"data": {"fetchRequestId": "F-1", "status": "otp_sent", "redirectUrl": "https://x"}})
    assert r.referenceId == "F-1"
    assert r.status == "OTP_SENT"
    assert r.webUrl == "https://x"
    assert normalize_response([1, 2]).details == {"value": [1, 2]}


def test_long_running_operations():
    long_ops = {name for name, op in OPERATIONS.items() if op.long_running}
    assert long_ops == {
        "get_fetch_mf_details",
        "handle_kyc_deviation",
        "handle_bank_deviation",
        "setup_agreement_and_kfs",
        "create_loan_account",
    }
