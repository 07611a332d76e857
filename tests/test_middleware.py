from __future__ import annotations

import base64
import hashlib
import hmac
from unittest.mock import Mock

import pytest

from src.config import NetworkConfig
from src.data.middleware import (
    PreparedRequest,
    RateLimiter,
    RequestRejected,
    RequestSigner,
    ResponseValidator,
    build_pipeline,
    default_headers,
    middlewares_from_config,
)

URL = "https://graphql-sandbox-dds.rnv-online.de/"


def _request(body: bytes = b'{"query": "{}"}') -> PreparedRequest:
    return PreparedRequest(method="POST", url=URL, headers={}, body=body)


def _response(
    status_code: int = 200,
    json_data=None,
    content_type: str = "application/json; charset=utf-8",
    content: bytes = b"{}",
) -> Mock:
    response = Mock()
    response.status_code = status_code
    response.headers = {"Content-Type": content_type}
    response.content = content
    if json_data is not None:
        response.json.return_value = json_data
    else:
        response.json.side_effect = ValueError("Invalid JSON")
    return response


def test_pipeline_runs_middlewares_in_order() -> None:
    order = []

    def _first(request, call_next):
        order.append("first")
        return call_next(request)

    def _second(request, call_next):
        order.append("second")
        return call_next(request)

    def _send(request):
        order.append("send")
        return "response"

    pipeline = build_pipeline([_first, _second], _send)

    assert pipeline(_request()) == "response"
    assert order == ["first", "second", "send"]


def test_rate_limiter_rejects_rapid_requests() -> None:
    now = [100.0]
    limiter = RateLimiter(0.5, clock=lambda: now[0])
    send = Mock(return_value="ok")

    assert limiter(_request(), send) == "ok"
    now[0] += 0.2
    with pytest.raises(RequestRejected):
        limiter(_request(), send)
    now[0] += 0.5
    assert limiter(_request(), send) == "ok"
    assert send.call_count == 2


def test_signer_adds_verifiable_signature() -> None:
    signer = RequestSigner("secret", clock=lambda: 1700000000.7, nonce_factory=lambda: "NONCE")
    request = _request()
    send = Mock(return_value="ok")

    signer(request, send)

    body_hash = hashlib.sha256(request.body).hexdigest()
    payload = f"POST|{URL}|1700000000|NONCE|{body_hash}".encode("utf-8")
    expected = base64.b64encode(hmac.new(b"secret", payload, hashlib.sha256).digest()).decode("ascii")
    assert request.headers["X-Timestamp"] == "1700000000"
    assert request.headers["X-Nonce"] == "NONCE"
    assert request.headers["X-Signature"] == expected
    assert request.headers["X-API-Version"] == "1.0"
    send.assert_called_once_with(request)


def test_validator_accepts_graphql_json() -> None:
    response = _response(json_data={"data": {}})

    assert ResponseValidator()(_request(), Mock(return_value=response)) is response


@pytest.mark.parametrize(
    "response",
    [
        _response(status_code=500, json_data={"data": {}}),
        _response(content_type="text/html", json_data={"data": {}}),
        _response(json_data={"data": {}}, content=b"x" * 20),
        _response(json_data=None),
        _response(json_data={"unexpected": True}),
    ],
)
def test_validator_rejects_bad_responses(response) -> None:
    with pytest.raises(RequestRejected):
        ResponseValidator(max_bytes=10)(_request(), Mock(return_value=response))


def test_default_headers_do_not_override() -> None:
    request = _request()
    request.headers["Accept"] = "application/graphql-response+json"

    default_headers(request, Mock())

    assert request.headers["Accept"] == "application/graphql-response+json"
    assert request.headers["User-Agent"].startswith("RNVTripTracker")


def test_middlewares_from_config_selects_chain() -> None:
    config = NetworkConfig(
        timeout_seconds=30,
        sign_requests=True,
        validate_responses=False,
        min_request_interval_seconds=0.5,
        max_response_bytes=1000,
        signing_key="key",
    )

    chain = middlewares_from_config(config)

    assert chain[0] is default_headers
    assert [type(item) for item in chain[1:]] == [RateLimiter, RequestSigner]
