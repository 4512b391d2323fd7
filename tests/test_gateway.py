from __future__ import annotations

import base64
import hashlib
import hmac
import json

import httpx
import pytest

from app.core.billing.errors import GatewayError
from app.core.billing.gateway import (
    NOT_CONFIGURED,
    SIGNATURE_MISMATCH,
    RazorpayGateway,
    payment_signature,
)


def _gateway(handler, **kwargs) -> RazorpayGateway:
    options = {
        "key_id": "rzp_test_key",
        "key_secret": "rzp_secret",
        "webhook_secret": "whsec",
        "api_url": "https://api.example.test/v1",
        "transport": httpx.MockTransport(handler),
    }
    options.update(kwargs)
    return RazorpayGateway(**options)


def test_create_order_sends_minor_units_and_auth():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "order_abc", "status": "created"})

    result = _gateway(handler).create_order(
        14900, "INR", receipt="sub_1234567890", notes={"proration_credit": 0.0}
    )

    assert result.success
    assert result.data["id"] == "order_abc"
    assert seen["url"] == "https://api.example.test/v1/orders"
    expected = base64.b64encode(b"rzp_test_key:rzp_secret").decode()
    assert seen["auth"] == f"Basic {expected}"
    assert seen["body"] == {
        "amount": 14900,
        "currency": "INR",
        "receipt": "sub_1234567890",
        "notes": {"proration_credit": "0.0"},
    }


def test_create_order_error_is_reported_not_raised():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400, json={"error": {"code": "BAD_REQUEST_ERROR", "description": "bad"}}
        )

    result = _gateway(handler).create_order(100, "INR", receipt="r", notes={})

    assert not result.success
    assert "400" in result.error
    assert result.data["payload"]["error"]["code"] == "BAD_REQUEST_ERROR"


def test_unconfigured_gateway_refuses_orders():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    result = _gateway(handler, key_id="", key_secret="").create_order(
        100, "INR", receipt="r", notes={}
    )
    assert not result.success
    assert result.error == NOT_CONFIGURED


def test_payment_signature_verification():
    gateway = _gateway(lambda request: httpx.Response(500))
    good = payment_signature("rzp_secret", "order_1", "pay_1")

    assert gateway.verify_payment("pay_1", "order_1", good).success
    bad = gateway.verify_payment("pay_2", "order_1", good)
    assert not bad.success
    assert bad.error == SIGNATURE_MISMATCH


def test_status_lookups():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/payments"):
            return httpx.Response(
                200, json={"items": [{"id": "pay_1", "status": "captured"}]}
            )
        return httpx.Response(200, json={"id": "order_1", "status": "paid"})

    gateway = _gateway(handler)
    assert gateway.get_order("order_1")["status"] == "paid"
    assert gateway.get_order_payments("order_1") == [
        {"id": "pay_1", "status": "captured"}
    ]


def test_unreachable_gateway_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError) as exc_info:
        _gateway(handler).get_order("order_1")
    assert "unreachable" in exc_info.value.reason
    assert exc_info.value.http_code == 502


def test_webhook_signature():
    gateway = _gateway(lambda request: httpx.Response(500))
    body = b'{"event":"payment.captured"}'
    signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()

    assert gateway.verify_webhook_signature(body, signature)
    assert not gateway.verify_webhook_signature(body + b" ", signature)
    assert not gateway.verify_webhook_signature(body, "")
