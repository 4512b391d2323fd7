from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx
from loguru import logger

from app.core.billing.errors import GatewayError
from app.core.config import settings


SIGNATURE_MISMATCH = "signature_mismatch"
NOT_CONFIGURED = "gateway_not_configured"
# Razorpay refuses orders below 100 units of the smallest currency unit
MIN_ORDER_AMOUNT = 100


@dataclass
class GatewayResult:
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class PaymentGateway(Protocol):
    public_key: str

    def create_order(
        self,
        amount: int,
        currency: str,
        *,
        receipt: str,
        notes: Dict[str, Any],
    ) -> GatewayResult: ...

    def verify_payment(
        self, payment_id: str, order_id: str, signature: str
    ) -> GatewayResult: ...

    def get_order(self, order_id: str) -> Dict[str, Any]: ...

    def get_order_payments(self, order_id: str) -> List[Dict[str, Any]]: ...

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool: ...


def _hmac_sha256(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def payment_signature(secret: str, order_id: str, payment_id: str) -> str:
    return _hmac_sha256(secret, f"{order_id}|{payment_id}".encode("utf-8"))


class RazorpayGateway:
    """
    Thin REST client for Razorpay.

    Amounts cross this boundary in minor units. `create_order` and
    `verify_payment` report failures through `GatewayResult`; the status
    lookups raise `GatewayError` so the sweeper can tell "unreachable"
    apart from "not paid yet".
    """

    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str,
        webhook_secret: str = "",
        api_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.public_key = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "RazorpayGateway":
        return cls(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.razorpay_webhook_secret,
            api_url=settings.razorpay_api_url,
            timeout=settings.gateway_timeout_seconds,
        )

    @property
    def configured(self) -> bool:
        return bool(self.public_key and self._key_secret)

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self._api_url,
            auth=(self.public_key, self._key_secret),
            timeout=self._timeout,
            transport=self._transport,
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            with self._client() as client:
                response = client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            body: Any
            try:
                body = exc.response.json()
            except ValueError:
                body = exc.response.text
            logger.warning(
                "Gateway responded with error",
                path=path,
                status_code=exc.response.status_code,
            )
            raise GatewayError(
                f"gateway returned HTTP {exc.response.status_code}",
                gateway_payload=body,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("Gateway request failed", path=path, error=repr(exc))
            raise GatewayError(f"gateway unreachable: {exc!r}") from exc

    def create_order(
        self,
        amount: int,
        currency: str,
        *,
        receipt: str,
        notes: Dict[str, Any],
    ) -> GatewayResult:
        if not self.configured:
            return GatewayResult(success=False, error=NOT_CONFIGURED)

        payload = {
            "amount": int(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": {k: str(v) for k, v in notes.items()},
        }
        try:
            data = self._request("POST", "/orders", json=payload)
        except GatewayError as exc:
            return GatewayResult(
                success=False,
                data={"payload": exc.gateway_payload},
                error=exc.reason,
            )
        if not data.get("id"):
            return GatewayResult(success=False, data=data, error="missing order id")
        return GatewayResult(success=True, data=data)

    def verify_payment(
        self, payment_id: str, order_id: str, signature: str
    ) -> GatewayResult:
        if not self._key_secret:
            return GatewayResult(success=False, error=NOT_CONFIGURED)

        expected = payment_signature(self._key_secret, order_id, payment_id)
        if not hmac.compare_digest(expected, signature or ""):
            return GatewayResult(success=False, error=SIGNATURE_MISMATCH)
        return GatewayResult(
            success=True,
            data={"order_id": order_id, "payment_id": payment_id},
        )

    def get_order(self, order_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/orders/{order_id}")

    def get_order_payments(self, order_id: str) -> List[Dict[str, Any]]:
        data = self._request("GET", f"/orders/{order_id}/payments")
        return list(data.get("items") or [])

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        if not self._webhook_secret or not signature:
            return False
        expected = _hmac_sha256(self._webhook_secret, body)
        return hmac.compare_digest(expected, signature)


__all__ = [
    "SIGNATURE_MISMATCH",
    "NOT_CONFIGURED",
    "MIN_ORDER_AMOUNT",
    "GatewayResult",
    "PaymentGateway",
    "RazorpayGateway",
    "payment_signature",
]
