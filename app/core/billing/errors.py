from __future__ import annotations

from typing import Any, Optional

from app.response.response import APIError


GENERIC_RETRY_MESSAGE = "Payment service is temporarily unavailable. Please try again."


class ValidationError(APIError):
    def __init__(
        self,
        message: str,
        *,
        code: str = "BILLING_VALIDATION_ERROR",
        details: Optional[Any] = None,
        fields: Optional[Any] = None,
    ) -> None:
        super().__init__(code, 400, message, details=details, fields=fields)


class PaymentsDisabledError(APIError):
    def __init__(self) -> None:
        super().__init__(
            "PAYMENTS_DISABLED",
            503,
            "Payment system is currently disabled. Please contact support.",
            details={"payments": False, "reason": "PAYMENTS_DISABLED"},
        )


class GatewayError(APIError):
    """
    The payment gateway failed or refused a call.

    `gateway_payload` stays server-side; clients only see a generic
    retry message.
    """

    def __init__(
        self,
        message: str = GENERIC_RETRY_MESSAGE,
        *,
        code: str = "BILLING_GATEWAY_ERROR",
        gateway_payload: Optional[Any] = None,
    ) -> None:
        super().__init__(code, 502, GENERIC_RETRY_MESSAGE)
        self.reason = message
        self.gateway_payload = gateway_payload

    def __str__(self) -> str:
        return self.reason


class GatewayOrderCreationFailed(GatewayError):
    def __init__(self, reason: str, *, gateway_payload: Optional[Any] = None) -> None:
        super().__init__(
            reason,
            code="BILLING_GATEWAY_ORDER_FAILED",
            gateway_payload=gateway_payload,
        )


class InvalidPaymentSignature(APIError):
    def __init__(self, details: Optional[Any] = None) -> None:
        super().__init__(
            "BILLING_INVALID_SIGNATURE",
            400,
            "Invalid payment signature",
            details=details,
        )


class InvalidWebhookSignature(APIError):
    def __init__(self) -> None:
        super().__init__(
            "BILLING_INVALID_WEBHOOK_SIGNATURE",
            400,
            "Invalid webhook signature",
        )


class DowngradeNotAllowedMidCycle(APIError):
    def __init__(self, reason: str | None = None) -> None:
        super().__init__(
            "BILLING_DOWNGRADE_NOT_ALLOWED",
            400,
            "Downgrades are not allowed mid-cycle. "
            "Schedule a downgrade for the end of your current period instead.",
            details={"reason": reason} if reason else None,
        )


class ImplausibleSubscriptionPricing(APIError):
    def __init__(self, problems: list[str], *, subscription_id: Any = None) -> None:
        super().__init__(
            "BILLING_IMPLAUSIBLE_PRICING",
            422,
            "Current subscription pricing could not be interpreted. Please contact support.",
            details={"problems": problems},
        )
        self.problems = problems
        self.subscription_id = subscription_id


class DuplicateActivationRace(APIError):
    def __init__(self, user_id: Any) -> None:
        super().__init__(
            "BILLING_DUPLICATE_ACTIVATION",
            409,
            "Subscription activation is already in progress. Please retry.",
        )
        self.user_id = user_id


class OrderNotFound(APIError):
    def __init__(self, message: str = "Payment order not found or already processed") -> None:
        super().__init__("BILLING_ORDER_NOT_FOUND", 404, message)


class OrderExpired(APIError):
    def __init__(self) -> None:
        super().__init__(
            "BILLING_ORDER_EXPIRED",
            410,
            "Payment order has expired. Please create a new order.",
        )


class SubscriptionNotFound(APIError):
    def __init__(self, message: str = "No active subscription found") -> None:
        super().__init__("BILLING_SUBSCRIPTION_NOT_FOUND", 404, message)


class TransactionNotFound(APIError):
    def __init__(self) -> None:
        super().__init__("BILLING_TRANSACTION_NOT_FOUND", 404, "Transaction not found")


class PaymentPageTokenInvalid(APIError):
    def __init__(self, message: str = "Invalid or expired payment link") -> None:
        super().__init__("BILLING_PAYMENT_TOKEN_INVALID", 401, message)


__all__ = [
    "ValidationError",
    "PaymentsDisabledError",
    "GatewayError",
    "GatewayOrderCreationFailed",
    "InvalidPaymentSignature",
    "InvalidWebhookSignature",
    "DowngradeNotAllowedMidCycle",
    "ImplausibleSubscriptionPricing",
    "DuplicateActivationRace",
    "OrderNotFound",
    "OrderExpired",
    "SubscriptionNotFound",
    "TransactionNotFound",
    "PaymentPageTokenInvalid",
]
