from __future__ import annotations

import html
import json
from typing import Any, Dict

from fastapi.encoders import jsonable_encoder


_PAGE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>UNextDoor - Complete your payment</title>
    <style>
        :root {
            --bg: #0F0F13;
            --card: #18181B;
            --text: #E5E5E5;
            --text-muted: #9CA3AF;
            --border: rgba(255, 255, 255, 0.08);
            --accent: #6FC935;
        }

        * {
            margin: 0;
            padding: 0;
            box-sizing: border-box;
        }

        body {
            font-family: Inter, system-ui, sans-serif;
            background: var(--bg);
            color: var(--text);
            min-height: 100vh;
            display: flex;
            align-items: center;
            justify-content: center;
            padding: 20px;
        }

        .container {
            text-align: center;
            background: var(--card);
            padding: 40px;
            border-radius: 16px;
            border: 1px solid var(--border);
            width: 100%;
            max-width: 480px;
        }

        h1 {
            font-size: 24px;
            margin-bottom: 10px;
            color: white;
            font-weight: 600;
        }

        .sub {
            font-size: 15px;
            color: var(--text-muted);
            margin-bottom: 24px;
        }

        .amount {
            font-size: 32px;
            font-weight: 700;
            margin-bottom: 24px;
        }

        button {
            padding: 12px 28px;
            border-radius: 10px;
            border: none;
            font-size: 15px;
            background: var(--accent);
            color: #0F0F13;
            cursor: pointer;
        }
    </style>
</head>
<body>
    <div class="container">
        <h1>__TITLE__</h1>
        <p class="sub">__SUBTITLE__</p>
        __BODY__
    </div>
    <script>
        function notifyApp(type, data) {
            if (window.ReactNativeWebView) {
                window.ReactNativeWebView.postMessage(JSON.stringify({ type: type, data: data }));
            }
        }
        __SCRIPT__
    </script>
</body>
</html>
"""

_CHECKOUT_SCRIPT = """
        var details = __DETAILS__;
        function openCheckout() {
            var options = {
                key: details.key,
                amount: details.amount,
                currency: details.currency,
                name: details.name,
                description: details.description,
                order_id: details.gateway_order_id,
                prefill: details.prefill,
                handler: function (response) {
                    notifyApp('PAYMENT_SUCCESS', {
                        gateway_order_id: response.razorpay_order_id,
                        gateway_payment_id: response.razorpay_payment_id,
                        signature: response.razorpay_signature,
                        order_id: details.order_id
                    });
                },
                modal: {
                    ondismiss: function () {
                        notifyApp('PAYMENT_CANCELLED', { order_id: details.order_id });
                    }
                }
            };
            var checkout = new Razorpay(options);
            checkout.on('payment.failed', function (response) {
                notifyApp('PAYMENT_FAILED', {
                    error: response.error.description,
                    code: response.error.code,
                    order_id: details.order_id
                });
            });
            checkout.open();
        }
        window.onload = openCheckout;
"""


def _script_json(value: Any) -> str:
    return json.dumps(jsonable_encoder(value)).replace("</", "<\\/")


def _format_amount(details: Dict[str, Any]) -> str:
    plan = details.get("plan") or {}
    symbol = plan.get("symbol") or ""
    amount = details["amount"]
    if details.get("currency") == "KRW":
        return f"{symbol}{amount}"
    return f"{symbol}{amount / 100:.2f}"


def render_payment_page(details: Dict[str, Any]) -> str:
    body = (
        f'<div class="amount">{html.escape(_format_amount(details))}</div>'
        '<button onclick="openCheckout()">Pay now</button>'
        '<script src="https://checkout.razorpay.com/v1/checkout.js"></script>'
    )
    script = _CHECKOUT_SCRIPT.replace("__DETAILS__", _script_json(details))
    return (
        _PAGE.replace("__TITLE__", html.escape(details["description"]))
        .replace("__SUBTITLE__", "Complete your payment to activate your plan.")
        .replace("__BODY__", body)
        .replace("__SCRIPT__", script)
    )


def render_payment_error(*, title: str, message: str, code: str) -> str:
    script = "notifyApp('PAYMENT_FAILED', " + _script_json(
        {"error": message, "code": code}
    ) + ");"
    return (
        _PAGE.replace("__TITLE__", html.escape(title))
        .replace("__SUBTITLE__", html.escape(message))
        .replace("__BODY__", "<p class=\"sub\">Please return to the app and try again.</p>")
        .replace("__SCRIPT__", script)
    )


__all__ = ["render_payment_page", "render_payment_error"]
