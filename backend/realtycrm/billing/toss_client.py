"""Async Toss Payments billing API wrapper.

Each call makes exactly one charge attempt. Retry policy lives in the
subscription scheduler, which owns the retry bookkeeping.
"""

import base64
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx

from realtycrm.billing.exceptions import (
    GatewayError,
    GatewayTimeoutError,
    MissingCredentialError,
)
from realtycrm.config import settings

logger = logging.getLogger(__name__)

# Toss accepts order ids of 6 to 64 characters
ORDER_ID_MAX_LENGTH = 64


@dataclass(frozen=True)
class PaymentResult:
    """Approved off-session charge."""

    payment_key: str
    total_amount: int
    order_id: str


def create_auth_header(secret_key: str | None = None) -> str:
    """Build the Basic auth header Toss expects: base64 of ``"{secret}:"``."""
    secret = settings.toss_secret_key if secret_key is None else secret_key
    encoded = base64.b64encode(f"{secret}:".encode("utf-8")).decode("ascii")
    return f"Basic {encoded}"


def get_http_client() -> httpx.AsyncClient:
    """Create an httpx client bound to the Toss API with the configured timeout."""
    return httpx.AsyncClient(
        base_url=settings.toss_api_base_url,
        timeout=httpx.Timeout(settings.payment_timeout_seconds),
    )


def build_order_id(customer_id: object, plan_id: str, now: datetime) -> str:
    """Unique per attempt, so duplicate submissions are distinguishable downstream.

    UUID customers are written as 32 hex digits and the plan id is truncated
    so the result never exceeds ``ORDER_ID_MAX_LENGTH``. A naive ``now`` is
    taken as UTC.
    """
    customer = customer_id.hex if isinstance(customer_id, uuid.UUID) else str(customer_id)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    millis = str(int(now.timestamp() * 1000))
    room = max(ORDER_ID_MAX_LENGTH - len(customer) - len(millis) - 2, 0)
    return f"{customer}_{plan_id[:room]}_{millis}"


def _parse_error_body(response: httpx.Response) -> tuple[str | None, object]:
    try:
        body = response.json()
    except ValueError:
        return None, response.text
    code = body.get("code") if isinstance(body, dict) else None
    return code, body


async def charge_billing_key(
    billing_key: str | None,
    *,
    customer_key: str,
    amount: int,
    order_id: str,
    order_name: str,
    customer_email: str | None = None,
    customer_name: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> PaymentResult:
    """Charge a stored billing key once.

    Raises:
        MissingCredentialError: ``billing_key`` is empty. No request is sent.
        GatewayTimeoutError: The request timed out.
        GatewayError: Non-200 response or transport failure.
    """
    if not billing_key:
        raise MissingCredentialError()

    payload = {
        "customerKey": customer_key,
        "amount": amount,
        "orderId": order_id,
        "orderName": order_name,
        "customerEmail": customer_email,
        "customerName": customer_name,
    }
    headers = {
        "Authorization": create_auth_header(),
        "Content-Type": "application/json",
    }

    logger.info("Charging billing key for customer %s (order %s, amount %s)", customer_key, order_id, amount)

    owns_client = client is None
    http = client or get_http_client()
    try:
        response = await http.post(f"/v1/billing/{billing_key}", json=payload, headers=headers)
    except httpx.TimeoutException as e:
        raise GatewayTimeoutError(f"Payment request timed out for order {order_id}") from e
    except httpx.HTTPError as e:
        raise GatewayError(f"Payment request failed: {e}") from e
    finally:
        if owns_client:
            await http.aclose()

    if response.status_code != 200:
        code, body = _parse_error_body(response)
        message = body.get("message") if isinstance(body, dict) else None
        raise GatewayError(
            f"Payment failed: {response.status_code}" + (f" ({message})" if message else ""),
            status_code=response.status_code,
            code=code,
            body=body,
        )

    data = response.json()
    result = PaymentResult(
        payment_key=data.get("paymentKey", ""),
        total_amount=data.get("totalAmount", amount),
        order_id=data.get("orderId", order_id),
    )
    logger.info("Charge approved for order %s (payment %s)", result.order_id, result.payment_key)
    return result
