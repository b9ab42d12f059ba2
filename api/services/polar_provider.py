"""
Polar webhook processing.

Polar signs the raw request body with HMAC-SHA256 using the shared
webhook secret. Only succeeded `order.created` events move money;
they are credited through the same ledger primitive as PayPal orders,
keyed by the Polar order id, so redeliveries are harmless.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from api.services.packages import CreditPackage
from api.services.payment_engine import (
    CreditOutcome,
    InvalidPackageError,
    InvalidSignatureError,
    PaymentError,
    require_package,
)
from config.settings import WEBHOOK_MAX_CREDITS, WEBHOOK_MIN_CREDITS

logger = logging.getLogger(__name__)

ACTIONABLE_EVENT = "order.created"
ACTIONABLE_STATUS = "succeeded"


class WebhookNotConfiguredError(PaymentError):
    """Webhook secret is not set."""
    pass


class WebhookValidationError(PaymentError):
    """Payload is malformed or its metadata fails validation."""
    pass


@dataclass
class PolarOrder:
    """A paid Polar order extracted from a webhook event."""
    order_id: str
    user_id: str
    package: CreditPackage
    credits: int
    amount: Decimal
    currency: str = "USD"
    raw: dict = field(default_factory=dict)


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Check a polar-signature header against HMAC-SHA256(secret, raw_body).

    Accepts a bare hex digest or one prefixed with "sha256=" or "v1,".
    """
    if not signature or not secret:
        return False

    candidate = signature.strip()
    for prefix in ("sha256=", "v1,"):
        if candidate.startswith(prefix):
            candidate = candidate[len(prefix):]
            break

    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, candidate.lower())


def _parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def _order_amount(data: dict, package: CreditPackage) -> Decimal:
    """Order total in major units; Polar reports cents. Falls back to the package price."""
    cents = data.get("total_amount", data.get("amount"))
    if isinstance(cents, int) and not isinstance(cents, bool):
        return Decimal(cents) / 100
    try:
        return Decimal(str(cents)) / 100 if cents is not None else package.price
    except InvalidOperation:
        return package.price


def parse_event(raw_body: bytes) -> dict:
    try:
        event = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        raise WebhookValidationError("Invalid JSON")
    if not isinstance(event, dict):
        raise WebhookValidationError("Invalid JSON")
    return event


def extract_order(event: dict) -> Optional[PolarOrder]:
    """
    Paid order carried by the event, or None for events that don't move money.

    Raises WebhookValidationError when a paid order has bad metadata.
    """
    data = event.get("data")
    if not isinstance(data, dict):
        return None
    if event.get("type") != ACTIONABLE_EVENT or data.get("status") != ACTIONABLE_STATUS:
        return None

    order_id = data.get("id")
    metadata = data.get("metadata")
    if not order_id or not isinstance(metadata, dict):
        raise WebhookValidationError("Invalid webhook metadata")

    user_id = metadata.get("userId")
    package_id = _parse_int(metadata.get("packageId"))
    credits = _parse_int(metadata.get("credits"))

    if not user_id or not package_id or not credits:
        raise WebhookValidationError("Invalid webhook metadata")
    if not isinstance(user_id, str) or len(user_id.strip()) < 1:
        raise WebhookValidationError("Invalid userId")

    try:
        package = require_package(package_id, "polar")
    except InvalidPackageError:
        raise WebhookValidationError("Invalid packageId")
    if credits < WEBHOOK_MIN_CREDITS or credits > WEBHOOK_MAX_CREDITS:
        raise WebhookValidationError("Invalid credits amount")
    # Credits granted always come from the catalog; metadata must agree with it
    if credits != package.credits:
        raise WebhookValidationError("Credits do not match package")

    return PolarOrder(
        order_id=str(order_id),
        user_id=user_id,
        package=package,
        credits=package.credits,
        amount=_order_amount(data, package),
        currency=str(data.get("currency") or "usd").upper(),
        raw=data,
    )


class PolarWebhookProcessor:
    """Verifies, validates and credits Polar webhook deliveries."""

    def __init__(self, ledger, secret: Optional[str], balance_cache=None):
        self.ledger = ledger
        self.secret = secret
        self.balance_cache = balance_cache

    async def process(self, raw_body: bytes, signature: Optional[str]) -> tuple[Optional[PolarOrder], Optional[CreditOutcome]]:
        """
        Handle one delivery.

        Returns (None, None) for events that are acknowledged but not
        acted on, otherwise the order and its credit outcome.
        """
        from api.services.metrics import credits_granted_total, track_webhook_event

        if not self.secret:
            logger.error("POLAR_WEBHOOK_SECRET not configured")
            raise WebhookNotConfiguredError("Webhook not configured")

        if not verify_signature(raw_body, signature, self.secret):
            logger.warning(f"Invalid Polar webhook signature: {(signature or '')[:10]}...")
            track_webhook_event("polar", "unknown", "invalid_signature")
            raise InvalidSignatureError("Invalid signature")

        event = parse_event(raw_body)
        event_type = str(event.get("type") or "unknown")

        order = extract_order(event)
        if order is None:
            data = event.get("data") if isinstance(event.get("data"), dict) else {}
            logger.info(f"Polar webhook event {event_type} not processed (status: {data.get('status')})")
            track_webhook_event("polar", event_type, "ignored")
            return None, None

        logger.info(f"Polar webhook received: {event_type} for order {order.order_id}")
        outcome = await self.ledger.apply_credit(
            user_id=order.user_id,
            order_id=order.order_id,
            credits=order.credits,
            provider="polar",
            amount=order.amount,
            currency=order.currency,
            raw_payload={
                "packageId": order.package.id,
                "packageName": order.package.name,
                "credits": order.credits,
                "event": event_type,
                "polarData": {
                    "orderId": order.order_id,
                    "status": order.raw.get("status"),
                    "amount": str(order.amount),
                },
                "processedAt": datetime.now(timezone.utc).isoformat(),
            },
            changed_by="webhook",
            reason=f"Polar {order.package.name}: {order.credits} credits",
        )
        if self.balance_cache is not None:
            await self.balance_cache.invalidate(order.user_id)

        if outcome.already_processed:
            track_webhook_event("polar", event_type, "duplicate")
        else:
            credits_granted_total.labels(provider="polar").inc(order.credits)
            track_webhook_event("polar", event_type, "success")
        return order, outcome
