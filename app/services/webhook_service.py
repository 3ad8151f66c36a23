"""Gateway payment notifications.

The notification body is only trusted for the payment id. The status always
comes from a fresh gateway lookup, and the order is touched only when the
mapped payment status actually changes, so duplicate or out-of-order
deliveries are harmless.
"""
import hashlib
import hmac
import logging
from enum import Enum
from typing import Optional, Tuple

from models import db
from models.order import Order, OrderStatusLog
from app.services.payment_gateway import GatewayPayment
from app.services.payment_status import is_regression, map_gateway_status
from app.utils.db import transactional

logger = logging.getLogger(__name__)


class WebhookRejected(Exception):
    def __init__(self, message, status=401):
        super().__init__(message)
        self.message = message
        self.status = status


class ReconcileOutcome(str, Enum):
    IGNORED = "ignored"
    UNMATCHED = "unmatched"
    UNCHANGED = "unchanged"
    UPDATED = "updated"


def parse_signature_header(header: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split ``ts=<ts>,v1=<hex>`` into ``(ts, v1)``."""
    parts = {}
    for chunk in (header or "").split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts.get("ts"), parts.get("v1")


def build_manifest(payment_id: Optional[str], request_id: str, ts: str) -> str:
    fields = []
    if payment_id:
        fields.append(f"id:{payment_id}")
    fields.append(f"request-id:{request_id}")
    fields.append(f"ts:{ts}")
    return ";".join(fields) + ";"


def sign_manifest(secret: str, manifest: str) -> str:
    return hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()


def is_valid_signature(secret: str, signature_header, request_id, payment_id) -> bool:
    if not signature_header or not request_id:
        return False
    ts, v1 = parse_signature_header(signature_header)
    if not ts or not v1:
        return False
    expected = sign_manifest(secret, build_manifest(payment_id, request_id, ts))
    return hmac.compare_digest(expected, v1.lower())


def verify_notification(config, signature_header, request_id, payment_id) -> None:
    """Raise WebhookRejected unless the notification is authentic.

    Without a configured secret, unsigned notifications are accepted only when
    ``PAYMENT_WEBHOOK_ALLOW_UNSIGNED`` is set outside production.
    """
    secret = config.get("MP_WEBHOOK_SECRET")
    if not secret:
        if config.get("PAYMENT_WEBHOOK_ALLOW_UNSIGNED") and config.get("ENV_NAME") != "production":
            logger.warning("Webhook signature check skipped: no secret configured")
            return
        logger.error("Webhook rejected: MP_WEBHOOK_SECRET is not configured")
        raise WebhookRejected("Webhook verification unavailable", status=401)
    if not is_valid_signature(secret, signature_header, request_id, payment_id):
        logger.warning({"event": "webhook_bad_signature", "request_id": request_id, "payment_id": payment_id})
        raise WebhookRejected("Invalid signature", status=401)


def apply_gateway_status(order: Order, payment: GatewayPayment, source: str) -> bool:
    """Move ``order`` to the status pair for ``payment``. Returns True if it changed."""
    pair = map_gateway_status(payment.status)
    new_payment_status = pair.payment_status.value
    if order.payment_status == new_payment_status:
        return False
    if is_regression(order.payment_status, new_payment_status):
        logger.info(
            "Ignoring regression of order %s from %s to %s",
            order.order_number, order.payment_status, new_payment_status,
        )
        return False
    with transactional(f"Failed to update order {order.order_number}"):
        order.status = pair.order_status.value
        order.payment_status = new_payment_status
        order.gateway_status = payment.status
        db.session.add(
            OrderStatusLog(
                order_id=order.id,
                status=order.status,
                payment_status=order.payment_status,
                source=source,
            )
        )
    logger.info(
        "Order %s updated -> status=%s, payment_status=%s",
        order.order_number, order.status, order.payment_status,
    )
    return True


def reconcile_payment(payment_id: str, gateway) -> ReconcileOutcome:
    """Re-read payment ``payment_id`` from the gateway and converge the local order.

    PaymentGatewayError propagates so the caller can ask for a redelivery.
    """
    payment = gateway.get_payment(payment_id)

    order_number = payment.external_reference
    if not order_number:
        logger.info("Payment %s has no external reference, ignoring", payment.id)
        return ReconcileOutcome.IGNORED

    order = Order.query.filter_by(order_number=order_number).first()
    if not order:
        logger.warning("Order not found for order number %s", order_number)
        return ReconcileOutcome.UNMATCHED

    if apply_gateway_status(order, payment, source="webhook"):
        return ReconcileOutcome.UPDATED
    return ReconcileOutcome.UNCHANGED
