import json
import logging
from flask import Blueprint, current_app, g, request
from pydantic import ValidationError
from models import db
from models.user import User
from extensions import limiter
from app.metrics import CHECKOUT_OUTCOMES, WEBHOOK_OUTCOMES
from app.schemas.payments import CheckoutRequest, WebhookNotification
from app.services.checkout_service import CheckoutError, place_order
from app.services.payment_gateway import PaymentGatewayError, get_payment_gateway
from app.services.webhook_service import WebhookRejected, reconcile_payment, verify_notification
from app.utils import auth_required, validate_schema, ok, error
from app.version import API_PREFIX

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix=f"{API_PREFIX}/payments")


def _received():
    return ok({"received": True})


@payments_bp.route("", methods=["POST"])
@limiter.limit(
    lambda: current_app.config["PAYMENT_LIMIT_PER_IP"],
    error_message="Too many payment attempts",
)
@auth_required
@validate_schema(CheckoutRequest)
def create_payment():
    """
    Pay for the current cart and create the order
    ---
    tags: [Payments]
    parameters:
      - in: header
        name: Idempotency-Key
        type: string
        required: false
        description: Stable across retries of one checkout attempt
      - in: body
        name: body
        schema:
          type: object
          required: [token, paymentMethodId, addressId]
          properties:
            token: {type: string}
            paymentMethodId: {type: string}
            addressId: {type: integer}
            installments: {type: integer}
            issuerId: {type: string}
            identificationType: {type: string}
            identificationNumber: {type: string}
    responses:
      201:
        description: Order created ({orderId, orderNumber, status})
      409:
        description: Out of stock items listed in `items`; when the payment was already taken the body also carries `order_number` and `payment_id`
      422:
        description: Payment rejected, reason in `detail`
      502:
        description: Payment gateway unavailable
    """
    user = db.session.get(User, g.user_id)
    if not user:
        return error("Unauthorized", status=401)

    try:
        result = place_order(
            user,
            request.validated_data,
            get_payment_gateway(),
            checkout_key=(request.headers.get("Idempotency-Key") or "").strip()[:64] or None,
            order_prefix=current_app.config["ORDER_NUMBER_PREFIX"],
            store_name=current_app.config["STORE_NAME"],
        )
    except CheckoutError as e:
        CHECKOUT_OUTCOMES.labels(type(e).__name__).inc()
        return error(e.message, status=e.status, **e.extra)

    if result.replayed:
        CHECKOUT_OUTCOMES.labels("replayed").inc()
        return ok(result.to_dict(), message="Order already placed", status=200)
    CHECKOUT_OUTCOMES.labels("created").inc()
    return ok(result.to_dict(), message="Order created", status=201)


@payments_bp.route("/webhook", methods=["POST"])
@limiter.exempt
def payment_webhook():
    """
    Gateway payment notification
    ---
    tags: [Payments]
    responses:
      200:
        description: Acknowledged (processed or ignored)
      400:
        description: Malformed body or missing payment id
      401:
        description: Bad or missing signature
      502:
        description: Payment lookup failed, the gateway should retry
    """
    raw = request.get_data(cache=True)
    try:
        notification = WebhookNotification.model_validate(json.loads(raw or b"null"))
    except (ValueError, ValidationError):
        WEBHOOK_OUTCOMES.labels("malformed").inc()
        return error("Invalid body", status=400)

    body_id = notification.data.id if notification.data else None
    payment_id = request.args.get("data.id") or body_id

    try:
        verify_notification(
            current_app.config,
            request.headers.get("x-signature"),
            request.headers.get("x-request-id"),
            payment_id,
        )
    except WebhookRejected as e:
        WEBHOOK_OUTCOMES.labels("rejected").inc()
        return error(e.message, status=e.status)

    if notification.type != "payment":
        WEBHOOK_OUTCOMES.labels("ignored_type").inc()
        return _received()

    if not payment_id:
        WEBHOOK_OUTCOMES.labels("malformed").inc()
        return error("Missing data.id", status=400)

    try:
        outcome = reconcile_payment(payment_id, get_payment_gateway())
    except PaymentGatewayError as e:
        logger.error("Failed to fetch payment %s from gateway: %s", payment_id, e)
        WEBHOOK_OUTCOMES.labels("gateway_error").inc()
        return error("Could not retrieve payment", status=502)

    WEBHOOK_OUTCOMES.labels(outcome.value).inc()
    return _received()
