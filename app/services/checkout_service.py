"""Cart → payment → order.

``place_order`` runs the synchronous checkout: ownership and cart checks, a
live stock re-check, the gateway charge, and then a single transaction that
writes the order, decrements stock and empties the cart. The decrement is a
conditional UPDATE, so a concurrent checkout that drained the stock after the
re-check rolls this one back instead of overselling.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import update

from models import db
from models.cart import Cart
from models.order import Order, OrderItem, OrderStatusLog
from models.product import Product
from models.user import User
from app.schemas.payments import CheckoutRequest
from app.services import cart_service
from app.services.address_service import get_owned_address
from app.services.order_numbers import OrderNumberExhausted, generate_unique_order_number
from app.services.payment_gateway import (
    ChargeRequest,
    GatewayPayment,
    Payer,
    PayerIdentification,
    PaymentGatewayError,
)
from app.services.payment_status import map_gateway_status
from app.utils.db import transactional

logger = logging.getLogger(__name__)


class CheckoutError(Exception):
    status = 400

    def __init__(self, message, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra


class InvalidCheckout(CheckoutError):
    status = 400


class AddressNotFound(CheckoutError):
    status = 404


class CartEmpty(CheckoutError):
    status = 400


class OutOfStock(CheckoutError):
    status = 409


class PaidButOutOfStock(CheckoutError):
    """Stock ran out between the charge and the order write. The buyer was charged."""

    status = 409


class PaymentRejected(CheckoutError):
    status = 422


class GatewayUnavailable(CheckoutError):
    status = 502


class OrderNotSaved(CheckoutError):
    status = 500


class StockExhausted(Exception):
    def __init__(self, names):
        super().__init__(", ".join(names))
        self.names = names


@dataclass
class CheckoutLine:
    product: Product
    product_id: int
    name: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class CheckoutResult:
    order_id: int
    order_number: str
    status: Optional[str]
    replayed: bool = False

    def to_dict(self):
        return {
            "orderId": self.order_id,
            "orderNumber": self.order_number,
            "status": self.status,
        }


def _snapshot_cart(user_id: int) -> List[CheckoutLine]:
    cart = Cart.query.filter_by(user_id=user_id).first()
    if not cart:
        return []
    return [
        CheckoutLine(
            product=ci.product,
            product_id=ci.product_id,
            name=ci.product.name,
            quantity=ci.quantity,
            unit_price=Decimal(ci.product.price),
        )
        for ci in cart.items
    ]


def find_out_of_stock(lines: List[CheckoutLine]) -> List[str]:
    """Names of every line whose product no longer has enough stock."""
    ids = [line.product_id for line in lines]
    current = dict(
        db.session.query(Product.id, Product.stock).filter(Product.id.in_(ids)).all()
    )
    return [
        line.name
        for line in lines
        if current.get(line.product_id) is None or current[line.product_id] < line.quantity
    ]


def _decrement_stock(lines: List[CheckoutLine]) -> None:
    short = []
    for line in lines:
        result = db.session.execute(
            update(Product)
            .where(Product.id == line.product_id, Product.stock >= line.quantity)
            .values(stock=Product.stock - line.quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            short.append(line.name)
        db.session.expire(line.product, ["stock"])
    if short:
        raise StockExhausted(short)


def _build_charge(data: CheckoutRequest, email: str, order_number: str, lines, store_name: str) -> ChargeRequest:
    identification = None
    if data.identification_type and data.identification_number:
        identification = PayerIdentification(
            type=data.identification_type, number=data.identification_number
        )
    item_count = sum(line.quantity for line in lines)
    issuer = data.issuer_id
    return ChargeRequest(
        transaction_amount=sum((line.line_total for line in lines), Decimal("0.00")),
        token=data.token,
        description=f"{store_name} — {item_count} item(s)",
        external_reference=order_number,
        installments=data.installments or 1,
        payment_method_id=data.payment_method_id,
        issuer_id=int(issuer) if issuer and issuer.isdigit() else None,
        payer=Payer(email=email, identification=identification),
    )


def _persist_order(user_id, address_id, order_number, checkout_key, lines, payment: GatewayPayment) -> Order:
    pair = map_gateway_status(payment.status)
    subtotal = sum((line.line_total for line in lines), Decimal("0.00"))
    order = Order(
        order_number=order_number,
        checkout_key=checkout_key,
        user_id=user_id,
        address_id=address_id,
        subtotal=subtotal,
        shipping=Decimal("0.00"),
        tax=Decimal("0.00"),
        total=subtotal,
        status=pair.order_status.value,
        payment_status=pair.payment_status.value,
        gateway_payment_id=payment.id,
        gateway_status=payment.status,
        notes=f"Gateway payment ID: {payment.id}",
    )
    db.session.add(order)
    db.session.flush()

    for line in lines:
        db.session.add(
            OrderItem(
                order_id=order.id,
                product_id=line.product_id,
                quantity=line.quantity,
                price=line.unit_price,
            )
        )
    _decrement_stock(lines)
    cart_service.delete_cart_lines(user_id)
    db.session.add(
        OrderStatusLog(
            order_id=order.id,
            status=order.status,
            payment_status=order.payment_status,
            source="checkout",
        )
    )
    return order


def _reconciliation_gap(reason, payment, user_id, order_number, exc):
    logger.critical(
        {
            "event": "reconciliation_gap",
            "reason": reason,
            "payment_id": payment.id,
            "gateway_status": payment.status,
            "user_id": user_id,
            "order_number": order_number,
            "error": str(exc),
        }
    )


def place_order(
    user: User,
    data: CheckoutRequest,
    gateway,
    *,
    checkout_key: Optional[str] = None,
    order_prefix: str = "RMM",
    store_name: str = "Retrommerce",
) -> CheckoutResult:
    """Charge the user's cart and record the order.

    ``checkout_key`` is an optional client-chosen key that stays the same
    across retries of one checkout attempt. When given it is the gateway
    idempotency key and a retry whose order already exists is answered from
    the stored order without charging again. Without it the freshly minted
    order number is used as the key.
    """
    address = get_owned_address(user.id, data.address_id)
    if not address:
        raise AddressNotFound("Address not found")

    scoped_key = f"{user.id}:{checkout_key}" if checkout_key else None
    if scoped_key:
        existing = Order.query.filter_by(checkout_key=scoped_key).first()
        if existing:
            logger.info("Checkout replay for order %s", existing.order_number)
            return CheckoutResult(existing.id, existing.order_number, existing.gateway_status, replayed=True)

    lines = _snapshot_cart(user.id)
    if not lines:
        raise CartEmpty("Cart is empty")

    out_of_stock = find_out_of_stock(lines)
    if out_of_stock:
        raise OutOfStock("Some products are out of stock", items=out_of_stock)

    try:
        order_number = generate_unique_order_number(order_prefix)
    except OrderNumberExhausted as e:
        logger.error("Order number generation failed: %s", e)
        raise OrderNotSaved("Order could not be created. Please try again.")

    charge = _build_charge(data, user.email, order_number, lines, store_name)
    try:
        payment = gateway.create_payment(charge, idempotency_key=scoped_key or order_number)
    except PaymentGatewayError as e:
        logger.error("Payment gateway error for user %s: %s", user.id, e)
        raise GatewayUnavailable("Payment gateway error. Please try again.")

    if payment.is_rejected:
        logger.info("Payment %s rejected: %s", payment.id, payment.status_detail)
        raise PaymentRejected("Payment rejected", detail=payment.status_detail or "rejected")

    if scoped_key and payment.external_reference:
        # A keyed retry gets the original payment back, keep its reference
        order_number = payment.external_reference

    try:
        with transactional("Checkout persistence failed"):
            order = _persist_order(user.id, address.id, order_number, scoped_key, lines, payment)
    except StockExhausted as e:
        _reconciliation_gap("stock_exhausted", payment, user.id, order_number, e)
        raise PaidButOutOfStock(
            "Some products went out of stock after your payment was taken. Please contact support.",
            items=e.names,
            order_number=order_number,
            payment_id=payment.id,
        )
    except Exception as e:
        _reconciliation_gap("persistence_failed", payment, user.id, order_number, e)
        raise OrderNotSaved("Order could not be saved. Please contact support.")

    logger.info(
        {"event": "order_created", "order_number": order.order_number, "payment_id": payment.id,
         "payment_status": order.payment_status}
    )
    return CheckoutResult(order.id, order.order_number, payment.status)
