import re
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.cart import Cart, CartItem
from models.order import Order, OrderStatusLog
from models.product import Product
from app.services import cart_service
from app.services.payment_gateway import PaymentGatewayError

PAY_URL = "/api/v1/payments"
ORDER_NUMBER = re.compile(r"^RMM-\d{8}-[A-Z0-9]{5}$")
PAID_OUT_OF_STOCK = "Some products went out of stock after your payment was taken. Please contact support."


def _payload(address_id, **overrides):
    body = {
        "token": "card-token-123",
        "paymentMethodId": "visa",
        "addressId": address_id,
        "installments": 1,
        "issuerId": 310,
        "identificationType": "DNI",
        "identificationNumber": "12345678",
    }
    body.update(overrides)
    return body


def _fill_cart(client, headers, product_id, quantity=1):
    resp = client.post("/api/v1/cart", json={"productId": product_id, "quantity": quantity}, headers=headers)
    assert resp.status_code == 200


def _stock(app, product_id):
    with app.app_context():
        return db.session.get(Product, product_id).stock


def _cart_lines(app, user_id):
    with app.app_context():
        cart = Cart.query.filter_by(user_id=user_id).first()
        return CartItem.query.filter_by(cart_id=cart.id).count() if cart else 0


def _order_count(app):
    with app.app_context():
        return Order.query.count()


def test_checkout_happy_path(app, client, gateway, login, make_product, make_address):
    user_id, headers = login()
    pid = make_product(price="49.99", stock=8)
    aid = make_address(user_id)
    _fill_cart(client, headers, pid)

    resp = client.post(PAY_URL, json=_payload(aid), headers=headers)
    assert resp.status_code == 201
    data = resp.get_json()["data"]
    assert ORDER_NUMBER.match(data["orderNumber"])
    assert data["status"] == "approved"

    assert _stock(app, pid) == 7
    assert _cart_lines(app, user_id) == 0
    with app.app_context():
        order = Order.query.one()
        assert order.id == data["orderId"]
        assert order.order_number == data["orderNumber"]
        assert order.status == "CONFIRMED"
        assert order.payment_status == "PAID"
        assert order.total == Decimal("49.99")
        assert order.subtotal == Decimal("49.99")
        assert order.gateway_payment_id == gateway.by_key[order.order_number]
        assert [(i.product_id, i.quantity, i.price) for i in order.items] == [(pid, 1, Decimal("49.99"))]
        assert [log.source for log in order.status_log] == ["checkout"]

    charge, key = gateway.create_calls[0]
    assert key == data["orderNumber"]
    assert charge.transaction_amount == Decimal("49.99")
    assert charge.external_reference == data["orderNumber"]
    assert charge.description == "Retrommerce — 1 item(s)"
    assert charge.issuer_id == 310
    assert charge.payer.email == "buyer@example.com"
    assert charge.payer.identification.number == "12345678"


def test_pending_payment_creates_pending_order(app, client, gateway, login, make_product, make_address):
    gateway.status = "in_process"
    user_id, headers = login()
    pid = make_product(stock=2)
    aid = make_address(user_id)
    _fill_cart(client, headers, pid, 2)

    resp = client.post(PAY_URL, json=_payload(aid), headers=headers)
    assert resp.status_code == 201
    assert resp.get_json()["data"]["status"] == "in_process"
    assert _stock(app, pid) == 0
    with app.app_context():
        order = Order.query.one()
        assert (order.status, order.payment_status) == ("PENDING", "PENDING")


def test_rejected_payment_persists_nothing(app, client, gateway, login, make_product, make_address):
    gateway.status = "rejected"
    gateway.status_detail = "cc_rejected_insufficient_amount"
    user_id, headers = login()
    pid = make_product(stock=8)
    aid = make_address(user_id)
    _fill_cart(client, headers, pid)

    resp = client.post(PAY_URL, json=_payload(aid), headers=headers)
    assert resp.status_code == 422
    body = resp.get_json()
    assert body["status"] == "error"
    assert body["detail"] == "cc_rejected_insufficient_amount"
    assert _order_count(app) == 0
    assert _stock(app, pid) == 8
    assert _cart_lines(app, user_id) == 1


def test_gateway_failure_is_502(app, client, gateway, login, make_product, make_address):
    gateway.create_error = PaymentGatewayError("read timeout")
    user_id, headers = login()
    pid = make_product(stock=8)
    aid = make_address(user_id)
    _fill_cart(client, headers, pid)

    resp = client.post(PAY_URL, json=_payload(aid), headers=headers)
    assert resp.status_code == 502
    assert _order_count(app) == 0
    assert _stock(app, pid) == 8


def test_out_of_stock_lists_every_short_product(app, client, gateway, login, make_product, make_address):
    user_id, headers = login()
    amiga = make_product(name="Amiga 500", stock=2)
    spectrum = make_product(name="ZX Spectrum", stock=2)
    atari = make_product(name="Atari 2600", stock=5)
    aid = make_address(user_id)
    _fill_cart(client, headers, amiga, 2)
    _fill_cart(client, headers, spectrum, 2)
    _fill_cart(client, headers, atari, 1)
    with app.app_context():
        db.session.execute(update(Product).where(Product.id.in_([amiga, spectrum])).values(stock=1))
        db.session.commit()

    resp = client.post(PAY_URL, json=_payload(aid), headers=headers)
    assert resp.status_code == 409
    body = resp.get_json()
    assert body["message"] == "Some products are out of stock"
    assert sorted(body["items"]) == ["Amiga 500", "ZX Spectrum"]
    assert "payment_id" not in body
    assert gateway.create_calls == []
    assert _order_count(app) == 0


def test_address_must_belong_to_user(app, client, gateway, login, make_product, make_address):
    user_id, headers = login()
    other_id, _ = login("someone-else@example.com")
    _fill_cart(client, headers, make_product())
    foreign = make_address(other_id)

    assert client.post(PAY_URL, json=_payload(foreign), headers=headers).status_code == 404
    assert client.post(PAY_URL, json=_payload(9999), headers=headers).status_code == 404
    assert gateway.create_calls == []


def test_empty_cart_is_400(client, gateway, login, make_address):
    user_id, headers = login()
    aid = make_address(user_id)
    resp = client.post(PAY_URL, json=_payload(aid), headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Cart is empty"
    assert gateway.create_calls == []


def test_missing_fields_is_400(client, gateway, login):
    _, headers = login()
    resp = client.post(PAY_URL, json={"token": "t"}, headers=headers)
    assert resp.status_code == 400
    fields = {tuple(e["loc"]) for e in resp.get_json()["errors"]}
    assert ("paymentMethodId",) in fields
    assert ("addressId",) in fields


def test_checkout_requires_auth(client, gateway):
    assert client.post(PAY_URL, json=_payload(1)).status_code == 401
    assert gateway.create_calls == []


def test_failed_persistence_rolls_back_everything(app, client, gateway, login, make_product, make_address,
                                                  monkeypatch, caplog):
    user_id, headers = login()
    pid = make_product(stock=8)
    aid = make_address(user_id)
    _fill_cart(client, headers, pid, 2)

    def broken(uid):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(cart_service, "delete_cart_lines", broken)
    caplog.set_level("CRITICAL")
    resp = client.post(PAY_URL, json=_payload(aid), headers=headers)
    assert resp.status_code == 500
    assert resp.get_json()["message"] == "Order could not be saved. Please contact support."

    assert _order_count(app) == 0
    assert _stock(app, pid) == 8
    assert _cart_lines(app, user_id) == 1
    with app.app_context():
        assert OrderStatusLog.query.count() == 0
    gaps = [r.msg for r in caplog.records if isinstance(r.msg, dict) and r.msg.get("event") == "reconciliation_gap"]
    assert gaps and gaps[0]["reason"] == "persistence_failed"
    assert gaps[0]["payment_id"] == gateway.by_key[gaps[0]["order_number"]]


def test_stock_drained_after_recheck_is_not_oversold(app, client, gateway, login, make_product, make_address,
                                                     caplog):
    user_id, headers = login()
    pid = make_product(name="Commodore 64", stock=1)
    aid = make_address(user_id)
    _fill_cart(client, headers, pid)

    def competing_checkout(charge):
        # Another buyer takes the last unit while this charge is in flight
        with app.app_context():
            db.session.execute(update(Product).where(Product.id == pid).values(stock=Product.stock - 1))
            db.session.commit()

    gateway.on_create = competing_checkout
    caplog.set_level("CRITICAL")
    resp = client.post(PAY_URL, json=_payload(aid), headers=headers)
    assert resp.status_code == 409
    body = resp.get_json()
    assert body["items"] == ["Commodore 64"]
    assert body["message"] == PAID_OUT_OF_STOCK
    charge, _ = gateway.create_calls[0]
    assert body["order_number"] == charge.external_reference
    assert body["payment_id"] == gateway.by_key[charge.external_reference]
    assert _stock(app, pid) == 0
    assert _order_count(app) == 0
    assert _cart_lines(app, user_id) == 1
    assert any(
        isinstance(r.msg, dict) and r.msg.get("reason") == "stock_exhausted" for r in caplog.records
    )


def test_idempotency_key_replays_existing_order(app, client, gateway, login, make_product, make_address):
    user_id, headers = login()
    pid = make_product(stock=8)
    aid = make_address(user_id)
    _fill_cart(client, headers, pid)
    keyed = dict(headers, **{"Idempotency-Key": "attempt-1"})

    first = client.post(PAY_URL, json=_payload(aid), headers=keyed)
    assert first.status_code == 201
    second = client.post(PAY_URL, json=_payload(aid), headers=keyed)
    assert second.status_code == 200
    assert second.get_json()["data"]["orderNumber"] == first.get_json()["data"]["orderNumber"]
    assert len(gateway.create_calls) == 1
    assert gateway.create_calls[0][1] == f"{user_id}:attempt-1"
    assert _order_count(app) == 1
    assert _stock(app, pid) == 7


def test_idempotency_key_is_scoped_per_user(app, client, gateway, login, make_product, make_address):
    pid = make_product(stock=8)
    first_user, first_headers = login("first@example.com")
    second_user, second_headers = login("second@example.com")
    for uid, headers in ((first_user, first_headers), (second_user, second_headers)):
        _fill_cart(client, headers, pid)
    first_aid = make_address(first_user)
    second_aid = make_address(second_user)

    a = client.post(PAY_URL, json=_payload(first_aid), headers=dict(first_headers, **{"Idempotency-Key": "k"}))
    b = client.post(PAY_URL, json=_payload(second_aid), headers=dict(second_headers, **{"Idempotency-Key": "k"}))
    assert a.status_code == 201
    assert b.status_code == 201
    assert a.get_json()["data"]["orderNumber"] != b.get_json()["data"]["orderNumber"]
    assert _order_count(app) == 2


def test_keyed_retry_after_failed_save_does_not_charge_twice(app, client, gateway, login, make_product,
                                                             make_address, monkeypatch):
    user_id, headers = login()
    pid = make_product(stock=8)
    aid = make_address(user_id)
    _fill_cart(client, headers, pid)
    keyed = dict(headers, **{"Idempotency-Key": "attempt-7"})

    real_delete = cart_service.delete_cart_lines
    calls = {"n": 0}

    def flaky(uid):
        calls["n"] += 1
        if calls["n"] == 1:
            raise SQLAlchemyError("connection reset")
        return real_delete(uid)

    monkeypatch.setattr(cart_service, "delete_cart_lines", flaky)
    assert client.post(PAY_URL, json=_payload(aid), headers=keyed).status_code == 500

    resp = client.post(PAY_URL, json=_payload(aid), headers=keyed)
    assert resp.status_code == 201
    first_charge = gateway.create_calls[0][0]
    assert resp.get_json()["data"]["orderNumber"] == first_charge.external_reference
    assert len(gateway.payments) == 1
    assert _order_count(app) == 1
    assert _stock(app, pid) == 7


def test_two_checkouts_for_last_unit_yield_one_order(app, client, gateway, login, make_product, make_address):
    from models.user import User
    from app.schemas.payments import CheckoutRequest
    from app.services.checkout_service import place_order

    pid = make_product(name="Commodore 64", stock=1)
    buyer_id, buyer = login("buyer@example.com")
    rival_id, rival = login("rival@example.com")
    _fill_cart(client, buyer, pid)
    _fill_cart(client, rival, pid)
    buyer_aid = make_address(buyer_id)
    rival_aid = make_address(rival_id)
    rival_results = []

    def rival_checkout(charge):
        with app.app_context():
            user = db.session.get(User, rival_id)
            data = CheckoutRequest.model_validate(_payload(rival_aid))
            rival_results.append(place_order(user, data, gateway))

    gateway.on_create = rival_checkout
    resp = client.post(PAY_URL, json=_payload(buyer_aid), headers=buyer)

    assert resp.status_code == 409
    assert resp.get_json()["message"] == PAID_OUT_OF_STOCK
    assert resp.get_json()["payment_id"] in gateway.payments
    assert len(rival_results) == 1
    assert _order_count(app) == 1
    assert _stock(app, pid) == 0
    with app.app_context():
        assert Order.query.one().user_id == rival_id
    assert _cart_lines(app, buyer_id) == 1
    assert _cart_lines(app, rival_id) == 0


def test_issuer_id_must_be_integral(client, gateway, login, make_product, make_address):
    user_id, headers = login()
    aid = make_address(user_id)
    _fill_cart(client, headers, make_product())

    resp = client.post(PAY_URL, json=_payload(aid, issuerId=12.7), headers=headers)
    assert resp.status_code == 400
    assert gateway.create_calls == []

    resp = client.post(PAY_URL, json=_payload(aid, issuerId=310.0), headers=headers)
    assert resp.status_code == 201
    assert gateway.create_calls[0][0].issuer_id == 310
