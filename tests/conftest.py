import os
import sys
from decimal import Decimal
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from models import db
from models.address import Address
from models.product import Product
from app.services.payment_gateway import GatewayPayment, PaymentGatewayError


class FakeGateway:
    """In-process stand-in for the MercadoPago client."""

    def __init__(self):
        self.status = "approved"
        self.status_detail = "accredited"
        self.create_error = None
        self.get_error = None
        self.on_create = None
        self.payments = {}
        self.by_key = {}
        self.create_calls = []
        self.get_calls = []
        self._next_id = 9000

    def create_payment(self, charge, *, idempotency_key):
        self.create_calls.append((charge, idempotency_key))
        if self.create_error:
            raise self.create_error
        if idempotency_key in self.by_key:
            return self.payments[self.by_key[idempotency_key]]
        if self.on_create:
            hook, self.on_create = self.on_create, None
            hook(charge)
        self._next_id += 1
        payment = GatewayPayment(
            id=str(self._next_id),
            status=self.status,
            status_detail=self.status_detail,
            external_reference=charge.external_reference,
        )
        self.payments[payment.id] = payment
        self.by_key[idempotency_key] = payment.id
        return payment

    def add_payment(self, payment_id, status, external_reference=None):
        self.payments[payment_id] = GatewayPayment(
            id=payment_id, status=status, external_reference=external_reference
        )

    def set_status(self, payment_id, status):
        self.payments[payment_id] = self.payments[payment_id].model_copy(update={"status": status})

    def get_payment(self, payment_id):
        self.get_calls.append(payment_id)
        if self.get_error:
            raise self.get_error
        if payment_id not in self.payments:
            raise PaymentGatewayError(f"payment {payment_id} not found")
        return self.payments[payment_id]


@pytest.fixture(scope='session')
def app_instance():
    os.environ.setdefault('APP_ENV', 'testing')
    os.environ.setdefault('DATABASE_URL', 'sqlite:///:memory:')
    from app import create_app
    from app.config import TestingConfig
    app = create_app(TestingConfig, payment_gateway=FakeGateway())
    return app


@pytest.fixture(scope='function')
def app(app_instance):
    with app_instance.app_context():
        db.drop_all()
        db.create_all()
        yield app_instance
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    return app.test_client()


@pytest.fixture(scope='function')
def gateway(app):
    fake = FakeGateway()
    app.extensions["payment_gateway"] = fake
    return fake


@pytest.fixture
def login(client):
    """Return ``(user_id, headers)`` for a stub-authenticated user."""

    def _login(email="buyer@example.com"):
        resp = client.post("/__auth/login_stub", json={"email": email})
        data = resp.get_json()["data"]
        return data["user_id"], {"Authorization": f"Bearer {data['access']}"}

    return _login


@pytest.fixture
def make_product(app):
    counter = {"n": 0}

    def _make(name="Commodore 64", price="49.99", stock=8, original_price=None):
        counter["n"] += 1
        with app.app_context():
            product = Product(
                name=name,
                slug=f"{name.lower().replace(' ', '-')}-{counter['n']}",
                price=Decimal(price),
                original_price=Decimal(original_price or price),
                stock=stock,
                images=[],
            )
            db.session.add(product)
            db.session.commit()
            return product.id

    return _make


@pytest.fixture
def make_address(app):
    def _make(user_id, is_default=False):
        with app.app_context():
            address = Address(
                user_id=user_id,
                full_name="Ada Lovelace",
                street="Calle Falsa 123",
                city="Buenos Aires",
                postal_code="1000",
                is_default=is_default,
            )
            db.session.add(address)
            db.session.commit()
            return address.id

    return _make
