"""MercadoPago payments adapter.

Only two calls are used: create a tokenized card charge and look up a single
payment. Responses are validated into ``GatewayPayment`` here so the rest of
the code never touches raw gateway JSON.
"""
import logging
from decimal import Decimal
from typing import Optional

import requests
from flask import current_app
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

EXTENSION_KEY = "payment_gateway"


class PaymentGatewayError(Exception):
    """Transport failure, timeout, non-2xx answer or unreadable payload."""


class PayerIdentification(BaseModel):
    type: str
    number: str


class Payer(BaseModel):
    email: str
    identification: Optional[PayerIdentification] = None


class ChargeRequest(BaseModel):
    transaction_amount: Decimal
    token: str
    description: str
    external_reference: str
    installments: int = 1
    payment_method_id: str
    issuer_id: Optional[int] = None
    payer: Payer

    def to_payload(self) -> dict:
        payload = self.model_dump(exclude_none=True)
        payload["transaction_amount"] = float(self.transaction_amount)
        return payload


class GatewayPayment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str
    status_detail: Optional[str] = None
    external_reference: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def id_as_str(cls, value):
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @property
    def is_rejected(self) -> bool:
        return self.status == "rejected"


def _transient():
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.3, min=0.3, max=3),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
    )


class MercadoPagoGateway:
    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.mercadopago.com",
        timeout: float = 15,
        session: Optional[requests.Session] = None,
    ):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self, idempotency_key: Optional[str] = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    def _parse(self, resp) -> GatewayPayment:
        try:
            return GatewayPayment.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise PaymentGatewayError(f"Unreadable payment payload: {e}") from e

    def create_payment(self, charge: ChargeRequest, *, idempotency_key: str) -> GatewayPayment:
        """Create a charge. Not retried: a timeout is reported, never guessed."""
        url = f"{self.base_url}/v1/payments"
        logger.info({"event": "gateway_create_payment", "external_reference": charge.external_reference})
        try:
            resp = self.session.post(
                url,
                json=charge.to_payload(),
                headers=self._headers(idempotency_key),
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise PaymentGatewayError(f"create payment failed: {e}") from e
        return self._parse(resp)

    @_transient()
    def _get(self, url):
        resp = self.session.get(url, headers=self._headers(), timeout=self.timeout)
        resp.raise_for_status()
        return resp

    def get_payment(self, payment_id: str) -> GatewayPayment:
        url = f"{self.base_url}/v1/payments/{payment_id}"
        try:
            resp = self._get(url)
        except requests.RequestException as e:
            raise PaymentGatewayError(f"get payment {payment_id} failed: {e}") from e
        return self._parse(resp)


def init_payment_gateway(app, gateway=None):
    """Attach the process-wide gateway client to the app."""
    if gateway is None:
        gateway = MercadoPagoGateway(
            access_token=app.config.get("MP_ACCESS_TOKEN", ""),
            base_url=app.config.get("MP_API_BASE_URL", "https://api.mercadopago.com"),
            timeout=app.config.get("MP_TIMEOUT_SECONDS", 15),
        )
    app.extensions[EXTENSION_KEY] = gateway
    return gateway


def get_payment_gateway():
    return current_app.extensions[EXTENSION_KEY]
