from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, conint, constr, field_validator


def _stringify(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError("must be an integer id")
        return str(int(value))
    if isinstance(value, int):
        return str(value)
    return value


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: constr(min_length=1)
    payment_method_id: constr(min_length=1) = Field(alias="paymentMethodId")
    address_id: conint(gt=0) = Field(alias="addressId")
    installments: Optional[conint(ge=1)] = None
    issuer_id: Optional[str] = Field(default=None, alias="issuerId")
    identification_type: Optional[str] = Field(default=None, alias="identificationType")
    identification_number: Optional[str] = Field(default=None, alias="identificationNumber")

    @field_validator("issuer_id", mode="before")
    @classmethod
    def issuer_as_str(cls, value):
        return _stringify(value)


class WebhookData(BaseModel):
    id: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def id_as_str(cls, value):
        return _stringify(value)


class WebhookNotification(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Optional[str] = None
    data: Optional[WebhookData] = None
