"""API request/response schemas for payment and credit endpoints."""

from datetime import datetime
from decimal import Decimal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    """Accept and emit the camelCase field names the web client uses."""

    model_config = ConfigDict(populate_by_name=True)


# Upper bound for one consultation payment, in rupees.
MAX_AMOUNT = Decimal("1000000.00")


class InitiateRequest(CamelModel):
    """Payload accepted by `POST /payments/initiate` (amount in rupees)."""

    amount: Decimal = Field(gt=0, le=MAX_AMOUNT, decimal_places=2)
    payer_id: str = Field(min_length=1, alias="payerId")
    payee_id: str = Field(min_length=1, alias="payeeId")


class InitiateResponse(CamelModel):
    order_id: str = Field(serialization_alias="orderId")
    redirect_url: str = Field(serialization_alias="redirectUrl")
    status: str


class PaymentStatusResponse(CamelModel):
    """Stored status plus the gateway view that produced it."""

    order_id: str | None = Field(serialization_alias="orderId")
    status: str
    gateway_state: str | None = Field(serialization_alias="gatewayState")
    indeterminate: bool
    amount: Decimal
    amount_minor: int = Field(serialization_alias="amountMinor")
    payer_id: str = Field(serialization_alias="payerId")
    payee_id: str = Field(serialization_alias="payeeId")
    consumed: bool


class WebhookPayload(BaseModel):
    order_id: str = Field(min_length=1, validation_alias=AliasChoices("orderId", "merchantOrderId"))
    state: str = Field(min_length=1)


class WebhookEvent(BaseModel):
    """Gateway server-to-server notification body."""

    event: str
    payload: WebhookPayload


class PairRequest(CamelModel):
    """Body identifying one (payer, payee) pair."""

    payer_id: str = Field(min_length=1, alias="payerId")
    payee_id: str = Field(min_length=1, alias="payeeId")


class AttemptResponse(CamelModel):
    attempt_id: str = Field(serialization_alias="attemptId")
    order_id: str | None = Field(serialization_alias="orderId")
    payer_id: str = Field(serialization_alias="payerId")
    payee_id: str = Field(serialization_alias="payeeId")
    amount: Decimal
    amount_minor: int = Field(serialization_alias="amountMinor")
    status: str
    consumed: bool
    consumed_at: datetime | None = Field(serialization_alias="consumedAt")
    created_at: datetime = Field(serialization_alias="createdAt")


class CreditCountResponse(BaseModel):
    count: int


class SweepResponse(BaseModel):
    checked: int
    changed: int
    indeterminate: int
    unknown: int
    errors: int
