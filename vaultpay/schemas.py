from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class InitializePaymentRequest(BaseModel):
    order_id: str = Field(min_length=1)
    channels: Optional[List[str]] = None
    callback_url: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Decimal = Field(gt=0, decimal_places=2)
    reason: str = Field(min_length=1)


class ChargeSavedCardRequest(BaseModel):
    authorization_code: str = Field(min_length=1)
    amount: Decimal = Field(gt=0, decimal_places=2)
    order_id: Optional[str] = None


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    customer_id: Optional[str]
    payment_reference: str
    amount: Decimal
    currency: str
    payment_method: str
    status: str
    refunded_amount: Decimal
    channel: Optional[str]
    card_last4: Optional[str]
    card_type: Optional[str]
    failure_reason: Optional[str]
    paid_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class PaymentMethodOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    paystack_authorization_code: str
    card_last4: Optional[str]
    card_type: Optional[str]
    channel: Optional[str]
    is_default: bool


class WebhookLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_type: str
    processed: bool
    processing_error: Optional[str]
    retry_count: int
    last_retry_at: Optional[datetime]
    created_at: Optional[datetime]
