import enum
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.sql import func

from vaultpay.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    PARTIALLY_CAPTURED = "partially_captured"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    CHARGEBACK = "chargeback"


class PaymentMethod(str, enum.Enum):
    PAYSTACK_CARD = "paystack_card"
    PAYSTACK_TRANSFER = "paystack_transfer"
    PAYSTACK_BANK = "paystack_bank"
    PAYSTACK_USSD = "paystack_ussd"
    PAYSTACK_QR = "paystack_qr"
    PAYSTACK_MOBILE_MONEY = "paystack_mobile_money"


class RefundStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


# Statuses reached once the funds were collected
SETTLED_STATUSES = {
    PaymentStatus.CAPTURED,
    PaymentStatus.PARTIALLY_REFUNDED,
    PaymentStatus.REFUNDED,
    PaymentStatus.DISPUTED,
    PaymentStatus.CHARGEBACK,
}
REFUNDABLE_STATUSES = {PaymentStatus.CAPTURED, PaymentStatus.PARTIALLY_REFUNDED}


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_uuid)
    email = Column(String, nullable=False, unique=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)


class Order(Base):
    __tablename__ = "orders"

    """An order placed on the storefront.

    Owned by the order service; payments only read it and flip its
    payment_status / status / paid_at fields.
    """

    id = Column(String, primary_key=True, default=_uuid)
    order_number = Column(String, nullable=False, unique=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    total_amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String, nullable=False, default="NGN")
    status = Column(String, nullable=False, default="pending")
    payment_status = Column(String, nullable=False, default="unpaid")
    paid_at = Column(DateTime(timezone=True), nullable=True)


class Payment(Base):
    __tablename__ = "payments"

    """One attempt to collect money for an order through the gateway.

    A payment is identified towards Paystack by its merchant generated
    ``payment_reference``. ``refunded_amount`` never exceeds ``amount``;
    ``version`` guards concurrent writers (stale updates fail).
    """

    id = Column(String, primary_key=True, default=_uuid)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    customer_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    payment_reference = Column(String, nullable=False, unique=True, index=True)

    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String, nullable=False, default="NGN")
    payment_method = Column(String, nullable=False, default=PaymentMethod.PAYSTACK_CARD.value)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    refunded_amount = Column(Numeric(18, 2), nullable=False, default=0)

    channel = Column(String, nullable=True)
    card_last4 = Column(String, nullable=True)
    card_type = Column(String, nullable=True)
    card_bank = Column(String, nullable=True)

    paystack_access_code = Column(String, nullable=True)
    paystack_transaction_id = Column(String, nullable=True, index=True)
    paystack_authorization_code = Column(String, nullable=True)
    paystack_customer_code = Column(String, nullable=True)
    paystack_ip_address = Column(String, nullable=True)
    gateway_response = Column(Text, nullable=True)
    gateway_metadata = Column(JSON, nullable=True)
    failure_reason = Column(Text, nullable=True)

    paid_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(String, primary_key=True, default=_uuid)
    payment_id = Column(String, ForeignKey("payments.id"), nullable=False, index=True)
    refund_reference = Column(String, nullable=False, unique=True)
    amount = Column(Numeric(18, 2), nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String, nullable=False, default=RefundStatus.PENDING.value)
    processed_by = Column(String, nullable=True)
    paystack_refund_id = Column(String, nullable=True, index=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class CustomerPaymentMethod(Base):
    __tablename__ = "customer_payment_methods"

    """A card saved with the gateway, chargeable without the customer present."""

    id = Column(String, primary_key=True, default=_uuid)
    customer_id = Column(String, ForeignKey("users.id"), nullable=False)
    paystack_authorization_code = Column(String, nullable=False)
    paystack_customer_code = Column(String, nullable=True)
    card_last4 = Column(String, nullable=True)
    card_type = Column(String, nullable=True)
    channel = Column(String, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("ix_customer_payment_methods_customer_code", "customer_id", "paystack_authorization_code", unique=True),
    )


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    """Audit record of a gateway webhook delivery.

    Written before the event is dispatched; ``processed`` flips to true once
    a handler succeeds. Failed deliveries keep their error and can be
    retried on demand.
    """

    id = Column(String, primary_key=True, default=_uuid)
    event_type = Column(String, nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    processed = Column(Boolean, nullable=False, default=False)
    processing_error = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
