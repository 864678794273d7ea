import logging
import threading
import time
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from functools import wraps
from typing import Any, Dict, List, Optional

from vaultpay.config import APP_URL, DEFAULT_CURRENCY, PAYMENT_SESSION_MINUTES
from vaultpay.errors import GatewayError, NotFoundError, PaymentError, ValidationError
from vaultpay.models import (
    REFUNDABLE_STATUSES,
    SETTLED_STATUSES,
    CustomerPaymentMethod,
    Order,
    Payment,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
    User,
)
from vaultpay.notifications import PaymentNotifier
from vaultpay.paystack_service import PaystackService
from vaultpay.repository import DatabaseService, utcnow
from vaultpay.webhooks import WebhookEvent, WebhookHandlerService

logger = logging.getLogger(__name__)


KOBO = Decimal("0.01")

_last_ms = 0
_ms_lock = threading.Lock()


def _epoch_ms() -> int:
    """Millisecond timestamp, strictly increasing within the process."""
    global _last_ms
    with _ms_lock:
        _last_ms = max(int(time.time() * 1000), _last_ms + 1)
        return _last_ms


def _kobo_amount(amount, label: str) -> Decimal:
    """Parse a major-unit amount that the gateway can represent exactly."""
    try:
        amount = Decimal(str(amount))
    except InvalidOperation:
        raise ValidationError(f"{label} amount is not a number: {amount}")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{label} amount must be positive")
    if amount != amount.quantize(KOBO):
        raise ValidationError(f"{label} amount cannot have more than 2 decimal places")
    return amount


def workflow_step(name: str):
    """Prefix any :class:`PaymentError` escaping the step with the step name."""

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except PaymentError as e:
                logger.warning(f"{name} failed: {e.message}")
                raise e.with_prefix(name) from e

        return wrapper

    return decorator


class PaymentWorkflowService:
    """Sequences gateway calls and database writes for a single payment.

    pending -> captured -> partially_refunded -> refunded, or pending -> failed.
    The service keeps no state between calls: every step is persisted before
    the next gateway call, and no database transaction is held open while
    the gateway is being called.
    """

    def __init__(
        self,
        database: DatabaseService,
        paystack: PaystackService,
        notifier: PaymentNotifier = None,
    ):
        self.database = database
        self.paystack = paystack
        self.notifier = notifier or PaymentNotifier()

    @workflow_step("Payment initiation")
    def initiate_payment(
        self,
        order: Order,
        customer: User,
        channels: Optional[List[str]] = None,
        callback_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        reference = f"{order.order_number}_{_epoch_ms()}"
        currency = order.currency or DEFAULT_CURRENCY

        with self.database.transaction():
            payment = self.database.create_payment(
                {
                    "order_id": order.id,
                    "customer_id": customer.id,
                    "payment_reference": reference,
                    "amount": order.total_amount,
                    "currency": currency,
                    "payment_method": PaymentMethod.PAYSTACK_CARD.value,
                    "status": PaymentStatus.PENDING.value,
                }
            )
            payment_id = payment.id

        customer_name = f"{customer.first_name or ''} {customer.last_name or ''}".strip()
        try:
            session = self.paystack.initialize_transaction(
                email=customer.email,
                amount=order.total_amount,
                reference=reference,
                currency=currency,
                callback_url=callback_url or f"{APP_URL}/payment/callback",
                metadata={
                    "order_id": order.id,
                    "customer_id": customer.id,
                    "customer_name": customer_name,
                    "order_number": order.order_number,
                },
                channels=channels,
            )
        except GatewayError as e:
            with self.database.transaction():
                self.database.update_payment(
                    payment_id,
                    {"status": PaymentStatus.FAILED.value, "failure_reason": e.message},
                )
            raise

        with self.database.transaction():
            self.database.update_payment(
                payment_id,
                {
                    "paystack_access_code": session["access_code"],
                    "gateway_metadata": session,
                },
            )

        logger.info(f"Initiated payment {payment_id} ({reference}) for order {order.id}")
        return {
            "payment_id": payment_id,
            "authorization_url": session["authorization_url"],
            "reference": reference,
            "expires_at": utcnow() + timedelta(minutes=PAYMENT_SESSION_MINUTES),
        }

    @workflow_step("Payment handling")
    def handle_successful_payment(self, reference: str) -> Dict[str, Any]:
        """Capture a payment after re-verifying it with the gateway.

        Safe to call repeatedly: a payment that was already captured (or has
        moved past capture) is returned untouched.
        """
        verification = self.paystack.verify_transaction(reference)
        if verification.get("status") != "success":
            raise ValidationError(f"Payment verification failed: {verification.get('status')}")

        payment = self.database.get_payment_by_reference(reference)
        if payment is None:
            raise NotFoundError(f"Payment not found for reference: {reference}")

        result = {"success": True, "order_id": payment.order_id, "payment_id": payment.id}

        verified_amount = verification.get("amount")
        if verified_amount is not None and Decimal(str(verified_amount)) != payment.amount:
            raise ValidationError(
                f"Verified amount {verified_amount} does not match payment amount {payment.amount}"
            )

        authorization = verification.get("authorization") or {}
        gateway_customer = verification.get("customer") or {}

        with self.database.transaction():
            payment = self.database.get_payment_for_update(result["payment_id"])
            if PaymentStatus(payment.status) in SETTLED_STATUSES:
                logger.info(f"Payment {payment.id} ({reference}) already {payment.status}, nothing to do")
                return result

            transaction_id = verification.get("id")
            self.database.update_payment(
                payment.id,
                {
                    "status": PaymentStatus.CAPTURED.value,
                    "paystack_transaction_id": str(transaction_id) if transaction_id is not None else None,
                    "paystack_authorization_code": authorization.get("authorization_code"),
                    "paystack_customer_code": gateway_customer.get("customer_code"),
                    "channel": verification.get("channel"),
                    "card_last4": authorization.get("last4"),
                    "card_type": authorization.get("card_type"),
                    "card_bank": authorization.get("bank"),
                    "paystack_ip_address": verification.get("ip_address"),
                    "gateway_response": verification.get("gateway_response"),
                    "paid_at": utcnow(),
                },
            )
            self._mark_order_paid(payment.order_id)
            customer_id = payment.customer_id

        logger.info(f"Captured payment {result['payment_id']} ({reference})")
        self.notifier.send_payment_confirmation(result["order_id"])

        if customer_id and authorization.get("authorization_code") and authorization.get("reusable", True):
            self._save_payment_method(customer_id, authorization, gateway_customer, verification.get("channel"))

        return result

    @workflow_step("Payment failure handling")
    def handle_failed_payment(self, reference: str, reason: Optional[str] = None) -> None:
        with self.database.transaction():
            payment = self.database.get_payment_by_reference(reference)
            if payment is None:
                raise NotFoundError(f"Payment not found for reference: {reference}")
            if payment.status != PaymentStatus.PENDING.value:
                logger.info(f"Ignoring failure for payment {payment.id} in status {payment.status}")
                return
            self.database.update_payment(
                payment.id,
                {
                    "status": PaymentStatus.FAILED.value,
                    "failure_reason": reason or "Payment declined",
                },
            )
            order_id = payment.order_id

        logger.info(f"Payment {reference} failed: {reason or 'Payment declined'}")
        self.notifier.send_payment_failure(order_id)

    @workflow_step("Refund processing")
    def process_refund(
        self,
        payment_id: str,
        amount,
        reason: str,
        processed_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        amount = _kobo_amount(amount, "Refund")

        # Reserve the amount: pending refunds count against the balance, and
        # touching the payment bumps its version so a racing reservation fails.
        with self.database.transaction():
            payment = self.database.get_payment_for_update(payment_id)
            if payment is None:
                raise NotFoundError("Payment not found")
            if PaymentStatus(payment.status) not in REFUNDABLE_STATUSES:
                raise ValidationError("Only captured payments can be refunded")

            refundable = (
                payment.amount
                - (payment.refunded_amount or 0)
                - self.database.pending_refund_total(payment_id)
            )
            if amount > refundable:
                raise ValidationError(f"Refund amount exceeds available balance ({refundable})")

            refund_reference = f"REF_{payment_id}_{_epoch_ms()}"
            refund = self.database.create_refund(
                {
                    "payment_id": payment_id,
                    "refund_reference": refund_reference,
                    "amount": amount,
                    "reason": reason,
                    "processed_by": processed_by,
                    "status": RefundStatus.PENDING.value,
                }
            )
            payment.updated_at = utcnow()
            refund_id = refund.id
            payment_reference = payment.payment_reference

        try:
            gateway_refund = self.paystack.refund_transaction(payment_reference, amount)
        except GatewayError as e:
            self._fail_refund(refund_id, e.message)
            raise

        gateway_refund_id = gateway_refund.get("id")
        self._complete_refund(
            refund_id, str(gateway_refund_id) if gateway_refund_id is not None else None
        )

        return {
            "success": True,
            "refund_id": refund_id,
            "refund_reference": refund_reference,
            "amount_refunded": amount,
        }

    @workflow_step("Refund completion")
    def complete_refund(self, refund_id: str, paystack_refund_id: Optional[str] = None) -> bool:
        return self._complete_refund(refund_id, paystack_refund_id)

    @workflow_step("Refund failure handling")
    def fail_refund(self, refund_id: str, message: str) -> bool:
        return self._fail_refund(refund_id, message)

    @workflow_step("Gateway refund recording")
    def record_gateway_refund(
        self,
        reference: str,
        amount,
        paystack_refund_id: Optional[str] = None,
        reason: Optional[str] = None,
        processed: bool = True,
    ) -> str:
        """Record a refund the gateway reports but this service never requested.

        Refunds issued from the Paystack dashboard only reach us as webhooks.
        The refund is reserved like a local one, then completed through the
        same path when ``processed`` is set, so the balance rules still hold.
        """
        amount = _kobo_amount(amount, "Refund")

        with self.database.transaction():
            payment = self.database.get_payment_by_reference(reference)
            if payment is None:
                raise NotFoundError(f"Payment not found for reference: {reference}")
            payment = self.database.get_payment_for_update(payment.id)
            if PaymentStatus(payment.status) not in REFUNDABLE_STATUSES:
                raise ValidationError("Only captured payments can be refunded")

            refundable = (
                payment.amount
                - (payment.refunded_amount or 0)
                - self.database.pending_refund_total(payment.id)
            )
            if amount > refundable:
                raise ValidationError(f"Refund amount exceeds available balance ({refundable})")

            refund = self.database.create_refund(
                {
                    "payment_id": payment.id,
                    "refund_reference": f"REF_{payment.id}_{_epoch_ms()}",
                    "amount": amount,
                    "reason": reason or "Refunded at gateway",
                    "paystack_refund_id": paystack_refund_id,
                    "status": RefundStatus.PENDING.value,
                }
            )
            payment.updated_at = utcnow()
            refund_id = refund.id

        logger.info(f"Recorded gateway refund {paystack_refund_id} of {amount} for {reference}")
        if processed:
            self._complete_refund(refund_id, paystack_refund_id)
        return refund_id

    def _complete_refund(self, refund_id: str, paystack_refund_id: Optional[str]) -> bool:
        with self.database.transaction():
            refund = self.database.get_refund(refund_id)
            if refund is None:
                raise NotFoundError(f"Refund not found: {refund_id}")
            if refund.status != RefundStatus.PENDING.value:
                return False

            payment = self.database.get_payment_for_update(refund.payment_id)
            refunded = (payment.refunded_amount or 0) + refund.amount
            if refunded > payment.amount:
                raise ValidationError("Refund would exceed the payment amount")
            fully_refunded = refunded >= payment.amount

            self.database.update_refund(
                refund.id,
                {
                    "status": RefundStatus.PROCESSED.value,
                    "paystack_refund_id": paystack_refund_id or refund.paystack_refund_id,
                },
            )
            self.database.update_payment(
                payment.id,
                {
                    "refunded_amount": refunded,
                    "status": (
                        PaymentStatus.REFUNDED.value
                        if fully_refunded
                        else PaymentStatus.PARTIALLY_REFUNDED.value
                    ),
                },
            )
            if fully_refunded:
                self._mark_order_refunded(payment.order_id)
            order_id = payment.order_id
            amount = refund.amount

        logger.info(f"Refund {refund_id} processed, {refunded} of payment {payment.id} refunded")
        self.notifier.send_refund_notification(order_id, amount)
        return True

    def _fail_refund(self, refund_id: str, message: str) -> bool:
        with self.database.transaction():
            refund = self.database.get_refund(refund_id)
            if refund is None:
                raise NotFoundError(f"Refund not found: {refund_id}")
            if refund.status != RefundStatus.PENDING.value:
                return False
            self.database.update_refund(
                refund_id,
                {"status": RefundStatus.FAILED.value, "error_message": message},
            )
        logger.warning(f"Refund {refund_id} failed: {message}")
        return True

    @workflow_step("Authorization charge")
    def charge_saved_card(
        self,
        customer_id: str,
        authorization_code: str,
        amount,
        order_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        amount = _kobo_amount(amount, "Charge")

        method = self.database.get_customer_payment_method_by_code(customer_id, authorization_code)
        if method is None or not method.is_active:
            raise ValidationError("Unknown or inactive saved card")

        customer = self.database.get_user(customer_id)
        if customer is None:
            raise NotFoundError("Customer not found")

        reference = f"charge_{customer_id}_{_epoch_ms()}"
        metadata = dict(metadata or {})

        payment_id = None
        if order_id:
            order = self.database.get_order(order_id)
            if order is None or order.user_id != customer_id:
                raise NotFoundError(f"Order not found: {order_id}")
            metadata["order_id"] = order_id
            with self.database.transaction():
                payment = self.database.create_payment(
                    {
                        "order_id": order_id,
                        "customer_id": customer_id,
                        "payment_reference": reference,
                        "amount": amount,
                        "currency": order.currency or DEFAULT_CURRENCY,
                        "payment_method": PaymentMethod.PAYSTACK_CARD.value,
                        "status": PaymentStatus.PENDING.value,
                        "paystack_authorization_code": authorization_code,
                        "card_last4": method.card_last4,
                        "card_type": method.card_type,
                    }
                )
                payment_id = payment.id

        try:
            verification = self.paystack.charge_authorization(
                authorization_code=authorization_code,
                email=customer.email,
                amount=amount,
                reference=reference,
                metadata=metadata,
            )
        except GatewayError as e:
            if payment_id:
                self._mark_payment_failed(payment_id, e.message)
            raise

        if verification.get("status") != "success":
            reason = verification.get("gateway_response") or verification.get("status")
            if payment_id:
                self._mark_payment_failed(payment_id, reason)
            raise GatewayError(f"Charge was not successful: {reason}")

        transaction_id = verification.get("id")
        if payment_id:
            with self.database.transaction():
                self.database.update_payment(
                    payment_id,
                    {
                        "status": PaymentStatus.CAPTURED.value,
                        "paystack_transaction_id": str(transaction_id) if transaction_id is not None else None,
                        "channel": verification.get("channel"),
                        "gateway_response": verification.get("gateway_response"),
                        "paid_at": utcnow(),
                    },
                )
                self._mark_order_paid(order_id)
            self.notifier.send_payment_confirmation(order_id)

        logger.info(f"Charged saved card for customer {customer_id} ({reference})")
        return {
            "success": True,
            "transaction_id": str(transaction_id) if transaction_id is not None else verification.get("reference"),
            "reference": reference,
            "amount": verification.get("amount", amount),
            "payment_id": payment_id,
        }

    def get_customer_payment_methods(self, customer_id: str) -> List[CustomerPaymentMethod]:
        return self.database.get_customer_payment_methods(customer_id)

    @workflow_step("Setting default payment method")
    def set_default_payment_method(self, customer_id: str, method_id: str) -> CustomerPaymentMethod:
        with self.database.transaction():
            method = self.database.set_default_payment_method(customer_id, method_id)
        return method

    def get_payment(self, payment_id: str) -> Payment:
        payment = self.database.get_payment(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment not found: {payment_id}")
        return payment

    def get_payments_for_order(self, order_id: str) -> List[Payment]:
        return self.database.get_payments_by_order(order_id)

    def handle_webhook_event(self, event) -> Dict[str, Any]:
        if not isinstance(event, WebhookEvent):
            event = WebhookEvent.model_validate(event)
        return WebhookHandlerService(self.database, self).process_event(event)

    def _mark_payment_failed(self, payment_id: str, reason: str) -> None:
        with self.database.transaction():
            self.database.update_payment(
                payment_id,
                {"status": PaymentStatus.FAILED.value, "failure_reason": reason},
            )

    def _mark_order_paid(self, order_id: str) -> None:
        self.database.update_order(
            order_id,
            {"payment_status": "paid", "status": "confirmed", "paid_at": utcnow()},
        )

    def _mark_order_refunded(self, order_id: str) -> None:
        self.database.update_order(
            order_id,
            {"payment_status": "refunded", "status": "refunded"},
        )

    def _save_payment_method(
        self,
        customer_id: str,
        authorization: Dict[str, Any],
        gateway_customer: Dict[str, Any],
        channel: Optional[str],
    ) -> None:
        code = authorization["authorization_code"]
        with self.database.transaction():
            if self.database.get_customer_payment_method_by_code(customer_id, code):
                return
            has_default = any(
                m.is_default for m in self.database.get_customer_payment_methods(customer_id)
            )
            self.database.create_customer_payment_method(
                {
                    "customer_id": customer_id,
                    "paystack_authorization_code": code,
                    "paystack_customer_code": gateway_customer.get("customer_code"),
                    "card_last4": authorization.get("last4"),
                    "card_type": authorization.get("card_type"),
                    "channel": channel,
                    "is_default": not has_default,
                    "is_active": True,
                }
            )
        logger.info(f"Saved card ending {authorization.get('last4')} for customer {customer_id}")
