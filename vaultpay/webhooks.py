"""Gateway webhook dispatch.

Every Paystack event goes through :class:`WebhookHandlerService`: it is
written to the webhook log, parsed into the payload model registered for its
event type, and handed to exactly one handler. Events always find their local
payment through the merchant reference they carry.
"""
import logging
from traceback import format_exc
from typing import Any, Callable, Dict, Optional, Type, Union

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PayloadError

from vaultpay.config import WEBHOOK_MAX_RETRIES
from vaultpay.errors import NotFoundError, PaymentError
from vaultpay.models import RefundStatus
from vaultpay.paystack_service import to_major_units
from vaultpay.repository import DatabaseService, utcnow

logger = logging.getLogger(__name__)


class WebhookEvent(BaseModel):
    event: str
    data: Dict[str, Any] = {}


class ChargeEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    reference: str
    id: Optional[Union[int, str]] = None
    status: Optional[str] = None
    amount: Optional[int] = None
    gateway_response: Optional[str] = None


class RefundEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    transaction_reference: Optional[str] = None
    id: Optional[Union[int, str]] = None
    refund_reference: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[int] = None
    reason: Optional[str] = None


class CustomerEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    customer_code: Optional[str] = None
    email: Optional[str] = None


class WebhookHandlerService:
    def __init__(self, database: DatabaseService, workflow):
        self.database = database
        self.workflow = workflow
        self._handlers: Dict[str, tuple] = {}
        self._register_default_handlers()

    def _register_default_handlers(self) -> None:
        self.on("charge.success", self._handle_charge_success, ChargeEventData)
        self.on("charge.failed", self._handle_charge_failed, ChargeEventData)
        self.on("charge.refunded", self._handle_charge_refunded, ChargeEventData)

        self.on("refund.created", self._handle_refund_created, RefundEventData)
        self.on("refund.pending", self._handle_refund_created, RefundEventData)
        self.on("refund.processed", self._handle_refund_processed, RefundEventData)
        self.on("refund.failed", self._handle_refund_failed, RefundEventData)

        self.on("customer.identification.success", self._handle_customer_event, CustomerEventData)
        self.on("customer.identification.failed", self._handle_customer_event, CustomerEventData)
        self.on("customer.update", self._handle_customer_event, CustomerEventData)

    def on(self, event_type: str, handler: Callable, payload_model: Type[BaseModel] = None) -> None:
        """Register (or replace) the handler for ``event_type``.

        Without a payload model the handler receives the raw ``data`` dict.
        """
        self._handlers[event_type] = (payload_model, handler)

    def verify_signature(self, payload: Union[bytes, str, dict], signature: str) -> bool:
        return self.workflow.paystack.verify_webhook_signature(payload, signature)

    def process_event(self, event: Union[WebhookEvent, dict]) -> Dict[str, Any]:
        if not isinstance(event, WebhookEvent):
            event = WebhookEvent.model_validate(event)

        with self.database.transaction():
            log = self.database.create_webhook_log(
                {"event_type": event.event, "payload": event.data, "processed": False}
            )
            log_id = log.id

        return self._dispatch(log_id, event)

    def retry_event(self, log_id: str, max_retries: int = WEBHOOK_MAX_RETRIES) -> bool:
        """Re-dispatch a logged event that failed earlier."""
        log = self.database.get_webhook_log(log_id)
        if log is None or log.processed:
            return False

        retry_count = log.retry_count or 0
        if retry_count >= max_retries:
            logger.warning(f"Webhook {log_id} not retried: max retries ({max_retries}) exceeded")
            return False

        event = WebhookEvent(event=log.event_type, data=log.payload or {})
        with self.database.transaction():
            self.database.update_webhook_log(
                log_id, {"retry_count": retry_count + 1, "last_retry_at": utcnow()}
            )

        logger.info(f"Retrying webhook {log_id} ({event.event}), attempt {retry_count + 1}")
        return self._dispatch(log_id, event)["success"]

    def get_unprocessed_events(self):
        return self.database.get_unprocessed_webhooks()

    def _dispatch(self, log_id: str, event: WebhookEvent) -> Dict[str, Any]:
        entry = self._handlers.get(event.event)
        try:
            if entry is None:
                logger.warning(f"No handler registered for event: {event.event}")
            else:
                payload_model, handler = entry
                data = payload_model.model_validate(event.data) if payload_model else event.data
                handler(data)
        except (PaymentError, PayloadError) as e:
            message = e.message if isinstance(e, PaymentError) else str(e)
            logger.error(f"Webhook {log_id} ({event.event}) failed: {message}\n{format_exc()}")
            with self.database.transaction():
                self.database.update_webhook_log(log_id, {"processing_error": message})
            return {"success": False, "event_id": log_id, "error": message}

        with self.database.transaction():
            self.database.update_webhook_log(
                log_id,
                {"processed": True, "processed_at": utcnow(), "processing_error": None},
            )
        return {"success": True, "event_id": log_id}

    # Event handlers

    def _handle_charge_success(self, data: ChargeEventData) -> None:
        logger.info(f"[Webhook] Charge successful: {data.reference}")
        self.workflow.handle_successful_payment(data.reference)

    def _handle_charge_failed(self, data: ChargeEventData) -> None:
        logger.info(f"[Webhook] Charge failed: {data.reference}")
        self.workflow.handle_failed_payment(data.reference, data.gateway_response)

    def _handle_charge_refunded(self, data: ChargeEventData) -> None:
        logger.info(f"[Webhook] Charge refunded: {data.reference}")
        payment = self.database.get_payment_by_reference(data.reference)
        if payment is None:
            raise NotFoundError(f"Payment not found for reference: {data.reference}")

        # The charge is refunded in full; refunds already reserved complete on their own events
        outstanding = (
            payment.amount
            - (payment.refunded_amount or 0)
            - self.database.pending_refund_total(payment.id)
        )
        if outstanding <= 0:
            logger.info(f"Payment {payment.id} has nothing left to refund")
            return
        self.workflow.record_gateway_refund(
            data.reference, outstanding, reason="Charge refunded at gateway"
        )

    def _handle_refund_created(self, data: RefundEventData) -> None:
        logger.info(f"[Webhook] Refund {data.status or 'created'} for {data.transaction_reference}")
        if self._resolve_refund(data) is None:
            self._record_unknown_refund(data, processed=False)

    def _handle_refund_processed(self, data: RefundEventData) -> None:
        logger.info(f"[Webhook] Refund processed for {data.transaction_reference}")
        refund = self._resolve_refund(data)
        if refund is None:
            self._record_unknown_refund(data, processed=True)
            return
        gateway_id = str(data.id) if data.id is not None else None
        self.workflow.complete_refund(refund.id, gateway_id)

    def _handle_refund_failed(self, data: RefundEventData) -> None:
        logger.info(f"[Webhook] Refund failed for {data.transaction_reference}")
        refund = self._resolve_refund(data)
        if refund is None:
            logger.warning(f"No local refund matches refund event for {data.transaction_reference}")
            return
        if refund.status == RefundStatus.PROCESSED.value:
            logger.error(
                f"Refund {refund.id} was counted as processed but the gateway reports it failed; "
                f"payment {refund.payment_id} needs manual reconciliation"
            )
            return
        self.workflow.fail_refund(refund.id, data.reason or "Refund failed at gateway")

    def _handle_customer_event(self, data: CustomerEventData) -> None:
        logger.info(f"[Webhook] Customer event for {data.customer_code} ({data.email})")

    def _record_unknown_refund(self, data: RefundEventData, processed: bool) -> None:
        if not data.transaction_reference or data.amount is None:
            logger.warning(f"No local refund matches refund event for {data.transaction_reference}")
            return
        logger.info(f"Refund {data.id} for {data.transaction_reference} was issued outside this service")
        self.workflow.record_gateway_refund(
            data.transaction_reference,
            to_major_units(data.amount),
            paystack_refund_id=str(data.id) if data.id is not None else None,
            reason=data.reason,
            processed=processed,
        )

    def _resolve_refund(self, data: RefundEventData):
        if data.id is not None:
            refund = self.database.get_refund_by_gateway_id(str(data.id))
            if refund is not None:
                return refund

        if not data.transaction_reference:
            return None
        payment = self.database.get_payment_by_reference(data.transaction_reference)
        if payment is None:
            raise NotFoundError(f"Payment not found for reference: {data.transaction_reference}")

        amount = to_major_units(data.amount)
        # Oldest first, pending refunds before settled ones
        refunds = sorted(
            reversed(self.database.get_refunds_by_payment(payment.id)),
            key=lambda r: r.status != RefundStatus.PENDING.value,
        )
        gateway_id = str(data.id) if data.id is not None else None
        for refund in refunds:
            # A refund already tied to another gateway refund is not this one
            if gateway_id and refund.paystack_refund_id and refund.paystack_refund_id != gateway_id:
                continue
            if amount is None or refund.amount == amount:
                return refund
        return None
