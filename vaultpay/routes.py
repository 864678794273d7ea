import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError as PayloadError
from sqlalchemy.orm import Session

from vaultpay.auth import CurrentUser, get_current_user, require_admin
from vaultpay.config import FRONTEND_URL
from vaultpay.database import get_db
from vaultpay.errors import NotFoundError, ValidationError
from vaultpay.paystack_service import PaystackService, get_paystack_service
from vaultpay.repository import DatabaseService
from vaultpay.schemas import (
    ChargeSavedCardRequest,
    InitializePaymentRequest,
    PaymentMethodOut,
    PaymentOut,
    RefundRequest,
    WebhookLogOut,
)
from vaultpay.webhooks import WebhookEvent, WebhookHandlerService
from vaultpay.workflow import PaymentWorkflowService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def success_response(data=None, message: str = "Success", status_code: int = 200) -> dict:
    return {
        "success": True,
        "statusCode": status_code,
        "data": data,
        "message": message,
        "timestamp": datetime.now(timezone.utc),
    }


def error_response(message: str, status_code: int = 500, code: str = None) -> dict:
    return {
        "success": False,
        "statusCode": status_code,
        "error": message,
        "code": code,
        "timestamp": datetime.now(timezone.utc),
    }


def get_workflow(
    db: Session = Depends(get_db),
    paystack: PaystackService = Depends(get_paystack_service),
) -> PaymentWorkflowService:
    return PaymentWorkflowService(DatabaseService(db), paystack)


@router.post("/initialize")
def initialize_payment(
    request: InitializePaymentRequest,
    user: CurrentUser = Depends(get_current_user),
    workflow: PaymentWorkflowService = Depends(get_workflow),
):
    order = workflow.database.get_order(request.order_id)
    if order is None or order.user_id != user.id:
        raise NotFoundError("Order not found")
    if order.payment_status == "paid":
        raise ValidationError("Order is already paid")

    customer = workflow.database.get_user(user.id)
    if customer is None:
        raise NotFoundError("Customer not found")

    result = workflow.initiate_payment(
        order,
        customer,
        channels=request.channels,
        callback_url=request.callback_url or f"{FRONTEND_URL}/payment/callback",
    )
    return success_response(result, "Payment initialized successfully")


@router.get("/verify/{reference}")
def verify_payment(reference: str, workflow: PaymentWorkflowService = Depends(get_workflow)):
    result = workflow.handle_successful_payment(reference)
    return success_response(result, "Payment verified successfully")


@router.post("/webhook")
async def paystack_webhook(
    request: Request,
    x_paystack_signature: str = Header(None),
    workflow: PaymentWorkflowService = Depends(get_workflow),
):
    if not x_paystack_signature:
        raise ValidationError("Webhook signature is missing")

    payload = await request.body()
    if not workflow.paystack.verify_webhook_signature(payload, x_paystack_signature):
        logger.warning("Rejected webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        event = WebhookEvent.model_validate(json.loads(payload))
    except (ValueError, PayloadError):
        raise ValidationError("Invalid payload")

    # Failures stay in the webhook log for retry; Paystack only needs the ack
    result = await run_in_threadpool(workflow.handle_webhook_event, event)
    return {"success": True, "event_id": result["event_id"]}


@router.post("/charge-saved-card")
def charge_saved_card(
    request: ChargeSavedCardRequest,
    user: CurrentUser = Depends(get_current_user),
    workflow: PaymentWorkflowService = Depends(get_workflow),
):
    result = workflow.charge_saved_card(
        user.id,
        request.authorization_code,
        request.amount,
        order_id=request.order_id,
    )
    return success_response(result, "Card charged successfully")


@router.get("/customer/payment-methods")
def list_payment_methods(
    user: CurrentUser = Depends(get_current_user),
    workflow: PaymentWorkflowService = Depends(get_workflow),
):
    methods = workflow.get_customer_payment_methods(user.id)
    return success_response([PaymentMethodOut.model_validate(m) for m in methods])


@router.post("/customer/payment-methods/{method_id}/set-default")
def set_default_payment_method(
    method_id: str,
    user: CurrentUser = Depends(get_current_user),
    workflow: PaymentWorkflowService = Depends(get_workflow),
):
    method = workflow.set_default_payment_method(user.id, method_id)
    return success_response(PaymentMethodOut.model_validate(method), "Default payment method updated")


@router.get("/banks")
def list_banks(
    user: CurrentUser = Depends(get_current_user),
    paystack: PaystackService = Depends(get_paystack_service),
):
    return success_response(paystack.list_banks())


@router.get("/banks/resolve")
def resolve_bank_account(
    account_number: str,
    bank_code: str,
    user: CurrentUser = Depends(get_current_user),
    paystack: PaystackService = Depends(get_paystack_service),
):
    return success_response(paystack.resolve_account(account_number, bank_code))


@router.get("/webhooks/pending")
def list_pending_webhooks(
    admin: CurrentUser = Depends(require_admin),
    workflow: PaymentWorkflowService = Depends(get_workflow),
):
    handler = WebhookHandlerService(workflow.database, workflow)
    logs = handler.get_unprocessed_events()
    return success_response([WebhookLogOut.model_validate(log) for log in logs])


@router.post("/webhooks/{log_id}/retry")
def retry_webhook(
    log_id: str,
    admin: CurrentUser = Depends(require_admin),
    workflow: PaymentWorkflowService = Depends(get_workflow),
):
    handler = WebhookHandlerService(workflow.database, workflow)
    processed = handler.retry_event(log_id)
    log = workflow.database.get_webhook_log(log_id)
    if log is None:
        raise NotFoundError(f"Webhook log not found: {log_id}")
    return success_response(
        {"processed": processed, "log": WebhookLogOut.model_validate(log)},
        "Webhook reprocessed" if processed else "Webhook not reprocessed",
    )


@router.get("/orders/{order_id}")
def list_order_payments(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    workflow: PaymentWorkflowService = Depends(get_workflow),
):
    order = workflow.database.get_order(order_id)
    if order is None or (order.user_id != user.id and user.role != "admin"):
        raise NotFoundError("Order not found")
    payments = workflow.get_payments_for_order(order_id)
    return success_response([PaymentOut.model_validate(p) for p in payments])


@router.post("/{payment_id}/refund")
def refund_payment(
    payment_id: str,
    request: RefundRequest,
    admin: CurrentUser = Depends(require_admin),
    workflow: PaymentWorkflowService = Depends(get_workflow),
):
    result = workflow.process_refund(payment_id, request.amount, request.reason, admin.id)
    return success_response(result, "Refund processed successfully")


@router.get("/{payment_id}")
def get_payment(
    payment_id: str,
    user: CurrentUser = Depends(get_current_user),
    workflow: PaymentWorkflowService = Depends(get_workflow),
):
    payment = workflow.get_payment(payment_id)
    if payment.customer_id != user.id and user.role != "admin":
        raise NotFoundError(f"Payment not found: {payment_id}")
    return success_response(PaymentOut.model_validate(payment))
