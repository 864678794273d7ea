from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import CUSTOMER_ID, OTHER_CUSTOMER_ID, verification
from vaultpay.database import SessionLocal
from vaultpay.errors import GatewayError, NotFoundError, PersistenceError, ValidationError
from vaultpay.models import CustomerPaymentMethod, Order, Payment, Refund, User
from vaultpay.repository import DatabaseService, utcnow

SESSION = {
    "authorization_url": "https://checkout.paystack.com/0peioxfhpn",
    "access_code": "0peioxfhpn",
    "reference": "ignored",
}


@pytest.fixture
def gateway_session(paystack, mocker):
    return mocker.patch.object(paystack, "initialize_transaction", return_value=SESSION)


def initiate(workflow, db, order_id="order-1"):
    order = db.get(Order, order_id)
    customer = db.get(User, order.user_id)
    return workflow.initiate_payment(order, customer)


@pytest.fixture
def captured_payment(workflow, db, paystack, order, gateway_session, mocker):
    """A 5000 NGN payment for ORD-1, captured through the gateway."""
    result = initiate(workflow, db)
    mocker.patch.object(paystack, "verify_transaction", return_value=verification(result["reference"]))
    workflow.handle_successful_payment(result["reference"])
    return result["payment_id"]


def test_initiate_payment_creates_pending_payment(workflow, db, order, gateway_session):
    result = initiate(workflow, db)

    assert result["authorization_url"] == SESSION["authorization_url"]
    assert result["reference"].startswith("ORD-1_")
    assert timedelta(minutes=29) < result["expires_at"] - utcnow() <= timedelta(minutes=30)

    payment = db.get(Payment, result["payment_id"])
    assert payment.status == "pending"
    assert payment.amount == Decimal("5000.00")
    assert payment.customer_id == CUSTOMER_ID
    assert payment.paystack_access_code == "0peioxfhpn"

    kwargs = gateway_session.call_args.kwargs
    assert kwargs["email"] == "ada@example.com"
    assert kwargs["amount"] == Decimal("5000.00")
    assert kwargs["reference"] == result["reference"]
    assert kwargs["metadata"]["order_number"] == "ORD-1"
    assert kwargs["metadata"]["customer_name"] == "Ada Obi"
    assert kwargs["callback_url"].endswith("/payment/callback")


def test_references_are_distinct_across_orders(workflow, db, order, gateway_session):
    db.add(Order(id="order-2", order_number="ORD-2", user_id=CUSTOMER_ID, total_amount=Decimal("100")))
    db.commit()

    first = initiate(workflow, db, "order-1")
    second = initiate(workflow, db, "order-2")

    assert first["reference"] != second["reference"]
    assert second["reference"].startswith("ORD-2_")


def test_initiating_twice_creates_two_payments(workflow, db, order, gateway_session):
    first = initiate(workflow, db)
    second = initiate(workflow, db)

    assert first["payment_id"] != second["payment_id"]
    assert db.query(Payment).filter_by(order_id="order-1").count() == 2
    assert gateway_session.call_count == 2


def test_initiate_payment_gateway_failure_marks_payment_failed(workflow, db, paystack, order, mocker):
    mocker.patch.object(
        paystack,
        "initialize_transaction",
        side_effect=GatewayError("Failed to initialize Paystack transaction: Invalid key"),
    )

    with pytest.raises(GatewayError) as exc_info:
        initiate(workflow, db)

    assert exc_info.value.message.startswith("Payment initiation failed: ")
    payment = db.query(Payment).filter_by(order_id="order-1").one()
    assert payment.status == "failed"
    assert "Invalid key" in payment.failure_reason


def test_successful_payment_captures_and_marks_order_paid(workflow, db, notifier, captured_payment):
    payment = db.get(Payment, captured_payment)
    assert payment.status == "captured"
    assert payment.paystack_transaction_id == "302961"
    assert payment.card_last4 == "4081"
    assert payment.channel == "card"
    assert payment.paid_at is not None

    order = db.get(Order, "order-1")
    assert order.payment_status == "paid"
    assert order.status == "confirmed"

    methods = db.query(CustomerPaymentMethod).filter_by(customer_id=CUSTOMER_ID).all()
    assert len(methods) == 1
    assert methods[0].paystack_authorization_code == "AUTH_72btv547"
    assert methods[0].is_default is True
    notifier.send_payment_confirmation.assert_called_once_with("order-1")


def test_successful_payment_is_idempotent(workflow, db, notifier, captured_payment):
    payment = db.get(Payment, captured_payment)
    reference = payment.payment_reference
    paid_at = payment.paid_at
    version = payment.version

    result = workflow.handle_successful_payment(reference)

    db.expire_all()
    payment = db.get(Payment, captured_payment)
    assert result == {"success": True, "order_id": "order-1", "payment_id": captured_payment}
    assert payment.status == "captured"
    assert payment.refunded_amount == Decimal("0")
    assert payment.paid_at == paid_at
    assert payment.version == version
    assert db.query(CustomerPaymentMethod).count() == 1
    notifier.send_payment_confirmation.assert_called_once()


def test_unsuccessful_verification_is_rejected(workflow, db, paystack, order, gateway_session, mocker):
    result = initiate(workflow, db)
    mocker.patch.object(
        paystack, "verify_transaction", return_value=verification(result["reference"], status="abandoned")
    )

    with pytest.raises(ValidationError) as exc_info:
        workflow.handle_successful_payment(result["reference"])

    assert "abandoned" in exc_info.value.message
    assert db.get(Payment, result["payment_id"]).status == "pending"


def test_unknown_reference_is_not_found(workflow, paystack, mocker):
    mocker.patch.object(paystack, "verify_transaction", return_value=verification("nope_1"))

    with pytest.raises(NotFoundError):
        workflow.handle_successful_payment("nope_1")


def test_amount_mismatch_is_rejected(workflow, db, paystack, order, gateway_session, mocker):
    result = initiate(workflow, db)
    mocker.patch.object(
        paystack, "verify_transaction", return_value=verification(result["reference"], amount="50.00")
    )

    with pytest.raises(ValidationError):
        workflow.handle_successful_payment(result["reference"])

    assert db.get(Payment, result["payment_id"]).status == "pending"


def test_failed_payment(workflow, db, notifier, order, gateway_session):
    result = initiate(workflow, db)

    workflow.handle_failed_payment(result["reference"], "Insufficient funds")

    payment = db.get(Payment, result["payment_id"])
    assert payment.status == "failed"
    assert payment.failure_reason == "Insufficient funds"
    notifier.send_payment_failure.assert_called_once_with("order-1")


def test_failure_after_capture_is_ignored(workflow, db, captured_payment):
    reference = db.get(Payment, captured_payment).payment_reference

    workflow.handle_failed_payment(reference)

    db.expire_all()
    assert db.get(Payment, captured_payment).status == "captured"


def test_partial_then_full_refund(workflow, db, paystack, notifier, captured_payment, mocker):
    refund_call = mocker.patch.object(paystack, "refund_transaction", return_value={"id": 3018284})

    first = workflow.process_refund(captured_payment, Decimal("2000"), "Damaged item", "admin-1")

    payment = db.get(Payment, captured_payment)
    assert first["amount_refunded"] == Decimal("2000")
    assert first["refund_reference"].startswith(f"REF_{captured_payment}_")
    assert payment.status == "partially_refunded"
    assert payment.refunded_amount == Decimal("2000")
    refund_call.assert_called_with(payment.payment_reference, Decimal("2000"))

    workflow.process_refund(captured_payment, Decimal("3000"), "Returned", "admin-1")

    db.expire_all()
    payment = db.get(Payment, captured_payment)
    assert payment.status == "refunded"
    assert payment.refunded_amount == Decimal("5000")
    assert db.get(Order, "order-1").payment_status == "refunded"

    refunds = db.query(Refund).filter_by(payment_id=captured_payment).all()
    assert {r.status for r in refunds} == {"processed"}
    assert {r.paystack_refund_id for r in refunds} == {"3018284"}
    assert notifier.send_refund_notification.call_count == 2


def test_refund_cannot_exceed_remaining_balance(workflow, db, paystack, captured_payment, mocker):
    refund_call = mocker.patch.object(paystack, "refund_transaction", return_value={"id": 1})
    workflow.process_refund(captured_payment, Decimal("4000"), "Partial", "admin-1")

    with pytest.raises(ValidationError) as exc_info:
        workflow.process_refund(captured_payment, Decimal("1000.01"), "Too much", "admin-1")

    assert "exceeds available balance" in exc_info.value.message
    assert refund_call.call_count == 1
    db.expire_all()
    assert db.get(Payment, captured_payment).refunded_amount == Decimal("4000")


def test_pending_refund_reserves_balance(workflow, db, paystack, captured_payment, mocker):
    db.add(
        Refund(
            payment_id=captured_payment,
            refund_reference="REF_in_flight",
            amount=Decimal("4500"),
            reason="In flight",
            status="pending",
        )
    )
    db.commit()
    refund_call = mocker.patch.object(paystack, "refund_transaction")

    with pytest.raises(ValidationError):
        workflow.process_refund(captured_payment, Decimal("1000"), "Second", "admin-1")

    refund_call.assert_not_called()


@pytest.mark.parametrize("amount", ["0.004", "10.005", "0", "-5", "abc"])
def test_refund_amount_must_be_whole_kobo(workflow, db, paystack, captured_payment, mocker, amount):
    refund_call = mocker.patch.object(paystack, "refund_transaction")

    with pytest.raises(ValidationError) as exc_info:
        workflow.process_refund(captured_payment, amount, "tiny", "admin-1")

    assert exc_info.value.message.startswith("Refund processing failed: Refund amount")
    refund_call.assert_not_called()
    assert db.query(Refund).count() == 0


def test_refund_of_one_kobo_is_sent_as_one_kobo(workflow, db, paystack, captured_payment, mocker):
    refund_call = mocker.patch.object(paystack, "refund_transaction", return_value={"id": 5})

    result = workflow.process_refund(captured_payment, "0.01", "Rounding", "admin-1")

    assert result["amount_refunded"] == Decimal("0.01")
    refund_call.assert_called_once_with(db.get(Payment, captured_payment).payment_reference, Decimal("0.01"))
    assert db.get(Payment, captured_payment).refunded_amount == Decimal("0.01")


def test_only_captured_payments_can_be_refunded(workflow, db, order, gateway_session):
    result = initiate(workflow, db)

    with pytest.raises(ValidationError) as exc_info:
        workflow.process_refund(result["payment_id"], Decimal("10"), "Early", "admin-1")

    assert exc_info.value.message == "Refund processing failed: Only captured payments can be refunded"


def test_refund_of_unknown_payment(workflow, customers):
    with pytest.raises(NotFoundError):
        workflow.process_refund("missing", Decimal("10"), "Nope", "admin-1")


def test_gateway_refund_failure_leaves_balance_untouched(workflow, db, paystack, captured_payment, mocker):
    mocker.patch.object(
        paystack, "refund_transaction", side_effect=GatewayError("Failed to process refund: Transaction has been fully reversed")
    )

    with pytest.raises(GatewayError) as exc_info:
        workflow.process_refund(captured_payment, Decimal("2000"), "Damaged", "admin-1")

    assert exc_info.value.message.startswith("Refund processing failed: ")
    db.expire_all()
    payment = db.get(Payment, captured_payment)
    assert payment.refunded_amount == Decimal("0")
    assert payment.status == "captured"
    refund = db.query(Refund).filter_by(payment_id=captured_payment).one()
    assert refund.status == "failed"
    assert "fully reversed" in refund.error_message


def test_stale_payment_update_is_a_conflict(database, db, captured_payment):
    payment = database.get_payment(captured_payment)

    other = SessionLocal()
    try:
        with DatabaseService(other).transaction() as other_database:
            other_database.update_payment(captured_payment, {"gateway_response": "touched"})
    finally:
        other.close()

    with pytest.raises(PersistenceError) as exc_info:
        with database.transaction():
            payment.refunded_amount = Decimal("100")

    assert exc_info.value.conflict is True
    assert exc_info.value.status_code == 409


def test_charge_saved_card_for_order(workflow, db, paystack, notifier, captured_payment, mocker):
    db.add(Order(id="order-2", order_number="ORD-2", user_id=CUSTOMER_ID, total_amount=Decimal("1500")))
    db.commit()
    charge = mocker.patch.object(
        paystack,
        "charge_authorization",
        return_value=verification("charge", amount="1500.00", id=409123),
    )

    result = workflow.charge_saved_card(CUSTOMER_ID, "AUTH_72btv547", Decimal("1500"), order_id="order-2")

    assert result["success"] is True
    assert result["transaction_id"] == "409123"
    assert result["reference"].startswith(f"charge_{CUSTOMER_ID}_")
    assert charge.call_args.kwargs["email"] == "ada@example.com"
    assert charge.call_args.kwargs["metadata"] == {"order_id": "order-2"}

    payment = db.get(Payment, result["payment_id"])
    assert payment.status == "captured"
    assert payment.card_last4 == "4081"
    assert db.get(Order, "order-2").payment_status == "paid"


def test_charge_requires_customers_own_saved_card(workflow, paystack, captured_payment, mocker):
    charge = mocker.patch.object(paystack, "charge_authorization")

    with pytest.raises(ValidationError):
        workflow.charge_saved_card(OTHER_CUSTOMER_ID, "AUTH_72btv547", Decimal("100"))

    charge.assert_not_called()


def test_charge_amount_must_be_whole_kobo(workflow, paystack, captured_payment, mocker):
    charge = mocker.patch.object(paystack, "charge_authorization")

    with pytest.raises(ValidationError) as exc_info:
        workflow.charge_saved_card(CUSTOMER_ID, "AUTH_72btv547", "99.999")

    assert exc_info.value.message == "Authorization charge failed: Charge amount cannot have more than 2 decimal places"
    charge.assert_not_called()


def test_declined_charge_fails_payment(workflow, db, paystack, captured_payment, mocker):
    db.add(Order(id="order-2", order_number="ORD-2", user_id=CUSTOMER_ID, total_amount=Decimal("1500")))
    db.commit()
    mocker.patch.object(
        paystack,
        "charge_authorization",
        return_value=verification("charge", amount="1500.00", status="failed"),
    )

    with pytest.raises(GatewayError) as exc_info:
        workflow.charge_saved_card(CUSTOMER_ID, "AUTH_72btv547", Decimal("1500"), order_id="order-2")

    assert "Declined" in exc_info.value.message
    payment = db.query(Payment).filter_by(order_id="order-2").one()
    assert payment.status == "failed"
    assert db.get(Order, "order-2").payment_status == "unpaid"


def test_set_default_payment_method(workflow, db, captured_payment):
    db.add(
        CustomerPaymentMethod(
            id="method-2",
            customer_id=CUSTOMER_ID,
            paystack_authorization_code="AUTH_second",
            card_last4="1111",
            is_default=False,
        )
    )
    db.commit()

    workflow.set_default_payment_method(CUSTOMER_ID, "method-2")

    db.expire_all()
    defaults = [m.id for m in workflow.get_customer_payment_methods(CUSTOMER_ID) if m.is_default]
    assert defaults == ["method-2"]


def test_set_default_rejects_foreign_method(workflow, captured_payment):
    method_id = workflow.get_customer_payment_methods(CUSTOMER_ID)[0].id

    with pytest.raises(NotFoundError):
        workflow.set_default_payment_method(OTHER_CUSTOMER_ID, method_id)
