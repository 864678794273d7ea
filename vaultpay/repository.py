import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from traceback import format_exc
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from vaultpay.errors import NotFoundError, PaymentError, PersistenceError, ValidationError
from vaultpay.models import (
    CustomerPaymentMethod,
    Order,
    Payment,
    Refund,
    RefundStatus,
    User,
    WebhookLog,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DatabaseService:
    """Persistence facade over one SQLAlchemy session.

    The generic helpers take plain dicts of column -> value. Column names are
    checked against the mapped model, so a caller can never smuggle an
    identifier into the SQL. Nothing here commits: callers group writes in
    :meth:`transaction`.
    """

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def transaction(self):
        try:
            yield self
            self.db.commit()
        except PaymentError:
            self.db.rollback()
            raise
        except StaleDataError as e:
            self.db.rollback()
            logger.warning(f"Concurrent update rejected: {str(e)}")
            raise PersistenceError(
                "The record was modified concurrently, please retry", conflict=True
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error: {str(e)}\n{format_exc()}")
            raise PersistenceError("Database operation failed")
        except Exception:
            self.db.rollback()
            raise

    # Generic helpers

    @staticmethod
    def _columns(model, data: Dict[str, Any]) -> Dict[str, Any]:
        known = model.__table__.columns.keys()
        unknown = [key for key in data if key not in known]
        if unknown:
            raise ValidationError(
                f"Unknown column(s) for {model.__tablename__}: {', '.join(sorted(unknown))}"
            )
        return data

    def _select(self, model, filters: Dict[str, Any]):
        self._columns(model, filters)
        return self.db.query(model).filter_by(**filters)

    def get_one(self, model, **filters):
        return self._select(model, filters).first()

    def get_many(self, model, order_by: str = None, **filters) -> List[Any]:
        query = self._select(model, filters)
        if order_by:
            descending = order_by.startswith("-")
            column = self._columns(model, {order_by.lstrip("-"): None})
            attr = getattr(model, next(iter(column)))
            query = query.order_by(attr.desc() if descending else attr.asc())
        return query.all()

    def insert(self, model, data: Dict[str, Any]):
        row = model(**self._columns(model, data))
        self.db.add(row)
        self.db.flush()
        return row

    def update(self, model, filters: Dict[str, Any], data: Dict[str, Any]) -> List[Any]:
        self._columns(model, data)
        rows = self._select(model, filters).all()
        for row in rows:
            for key, value in data.items():
                setattr(row, key, value)
        self.db.flush()
        return rows

    def delete(self, model, **filters) -> int:
        rows = self._select(model, filters).all()
        for row in rows:
            self.db.delete(row)
        self.db.flush()
        return len(rows)

    # Payments

    def create_payment(self, data: Dict[str, Any]) -> Payment:
        return self.insert(Payment, data)

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        return self.get_one(Payment, id=payment_id)

    def get_payment_for_update(self, payment_id: str) -> Optional[Payment]:
        """Load a payment with a row lock (no-op on SQLite; ``version`` still guards)."""
        return (
            self.db.query(Payment)
            .filter(Payment.id == payment_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def get_payment_by_reference(self, reference: str) -> Optional[Payment]:
        return self.get_one(Payment, payment_reference=reference)

    def update_payment(self, payment_id: str, updates: Dict[str, Any]) -> Payment:
        rows = self.update(Payment, {"id": payment_id}, updates)
        if not rows:
            raise NotFoundError(f"Payment not found: {payment_id}")
        return rows[0]

    def get_payments_by_order(self, order_id: str) -> List[Payment]:
        return self.get_many(Payment, order_by="-created_at", order_id=order_id)

    # Refunds

    def create_refund(self, data: Dict[str, Any]) -> Refund:
        return self.insert(Refund, data)

    def get_refund(self, refund_id: str) -> Optional[Refund]:
        return self.get_one(Refund, id=refund_id)

    def get_refund_by_gateway_id(self, paystack_refund_id: str) -> Optional[Refund]:
        return self.get_one(Refund, paystack_refund_id=paystack_refund_id)

    def update_refund(self, refund_id: str, updates: Dict[str, Any]) -> Refund:
        rows = self.update(Refund, {"id": refund_id}, updates)
        if not rows:
            raise NotFoundError(f"Refund not found: {refund_id}")
        return rows[0]

    def get_refunds_by_payment(self, payment_id: str) -> List[Refund]:
        return self.get_many(Refund, order_by="-created_at", payment_id=payment_id)

    def pending_refund_total(self, payment_id: str) -> Decimal:
        total = (
            self.db.query(func.coalesce(func.sum(Refund.amount), 0))
            .filter(Refund.payment_id == payment_id, Refund.status == RefundStatus.PENDING.value)
            .scalar()
        )
        return Decimal(str(total))

    # Orders and users (owned elsewhere, read here)

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.get_one(Order, id=order_id)

    def update_order(self, order_id: str, updates: Dict[str, Any]) -> Order:
        rows = self.update(Order, {"id": order_id}, updates)
        if not rows:
            raise NotFoundError(f"Order not found: {order_id}")
        return rows[0]

    def get_user(self, user_id: str) -> Optional[User]:
        return self.get_one(User, id=user_id)

    # Customer payment methods

    def create_customer_payment_method(self, data: Dict[str, Any]) -> CustomerPaymentMethod:
        return self.insert(CustomerPaymentMethod, data)

    def get_customer_payment_methods(self, customer_id: str) -> List[CustomerPaymentMethod]:
        return self.get_many(
            CustomerPaymentMethod, order_by="created_at", customer_id=customer_id, is_active=True
        )

    def get_customer_payment_method_by_code(
        self, customer_id: str, authorization_code: str
    ) -> Optional[CustomerPaymentMethod]:
        return self.get_one(
            CustomerPaymentMethod,
            customer_id=customer_id,
            paystack_authorization_code=authorization_code,
        )

    def set_default_payment_method(self, customer_id: str, method_id: str) -> CustomerPaymentMethod:
        """Make ``method_id`` the customer's only default card.

        Must run inside :meth:`transaction`; the customer's rows are locked
        so two concurrent toggles cannot both leave a default behind.
        """
        methods = (
            self.db.query(CustomerPaymentMethod)
            .filter(CustomerPaymentMethod.customer_id == customer_id)
            .with_for_update()
            .all()
        )
        target = next((m for m in methods if m.id == method_id and m.is_active), None)
        if target is None:
            raise NotFoundError(f"Payment method not found: {method_id}")
        for method in methods:
            method.is_default = method.id == method_id
        self.db.flush()
        return target

    # Webhook logs

    def create_webhook_log(self, data: Dict[str, Any]) -> WebhookLog:
        return self.insert(WebhookLog, data)

    def get_webhook_log(self, log_id: str) -> Optional[WebhookLog]:
        return self.get_one(WebhookLog, id=log_id)

    def update_webhook_log(self, log_id: str, updates: Dict[str, Any]) -> WebhookLog:
        rows = self.update(WebhookLog, {"id": log_id}, updates)
        if not rows:
            raise NotFoundError(f"Webhook log not found: {log_id}")
        return rows[0]

    def get_unprocessed_webhooks(self) -> List[WebhookLog]:
        return self.get_many(WebhookLog, order_by="created_at", processed=False)
