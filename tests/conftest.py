import os

# Point the service at a throwaway database before anything imports it
os.environ["DATABASE_URL"] = "sqlite:///./test_payments.db"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_secret"
os.environ["PAYSTACK_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["JWT_SECRET"] = "test-jwt-secret"

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from vaultpay.database import Base, SessionLocal, engine
from vaultpay.main import app as fastapi_app
from vaultpay.models import Order, User
from vaultpay.paystack_service import PaystackService, get_paystack_service
from vaultpay.repository import DatabaseService
from vaultpay.workflow import PaymentWorkflowService

WEBHOOK_SECRET = "whsec_test_secret"
CUSTOMER_ID = "user-ada"
OTHER_CUSTOMER_ID = "user-bola"


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def database(db):
    return DatabaseService(db)


@pytest.fixture
def paystack():
    return PaystackService(secret_key="sk_test_secret", webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def notifier(mocker):
    return mocker.Mock()


@pytest.fixture
def workflow(database, paystack, notifier):
    return PaymentWorkflowService(database, paystack, notifier)


@pytest.fixture
def customers(db):
    db.add_all(
        [
            User(id=CUSTOMER_ID, email="ada@example.com", first_name="Ada", last_name="Obi"),
            User(id=OTHER_CUSTOMER_ID, email="bola@example.com", first_name="Bola"),
        ]
    )
    db.commit()
    return CUSTOMER_ID


@pytest.fixture
def order(db, customers):
    order = Order(
        id="order-1",
        order_number="ORD-1",
        user_id=CUSTOMER_ID,
        total_amount=Decimal("5000.00"),
        currency="NGN",
    )
    db.add(order)
    db.commit()
    return order


@pytest.fixture
def make_token():
    def _make_token(user_id: str = CUSTOMER_ID, role: str = "customer") -> dict:
        token = jwt.encode({"sub": user_id, "role": role}, "test-jwt-secret", algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}

    return _make_token


@pytest.fixture
def client(paystack):
    fastapi_app.dependency_overrides[get_paystack_service] = lambda: paystack
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


def verification(reference: str, amount: str = "5000.00", status: str = "success", **extra) -> dict:
    """A verified Paystack transaction, as returned by PaystackService (major units)."""
    data = {
        "id": 302961,
        "status": status,
        "reference": reference,
        "amount": Decimal(amount),
        "currency": "NGN",
        "channel": "card",
        "ip_address": "41.1.25.1",
        "gateway_response": "Approved" if status == "success" else "Declined",
        "authorization": {
            "authorization_code": "AUTH_72btv547",
            "last4": "4081",
            "card_type": "visa",
            "bank": "TEST BANK",
            "reusable": True,
        },
        "customer": {"customer_code": "CUS_xnxdt6s1zg1f4nx", "email": "ada@example.com"},
    }
    data.update(extra)
    return data
