import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main
from database import create_document, get_db
from errors import UpstreamError
from gateway import PaymentGateway, PaymentSession, get_gateway
from schemas import Product, User


class FakeGateway(PaymentGateway):
    """In-memory payment gateway that records calls and can be told to fail."""

    provider = "cashfree"

    def __init__(self) -> None:
        self.configured = True
        self.failure_message = None
        self.payments = {}
        self.calls = []

    def is_configured(self) -> bool:
        return self.configured

    def create_order(self, **kwargs) -> PaymentSession:
        self.calls.append({"method": "create_order", **kwargs})
        if self.failure_message:
            raise UpstreamError(self.failure_message)
        order_id = kwargs["order_id"]
        return PaymentSession(
            order_id=order_id,
            order_token=f"token_{order_id}",
            payment_session_id=f"session_{order_id}",
        )

    def get_payments(self, order_id):
        self.calls.append({"method": "get_payments", "order_id": order_id})
        return list(self.payments.get(order_id, []))

    def add_payment(self, order_id, status="SUCCESS", **extra):
        payment = {
            "cf_payment_id": 885531234,
            "payment_status": status,
            "payment_time": "2024-05-01T10:00:00+05:30",
            "payment_signature": "sig-123",
        }
        payment.update(extra)
        self.payments.setdefault(order_id, []).append(payment)
        return payment

    def verify_webhook_signature(self, payload, timestamp, signature) -> bool:
        return bool(timestamp) and signature == "test-signature"


@pytest.fixture()
def db():
    return mongomock.MongoClient().storefront


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def client(db, gateway):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def _insert_user(db, **fields):
    uid = create_document(db, "user", User(**fields))
    return db["user"].find_one({"_id": ObjectId(uid)})


@pytest.fixture()
def user(db):
    return _insert_user(db, name="Asha Rao", email="asha@example.com")


@pytest.fixture()
def other_user(db):
    return _insert_user(db, name="Ben Okafor", email="ben@example.com")


@pytest.fixture()
def admin(db):
    return _insert_user(db, name="Admin", email="admin@example.com", is_admin=True)


@pytest.fixture()
def make_product(db):
    def _make(price=100.0, stock=10, name="Widget"):
        return create_document(
            db,
            "product",
            Product(name=name, price=price, stock=stock, images=[f"https://img.example.com/{name}.png"]),
        )

    return _make


@pytest.fixture()
def auth():
    def _headers(user):
        token = main.create_access_token({"sub": str(user["_id"])})
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def stock_of(db):
    def _stock(product_id):
        return db["product"].find_one({"_id": ObjectId(product_id)})["stock"]

    return _stock
