"""
Shared fixtures: an in-memory Mongo, a recording mailer and fake payment
gateways wired into the app through dependency overrides.
"""

import itertools
from typing import Dict, List, Optional

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import create_document, get_db
from main import app
from notifications import get_mailer
from payments import (
    PaymentConfirmation,
    PaymentError,
    PaymentGateway,
    PaymentHandle,
    get_gateways,
)
from schemas import Product, User
from security import create_access_token, hash_password


# ============================================================================
# Doubles
# ============================================================================


class RecordingMailer:
    def __init__(self):
        self.sent: List[Dict[str, str]] = []

    async def send(self, to: str, subject: str, html: str, text: str = "") -> None:
        self.sent.append({"to": to, "subject": subject, "html": html})

    def to(self, address: str) -> List[Dict[str, str]]:
        return [m for m in self.sent if m["to"] == address]


class FakeGateway(PaymentGateway):
    _counter = itertools.count(1)

    def __init__(self, name: str):
        self.name = name
        self.payments: Dict[str, PaymentConfirmation] = {}
        self.intents: List[Dict] = []
        self.refunds: List[str] = []
        self.fail_refund = False

    def pay(self, reference: str, amount: Optional[float], status: str = "success",
            email: Optional[str] = None, currency: str = "gbp"):
        self.payments[reference] = PaymentConfirmation(self.name, reference, status, amount, currency, email)
        return reference

    def create_intent(self, amount, currency, email=None, metadata=None):
        reference = f"{self.name}_ref_{next(self._counter)}"
        self.intents.append({"amount": amount, "currency": currency, "email": email, "metadata": metadata})
        return PaymentHandle(
            provider=self.name,
            reference=reference,
            data={
                "client_secret": f"{reference}_secret",
                "payment_intent_id": reference,
                "authorization_url": f"https://pay.example/{reference}",
                "access_code": "ac_test",
                "reference": reference,
            },
        )

    def confirm(self, reference):
        if reference not in self.payments:
            raise PaymentError(f"No such payment: {reference}")
        return self.payments[reference]

    def refund(self, reference):
        if self.fail_refund:
            raise PaymentError("refund declined")
        self.refunds.append(reference)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def db():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def gateways():
    return {"stripe": FakeGateway("stripe"), "paystack": FakeGateway("paystack")}


@pytest.fixture
def client(db, mailer, gateways, tmp_path, monkeypatch):
    import settings

    monkeypatch.setattr(settings, "UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setattr(settings, "ADMIN_EMAIL", "owner@eloravista.test")
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_gateways] = lambda: gateways
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ============================================================================
# Helpers
# ============================================================================


def make_user(db, email="buyer@example.com", name="Buyer", password="secret123", role="user"):
    user = User(name=name, email=email, password_hash=hash_password(password), role=role)
    return create_document(db, "user", user)


def auth_headers(user_id: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}


def make_product(db, name="Tote Bag", price=10.0, stock=5, category="Fashion", **extra):
    extra.setdefault("description", f"{name} description")
    product = Product(name=name, price=price, stock=stock, category=category, **extra)
    return create_document(db, "product", product)


@pytest.fixture
def user_headers(db):
    return auth_headers(make_user(db))


@pytest.fixture
def admin_headers(db):
    return auth_headers(make_user(db, email="admin@example.com", name="Admin", role="admin"))
