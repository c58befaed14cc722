import asyncio

import pytest
from fastapi.testclient import TestClient

from cart import CartManager
from config import Settings
from gateways import NotificationGateway, NotificationResult
from identity import InMemoryIdentityGateway
from persistence import InMemoryPersistenceGateway
from schemas import Product, ProductRecord
from services import build_services


class RecordingNotifications(NotificationGateway):
    """Records every send; kinds listed in ``fail`` report failure."""

    def __init__(self):
        self.sent = []
        self.fail = set()

    def _result(self, kind, payload):
        self.sent.append((kind, payload))
        if kind in self.fail:
            return NotificationResult(False, f"{kind} failed")
        return NotificationResult(True)

    def kinds(self):
        return [kind for kind, _ in self.sent]

    def last(self, kind):
        return [payload for k, payload in self.sent if k == kind][-1]

    async def send_customer_confirmation(self, notice):
        return self._result("customer", notice)

    async def send_operator_alert(self, notice):
        return self._result("operator", notice)

    async def send_lead_alert(self, notice):
        return self._result("lead", notice)

    async def send_verification_code(self, name, email, code):
        return self._result("code", code)


def make_product(product_id="p1", price=500, name="Engraved Pen", category="for-him"):
    return Product(
        id=product_id,
        name=name,
        slug=product_id,
        price=price,
        image_url=f"https://img.example.com/{product_id}.jpg",
        category=category,
    )


def shipping_data(**overrides):
    data = {
        "first_name": "Asha",
        "last_name": "Rao",
        "email": "asha@example.com",
        "phone": "9876543210",
        "street": "12 Marine Drive",
        "city": "Mumbai",
        "state": "Maharashtra",
        "zip": "400001",
    }
    data.update(overrides)
    return data


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def persistence():
    return InMemoryPersistenceGateway()


@pytest.fixture
def notifications():
    return RecordingNotifications()


@pytest.fixture
def identity_gateway():
    return InMemoryIdentityGateway()


@pytest.fixture
def settings():
    return Settings(admin_email="admin@example.com", admin_password="admin123", delivery_surcharge=100)


@pytest.fixture
def services(settings, persistence, identity_gateway, notifications):
    return build_services(
        settings=settings,
        persistence=persistence,
        identity=identity_gateway,
        notifications=notifications,
    )


@pytest.fixture
def cart():
    return CartManager()


@pytest.fixture
def stocked_product(persistence):
    """A 500 priced product stored before the app starts, so no sample catalog is seeded."""
    record = ProductRecord(
        name="Engraved Pen",
        slug="engraved-pen",
        description="Brass pen with a name on it.",
        price=500,
        images=["https://img.example.com/pen.jpg"],
        category="for-him",
        stock_quantity=10,
    )
    stored, _ = run(persistence.insert_product(record))
    return stored


@pytest.fixture
def client(services):
    from main import create_app

    with TestClient(create_app(services)) as c:
        yield c
