import pytest
from fastapi.testclient import TestClient

from config import settings
from database import get_store
from factories import WEBHOOK_SECRET, add_user
from main import app
from memory_store import MemoryStore
from payments import PaymentGateway, get_gateway
from schemas import Role

# cheapest bcrypt cost keeps user fixtures fast
settings.bcrypt_rounds = 4


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def gateway():
    return PaymentGateway(webhook_secret=WEBHOOK_SECRET, currency="INR")


@pytest.fixture
def client(store, gateway):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def customer(store):
    return add_user(store, "Cora Mills", "cora@mail.com")


@pytest.fixture
def other_customer(store):
    return add_user(store, "Dev Patel", "dev@mail.com")


@pytest.fixture
def admin(store):
    return add_user(store, "Ada Admin", "ada@mail.com", role=Role.ADMIN)


@pytest.fixture
def courier(store):
    return add_user(store, "Ravi Courier", "ravi@mail.com", role=Role.DELIVERY)
