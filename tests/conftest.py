"""Pytest fixtures for shop backend tests."""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from accounts import ADMIN_SCOPE, USER_SCOPE, AccountService, Caller
from catalog import Catalog
from database import ensure_indexes
from errors import DeliveryFailed
from inventory import InventoryReconciler
from ledger import OrderLedger
from schemas import GuestInfo, OrderCreate, OrderItemIn, ProductCreate, ShippingAddress
from settings import Settings


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.fail = False

    def deliver_code(self, destination: str, code: str) -> None:
        if self.fail:
            raise DeliveryFailed(destination)
        self.sent.append((destination, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


class RecordingSession:
    """Stands in for a pymongo ClientSession; only records the outcome."""

    def __init__(self):
        self.committed = False
        self.aborted = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    @contextmanager
    def start_transaction(self):
        try:
            yield self
        except Exception:
            self.aborted = True
            raise
        self.committed = True


class RecordingClient:
    def __init__(self):
        self.sessions = []

    def start_session(self):
        session = RecordingSession()
        self.sessions.append(session)
        return session


@pytest.fixture
def db():
    client = mongomock.MongoClient(tz_aware=True)
    database = client["shop_test"]
    ensure_indexes(database)
    yield database
    client.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(upload_dir=str(tmp_path / "uploads"))


@pytest.fixture
def clock():
    # near real time: mongomock applies TTL indexes against the wall clock
    return FakeClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def catalog(db, settings):
    return Catalog(db, fuzzy_name_match=settings.fuzzy_name_match)


@pytest.fixture
def ledger(db):
    return OrderLedger(db)


@pytest.fixture
def reconciler(catalog, ledger, settings):
    return InventoryReconciler(catalog, ledger, settings)


@pytest.fixture
def accounts(db, settings, notifier, clock):
    return AccountService(db, settings, notifier, clock)


@pytest.fixture
def user():
    return Caller(account_id=str(ObjectId()), role="user", scope=USER_SCOPE)


@pytest.fixture
def other_user():
    return Caller(account_id=str(ObjectId()), role="user", scope=USER_SCOPE)


@pytest.fixture
def admin():
    return Caller(account_id=str(ObjectId()), role="admin", scope=ADMIN_SCOPE)


@pytest.fixture
def make_product(catalog):
    """Factory creating catalog products with sensible defaults."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        data = {
            "name": f"Product {counter['n']}",
            "category": "Quần áo",
            "price": 100000,
            "stock": 10,
            "image": f"/static/uploads/p{counter['n']}.jpg",
            "description": "Test product",
        }
        data.update(overrides)
        return catalog.create_product(ProductCreate(**data))

    return _make


@pytest.fixture
def order_payload():
    """Factory building an OrderCreate from (reference, quantity) pairs."""

    def _build(*lines, guest=None, **extra):
        items = [
            OrderItemIn(reference=str(ref["_id"]) if isinstance(ref, dict) else ref, quantity=qty)
            for ref, qty in lines
        ]
        if guest is not None and not isinstance(guest, GuestInfo):
            guest = GuestInfo(**guest)
        extra.setdefault("shipping_address", ShippingAddress(
            full_name="Nguyen Van A", phone="0912345678", address="12 Le Loi", city="Hue",
        ))
        extra.setdefault("payment_method", "COD")
        return OrderCreate(items=items, guest=guest, **extra)

    return _build


@pytest.fixture
def api_client(db, settings, notifier, clock):
    """Test client wired to the mongomock database."""
    from main import app, get_clock, get_db, get_notifier
    from settings import get_settings

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_token(api_client, accounts, notifier):
    """Run the two-step admin login and return the admin bearer token."""
    accounts.seed_admin("admin@example.com", "AdminPass123")
    response = api_client.post("/auth/admin/login", json={"identifier": "admin@example.com", "password": "AdminPass123"})
    assert response.status_code == 200
    response = api_client.post("/auth/admin/verify-otp", json={"email": "admin@example.com", "otp": notifier.last_code})
    assert response.status_code == 200
    return response.json()["token"]


@pytest.fixture
def user_token(api_client):
    response = api_client.post(
        "/auth/register",
        json={"name": "Tran Thi B", "email": "buyer@example.com", "password": "Password123"},
    )
    assert response.status_code == 201
    return response.json()["token"]


@pytest.fixture
def session_calls(monkeypatch):
    """Record the ``session`` each wrapped method receives.

    mongomock has no sessions, so the wrapped method runs without one.
    """
    calls = []

    def _wrap(target, *names):
        for name in names:
            original = getattr(target, name)

            def wrapper(*args, _name=name, _original=original, session=None, **kwargs):
                calls.append((_name, session))
                return _original(*args, **kwargs)

            monkeypatch.setattr(target, name, wrapper)
        return calls

    return _wrap


@pytest.fixture
def recording_client():
    return RecordingClient()
