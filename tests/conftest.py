"""Pytest fixtures for the shop backend tests."""
import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings, get_settings
from database import ensure_indexes, utcnow
from errors import NotificationError
from notifications import Mailer
from payments import StripeGateway
from security import create_token, hash_password

TEST_SECRET = "test-secret-0123456789-abcdefghijklmnopqrstuvwxyz"


class RecordingMailer(Mailer):
    """Mailer that keeps messages in memory instead of sending them."""

    def __init__(self, settings, fail=False):
        super().__init__(settings)
        self.sent = []
        self.fail = fail

    def send(self, to, subject, html):
        if self.fail:
            raise NotificationError(to, "mail server unavailable")
        self.sent.append({"to": to, "subject": subject, "html": html})
        return {"accepted": [to]}


class FakeGateway(StripeGateway):
    """Stripe gateway that never talks to the network."""

    def __init__(self, settings):
        super().__init__(settings)
        self.created = []
        self.line_items = {}
        self.error = None

    def create_session(self, **params):
        if self.error:
            raise self.error
        self.created.append(params)
        session_id = f"cs_test_{len(self.created)}"
        return {"id": session_id, "url": f"https://checkout.stripe.com/c/pay/{session_id}"}

    def retrieve_session(self, session_id):
        if self.error:
            raise self.error
        return {"id": session_id, "payment_status": "paid"}

    def list_line_items(self, session_id):
        return self.line_items.get(session_id, [])


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        admin_email="admin@example.com",
        admin_password="admin-pass",
        admin_bypass_token="admin-bypass-token",
        frontend_url="http://shop.example.com",
    )


@pytest.fixture
def db():
    database = mongomock.MongoClient()["shop_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def mailer(settings):
    return RecordingMailer(settings)


@pytest.fixture
def gateway(settings):
    return FakeGateway(settings)


@pytest.fixture
def client(db, settings, mailer, gateway):
    """Test client wired to the in-memory store and fakes."""
    import main

    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[get_settings] = lambda: settings
    main.app.dependency_overrides[main.get_mailer] = lambda: mailer
    main.app.dependency_overrides[main.get_payment_gateway] = lambda: gateway
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_user(db, settings):
    """Insert a verified user and return (doc, auth headers)."""

    def _make(email="jane@example.com", password="secret-pw", is_admin=False, name="Jane"):
        now = utcnow()
        doc = {
            "name": name,
            "email": email,
            "password_hash": hash_password(password) if password else None,
            "is_admin": is_admin,
            "is_verified": True,
            "created_at": now,
            "updated_at": now,
        }
        doc["_id"] = db["user"].insert_one(doc).inserted_id
        token = create_token(doc, settings)
        return doc, {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def admin_headers(make_user):
    _, headers = make_user(email="boss@example.com", is_admin=True, name="Boss")
    return headers


@pytest.fixture
def make_product(db):
    """Insert a product and return its id as a string."""

    def _make(name="Shirt", qty=10, price=25.0, category="tops", sku=None):
        doc = {"name": name, "qty": qty, "price": price, "category": category, "sku": sku, "created_at": utcnow()}
        return str(db["product"].insert_one(doc).inserted_id)

    return _make


@pytest.fixture
def shipping():
    return {
        "full_name": "Jane Doe",
        "email": "jane@example.com",
        "phone": "555-0100",
        "address": "1 Main St",
        "city": "Lahore",
        "postal": "54000",
        "country": "PK",
    }
