"""
Shared fixtures: a throwaway SQLite database, an ASGI client, and fakes for
every external adapter (Stripe, Resend, Supabase Storage, MailerLite).
"""
import json
import os
import tempfile
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from fastapi import Depends, HTTPException
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

# Set test environment variables before importing the app.
_TMP = tempfile.mkdtemp(prefix="patternpioneer-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/test.db"
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("APP_URL", "http://shop.test")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("SESSION_SECRET", "test-session-secret")

from patternpioneer import server  # noqa: E402
from patternpioneer.errors import MailError, StorageError  # noqa: E402
from patternpioneer.model import Base, User  # noqa: E402
from patternpioneer.payments import PaymentAdapter  # noqa: E402


# =============================================================================
# FAKE ADAPTERS
# =============================================================================


class FakePayments(PaymentAdapter):
    def __init__(self):
        self.checkouts: List[dict] = []
        self.customers: List[dict] = []
        self.subscription_checkouts: List[dict] = []
        self.line_items: Dict[str, List[dict]] = {}
        self.fail_line_items = False

    async def create_checkout_session(self, lines, pattern_ids,
                                      customer_email, currency="eur"):
        self.checkouts.append({
            "lines": list(lines),
            "pattern_ids": list(pattern_ids),
            "customer_email": customer_email,
        })
        return {"session_id": "cs_test_1",
                "url": "https://checkout.stripe.test/cs_test_1"}

    async def create_customer(self, email, name, user_id):
        self.customers.append({"email": email, "user_id": user_id})
        return "cus_new"

    async def create_subscription_checkout(self, customer_id, price_id,
                                           user_id, plan_type):
        self.subscription_checkouts.append({
            "customer_id": customer_id,
            "price_id": price_id,
            "plan_type": plan_type,
        })
        return {"session_id": "cs_sub_1",
                "url": "https://checkout.stripe.test/cs_sub_1"}

    async def create_portal_session(self, customer_id):
        return f"https://billing.stripe.test/{customer_id}"

    async def list_line_items(self, session_id):
        if self.fail_line_items:
            raise RuntimeError("stripe unavailable")
        return self.line_items.get(session_id, [])

    def verify_webhook(self, payload, headers):
        sig = headers.get("stripe-signature")
        if not sig:
            raise HTTPException(status_code=400,
                                detail="Missing stripe-signature header")
        if sig != "valid":
            raise HTTPException(
                status_code=400,
                detail="Webhook signature verification failed",
            )
        return json.loads(payload)


class FakeMailer:
    def __init__(self):
        self.sent: List[dict] = []
        self.fail = False

    async def send_order_confirmation(self, to, customer_name, order_number,
                                      order_date, items, total):
        if self.fail:
            raise MailError("resend down")
        self.sent.append({"kind": "order", "to": to, "items": items,
                          "total": total})

    async def send_free_download(self, to, pattern_name, download_url):
        if self.fail:
            raise MailError("resend down")
        self.sent.append({"kind": "free", "to": to,
                          "pattern_name": pattern_name,
                          "download_url": download_url})


class FakeStorage:
    def __init__(self):
        self.files: Dict[str, bytes] = {}
        self.signed: List[str] = []

    async def create_signed_url(self, bucket, path, expires_in):
        self.signed.append(f"{bucket}/{path}")
        return f"https://storage.test/{bucket}/{path}?token=signed"

    async def download(self, bucket, path):
        key = f"{bucket}/{path}"
        if key not in self.files:
            raise StorageError(f"download {key} failed: HTTP 404")
        return self.files[key]


class FakeNewsletter:
    def __init__(self):
        self.subscribed: List[tuple] = []

    async def add_subscriber(self, email, source="free_download"):
        self.subscribed.append((email, source))
        return {"success": True}


# =============================================================================
# DATABASE
# =============================================================================


@pytest_asyncio.fixture
async def schema():
    async with server.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with server.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await server.engine.dispose()


@pytest_asyncio.fixture
async def db(schema) -> AsyncSession:
    async with server.SessionAsync() as session:
        yield session


@pytest.fixture
def new_session(schema):
    """Fresh session factory, for reading state written by a request."""
    return server.SessionAsync


# =============================================================================
# APP
# =============================================================================


@pytest.fixture
def payments() -> FakePayments:
    return FakePayments()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def newsletter() -> FakeNewsletter:
    return FakeNewsletter()


@pytest_asyncio.fixture
async def async_client(schema, payments, mailer, storage, newsletter):
    app = server.app
    app.dependency_overrides[server.get_payments] = lambda: payments
    app.dependency_overrides[server.get_mailer] = lambda: mailer
    app.dependency_overrides[server.get_storage] = lambda: storage
    app.dependency_overrides[server.get_newsletter] = lambda: newsletter
    async with AsyncClient(transport=ASGITransport(app=app),
                           base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def login_as():
    """Make requests run as the given user id (None logs out)."""
    def _login(user_id: Optional[str]):
        async def _user(db: AsyncSession = Depends(server.get_db)):
            if user_id is None:
                return None
            return await db.get(User, user_id)
        server.app.dependency_overrides[server.optional_user] = _user
    return _login
