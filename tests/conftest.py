"""Pytest configuration and fixtures."""

import hashlib
import json
import time
from datetime import datetime, timezone
from types import SimpleNamespace

import httpx
import jwt
import pytest
import stripe
from fastapi.testclient import TestClient

from campus_pay import database, signatures
from campus_pay.config import Settings
from campus_pay.events import EventPublisher
from campus_pay.main import create_app
from campus_pay.models import Student
from campus_pay.providers import PaystackProvider, StripeCheckoutProvider
from campus_pay.reconciliation import ReconciliationEngine

PAYSTACK_SECRET = "sk_test_paystack_secret"
JWT_SECRET = "jwt-test-secret-with-enough-length-for-hs256"
STUDENT_ID = "stu-0001"
OTHER_STUDENT_ID = "stu-0002"
FALL_TERM = {"academic_year": "2025-2026", "semester": "Fall"}


def naive(value: datetime) -> datetime:
    """SQLite drops tzinfo; compare everything as naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def sign(body: bytes, secret: str = PAYSTACK_SECRET) -> str:
    return signatures.compute_signature(body, secret)


def token(user_id: str = STUDENT_ID, role: str = "student", secret: str = JWT_SECRET, **claims) -> str:
    return jwt.encode({"id": user_id, "role": role, **claims}, secret, algorithm="HS256")


class FakePaystack:
    """In-memory stand-in for the Paystack transaction API."""

    def __init__(self):
        self.charges = {}
        self.counter = 0
        self.fail_with = None
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"status": False, "message": "Service unavailable"})

        path = request.url.path
        if request.method == "POST" and path == "/transaction/initialize":
            payload = json.loads(request.content)
            if payload["amount"] < 100:
                return httpx.Response(400, json={"status": False, "message": "Invalid Amount Sent"})
            self.counter += 1
            reference = f"ref-{self.counter:04d}"
            self.charges[reference] = {
                "reference": reference,
                "status": "ongoing",
                "amount": payload["amount"],
                "currency": payload["currency"],
                "paid_at": None,
                "gateway_response": "The transaction was not completed",
                "metadata": payload["metadata"],
            }
            return httpx.Response(200, json={
                "status": True,
                "message": "Authorization URL created",
                "data": {
                    "authorization_url": f"https://checkout.paystack.com/{reference}",
                    "access_code": f"ac_{reference}",
                    "reference": reference,
                },
            })

        if request.method == "GET" and path.startswith("/transaction/verify/"):
            reference = path.rsplit("/", 1)[-1]
            charge = self.charges.get(reference)
            if charge is None:
                return httpx.Response(400, json={"status": False, "message": "Transaction reference not found"})
            return httpx.Response(200, json={"status": True, "message": "Verification successful", "data": charge})

        return httpx.Response(404, json={"status": False, "message": "Not found"})

    def settle(self, reference: str, status: str = "success", paid_at: str = "2025-09-01T10:00:00.000Z"):
        charge = self.charges[reference]
        charge["status"] = status
        if status == "success":
            charge["paid_at"] = paid_at
            charge["gateway_response"] = "Successful"
        else:
            charge["gateway_response"] = "Declined"

    def event(self, reference: str, event: str = "charge.success") -> bytes:
        return json.dumps({"event": event, "data": self.charges[reference]}).encode()


def charge_event(reference: str, event: str = "charge.success", amount: int = 500000, metadata=None) -> bytes:
    if metadata is None:
        metadata = {"student_id": STUDENT_ID, "semester": "Fall", "academic_year": "2025-2026"}
    return json.dumps({
        "event": event,
        "data": {
            "reference": reference,
            "status": "success" if event == "charge.success" else "failed",
            "amount": amount,
            "currency": "NGN",
            "paid_at": "2025-09-01T10:00:00.000Z",
            "metadata": metadata,
        },
    }).encode()


class RecordingPublisher(EventPublisher):
    def __init__(self):
        super().__init__("")
        self.published = []

    def publish(self, routing_key, event):
        self.published.append((routing_key, event))
        return True


def seed_students(session):
    session.add_all([
        Student(id=STUDENT_ID, name="Ada Obi", email="ada@unilag.edu.ng", registration_number="REG/2025/001"),
        Student(id=OTHER_STUDENT_ID, name="Tunde Bello", email="tunde@unilag.edu.ng", registration_number="REG/2025/002"),
    ])
    session.commit()


@pytest.fixture
def fake_paystack() -> FakePaystack:
    return FakePaystack()


@pytest.fixture
def paystack(fake_paystack) -> PaystackProvider:
    return PaystackProvider(PAYSTACK_SECRET, timeout=2.0, transport=httpx.MockTransport(fake_paystack.handler))


@pytest.fixture
def session_factory():
    factory = database.init_db("sqlite://")
    session = factory()
    seed_students(session)
    session.close()
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def engine(db, paystack) -> ReconciliationEngine:
    return ReconciliationEngine(db, {"paystack": paystack}, default_provider="paystack")


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        jwt_secret=JWT_SECRET,
        payment_provider="paystack",
        paystack_secret_key=PAYSTACK_SECRET,
    )


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def app(settings, paystack, publisher):
    return create_app(settings, providers={"paystack": paystack}, publisher=publisher)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        session = app.state.session_factory()
        seed_students(session)
        session.close()
        yield test_client


@pytest.fixture
def student_headers() -> dict:
    return {"Authorization": f"Bearer {token()}"}


@pytest.fixture
def admin_headers() -> dict:
    return {"Authorization": f"Bearer {token('adm-1', 'admin')}"}


STRIPE_SECRET = "sk_test_stripe"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
CHARGED_AT = 1756720800  # 2025-09-01T10:00:00Z


class StubPaymentIntents:
    def __init__(self):
        self.charged = {}
        self.error = None

    def retrieve(self, intent_id, params=None):
        if self.error:
            raise self.error
        if intent_id not in self.charged:
            raise stripe.InvalidRequestError(f"No such payment_intent: '{intent_id}'", "id")
        charge = SimpleNamespace(id=f"ch_{intent_id}", created=self.charged[intent_id])
        expanded = "latest_charge" in ((params or {}).get("expand") or [])
        return SimpleNamespace(id=intent_id, latest_charge=charge if expanded else charge.id)


class StubSessions:
    """Checkout Sessions held in memory, expanding payment intents on request."""

    def __init__(self, intents: StubPaymentIntents):
        self.intents = intents
        self.created = []
        self.sessions = {}
        self.error = None

    def create(self, params):
        if self.error:
            raise self.error
        self.created.append(params)
        number = len(self.created)
        session = SimpleNamespace(
            id=f"cs_test_{number}",
            url=f"https://checkout.stripe.com/c/pay/cs_test_{number}",
            created=CHARGED_AT - 600,
            payment_status="unpaid",
            payment_intent=None,
            status="open",
            amount_total=params["line_items"][0]["price_data"]["unit_amount"],
            currency=params["line_items"][0]["price_data"]["currency"],
            metadata=params["metadata"],
        )
        self.sessions[session.id] = session
        return session

    def retrieve(self, session_id, params=None):
        if self.error:
            raise self.error
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: '{session_id}'", "id")
        session = self.sessions[session_id]
        expand = (params or {}).get("expand") or []
        if "payment_intent.latest_charge" in expand and session.payment_intent:
            intent = self.intents.retrieve(session.payment_intent, {"expand": ["latest_charge"]})
            return SimpleNamespace(**{**vars(session), "payment_intent": intent})
        return session

    def pay(self, session_id, charged_at=CHARGED_AT):
        session = self.sessions[session_id]
        session.payment_status = "paid"
        session.status = "complete"
        session.payment_intent = session_id.replace("cs_", "pi_")
        self.intents.charged[session.payment_intent] = charged_at

    def event(self, session_id, event_type="checkout.session.completed", created=None) -> bytes:
        session = self.sessions[session_id]
        return json.dumps({
            "id": f"evt_{session_id}",
            "type": event_type,
            "created": created or int(time.time()),
            "data": {"object": {
                "id": session.id,
                "object": "checkout.session",
                "created": session.created,
                "payment_status": session.payment_status,
                "payment_intent": session.payment_intent,
                "amount_total": session.amount_total,
                "currency": session.currency,
                "metadata": session.metadata,
            }},
        }).encode()


def stripe_header(body: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + body
    return f"t={timestamp},v1={signatures.compute_signature(signed, secret, hashlib.sha256)}"


@pytest.fixture
def stripe_sessions() -> StubSessions:
    return StubSessions(StubPaymentIntents())


@pytest.fixture
def stripe_provider(stripe_sessions) -> StripeCheckoutProvider:
    client = SimpleNamespace(
        checkout=SimpleNamespace(sessions=stripe_sessions),
        payment_intents=stripe_sessions.intents,
    )
    return StripeCheckoutProvider(
        STRIPE_SECRET,
        STRIPE_WEBHOOK_SECRET,
        success_url="https://portal.unilag.edu.ng/paid",
        cancel_url="https://portal.unilag.edu.ng/cancelled",
        client=client,
    )
