import hashlib
import hmac
import json
import os
import time

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_temp.db")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("DEVTOOLS_ENABLED", "1")
os.environ.setdefault("DEVTOOLS_PAYMENT_SECRET", "secret")

from datetime import datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine, update  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from finepay import handlers  # noqa: E402
from finepay.audit import AuditEventService, RequestContext  # noqa: E402
from finepay.database import Base  # noqa: E402
from finepay.enums import PaymentStatus  # noqa: E402
from finepay.handlers import PaymentHandler, PaymentResult  # noqa: E402
from finepay.i18n import Translator  # noqa: E402
from finepay.ils import RegistrationResult, set_ils  # noqa: E402
from finepay.manager import OnlinePaymentManager  # noqa: E402
from finepay.models import Payment, User  # noqa: E402
from finepay.store import PaymentStore, utcnow  # noqa: E402

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

FINES = [
    {
        "fine_id": "demo1",
        "type": "Overdue",
        "title": "Journey to the Centre of the Earth",
        "balance": 1000,
        "organization": "main",
        "tax_percent": 0,
    },
    {
        "fine_id": "demo2",
        "type": "Lost",
        "title": "Twenty Thousand Leagues Under the Seas",
        "balance": 500,
        "organization": "branch",
        "tax_percent": 2400,
    },
]


class FakeIls:
    """In-memory library system."""

    def __init__(self):
        self.fines = [dict(fine) for fine in FINES]
        self.profile = {"email": "patron@example.com", "firstname": "Pat"}
        self.register_result = RegistrationResult(True)
        self.register_error = None
        self.patron_available = True
        self.registered = []

    def get_patron(self, user, cat_username):
        if not self.patron_available:
            return None
        return {"id": cat_username, "cat_username": cat_username, "source": "default"}

    def get_my_profile(self, patron):
        return dict(self.profile)

    def get_my_fines(self, patron):
        return [dict(fine) for fine in self.fines]

    def get_online_payment_details(self, patron, fines, selected_fine_ids):
        if selected_fine_ids:
            fines = [fine for fine in fines if fine["fine_id"] in selected_fine_ids]
        amount = sum(fine["balance"] for fine in fines)
        return {"payable": amount > 0, "amount": amount, "fines": fines, "reason": None}

    def register_payment(self, patron, amount, local_identifier, remote_identifier, payment_id, fine_ids):
        if self.register_error is not None:
            raise self.register_error
        self.registered.append(
            {"patron": patron["cat_username"], "amount": amount, "local_identifier": local_identifier, "fine_ids": fine_ids}
        )
        return self.register_result


class StubHandler(PaymentHandler):
    """Gateway whose callbacks state their own result (`?result=SUCCESS`)."""

    name = "stub"

    def init(self, config):
        self.config = config

    def start_payment(self, return_base_url, notify_base_url, user, patron, amount, fines, payment_param):
        raise NotImplementedError

    def process_payment_response(self, payment, request):
        return PaymentResult[request.params["result"]]


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def store():
    return PaymentStore(TestingSessionLocal)


@pytest.fixture
def request_context():
    return RequestContext(
        session_id="session-1",
        client_ip="127.0.0.1",
        server_ip="10.0.0.1",
        server_name="finepay.test",
        request_uri="http://finepay.test/payments/return?local_payment_id=abc",
    )


@pytest.fixture
def audit(request_context):
    return AuditEventService(TestingSessionLocal, ["payment", "user", "ils"], request_context)


@pytest.fixture
def user():
    db = TestingSessionLocal()
    u = User(
        username="patron1",
        email="patron@example.com",
        firstname="Pat",
        lastname="Ron",
        cat_username="catuser",
    )
    db.add(u)
    db.commit()
    db.close()
    return u


@pytest.fixture
def ils():
    fake = FakeIls()
    set_ils(fake)
    yield fake
    set_ils(None)


@pytest.fixture
def stub_handler(monkeypatch):
    monkeypatch.setitem(handlers.HANDLERS, StubHandler.name, StubHandler)
    return StubHandler


@pytest.fixture
def payment_config():
    return {
        "default": {
            "enabled": True,
            "handler": "stub",
            "currency": "EUR",
            "exactBalanceRequired": False,
        }
    }


@pytest.fixture
def manager(store, audit, ils, payment_config, stub_handler, mocker):
    return OnlinePaymentManager(store, audit, ils, payment_config, mocker.Mock(), Translator("en"))


@pytest.fixture
def make_payment(store, user):
    """Create a payment and optionally force its status and timestamps."""
    counter = {"n": 0}

    def _make(amount=1500, status=None, cat_username="catuser", source="default", fines=None, **values):
        counter["n"] += 1
        payment = store.create_in_progress_payment(
            f"local{counter['n']}",
            f"remote{counter['n']}",
            user,
            {"cat_username": cat_username, "source": source},
            amount,
            "EUR",
            0,
            FINES if fines is None else fines,
        )
        if status is not None:
            values["status"] = int(status)
        if values:
            with TestingSessionLocal() as db:
                db.execute(update(Payment).where(Payment.id == payment.id).values(**values))
                db.commit()
        return store.get_payment_by_id(payment.id)

    return _make


def status_of(store, payment) -> PaymentStatus:
    return PaymentStatus(store.refresh(payment).status)


def event_messages(audit, payment) -> list[str]:
    return [e.message for e in audit.get_events(payment=payment, sort=["id ASC"])]


def minutes_ago(minutes: int) -> datetime:
    return utcnow() - timedelta(minutes=minutes)


def stripe_webhook(event: dict, secret: str) -> tuple[bytes, dict]:
    """Body and headers of a webhook delivery signed the way Stripe signs them."""
    body = json.dumps(event).encode("utf-8")
    timestamp = int(time.time())
    signature = hmac.new(secret.encode("utf-8"), f"{timestamp}.".encode("utf-8") + body, hashlib.sha256).hexdigest()
    return body, {"stripe-signature": f"t={timestamp},v1={signature}", "content-type": "application/json"}


def checkout_session_event(local_identifier: str | None, event_type: str = "checkout.session.completed") -> dict:
    return {
        "id": "evt_test_1",
        "object": "event",
        "type": event_type,
        "data": {"object": {"id": "cs_test_1", "object": "checkout.session", "client_reference_id": local_identifier}},
    }
