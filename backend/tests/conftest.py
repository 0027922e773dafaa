"""
Centralized Test Configuration.
"""

import itertools
from typing import Optional

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from backend.app.main import app
from backend.app.core.exceptions import GatewayRejectedError, GatewayUnavailableError
from backend.app.core.jwt import create_access_token
from backend.app.db.session import build_engine, get_db, Base
from backend.app.db.unit_of_work import run_atomic
from backend.app.domain.ledger.ledger_store import ledger_store
from backend.app.domain.payments.gateway import CheckoutSession, PaymentStatus, get_payment_gateway
from backend.app.domain.payments.receipts import receipt_store
from backend.app.domain.payments.webhook_payload import parse_webhook_payment
from backend.app.models.application import Application
from backend.app.models.ledger_enums import ApplicationStatus


class ScriptedGateway:
    """Gateway double: deterministic checkout ids and a scripted verify result."""

    provider_name = "PayMongo"
    parse_webhook = staticmethod(parse_webhook_payment)

    def __init__(self):
        self._ids = itertools.count(1)
        self.checkouts = []
        self.fail_with: Optional[Exception] = None
        self.verify_result = PaymentStatus(status="pending")

    async def create_checkout(self, application, billing_info=None) -> CheckoutSession:
        if self.fail_with is not None:
            raise self.fail_with
        session = CheckoutSession(
            id=f"cs_test_{next(self._ids)}",
            url="https://checkout.example/pay",
            reference_number=application.application_number,
        )
        self.checkouts.append(session)
        return session

    async def verify_checkout(self, session_id: str) -> PaymentStatus:
        return self.verify_result

    def reject(self, message: str = "amount is below the minimum"):
        self.fail_with = GatewayRejectedError(f"Payment gateway rejected request: {message}")

    def go_down(self):
        self.fail_with = GatewayUnavailableError("Payment gateway timed out")


# File-backed SQLite per test so concurrent units get separate connections
@pytest.fixture
async def engine(tmp_path):
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def storage(tmp_path, monkeypatch):
    """Receipts and withdrawal proofs go to the test's temp directory."""
    monkeypatch.setattr(receipt_store, "receipt_dir", tmp_path / "receipts")
    monkeypatch.setattr(receipt_store, "withdrawal_dir", tmp_path / "withdrawals")
    return tmp_path


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
async def client(session_factory, gateway):
    """Async client for testing."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides = {}


def auth_headers(role: str, user_id: int = 1, username: str = "tester", school_id: Optional[int] = None) -> dict:
    claims = {"sub": username, "user_id": user_id, "role": role}
    if school_id is not None:
        claims["school_id"] = school_id
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


@pytest.fixture
def admin_headers():
    return auth_headers("ADMIN", user_id=1, username="finance.admin")


@pytest.fixture
def system_headers():
    return auth_headers("SYSTEM", user_id=2, username="scheduler")


@pytest.fixture
def partner_headers():
    def _headers(school_id: int):
        return auth_headers("PARTNER_SCHOOL", user_id=100 + school_id, username=f"registrar{school_id}", school_id=school_id)
    return _headers


# Data builders

async def make_budget(session, school_id: int = 1, amount: int = 100000, academic_year: str = "2025-2026", **kwargs):
    async def work(uow):
        return await ledger_store.allocate(uow, school_id, academic_year, amount, allocated_by="seed", **kwargs)

    result = await run_atomic(session, work)
    return result.budget


async def make_application(
    session,
    budget=None,
    amount: int = 30000,
    number: str = "APP-0001",
    status: ApplicationStatus = ApplicationStatus.APPROVED,
):
    application = Application(
        application_number=number,
        budget_id=budget.id if budget is not None else None,
        school_id=budget.school_id if budget is not None else None,
        student_name="Juan Dela Cruz",
        student_email="juan@example.edu",
        student_phone="0917 123 4567",
        preferred_wallet="gcash",
        amount=amount,
        reserved_amount=0,
        status=status,
    )
    session.add(application)
    await session.commit()
    return application


def paid_event(checkout_id: str, amount: int, payment_id: str = "pay_test_1", reference: str = "APP-0001") -> dict:
    """checkout_session.payment.paid as the provider delivers it."""
    return {
        "data": {
            "id": "evt_paid_1",
            "type": "event",
            "attributes": {
                "type": "checkout_session.payment.paid",
                "livemode": False,
                "data": {
                    "id": checkout_id,
                    "type": "checkout_session",
                    "attributes": {
                        "reference_number": reference,
                        "payments": [{
                            "id": payment_id,
                            "type": "payment",
                            "attributes": {"amount": amount, "status": "paid"},
                        }],
                    },
                },
            },
        }
    }


def failed_event(reference: str, amount: int, payment_id: str = "pay_failed_1") -> dict:
    """payment.failed carries the payment resource, not the checkout session."""
    return {
        "data": {
            "id": "evt_failed_1",
            "type": "event",
            "attributes": {
                "type": "payment.failed",
                "livemode": False,
                "data": {
                    "id": payment_id,
                    "type": "payment",
                    "attributes": {
                        "amount": amount,
                        "status": "failed",
                        "external_reference_number": reference,
                        "failed_message": "Card declined",
                    },
                },
            },
        }
    }
