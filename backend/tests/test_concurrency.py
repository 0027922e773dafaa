"""
Concurrency Tests.

Validates that race conditions on the same budget are serialized and that
unrelated budgets do not block each other.
"""

import asyncio

import pytest
from sqlalchemy import select, func

from backend.app.core.exceptions import ConcurrencyConflictError, InsufficientFundsError
from backend.app.db.locking import KeyedLockRegistry
from backend.app.db.unit_of_work import UnitOfWork, run_atomic
from backend.app.domain.disbursement.workflow import disbursement_workflow
from backend.app.domain.ledger.ledger_store import budget_lock_key, ledger_store
from backend.app.domain.payments.webhook_reconciler import WebhookReconciler
from backend.app.models.disbursement import Disbursement
from backend.app.models.ledger_enums import WebhookOutcome
from backend.app.models.ledger_transaction import LedgerTransaction

from conftest import make_application, make_budget, paid_event


async def test_concurrent_reservations_never_overdraw(db_session, session_factory):
    """8 requests of 30000 against 100000: exactly 3 succeed."""
    budget = await make_budget(db_session, amount=100000)

    async def reserve(application_id):
        async with session_factory() as session:
            return await run_atomic(
                session,
                lambda uow: ledger_store.reserve(uow, budget.id, 30000, application_id=application_id)
            )

    results = await asyncio.gather(*(reserve(i) for i in range(1, 9)), return_exceptions=True)

    successes = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, InsufficientFundsError)]
    assert len(successes) == 3
    assert len(rejected) == 5

    budget = await ledger_store.get_budget(db_session, budget.id)
    assert budget.reserved_amount == 90000
    assert budget.available_amount == 10000


async def test_concurrent_reservations_exhaust_budget_exactly(db_session, session_factory):
    budget = await make_budget(db_session, amount=100000)

    async def reserve(application_id):
        async with session_factory() as session:
            return await run_atomic(
                session,
                lambda uow: ledger_store.reserve(uow, budget.id, 25000, application_id=application_id)
            )

    results = await asyncio.gather(*(reserve(i) for i in range(1, 7)), return_exceptions=True)

    assert sum(1 for r in results if not isinstance(r, Exception)) == 4
    budget = await ledger_store.get_budget(db_session, budget.id)
    assert budget.available_amount == 0


async def test_duplicate_paid_webhooks_produce_one_disbursement(db_session, session_factory, gateway):
    budget = await make_budget(db_session, amount=100000)
    application = await make_application(db_session, budget, amount=30000)
    await disbursement_workflow.reserve(db_session, application.id)
    _, transaction = await disbursement_workflow.start_payment(db_session, gateway, application.id)

    payload = paid_event(transaction.provider_checkout_id, 30000)

    async def deliver():
        async with session_factory() as session:
            return await WebhookReconciler(session, gateway).handle(payload)

    acks = await asyncio.gather(*(deliver() for _ in range(3)))

    outcomes = sorted(ack.outcome.value for ack in acks)
    assert outcomes.count(WebhookOutcome.PROCESSED.value) == 1
    assert outcomes.count(WebhookOutcome.DUPLICATE.value) == 2

    assert await db_session.scalar(select(func.count()).select_from(Disbursement)) == 1
    assert await db_session.scalar(
        select(func.count()).select_from(LedgerTransaction)
        .where(LedgerTransaction.idempotency_key == transaction.provider_checkout_id)
    ) == 1
    budget = await ledger_store.get_budget(db_session, budget.id)
    assert (budget.disbursed_amount, budget.reserved_amount) == (30000, 0)


async def test_lock_wait_times_out_as_conflict():
    registry = KeyedLockRegistry()

    async with registry.hold("budget:1", timeout=1):
        with pytest.raises(ConcurrencyConflictError):
            async with registry.hold("budget:1", timeout=0.05):
                pass

    assert not registry.is_locked("budget:1")


async def test_unrelated_budgets_do_not_block(db_session, session_factory):
    first = await make_budget(db_session, school_id=1, amount=100000)
    second = await make_budget(db_session, school_id=2, amount=100000)

    async with session_factory() as session:
        async with UnitOfWork(session) as uow:
            await ledger_store.lock_budget(uow, first.id)

            async with session_factory() as other:
                result = await asyncio.wait_for(
                    run_atomic(other, lambda u: ledger_store.reserve(u, second.id, 1000, application_id=1)),
                    timeout=2,
                )
            assert result.budget.reserved_amount == 1000


async def test_same_budget_waits_for_holder(db_session, session_factory):
    budget = await make_budget(db_session, amount=100000)
    registry = KeyedLockRegistry()

    async with session_factory() as session:
        async with UnitOfWork(session, locks=registry) as uow:
            await ledger_store.lock_budget(uow, budget.id)
            assert registry.is_locked(budget_lock_key(budget.id))

            async with session_factory() as other:
                with pytest.raises(ConcurrencyConflictError):
                    async with UnitOfWork(other, locks=registry, lock_timeout=0.05) as blocked:
                        await ledger_store.lock_budget(blocked, budget.id)

    assert not registry.is_locked(budget_lock_key(budget.id))


async def test_conflict_is_retried_once(db_session, mocker):
    attempts = mocker.AsyncMock(side_effect=[ConcurrencyConflictError(), "done"])

    assert await run_atomic(db_session, attempts) == "done"
    assert attempts.await_count == 2


async def test_conflict_surfaces_after_retry(db_session, mocker):
    attempts = mocker.AsyncMock(side_effect=ConcurrencyConflictError())

    with pytest.raises(ConcurrencyConflictError):
        await run_atomic(db_session, attempts)
    assert attempts.await_count == 2
