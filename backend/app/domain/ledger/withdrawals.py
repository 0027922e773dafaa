"""
Partner-school self-service withdrawals.

A withdrawal is a direct disbursement from the school's current budget with
no reservation phase. The proof document is stored inside the same unit and
deleted again if the unit rolls back.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import ResourceNotFoundError, ValidationError
from backend.app.db.unit_of_work import UnitOfWork, run_atomic
from backend.app.domain.ledger.ledger_store import LedgerReference, LedgerStore, ledger_store
from backend.app.domain.payments.receipts import ReceiptStore, receipt_store
from backend.app.models.budget import Budget
from backend.app.models.budget_withdrawal import BudgetWithdrawal
from backend.app.models.ledger_transaction import LedgerTransaction
from backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger(__name__)


@dataclass
class WithdrawalRequest:
    amount: int
    purpose: str
    withdrawal_date: date
    proof_content: bytes
    proof_content_type: str
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass
class WithdrawalResult:
    withdrawal: BudgetWithdrawal
    budget: Budget
    replayed: bool = False


class WithdrawalService:

    def __init__(self, ledger: Optional[LedgerStore] = None, receipts: Optional[ReceiptStore] = None):
        self.ledger = ledger or ledger_store
        self.receipts = receipts or receipt_store

    async def record(
        self,
        session: AsyncSession,
        school_id: int,
        request: WithdrawalRequest,
        actor: Optional[dict] = None,
    ) -> WithdrawalResult:
        """
        Deduct a withdrawal from the school's most recent budget.

        Raises:
            ResourceNotFoundError: school has no budget
            InsufficientFundsError: amount exceeds available
        """
        budget = await self.ledger.find_budget(session, school_id)
        if budget is None:
            raise ResourceNotFoundError("Budget", school_id)
        budget_id = budget.id

        ledger_key = f"withdrawal:{school_id}:{request.idempotency_key}" if request.idempotency_key else None
        actor_id = actor.get("user_id") if actor else None
        actor_username = actor.get("sub") if actor else None

        async def work(uow: UnitOfWork) -> WithdrawalResult:
            locked = await self.ledger.lock_budget(uow, budget_id)

            if ledger_key:
                existing = await self._by_ledger_key(uow.session, ledger_key)
                if existing is not None:
                    if existing.amount != request.amount:
                        raise ValidationError(
                            message="Idempotency-Key already used for a withdrawal of a different amount",
                            errors={"idempotency_key": [request.idempotency_key]}
                        )
                    logger.info("Withdrawal replayed", extra={"school_id": school_id, "withdrawal_id": existing.id})
                    return WithdrawalResult(withdrawal=existing, budget=locked, replayed=True)

            proof_path = await self.receipts.save_withdrawal_proof(
                school_id, request.proof_content, request.proof_content_type
            )
            uow.on_rollback(lambda: self.receipts.discard(proof_path))

            withdrawal_ref = uuid.uuid4().hex[:16]
            result = await self.ledger.disburse(
                uow, budget_id, request.amount,
                reference=LedgerReference.withdrawal(withdrawal_ref),
                idempotency_key=ledger_key,
                performed_by=actor_username,
                notes=request.purpose[:255],
            )

            withdrawal = BudgetWithdrawal(
                budget_id=budget_id,
                school_id=school_id,
                ledger_transaction_id=result.transaction.id,
                amount=request.amount,
                purpose=request.purpose,
                withdrawal_date=request.withdrawal_date,
                notes=request.notes,
                proof_document_path=proof_path,
                recorded_by=actor_username,
            )
            uow.session.add(withdrawal)
            await uow.session.flush()

            await log_event(
                uow.session,
                action=AuditAction.WITHDRAWAL_RECORDED,
                actor_id=actor_id,
                actor_username=actor_username,
                target_type="budget",
                target_id=budget_id,
                metadata={
                    "withdrawal_id": withdrawal.id,
                    "amount": request.amount,
                    "purpose": request.purpose,
                    "available_after": result.budget.available_amount,
                }
            )
            return WithdrawalResult(withdrawal=withdrawal, budget=result.budget)

        outcome = await run_atomic(session, work)
        if not outcome.replayed:
            logger.info(
                "Withdrawal recorded",
                extra={
                    "school_id": school_id,
                    "withdrawal_id": outcome.withdrawal.id,
                    "amount": request.amount,
                }
            )
        return outcome

    @staticmethod
    async def _by_ledger_key(session: AsyncSession, ledger_key: str) -> Optional[BudgetWithdrawal]:
        result = await session.execute(
            select(BudgetWithdrawal)
            .join(LedgerTransaction, LedgerTransaction.id == BudgetWithdrawal.ledger_transaction_id)
            .where(LedgerTransaction.idempotency_key == ledger_key)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def list_for_school(session: AsyncSession, school_id: int, limit: int = 100) -> List[BudgetWithdrawal]:
        result = await session.execute(
            select(BudgetWithdrawal)
            .where(BudgetWithdrawal.school_id == school_id)
            .order_by(desc(BudgetWithdrawal.withdrawal_date), desc(BudgetWithdrawal.id))
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_for_school(session: AsyncSession, school_id: int, withdrawal_id: int) -> BudgetWithdrawal:
        """A school's withdrawal; another school's record is reported as missing."""
        withdrawal = await session.get(BudgetWithdrawal, withdrawal_id)
        if withdrawal is None or withdrawal.school_id != school_id:
            raise ResourceNotFoundError("Withdrawal", withdrawal_id)
        return withdrawal


withdrawal_service = WithdrawalService()
