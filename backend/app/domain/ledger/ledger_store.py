"""
Ledger Store (Domain Logic).

Budget balances plus the append-only transaction log. Every balance change
goes through apply_transaction, inside a caller-supplied UnitOfWork:

1. Lock the Budget (in-process keyed lock + SELECT ... FOR UPDATE)
2. Idempotent replay if the key was already applied
3. Validate against the balance invariant BEFORE any write
4. Write the LedgerTransaction and update the Budget (incl. depleted flip)

The unit commits or rolls back as a whole; nothing here commits.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from sqlalchemy import select, text, desc
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import (
    ConcurrencyConflictError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    ResourceNotFoundError,
    ValidationError,
)
from backend.app.db.unit_of_work import UnitOfWork, run_atomic
from backend.app.models.budget import Budget
from backend.app.models.ledger_transaction import LedgerTransaction
from backend.app.models.ledger_enums import BudgetStatus, LedgerTransactionType
from backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger(__name__)

# Types that draw on available funds and are refused on expired budgets
_OUTFLOWS = (LedgerTransactionType.RESERVATION, LedgerTransactionType.DISBURSEMENT)


@dataclass(frozen=True)
class LedgerReference:
    """What caused a ledger entry."""
    type: str
    id: str

    @classmethod
    def application(cls, application_id: int) -> "LedgerReference":
        return cls("application", str(application_id))

    @classmethod
    def withdrawal(cls, withdrawal_ref: str) -> "LedgerReference":
        return cls("withdrawal", withdrawal_ref)


@dataclass
class LedgerResult:
    budget: Budget
    transaction: LedgerTransaction
    replayed: bool = False


@dataclass
class BudgetSnapshot:
    budget_id: int
    school_id: int
    school_name: Optional[str]
    academic_year: str
    allocated_amount: int
    disbursed_amount: int
    reserved_amount: int
    available_amount: int
    status: BudgetStatus
    expiry_date: Optional[date]


@dataclass
class FundsCheck:
    snapshot: BudgetSnapshot
    requested_amount: int
    has_sufficient_funds: bool
    shortfall: int


def budget_lock_key(budget_id: int) -> str:
    return f"budget:{budget_id}"


class LedgerStore:

    async def lock_budget(self, uow: UnitOfWork, budget_id: int) -> Budget:
        """
        Lock a budget for the rest of the unit and return a fresh copy of it.

        Raises:
            ResourceNotFoundError: budget does not exist
            ConcurrencyConflictError: lock wait timed out
        """
        await uow.lock(budget_lock_key(budget_id))
        session = uow.session

        if session.get_bind().dialect.name == "postgresql":
            timeout_ms = int(uow.lock_timeout * 1000)
            await session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))

        stmt = (
            select(Budget)
            .where(Budget.id == budget_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        try:
            result = await session.execute(stmt)
        except IntegrityError:
            raise
        except DBAPIError as e:
            raise ConcurrencyConflictError(
                message=f"Could not lock budget {budget_id}",
                details={"budget_id": budget_id, "error": str(e.orig)}
            )

        budget = result.scalar_one_or_none()
        if budget is None:
            raise ResourceNotFoundError("Budget", budget_id)
        return budget

    async def apply_transaction(
        self,
        uow: UnitOfWork,
        budget_id: int,
        transaction_type: LedgerTransactionType,
        amount: int,
        reference: Optional[LedgerReference] = None,
        idempotency_key: Optional[str] = None,
        enforce_status: bool = True,
        notes: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> LedgerResult:
        """
        Apply one mutation to a budget and log it.

        `amount` is a positive magnitude for allocation, reservation, release
        and disbursement, a signed change to the allocation for adjustment,
        and ignored for expiry. The logged amount is the signed change to the
        available balance.

        Args:
            uow: Active unit of work
            budget_id: Target budget
            transaction_type: Kind of mutation
            amount: Minor units
            reference: What caused the entry
            idempotency_key: Replay guard; a repeated key returns the first result
            enforce_status: Refuse outflows on expired budgets
            notes: Free text kept on the entry
            performed_by: Actor name

        Returns:
            LedgerResult (replayed=True when the key was already applied)

        Raises:
            InsufficientFundsError: outflow larger than available, or an
                adjustment below disbursed + reserved
            ValidationError: malformed amount, release above the held amount,
                or a key reused for a different mutation
            InvalidStateTransitionError: outflow on an expired budget
        """
        budget = await self.lock_budget(uow, budget_id)
        session = uow.session

        if idempotency_key:
            existing = await session.execute(
                select(LedgerTransaction).where(LedgerTransaction.idempotency_key == idempotency_key)
            )
            existing_tx = existing.scalar_one_or_none()
            if existing_tx is not None:
                if (
                    existing_tx.budget_id != budget_id
                    or existing_tx.transaction_type != transaction_type
                    or not self._same_amount(existing_tx, amount)
                ):
                    raise ValidationError(
                        message="Idempotency key already used for a different ledger mutation",
                        errors={"idempotency_key": [idempotency_key]}
                    )
                logger.info(
                    "Ledger transaction replayed",
                    extra={"budget_id": budget_id, "idempotency_key": idempotency_key}
                )
                return LedgerResult(budget=budget, transaction=existing_tx, replayed=True)

        delta = self._validate_and_apply(budget, transaction_type, amount, enforce_status)
        balance_before = budget.available_amount - delta
        balance_after = budget.available_amount

        if transaction_type == LedgerTransactionType.EXPIRY:
            budget.status = BudgetStatus.EXPIRED
        elif budget.status != BudgetStatus.EXPIRED:
            budget.status = BudgetStatus.DEPLETED if balance_after == 0 else BudgetStatus.ACTIVE

        transaction = LedgerTransaction(
            budget_id=budget.id,
            transaction_type=transaction_type,
            amount=delta,
            balance_before=balance_before,
            balance_after=balance_after,
            reference_type=reference.type if reference else None,
            reference_id=reference.id if reference else None,
            idempotency_key=idempotency_key,
            notes=notes,
            performed_by=performed_by,
        )
        session.add(transaction)
        try:
            await session.flush()
        except IntegrityError as e:
            # Another process committed the same key after our replay check
            raise ConcurrencyConflictError(
                message="Concurrent ledger write for the same idempotency key",
                details={"budget_id": budget_id, "idempotency_key": idempotency_key, "error": str(e.orig)}
            )

        logger.info(
            "Ledger transaction applied",
            extra={
                "budget_id": budget.id,
                "transaction_type": transaction_type.value,
                "amount": delta,
                "balance_after": balance_after,
                "status": budget.status.value,
            }
        )
        return LedgerResult(budget=budget, transaction=transaction)

    @staticmethod
    def _same_amount(existing_tx: LedgerTransaction, amount: int) -> bool:
        """Logged amounts are signed deltas; requests are magnitudes except for adjustments."""
        if existing_tx.transaction_type == LedgerTransactionType.EXPIRY:
            return True
        if existing_tx.transaction_type == LedgerTransactionType.ADJUSTMENT:
            return existing_tx.amount == amount
        return abs(existing_tx.amount) == amount

    @staticmethod
    def _validate_and_apply(
        budget: Budget,
        transaction_type: LedgerTransactionType,
        amount: int,
        enforce_status: bool,
    ) -> int:
        """Check the mutation against the invariant, apply it, return the available delta."""
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError(errors={"amount": ["Amount must be an integer number of minor units"]})

        if transaction_type == LedgerTransactionType.EXPIRY:
            return 0

        if transaction_type == LedgerTransactionType.ADJUSTMENT:
            if amount == 0:
                raise ValidationError(errors={"amount": ["Adjustment must change the allocation"]})
        elif amount <= 0:
            raise ValidationError(errors={"amount": ["Amount must be positive"]})

        if (
            enforce_status
            and transaction_type in _OUTFLOWS
            and budget.status == BudgetStatus.EXPIRED
        ):
            raise InvalidStateTransitionError(
                current_status=budget.status.value,
                event=transaction_type.value,
                subject="budget"
            )

        available = budget.available_amount

        if transaction_type == LedgerTransactionType.ALLOCATION:
            budget.allocated_amount += amount
            return amount

        if transaction_type == LedgerTransactionType.ADJUSTMENT:
            if budget.allocated_amount + amount < budget.disbursed_amount + budget.reserved_amount:
                raise InsufficientFundsError(budget_id=budget.id, available=available, requested=-amount)
            budget.allocated_amount += amount
            return amount

        if transaction_type == LedgerTransactionType.RESERVATION:
            if amount > available:
                raise InsufficientFundsError(budget_id=budget.id, available=available, requested=amount)
            budget.reserved_amount += amount
            return -amount

        if transaction_type == LedgerTransactionType.DISBURSEMENT:
            if amount > available:
                raise InsufficientFundsError(budget_id=budget.id, available=available, requested=amount)
            budget.disbursed_amount += amount
            return -amount

        if transaction_type == LedgerTransactionType.RELEASE:
            if amount > budget.reserved_amount:
                raise ValidationError(
                    message="Release exceeds reserved amount",
                    errors={"amount": [f"Only {budget.reserved_amount} is reserved"]}
                )
            budget.reserved_amount -= amount
            return amount

        raise ValidationError(errors={"transaction_type": [f"Unsupported type {transaction_type}"]})

    # Convenience wrappers

    async def reserve(
        self,
        uow: UnitOfWork,
        budget_id: int,
        amount: int,
        application_id: int,
        idempotency_key: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> LedgerResult:
        return await self.apply_transaction(
            uow, budget_id, LedgerTransactionType.RESERVATION, amount,
            reference=LedgerReference.application(application_id),
            idempotency_key=idempotency_key,
            performed_by=performed_by,
        )

    async def release(
        self,
        uow: UnitOfWork,
        budget_id: int,
        amount: int,
        application_id: int,
        idempotency_key: Optional[str] = None,
        performed_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> LedgerResult:
        # Returning a hold is always allowed, even after expiry
        return await self.apply_transaction(
            uow, budget_id, LedgerTransactionType.RELEASE, amount,
            reference=LedgerReference.application(application_id),
            idempotency_key=idempotency_key,
            enforce_status=False,
            notes=notes,
            performed_by=performed_by,
        )

    async def disburse(
        self,
        uow: UnitOfWork,
        budget_id: int,
        amount: int,
        reference: LedgerReference,
        idempotency_key: Optional[str] = None,
        performed_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> LedgerResult:
        """Direct deduction with no reservation phase (partner withdrawals)."""
        return await self.apply_transaction(
            uow, budget_id, LedgerTransactionType.DISBURSEMENT, amount,
            reference=reference,
            idempotency_key=idempotency_key,
            notes=notes,
            performed_by=performed_by,
        )

    async def promote(
        self,
        uow: UnitOfWork,
        budget_id: int,
        held: int,
        amount: int,
        application_id: int,
        idempotency_key: str,
        performed_by: Optional[str] = None,
    ) -> LedgerResult:
        """
        Convert a reservation into a disbursement.

        The whole hold is released and `amount` (<= held) disbursed in the
        same unit, so any difference stays released. Both entries are keyed,
        so replaying the same key changes nothing.
        """
        if amount > held:
            raise ValidationError(
                message="Disbursement exceeds the reserved amount",
                errors={"amount": [f"Reserved {held}, requested {amount}"]}
            )
        if held > 0:
            await self.release(
                uow, budget_id, held, application_id,
                idempotency_key=f"{idempotency_key}:promote-release",
                performed_by=performed_by,
                notes="Reservation promoted to disbursement",
            )
        return await self.apply_transaction(
            uow, budget_id, LedgerTransactionType.DISBURSEMENT, amount,
            reference=LedgerReference.application(application_id),
            idempotency_key=idempotency_key,
            enforce_status=False,
            performed_by=performed_by,
        )

    async def allocate(
        self,
        uow: UnitOfWork,
        school_id: int,
        academic_year: str,
        amount: int,
        school_name: Optional[str] = None,
        expiry_date: Optional[date] = None,
        notes: Optional[str] = None,
        allocated_by: Optional[str] = None,
    ) -> LedgerResult:
        """
        Create the budget for a school/year and log its allocation.

        Raises:
            ValidationError: a budget already exists for the school/year
        """
        await uow.lock(f"budget-scope:{school_id}:{academic_year}")
        session = uow.session

        existing = await self.find_budget(session, school_id, academic_year)
        if existing is not None:
            raise ValidationError(
                message="Budget already allocated for this school and academic year",
                errors={"academic_year": [academic_year]}
            )

        budget = Budget(
            school_id=school_id,
            school_name=school_name,
            academic_year=academic_year,
            allocated_amount=0,
            disbursed_amount=0,
            reserved_amount=0,
            status=BudgetStatus.ACTIVE,
            allocation_date=date.today(),
            expiry_date=expiry_date,
            notes=notes,
            allocated_by=allocated_by,
        )
        session.add(budget)
        try:
            await session.flush()
        except IntegrityError as e:
            raise ConcurrencyConflictError(
                message="Budget was allocated concurrently",
                details={"school_id": school_id, "academic_year": academic_year, "error": str(e.orig)}
            )

        return await self.apply_transaction(
            uow, budget.id, LedgerTransactionType.ALLOCATION, amount,
            notes=notes,
            performed_by=allocated_by,
        )

    async def adjust(
        self,
        uow: UnitOfWork,
        budget_id: int,
        new_allocated: int,
        notes: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> Optional[LedgerResult]:
        """Set the allocation to new_allocated. Returns None when unchanged."""
        budget = await self.lock_budget(uow, budget_id)
        delta = new_allocated - budget.allocated_amount
        if delta == 0:
            return None
        return await self.apply_transaction(
            uow, budget_id, LedgerTransactionType.ADJUSTMENT, delta,
            notes=notes,
            performed_by=performed_by,
        )

    async def expire(
        self,
        uow: UnitOfWork,
        budget_id: int,
        performed_by: Optional[str] = None,
    ) -> Optional[LedgerResult]:
        """Close a budget for new commitments. Returns None if already expired."""
        budget = await self.lock_budget(uow, budget_id)
        if budget.status == BudgetStatus.EXPIRED:
            return None
        return await self.apply_transaction(
            uow, budget_id, LedgerTransactionType.EXPIRY, 0,
            idempotency_key=f"budget:{budget_id}:expiry",
            performed_by=performed_by,
        )

    async def expire_due(
        self,
        session: AsyncSession,
        today: Optional[date] = None,
        performed_by: Optional[str] = None,
    ) -> List[int]:
        """
        Expire every budget whose expiry date has passed.

        Each budget is expired in its own unit so one conflict does not
        hold back the rest of the sweep.
        """
        today = today or date.today()
        result = await session.execute(
            select(Budget.id).where(
                Budget.expiry_date.is_not(None),
                Budget.expiry_date < today,
                Budget.status != BudgetStatus.EXPIRED,
            )
        )
        budget_ids = list(result.scalars().all())
        # End the read transaction before opening per-budget units
        await session.commit()

        expired = []
        for budget_id in budget_ids:
            async def work(uow, budget_id=budget_id):
                outcome = await self.expire(uow, budget_id, performed_by=performed_by)
                if outcome is not None and not outcome.replayed:
                    await log_event(
                        uow.session,
                        action=AuditAction.BUDGET_EXPIRED,
                        actor_username=performed_by,
                        target_type="budget",
                        target_id=budget_id,
                        metadata={"expiry_date": str(outcome.budget.expiry_date), "today": str(today)},
                    )
                return outcome

            outcome = await run_atomic(session, work)
            if outcome is not None and not outcome.replayed:
                expired.append(budget_id)

        if expired:
            logger.info("Expired budgets past their expiry date", extra={"budget_ids": expired})
        return expired

    # Read side

    @staticmethod
    async def find_budget(
        session: AsyncSession,
        school_id: int,
        academic_year: Optional[str] = None,
    ) -> Optional[Budget]:
        """A school's budget for the given year, or its most recent one."""
        stmt = select(Budget).where(Budget.school_id == school_id)
        if academic_year:
            stmt = stmt.where(Budget.academic_year == academic_year)
        stmt = stmt.order_by(desc(Budget.academic_year), desc(Budget.id)).limit(1)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_budget(session: AsyncSession, budget_id: int) -> Budget:
        budget = await session.get(Budget, budget_id, populate_existing=True)
        if budget is None:
            raise ResourceNotFoundError("Budget", budget_id)
        return budget

    @staticmethod
    def snapshot(budget: Budget) -> BudgetSnapshot:
        return BudgetSnapshot(
            budget_id=budget.id,
            school_id=budget.school_id,
            school_name=budget.school_name,
            academic_year=budget.academic_year,
            allocated_amount=budget.allocated_amount,
            disbursed_amount=budget.disbursed_amount,
            reserved_amount=budget.reserved_amount,
            available_amount=budget.available_amount,
            status=budget.status,
            expiry_date=budget.expiry_date,
        )

    def check_funds(self, budget: Budget, amount: int) -> FundsCheck:
        """
        Whether the budget could take an outflow of `amount` right now.

        Read-only and unlocked, so the answer can be stale by the time a
        reservation is attempted. An expired budget never has sufficient funds.
        """
        snapshot = self.snapshot(budget)
        shortfall = max(0, amount - snapshot.available_amount)
        sufficient = shortfall == 0 and snapshot.status != BudgetStatus.EXPIRED
        return FundsCheck(
            snapshot=snapshot,
            requested_amount=amount,
            has_sufficient_funds=sufficient,
            shortfall=shortfall,
        )

    @staticmethod
    async def list_transactions(
        session: AsyncSession,
        budget_id: int,
        limit: int = 100,
        offset: int = 0,
    ) -> List[LedgerTransaction]:
        result = await session.execute(
            select(LedgerTransaction)
            .where(LedgerTransaction.budget_id == budget_id)
            .order_by(LedgerTransaction.id)
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())


ledger_store = LedgerStore()
