"""
Reservation Service.

Turns a funding request into a hold against its budget and keeps
Application.reserved_amount in step with the ledger. Applications without a
budget (global pool) have no ledger effect.
"""

import logging
from typing import Optional

from backend.app.db.unit_of_work import UnitOfWork
from backend.app.domain.ledger.ledger_store import LedgerStore, LedgerResult, ledger_store
from backend.app.models.application import Application

logger = logging.getLogger(__name__)


class ReservationService:

    def __init__(self, ledger: Optional[LedgerStore] = None):
        self.ledger = ledger or ledger_store

    async def reserve(
        self,
        uow: UnitOfWork,
        application: Application,
        amount: Optional[int] = None,
        performed_by: Optional[str] = None,
    ) -> Optional[LedgerResult]:
        """
        Hold `amount` (default: the requested amount) for the application.

        Raises:
            InsufficientFundsError: budget cannot cover the hold
        """
        amount = application.amount if amount is None else amount
        if application.budget_id is None or amount <= 0:
            return None

        result = await self.ledger.reserve(
            uow, application.budget_id, amount, application.id,
            performed_by=performed_by,
        )
        application.reserved_amount += amount
        return result

    async def ensure_held(
        self,
        uow: UnitOfWork,
        application: Application,
        amount: int,
        performed_by: Optional[str] = None,
    ) -> Optional[LedgerResult]:
        """Top up the hold so at least `amount` is reserved (e.g. after an earlier release)."""
        shortfall = amount - application.reserved_amount
        if shortfall <= 0:
            return None
        logger.info(
            "Re-reserving funds for application",
            extra={"application_id": application.id, "shortfall": shortfall}
        )
        return await self.reserve(uow, application, shortfall, performed_by=performed_by)

    async def release(
        self,
        uow: UnitOfWork,
        application: Application,
        idempotency_key: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> Optional[LedgerResult]:
        """Return the whole hold to the budget. No-op when nothing is held."""
        held = application.reserved_amount
        if application.budget_id is None or held <= 0:
            return None

        result = await self.ledger.release(
            uow, application.budget_id, held, application.id,
            idempotency_key=idempotency_key,
            performed_by=performed_by,
        )
        application.reserved_amount = 0
        return result

    async def promote(
        self,
        uow: UnitOfWork,
        application: Application,
        amount: int,
        idempotency_key: str,
        performed_by: Optional[str] = None,
    ) -> Optional[LedgerResult]:
        """Convert the hold into a disbursement of `amount`; the remainder is released."""
        if application.budget_id is None:
            return None

        result = await self.ledger.promote(
            uow, application.budget_id,
            held=application.reserved_amount,
            amount=amount,
            application_id=application.id,
            idempotency_key=idempotency_key,
            performed_by=performed_by,
        )
        application.reserved_amount = 0
        return result


reservation_service = ReservationService()
