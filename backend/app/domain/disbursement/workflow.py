"""
Disbursement Workflow (Domain Logic).

State machine for an application's funding lifecycle, shared by manual
(admin-entered) and automated (gateway webhook) disbursement:

    approved -> pending_disbursement -> grants_processing -> grants_disbursed
                        |                      |
                        +--> payment_failed <--+   (reverts to approved)

payment_failed (a rejected checkout) keeps the hold; it can retry checkout,
be disbursed manually, or be cancelled, which releases the hold.
grants_disbursed is terminal: paid webhooks and manual disbursements against
it are no-ops. Every mutation runs inside one UnitOfWork. Locks are taken in
the order budget -> application -> payment transaction.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import (
    ConcurrencyConflictError,
    DuplicateEventError,
    GatewayRejectedError,
    InvalidStateTransitionError,
    ResourceNotFoundError,
)
from backend.app.db.unit_of_work import UnitOfWork, run_atomic
from backend.app.domain.ledger.ledger_store import LedgerStore, ledger_store
from backend.app.domain.ledger.reservation_service import ReservationService
from backend.app.domain.payments.gateway import PaymentStatus
from backend.app.domain.payments.receipts import ReceiptStore, receipt_store
from backend.app.domain.payments.webhook_payload import NormalizedPayment
from backend.app.models.application import Application
from backend.app.models.disbursement import Disbursement
from backend.app.models.ledger_enums import (
    ApplicationStatus,
    DisbursementMethod,
    PaymentTransactionStatus,
    WebhookOutcome,
)
from backend.app.models.payment_transaction import PaymentTransaction
from backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger(__name__)

S = ApplicationStatus

# event -> {from_status: to_status}
TRANSITIONS: Dict[str, Dict[ApplicationStatus, ApplicationStatus]] = {
    "reserve": {
        S.APPROVED: S.PENDING_DISBURSEMENT,
    },
    "start_payment": {
        S.PENDING_DISBURSEMENT: S.GRANTS_PROCESSING,
        S.PAYMENT_FAILED: S.GRANTS_PROCESSING,
    },
    "checkout_rejected": {
        S.PENDING_DISBURSEMENT: S.PAYMENT_FAILED,
        S.PAYMENT_FAILED: S.PAYMENT_FAILED,
    },
    "manual_disbursement": {
        S.PENDING_DISBURSEMENT: S.GRANTS_DISBURSED,
        S.GRANTS_PROCESSING: S.GRANTS_DISBURSED,
        S.PAYMENT_FAILED: S.GRANTS_DISBURSED,
    },
    # approved: paid delivered after an earlier failure reverted the application
    "payment_paid": {
        S.APPROVED: S.GRANTS_DISBURSED,
        S.PENDING_DISBURSEMENT: S.GRANTS_DISBURSED,
        S.GRANTS_PROCESSING: S.GRANTS_DISBURSED,
        S.PAYMENT_FAILED: S.GRANTS_DISBURSED,
    },
    "payment_failed": {
        S.GRANTS_PROCESSING: S.APPROVED,
        S.PAYMENT_FAILED: S.APPROVED,
    },
    "payment_cancelled": {
        S.GRANTS_PROCESSING: S.APPROVED,
        S.PAYMENT_FAILED: S.APPROVED,
    },
}


def next_status(current: ApplicationStatus, event: str) -> ApplicationStatus:
    """
    Target status for an event.

    Raises:
        InvalidStateTransitionError: event not valid from current
    """
    target = TRANSITIONS.get(event, {}).get(current)
    if target is None:
        raise InvalidStateTransitionError(current_status=current.value, event=event)
    return target


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _actor_fields(actor: Optional[dict]) -> Tuple[Optional[int], Optional[str]]:
    if not actor:
        return None, None
    return actor.get("user_id"), actor.get("sub")


@dataclass
class ManualDisbursementInput:
    method: DisbursementMethod
    provider_name: str
    reference_number: str
    receipt_content: bytes
    receipt_content_type: str
    notes: Optional[str] = None


@dataclass
class CompletionResult:
    outcome: WebhookOutcome
    disbursement: Optional[Disbursement] = None
    detail: Optional[str] = None


class DisbursementWorkflow:

    def __init__(
        self,
        ledger: Optional[LedgerStore] = None,
        receipts: Optional[ReceiptStore] = None,
    ):
        self.ledger = ledger or ledger_store
        self.reservations = ReservationService(self.ledger)
        self.receipts = receipts or receipt_store

    # Locking

    async def lock_application(self, uow: UnitOfWork, application_id: int) -> Application:
        """Lock the application's budget, then the application itself."""
        session = uow.session
        application = await session.get(Application, application_id)
        if application is None:
            raise ResourceNotFoundError("Application", application_id)

        if application.budget_id is not None:
            await self.ledger.lock_budget(uow, application.budget_id)

        await uow.lock(f"application:{application_id}")
        result = await session.execute(
            select(Application)
            .where(Application.id == application_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def lock_payment(self, uow: UnitOfWork, transaction_id: int) -> PaymentTransaction:
        await uow.lock(f"payment:{transaction_id}")
        result = await uow.session.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        transaction = result.scalar_one_or_none()
        if transaction is None:
            raise ResourceNotFoundError("PaymentTransaction", transaction_id)
        return transaction

    @staticmethod
    async def _flush(uow: UnitOfWork, what: str) -> None:
        try:
            await uow.session.flush()
        except IntegrityError as e:
            raise ConcurrencyConflictError(
                message=f"Concurrent write while recording {what}",
                details={"error": str(e.orig)}
            )

    async def _audit(self, uow, action, actor, application, metadata=None):
        actor_id, actor_username = _actor_fields(actor)
        await log_event(
            uow.session,
            action=action,
            actor_id=actor_id,
            actor_username=actor_username,
            target_type="application",
            target_id=application.id,
            metadata=metadata,
        )

    # Reservation

    async def reserve(self, session: AsyncSession, application_id: int, actor: Optional[dict] = None) -> Application:
        """approved -> pending_disbursement, holding the application amount."""
        async def work(uow: UnitOfWork) -> Application:
            application = await self.lock_application(uow, application_id)
            target = next_status(application.status, "reserve")
            result = await self.reservations.reserve(uow, application, performed_by=_actor_fields(actor)[1])
            application.status = target
            await self._audit(uow, AuditAction.FUNDS_RESERVED, actor, application, {
                "amount": application.amount,
                "budget_id": application.budget_id,
                "ledger_transaction_id": result.transaction.id if result else None,
            })
            return application

        return await run_atomic(session, work)

    # Payment initiation

    async def start_payment(
        self,
        session: AsyncSession,
        gateway,
        application_id: int,
        actor: Optional[dict] = None,
    ) -> Tuple[Application, PaymentTransaction]:
        """
        Create a provider checkout and move the application to grants_processing.

        The gateway call happens before any lock is taken. A rejected checkout
        moves the application to payment_failed; an unavailable gateway leaves
        it untouched so the caller can retry.
        """
        application = await session.get(Application, application_id, populate_existing=True)
        if application is None:
            raise ResourceNotFoundError("Application", application_id)
        next_status(application.status, "start_payment")

        try:
            checkout = await gateway.create_checkout(application)
        except GatewayRejectedError as e:
            await self._record_checkout_rejection(session, application_id, e, actor)
            raise

        async def work(uow: UnitOfWork) -> Tuple[Application, PaymentTransaction]:
            locked = await self.lock_application(uow, application_id)
            try:
                target = next_status(locked.status, "start_payment")
            except InvalidStateTransitionError:
                logger.warning(
                    "Application changed state while checkout was created; checkout abandoned",
                    extra={"application_id": application_id, "checkout_id": checkout.id}
                )
                raise

            if locked.payment_transaction_id is not None:
                previous = await self.lock_payment(uow, locked.payment_transaction_id)
                if previous.status == PaymentTransactionStatus.PENDING:
                    previous.status = PaymentTransactionStatus.FAILED
                    previous.failure_reason = "Superseded by a new checkout"

            # Top up the hold if an earlier attempt released it
            await self.reservations.ensure_held(uow, locked, locked.amount, performed_by=_actor_fields(actor)[1])

            transaction = PaymentTransaction(
                application_id=locked.id,
                transaction_reference=f"TXN-{locked.application_number}-{uuid.uuid4().hex[:8].upper()}",
                provider_checkout_id=checkout.id,
                provider_reference_number=checkout.reference_number,
                idempotency_key=checkout.id,
                status=PaymentTransactionStatus.PENDING,
                amount=locked.amount,
                checkout_url=checkout.url,
                initiated_by=_actor_fields(actor)[1],
            )
            uow.session.add(transaction)
            await self._flush(uow, "payment transaction")

            locked.payment_transaction_id = transaction.id
            locked.status = target
            await self._audit(uow, AuditAction.PAYMENT_INITIATED, actor, locked, {
                "payment_transaction_id": transaction.id,
                "checkout_id": checkout.id,
                "amount": transaction.amount,
            })
            return locked, transaction

        application, transaction = await run_atomic(session, work)
        logger.info(
            "Payment initiated",
            extra={"application_id": application.id, "checkout_id": transaction.provider_checkout_id}
        )
        return application, transaction

    async def _record_checkout_rejection(self, session, application_id, error, actor) -> None:
        async def work(uow: UnitOfWork) -> None:
            application = await self.lock_application(uow, application_id)
            application.status = next_status(application.status, "checkout_rejected")
            await self._audit(uow, AuditAction.PAYMENT_FAILED, actor, application, {
                "stage": "checkout",
                "error": error.message,
            })

        await run_atomic(session, work)
        logger.error(
            "Checkout creation rejected by gateway",
            extra={"application_id": application_id, "error": error.message}
        )

    # Manual disbursement

    async def manual_disburse(
        self,
        session: AsyncSession,
        application_id: int,
        data: ManualDisbursementInput,
        actor: Optional[dict] = None,
    ) -> Tuple[Disbursement, bool]:
        """
        Record an admin-entered disbursement with its receipt.

        Returns:
            (disbursement, already_disbursed). A terminal application returns
            its existing disbursement and changes nothing.
        """
        async def work(uow: UnitOfWork) -> Tuple[Disbursement, bool]:
            application = await self.lock_application(uow, application_id)

            if application.status == ApplicationStatus.GRANTS_DISBURSED:
                existing = await self._existing_disbursement(uow.session, application.id)
                logger.info(
                    "Manual disbursement ignored; application already disbursed",
                    extra={"application_id": application.id}
                )
                return existing, True

            target = next_status(application.status, "manual_disbursement")

            receipt_path = await self.receipts.save_receipt(
                application, data.receipt_content, data.receipt_content_type
            )
            uow.on_rollback(lambda: self.receipts.discard(receipt_path))

            performed_by = _actor_fields(actor)[1]
            await self.reservations.ensure_held(uow, application, application.amount, performed_by=performed_by)
            ledger_result = await self.reservations.promote(
                uow, application, application.amount,
                idempotency_key=f"application:{application.id}:manual-disbursement",
                performed_by=performed_by,
            )

            if application.payment_transaction_id is not None:
                pending = await self.lock_payment(uow, application.payment_transaction_id)
                if pending.status == PaymentTransactionStatus.PENDING:
                    pending.status = PaymentTransactionStatus.FAILED
                    pending.failure_reason = "Superseded by manual disbursement"

            disbursement = Disbursement(
                application_id=application.id,
                budget_id=application.budget_id,
                amount=application.amount,
                method=data.method,
                provider_name=data.provider_name,
                provider_reference=data.reference_number,
                receipt_path=receipt_path,
                notes=data.notes,
                disbursed_by=performed_by,
                disbursed_at=_now(),
            )
            uow.session.add(disbursement)
            await self._flush(uow, "disbursement")

            application.status = target
            application.disbursement_id = disbursement.id
            await self._audit(uow, AuditAction.DISBURSEMENT_CREATED, actor, application, {
                "disbursement_id": disbursement.id,
                "amount": disbursement.amount,
                "method": data.method.value,
                "reference_number": data.reference_number,
                "ledger_transaction_id": ledger_result.transaction.id if ledger_result else None,
            })
            return disbursement, False

        disbursement, already = await run_atomic(session, work)
        if not already:
            logger.info(
                "Manual disbursement recorded",
                extra={"application_id": application_id, "disbursement_id": disbursement.id}
            )
        return disbursement, already

    @staticmethod
    async def _existing_disbursement(session: AsyncSession, application_id: int) -> Optional[Disbursement]:
        result = await session.execute(
            select(Disbursement).where(Disbursement.application_id == application_id)
        )
        return result.scalar_one_or_none()

    # Gateway outcomes

    async def complete_payment(
        self,
        uow: UnitOfWork,
        transaction_id: int,
        payment: NormalizedPayment,
        provider_name: str,
    ) -> CompletionResult:
        """
        Apply a successful payment: ledger promotion, receipt, Disbursement,
        grants_disbursed. The ledger key is the provider checkout id.

        Raises:
            DuplicateEventError: transaction already completed
            InsufficientFundsError: the hold had been released and the budget
                can no longer cover the payment
        """
        transaction = await self.session_transaction(uow, transaction_id)
        application = await self.lock_application(uow, transaction.application_id)
        transaction = await self.lock_payment(uow, transaction_id)

        if transaction.status == PaymentTransactionStatus.COMPLETED:
            raise DuplicateEventError(
                "Payment already completed",
                details={"payment_transaction_id": transaction.id}
            )

        if application.status == ApplicationStatus.GRANTS_DISBURSED:
            # Money moved twice (e.g. manual disbursement then a late paid event)
            self._mark_completed(transaction, payment)
            transaction.failure_reason = "Paid after the application was already disbursed"
            logger.error(
                "Paid event for an application that is already disbursed",
                extra={"application_id": application.id, "payment_transaction_id": transaction.id}
            )
            return CompletionResult(
                outcome=WebhookOutcome.FLAGGED,
                detail="Application already disbursed; payment needs review",
            )

        amount = payment.amount if payment.amount is not None else transaction.amount
        if amount <= 0 or amount > transaction.amount:
            logger.error(
                "Paid amount does not fit the payment transaction",
                extra={"payment_transaction_id": transaction.id, "paid": amount, "expected": transaction.amount}
            )
            return CompletionResult(
                outcome=WebhookOutcome.FLAGGED,
                detail=f"Paid amount {amount} does not fit transaction amount {transaction.amount}",
            )

        target = next_status(application.status, "payment_paid")

        await self.reservations.ensure_held(uow, application, amount)

        reference_number = payment.reference_number or transaction.provider_reference_number
        receipt_path = await self.receipts.generate_receipt(
            application, transaction, amount, provider_name, payment.payment_id, reference_number
        )
        uow.on_rollback(lambda: self.receipts.discard(receipt_path))

        ledger_result = await self.reservations.promote(
            uow, application, amount, idempotency_key=transaction.provider_checkout_id
        )

        self._mark_completed(transaction, payment)

        disbursement = Disbursement(
            application_id=application.id,
            budget_id=application.budget_id,
            payment_transaction_id=transaction.id,
            amount=amount,
            method=DisbursementMethod.DIGITAL_WALLET,
            provider_name=provider_name,
            provider_reference=reference_number or payment.payment_id,
            receipt_path=receipt_path,
            disbursed_by=transaction.initiated_by or f"{provider_name} Webhook",
            disbursed_at=_now(),
        )
        uow.session.add(disbursement)
        await self._flush(uow, "disbursement")

        application.status = target
        application.disbursement_id = disbursement.id
        await self._audit(uow, AuditAction.PAYMENT_COMPLETED, None, application, {
            "payment_transaction_id": transaction.id,
            "disbursement_id": disbursement.id,
            "amount": amount,
            "released_remainder": transaction.amount - amount,
            "receipt_path": receipt_path,
            "ledger_transaction_id": ledger_result.transaction.id if ledger_result else None,
        })

        logger.info(
            "Payment completed",
            extra={
                "application_id": application.id,
                "payment_transaction_id": transaction.id,
                "disbursement_id": disbursement.id,
                "amount": amount,
            }
        )
        return CompletionResult(outcome=WebhookOutcome.PROCESSED, disbursement=disbursement)

    @staticmethod
    async def session_transaction(uow: UnitOfWork, transaction_id: int) -> PaymentTransaction:
        transaction = await uow.session.get(PaymentTransaction, transaction_id)
        if transaction is None:
            raise ResourceNotFoundError("PaymentTransaction", transaction_id)
        return transaction

    @staticmethod
    def _mark_completed(transaction: PaymentTransaction, payment: NormalizedPayment) -> None:
        transaction.status = PaymentTransactionStatus.COMPLETED
        transaction.provider_payment_id = payment.payment_id or transaction.provider_payment_id
        if payment.reference_number:
            transaction.provider_reference_number = payment.reference_number
        transaction.completed_at = _now()

    async def fail_payment(
        self,
        uow: UnitOfWork,
        transaction_id: int,
        reason: Optional[str] = None,
        event: str = "payment_failed",
        actor: Optional[dict] = None,
    ) -> CompletionResult:
        """
        Mark the payment failed and, if it is the application's current
        attempt and the application is still processing, release the hold and
        revert to approved.

        Raises:
            DuplicateEventError: transaction already completed or failed
        """
        transaction = await self.session_transaction(uow, transaction_id)
        application = await self.lock_application(uow, transaction.application_id)
        transaction = await self.lock_payment(uow, transaction_id)

        if transaction.status != PaymentTransactionStatus.PENDING:
            raise DuplicateEventError(
                f"Payment already {transaction.status.value}",
                details={"payment_transaction_id": transaction.id}
            )

        reason = reason or ("Cancelled by user" if event == "payment_cancelled" else "Payment failed")
        transaction.status = PaymentTransactionStatus.FAILED
        transaction.failure_reason = reason

        is_current = application.payment_transaction_id == transaction.id
        if not is_current or application.status not in TRANSITIONS[event]:
            logger.info(
                "Payment failed; application status not changed",
                extra={
                    "application_id": application.id,
                    "payment_transaction_id": transaction.id,
                    "current_status": application.status.value,
                    "reason": reason,
                }
            )
            return CompletionResult(outcome=WebhookOutcome.PROCESSED, detail="Status not changed")

        previous_status = application.status
        release_suffix = "cancel-release" if event == "payment_cancelled" else "failure-release"
        await self.reservations.release(
            uow, application,
            idempotency_key=f"{transaction.provider_checkout_id}:{release_suffix}",
            performed_by=_actor_fields(actor)[1],
        )
        application.status = next_status(previous_status, event)

        action = AuditAction.PAYMENT_CANCELLED if event == "payment_cancelled" else AuditAction.PAYMENT_FAILED
        await self._audit(uow, action, actor, application, {
            "payment_transaction_id": transaction.id,
            "failure_reason": reason,
            "previous_status": previous_status.value,
            "new_status": application.status.value,
        })
        logger.info(
            "Payment failed; application reverted",
            extra={
                "application_id": application.id,
                "payment_transaction_id": transaction.id,
                "previous_status": previous_status.value,
                "reason": reason,
            }
        )
        return CompletionResult(outcome=WebhookOutcome.PROCESSED)

    async def cancel_payment(
        self,
        session: AsyncSession,
        application_id: int,
        actor: Optional[dict] = None,
    ) -> Application:
        """
        Customer abandoned the checkout; same effect as a failed payment.

        An application whose checkout the gateway rejected has no live
        attempt, so its hold is released here directly.
        """
        async def work(uow: UnitOfWork) -> Application:
            application = await self.lock_application(uow, application_id)
            next_status(application.status, "payment_cancelled")
            if application.status == ApplicationStatus.PAYMENT_FAILED:
                await self._abandon_rejected_checkout(uow, application, actor)
                return application
            if application.payment_transaction_id is None:
                raise ResourceNotFoundError("PaymentTransaction")
            await self.fail_payment(
                uow, application.payment_transaction_id,
                event="payment_cancelled",
                actor=actor,
            )
            return application

        return await run_atomic(session, work)

    async def _abandon_rejected_checkout(self, uow: UnitOfWork, application: Application, actor) -> None:
        previous_status = application.status
        released = application.reserved_amount
        await self.reservations.release(uow, application, performed_by=_actor_fields(actor)[1])
        application.status = next_status(previous_status, "payment_cancelled")

        await self._audit(uow, AuditAction.PAYMENT_CANCELLED, actor, application, {
            "stage": "checkout",
            "released_amount": released,
            "previous_status": previous_status.value,
            "new_status": application.status.value,
        })
        logger.info(
            "Rejected checkout abandoned; hold released",
            extra={
                "application_id": application.id,
                "released_amount": released,
            }
        )

    async def verify_payment(
        self,
        session: AsyncSession,
        gateway,
        application_id: int,
    ) -> Tuple[Application, PaymentStatus]:
        """
        Poll the gateway for the current attempt and apply a paid or failed
        result through the same idempotent paths as the webhook.
        """
        application = await session.get(Application, application_id, populate_existing=True)
        if application is None:
            raise ResourceNotFoundError("Application", application_id)
        if application.payment_transaction_id is None:
            raise ResourceNotFoundError("PaymentTransaction")

        transaction = await session.get(
            PaymentTransaction, application.payment_transaction_id, populate_existing=True
        )
        if transaction.status == PaymentTransactionStatus.COMPLETED:
            return application, PaymentStatus(
                status="paid",
                amount=transaction.amount,
                provider_payment_id=transaction.provider_payment_id,
                reference_number=transaction.provider_reference_number,
            )

        status = await gateway.verify_checkout(transaction.provider_checkout_id)
        transaction_id = transaction.id

        work = None
        if status.is_paid:
            payment = NormalizedPayment(
                payment_id=status.provider_payment_id,
                checkout_id=transaction.provider_checkout_id,
                amount=status.amount,
                reference_number=status.reference_number,
                status="paid",
            )

            async def work(uow):
                return await self.complete_payment(uow, transaction_id, payment, gateway.provider_name)
        elif status.status == "failed":
            async def work(uow):
                return await self.fail_payment(uow, transaction_id, reason=status.failure_reason)

        if work is not None:
            try:
                await run_atomic(session, work)
            except DuplicateEventError:
                logger.info("Verified payment was already applied", extra={"application_id": application_id})

        application = await session.get(Application, application_id, populate_existing=True)
        return application, status


disbursement_workflow = DisbursementWorkflow()
