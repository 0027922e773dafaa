"""
Webhook Reconciler.

Applies at-least-once, possibly out-of-order gateway deliveries at most once.
Business-level problems (unrouted type, unparsable payload, unknown
transaction, duplicate) are logged, recorded and acknowledged so the provider
does not retry them. Unexpected errors roll back and propagate so the
provider's retry redelivers the event.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import (
    DuplicateEventError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    UnparsablePayloadError,
    ValidationError,
)
from backend.app.db.unit_of_work import UnitOfWork, run_atomic
from backend.app.domain.disbursement.workflow import DisbursementWorkflow, disbursement_workflow
from backend.app.domain.payments.webhook_payload import (
    FAILED_EVENTS,
    PAID_EVENTS,
    NormalizedPayment,
    extract_event_type,
)
from backend.app.models.application import Application
from backend.app.models.ledger_enums import PaymentTransactionStatus, WebhookOutcome
from backend.app.models.payment_transaction import PaymentTransaction
from backend.app.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)


@dataclass
class Ack:
    """What was done with a delivery. The HTTP response is always 200."""
    outcome: WebhookOutcome
    event_type: Optional[str] = None
    detail: Optional[str] = None
    webhook_event_id: Optional[int] = None


class WebhookReconciler:

    def __init__(self, session: AsyncSession, gateway, workflow: Optional[DisbursementWorkflow] = None):
        self.session = session
        self.gateway = gateway
        self.workflow = workflow or disbursement_workflow

    async def handle(self, payload: Any) -> Ack:
        event_type = extract_event_type(payload)

        if event_type not in PAID_EVENTS + FAILED_EVENTS:
            logger.info("Unrouted webhook event acknowledged", extra={"event_type": event_type})
            return await self._ack(WebhookOutcome.IGNORED, event_type, payload, detail="Unrouted event type")

        try:
            payment = self.gateway.parse_webhook(payload)
        except UnparsablePayloadError as e:
            logger.error(
                "Unparsable webhook payload",
                extra={"event_type": event_type, "error": e.message, "details": e.details}
            )
            return await self._ack(
                WebhookOutcome.FLAGGED, event_type, payload,
                detail=e.message, needs_review=True
            )

        transaction = await self.find_transaction(payment)
        if transaction is None:
            logger.warning(
                "No payment transaction for webhook",
                extra={
                    "event_type": event_type,
                    "checkout_id": payment.checkout_id,
                    "payment_id": payment.payment_id,
                    "reference_number": payment.reference_number,
                }
            )
            return await self._ack(
                WebhookOutcome.UNMATCHED, event_type, payload, payment,
                detail="No matching payment transaction"
            )

        if transaction.status == PaymentTransactionStatus.COMPLETED:
            logger.info(
                "Payment already processed",
                extra={"payment_transaction_id": transaction.id, "event_type": event_type}
            )
            return await self._ack(
                WebhookOutcome.DUPLICATE, event_type, payload, payment,
                detail="Payment transaction already completed"
            )

        transaction_id = transaction.id
        provider_name = getattr(self.gateway, "provider_name", "PayMongo")

        async def apply(uow: UnitOfWork):
            if event_type in PAID_EVENTS:
                return await self.workflow.complete_payment(uow, transaction_id, payment, provider_name)
            return await self.workflow.fail_payment(uow, transaction_id, reason=payment.failure_reason)

        try:
            result = await run_atomic(self.session, apply)
        except DuplicateEventError as e:
            logger.info(
                "Duplicate webhook delivery",
                extra={"payment_transaction_id": transaction_id, "detail": e.message}
            )
            return await self._ack(WebhookOutcome.DUPLICATE, event_type, payload, payment, detail=e.message)
        except (InsufficientFundsError, InvalidStateTransitionError, ValidationError) as e:
            logger.error(
                "Webhook could not be applied; flagged for review",
                extra={"payment_transaction_id": transaction_id, "error": e.message, "details": e.details}
            )
            return await self._ack(
                WebhookOutcome.FLAGGED, event_type, payload, payment,
                detail=e.message, needs_review=True
            )

        if result.outcome == WebhookOutcome.FLAGGED:
            logger.error(
                "Webhook flagged for review",
                extra={"payment_transaction_id": transaction_id, "detail": result.detail}
            )
            return await self._ack(
                WebhookOutcome.FLAGGED, event_type, payload, payment,
                detail=result.detail, needs_review=True
            )

        logger.info(
            "Webhook processed",
            extra={"payment_transaction_id": transaction_id, "event_type": event_type}
        )
        return await self._ack(result.outcome, event_type, payload, payment, detail=result.detail)

    async def find_transaction(self, payment: NormalizedPayment) -> Optional[PaymentTransaction]:
        """Look up by checkout id, then payment id, then reference number."""
        if payment.checkout_id:
            transaction = await self._first(PaymentTransaction.provider_checkout_id == payment.checkout_id)
            if transaction is not None:
                return transaction

        if payment.payment_id:
            transaction = await self._first(or_(
                PaymentTransaction.provider_payment_id == payment.payment_id,
                PaymentTransaction.provider_checkout_id == payment.payment_id,
                PaymentTransaction.transaction_reference == payment.payment_id,
            ))
            if transaction is not None:
                return transaction

        if payment.reference_number:
            transaction = await self._first(or_(
                PaymentTransaction.provider_reference_number == payment.reference_number,
                PaymentTransaction.transaction_reference == payment.reference_number,
            ))
            if transaction is not None:
                return transaction

            # Reference number is the application number sent with the checkout
            result = await self.session.execute(
                select(PaymentTransaction)
                .join(Application, Application.payment_transaction_id == PaymentTransaction.id)
                .where(Application.application_number == payment.reference_number)
            )
            return result.scalars().first()

        return None

    async def _first(self, condition) -> Optional[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransaction)
            .where(condition)
            .order_by(PaymentTransaction.id.desc())
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _ack(
        self,
        outcome: WebhookOutcome,
        event_type: Optional[str],
        payload: Any,
        payment: Optional[NormalizedPayment] = None,
        detail: Optional[str] = None,
        needs_review: bool = False,
    ) -> Ack:
        async def record(uow: UnitOfWork) -> WebhookEvent:
            event = WebhookEvent(
                event_type=event_type,
                checkout_id=payment.checkout_id if payment else None,
                payment_id=payment.payment_id if payment else None,
                outcome=outcome,
                needs_review=needs_review,
                detail=detail,
                payload=payload if isinstance(payload, (dict, list)) else None,
            )
            uow.session.add(event)
            await uow.session.flush()
            return event

        event = await run_atomic(self.session, record)
        return Ack(outcome=outcome, event_type=event_type, detail=detail, webhook_event_id=event.id)
