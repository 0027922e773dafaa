"""
Admin Operations API Endpoints.

Operator review of recorded webhook deliveries and budget maintenance.
"""

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import ResourceNotFoundError
from backend.app.core.guards import require_role, actor_name
from backend.app.db.session import get_db
from backend.app.db.unit_of_work import UnitOfWork, run_atomic
from backend.app.domain.ledger.ledger_store import ledger_store
from backend.app.models.enums import UserRole
from backend.app.models.webhook_event import WebhookEvent
from backend.app.schemas.budget import ExpireBudgetsResponse
from backend.app.schemas.webhook import WebhookEventResponse, WebhookEventResolve
from backend.app.services.audit import log_event, AuditAction

router = APIRouter(prefix="/admin", tags=["Admin - Ops"])


@router.get("/webhook-events", response_model=List[WebhookEventResponse])
async def list_webhook_events(
    needs_review: Optional[bool] = Query(None, description="Only events flagged (or not) for review"),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Recorded webhook deliveries, most recent first."""
    stmt = select(WebhookEvent).order_by(desc(WebhookEvent.received_at), desc(WebhookEvent.id)).limit(limit)
    if needs_review is not None:
        stmt = stmt.where(WebhookEvent.needs_review == needs_review)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.post("/webhook-events/{event_id}/resolve", response_model=WebhookEventResponse)
async def resolve_webhook_event(
    payload: WebhookEventResolve,
    event_id: int = Path(..., description="Webhook event ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Clear the review flag on a delivery once an operator has dealt with it."""
    actor = actor_name(current_user)

    async def work(uow: UnitOfWork) -> WebhookEvent:
        event = await uow.session.get(WebhookEvent, event_id, with_for_update=True, populate_existing=True)
        if event is None:
            raise ResourceNotFoundError("Webhook event", event_id)
        event.needs_review = False
        event.resolved_at = datetime.now(timezone.utc)
        event.resolved_by = actor
        await uow.session.flush()
        await log_event(
            uow.session,
            action=AuditAction.WEBHOOK_EVENT_RESOLVED,
            actor_id=current_user.get("user_id"),
            actor_username=actor,
            target_type="webhook_event",
            target_id=event_id,
            metadata={"outcome": event.outcome.value, "notes": payload.notes},
        )
        return event

    return await run_atomic(db, work)


@router.post("/ops/expire-budgets", response_model=ExpireBudgetsResponse)
async def expire_budgets(
    current_user: dict = Depends(require_role([UserRole.ADMIN, UserRole.SYSTEM])),
    db: AsyncSession = Depends(get_db)
):
    """Expire every budget whose expiry date has passed."""
    expired = await ledger_store.expire_due(db, performed_by=actor_name(current_user))
    return ExpireBudgetsResponse(expired_budget_ids=expired)
