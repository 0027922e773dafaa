"""
Audit logging service for tracking budget and disbursement actions.

Provides centralized logging for compliance and financial review. Entries are
flushed, not committed: they land in the caller's atomic unit and roll back
with it.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from backend.app.models.audit_log import AuditLog


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    # Budget management
    BUDGET_ALLOCATED = "BUDGET_ALLOCATED"
    BUDGET_ADJUSTED = "BUDGET_ADJUSTED"
    BUDGET_EXPIRED = "BUDGET_EXPIRED"
    WITHDRAWAL_RECORDED = "WITHDRAWAL_RECORDED"

    # Payment lifecycle
    FUNDS_RESERVED = "FUNDS_RESERVED"
    PAYMENT_INITIATED = "PAYMENT_INITIATED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_CANCELLED = "PAYMENT_CANCELLED"

    # Terminal transfer
    DISBURSEMENT_CREATED = "DISBURSEMENT_CREATED"

    # Operator review
    WEBHOOK_EVENT_RESOLVED = "WEBHOOK_EVENT_RESOLVED"


async def log_event(
    db: AsyncSession,
    action: str,
    actor_id: Optional[int] = None,
    actor_username: Optional[str] = None,
    target_type: Optional[str] = None,
    target_id: Optional[Any] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Record an audit event inside the current transaction.

    Args:
        db: Database session owned by the caller's UnitOfWork
        action: Action being performed (use AuditAction constants)
        actor_id: ID of user performing the action (None for webhooks)
        actor_username: Username of actor
        target_type: Kind of record acted upon (budget, application, ...)
        target_id: ID of that record
        metadata: Additional context as JSON

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        actor_username=actor_username,
        action=action,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        meta_data=metadata,
    )

    db.add(audit_log)
    await db.flush()

    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    target_type: Optional[str] = None,
    target_id: Optional[Any] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering, most recent first.
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if target_type:
        query = query.where(AuditLog.target_type == target_type)

    if target_id is not None:
        query = query.where(AuditLog.target_id == str(target_id))

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())
