"""
Webhook Event Schemas (operator review).
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Any, Optional
from backend.app.models.ledger_enums import WebhookOutcome


class WebhookEventResponse(BaseModel):
    id: int
    event_type: Optional[str]
    checkout_id: Optional[str]
    payment_id: Optional[str]
    outcome: WebhookOutcome
    needs_review: bool
    detail: Optional[str]
    payload: Optional[Any]
    received_at: datetime
    resolved_at: Optional[datetime]
    resolved_by: Optional[str]

    class Config:
        from_attributes = True


class WebhookEventResolve(BaseModel):
    notes: Optional[str] = None
