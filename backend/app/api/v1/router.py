"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import admin_ops, applications, budgets, disbursements, webhooks

router = APIRouter()

# Budget ledger and partner-school withdrawals
router.include_router(budgets.router)

# Disbursement workflow
router.include_router(applications.router)

# Disbursement history
router.include_router(disbursements.router)

# Payment gateway callbacks (unauthenticated, signature-checked)
router.include_router(webhooks.router)

# Operator review and maintenance
router.include_router(admin_ops.router)
