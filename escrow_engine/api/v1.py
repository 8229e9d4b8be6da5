"""Centralized v1 API router — all module routers are included here."""

from fastapi import APIRouter

from escrow_engine.modules.admin_action.router import router as admin_router
from escrow_engine.modules.dispute.router import router as dispute_router
from escrow_engine.modules.dispute.router import transaction_disputes_router
from escrow_engine.modules.transaction.router import router as transaction_router
from escrow_engine.modules.transaction.webhooks import router as webhook_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(transaction_router)
v1_router.include_router(transaction_disputes_router)
v1_router.include_router(dispute_router)
v1_router.include_router(admin_router)
v1_router.include_router(webhook_router)
