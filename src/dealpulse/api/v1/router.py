"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.dealpulse.api.v1 import crm, deals, health, risk

router = APIRouter()

router.include_router(health.router)
router.include_router(crm.router)
router.include_router(risk.router)
router.include_router(deals.router)
