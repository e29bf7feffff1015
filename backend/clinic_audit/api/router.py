"""API router aggregator."""

from fastapi import APIRouter

from clinic_audit.api import audit

router = APIRouter(prefix="/api")
router.include_router(audit.router)
