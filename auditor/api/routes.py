"""
API route aggregator: register endpoints; no logic — only delegate to handlers.
"""

import logging

from fastapi import APIRouter, Request

from auditor.api.handlers import handle_compliance_check
from auditor.schemas.compliance import ComplianceResult

logger = logging.getLogger(__name__)
router = APIRouter()


# --- System ---

@router.get("/health", tags=["system"])
def health():
    return {"ok": True}


# --- Compliance ---

@router.post(
    "/compliance/check",
    response_model=ComplianceResult,
    tags=["compliance"],
    summary="Audit the target document against the policy rules",
    description="Requires a bearer token for the signed-in user. 401 with a consent challenge when more consent is needed.",
)
async def post_compliance_check(request: Request) -> ComplianceResult:
    logger.info("[api:post_compliance_check] IN")
    return await handle_compliance_check(request, request.app.state.settings)
