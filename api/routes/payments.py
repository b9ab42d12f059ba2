"""Payment API routes.

Endpoints:
- POST /api/v1/payments/process - Credit a client-approved PayPal order
- POST /api/v1/payments/verify - Server-side capture check, no credits applied
- POST /api/v1/payments/recover - Re-apply credits missing from completed orders
- GET /api/v1/payments/history - Caller's recent payment transactions
- GET /api/v1/payments/packages - Public credit package catalog
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from api.dependencies import get_ledger, get_payment_orchestrator, get_recovery_service
from api.routes.auth import get_current_user_id, get_optional_user_id
from api.services.ledger import PaymentLedger
from api.services.packages import CATALOGS, list_packages
from api.services.payment_engine import PaymentOrchestrator
from api.services.recovery_service import RecoveryService
from config.settings import PAYMENT_HISTORY_LIMIT

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payments", tags=["payments"])

METHOD_NOT_ALLOWED = {"success": False, "message": "Method not allowed - Use POST to verify payments"}


class ProcessPaymentRequest(BaseModel):
    order_id: str = Field(..., alias="orderID", min_length=1, max_length=100)
    package_id: Any = Field(..., alias="packageId")

    model_config = {"populate_by_name": True}


class VerifyPaymentRequest(BaseModel):
    order_id: str = Field(..., alias="orderID", min_length=1, max_length=100)

    model_config = {"populate_by_name": True}


def _result_status(error: Optional[str], success: bool) -> int:
    if success:
        return 200
    if error == "AUTHENTICATION_REQUIRED":
        return 401
    if error == "MAX_RETRIES_EXCEEDED":
        return 503
    return 400


@router.post("/process")
async def process_payment(
    request: ProcessPaymentRequest,
    user_id: Optional[str] = Depends(get_optional_user_id),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Verify a PayPal order the client approved and credit its package once."""
    result = await orchestrator.process_payment(user_id, request.order_id, request.package_id)
    return JSONResponse(status_code=_result_status(result.error, result.success), content=result.to_dict())


@router.post("/verify")
async def verify_payment(
    request: VerifyPaymentRequest,
    user_id: Optional[str] = Depends(get_optional_user_id),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Confirm with PayPal that an order was captured. Credits are applied by /process."""
    outcome = await orchestrator.verify_capture(user_id, request.order_id)
    return JSONResponse(status_code=outcome.status_code, content=outcome.to_dict())


@router.api_route("/verify", methods=["GET", "PUT", "DELETE"], include_in_schema=False)
async def verify_payment_wrong_method():
    return JSONResponse(status_code=405, content=METHOD_NOT_ALLOWED)


@router.post("/recover")
async def recover_credits(
    user_id: str = Depends(get_current_user_id),
    recovery: RecoveryService = Depends(get_recovery_service),
):
    """Apply credits for the caller's completed orders that never reached the balance."""
    result = await recovery.recover_missing_credits(user_id)
    return JSONResponse(status_code=_result_status(result.error, result.success), content=result.to_dict())


@router.get("/history")
async def payment_history(
    limit: int = Query(PAYMENT_HISTORY_LIMIT, ge=1, le=PAYMENT_HISTORY_LIMIT),
    user_id: str = Depends(get_current_user_id),
    ledger: PaymentLedger = Depends(get_ledger),
):
    """Caller's payment transactions, newest first."""
    transactions = await ledger.payment_history(user_id, limit)
    return {
        "transactions": [
            {
                "id": txn.id,
                "orderId": txn.order_id,
                "provider": txn.provider,
                "amount": txn.amount,
                "currency": txn.currency,
                "status": txn.status,
                "createdAt": txn.created_at.isoformat() if txn.created_at else None,
                "verifiedAt": txn.verified_at.isoformat() if txn.verified_at else None,
            }
            for txn in transactions
        ],
    }


@router.get("/packages")
async def credit_packages(provider: str = Query("paypal")):
    """Public package catalog for a provider."""
    if provider not in CATALOGS:
        raise ValueError(f"Unknown provider: {provider}")
    return {"provider": provider, "packages": list_packages(provider)}
