"""Credit balance endpoint."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.dependencies import get_balance_cache, get_ledger
from api.routes.auth import get_current_user_id
from api.services.balance_cache import BalanceCache
from api.services.ledger import PaymentLedger

router = APIRouter(prefix="/api/v1", tags=["balance"])


class CreditsResponse(BaseModel):
    """Story credits available to the caller."""
    has_credits: bool
    credit_count: int


@router.get("/credits", response_model=CreditsResponse)
async def get_credits(
    user_id: str = Depends(get_current_user_id),
    ledger: PaymentLedger = Depends(get_ledger),
    cache: BalanceCache = Depends(get_balance_cache),
):
    """
    Get the caller's credit balance.

    Served from the Redis cache when warm; the database stays the
    source of truth and every credit mutation drops the cached value.
    """
    credits = await cache.get_or_load(user_id, ledger.get_balance) or 0
    return CreditsResponse(has_credits=credits > 0, credit_count=credits)
