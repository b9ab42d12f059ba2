"""Authentication API routes.

Endpoints:
- GET /api/v1/auth/me - Get current user info and credit balance

Also provides the bearer-token dependencies used by every other router.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel

from api.context import user_id_var
from api.dependencies import get_account_service
from api.services.account_service import AccountService
from api.services.auth_service import AuthService, UserInfo

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


class AccountResponse(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    credits: int


def _user_from_header(authorization: Optional[str]) -> Optional[UserInfo]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return AuthService.verify_access_token(authorization[7:])


async def get_current_user(
    authorization: Optional[str] = Header(None),
    accounts: AccountService = Depends(get_account_service),
) -> UserInfo:
    """Dependency to get current authenticated user.

    First sight of a user creates their account with the sign-up credits.
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    user_info = _user_from_header(authorization)
    if not user_info:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    await accounts.ensure_account(user_info.user_id, email=user_info.email, name=user_info.name)
    user_id_var.set(user_info.user_id)
    return user_info


async def get_optional_user(
    authorization: Optional[str] = Header(None),
    accounts: AccountService = Depends(get_account_service),
) -> Optional[UserInfo]:
    """Like get_current_user, but None instead of 401 when the caller is anonymous."""
    user_info = _user_from_header(authorization)
    if user_info:
        await accounts.ensure_account(user_info.user_id, email=user_info.email, name=user_info.name)
        user_id_var.set(user_info.user_id)
    return user_info


async def get_current_user_id(user: UserInfo = Depends(get_current_user)) -> str:
    return user.user_id


async def get_optional_user_id(user: Optional[UserInfo] = Depends(get_optional_user)) -> Optional[str]:
    return user.user_id if user else None


@router.get("/me", response_model=AccountResponse)
async def get_current_account(
    user: UserInfo = Depends(get_current_user),
    accounts: AccountService = Depends(get_account_service),
):
    """Get current authenticated user's account info."""
    account = await accounts.ensure_account(user.user_id, email=user.email, name=user.name)
    return AccountResponse(
        id=account.external_id,
        email=account.email,
        name=account.name,
        credits=account.credits,
    )
