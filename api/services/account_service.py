"""User accounts keyed by the auth provider's user id."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from api.db.base import AsyncSessionLocal, User
from api.services.payment_engine import LedgerError
from config.settings import DEFAULT_USER_CREDITS

logger = logging.getLogger(__name__)


@dataclass
class AccountSnapshot:
    external_id: str
    credits: int
    email: Optional[str] = None
    name: Optional[str] = None
    image_url: Optional[str] = None


def _snapshot(user: User) -> AccountSnapshot:
    return AccountSnapshot(
        external_id=user.external_id,
        credits=user.credits,
        email=user.email,
        name=user.name,
        image_url=user.image_url,
    )


class AccountService:
    def __init__(self, session_factory=AsyncSessionLocal):
        self._session_factory = session_factory

    async def get_account(self, external_id: str) -> Optional[AccountSnapshot]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(User).where(User.external_id == external_id))
                user = result.scalar_one_or_none()
                return _snapshot(user) if user else None
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to load account {external_id}: {e}") from e

    async def ensure_account(
        self,
        external_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> AccountSnapshot:
        """
        Get the account, creating it with the sign-up credit grant on first sight.

        Concurrent first requests race on the unique external_id; the
        loser reads the winner's row.
        """
        existing = await self.get_account(external_id)
        if existing is not None:
            return existing

        try:
            async with self._session_factory() as session:
                user = User(external_id=external_id, email=email, name=name, credits=DEFAULT_USER_CREDITS)
                session.add(user)
                try:
                    await session.commit()
                    logger.info(f"Created account {external_id} with {DEFAULT_USER_CREDITS} credits")
                    return _snapshot(user)
                except IntegrityError:
                    await session.rollback()
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to create account {external_id}: {e}") from e

        account = await self.get_account(external_id)
        if account is None:
            raise LedgerError(f"Account {external_id} vanished after concurrent create")
        return account
