"""
Recovery Service - re-applies credits for verified orders that never got them.

A COMPLETED, verified ledger row with no COMPLETED or CREDITS_RECOVERED
audit entry was captured by the provider but its credits never reached
the balance (e.g. rows written by older capture-only code). The sweep
adds those credits and marks each row CREDITS_RECOVERED so it never
counts twice.
"""

import logging
from typing import Optional

from sqlalchemy import and_, exists, select, update
from sqlalchemy.exc import SQLAlchemyError

from api.db.base import AsyncSessionLocal, PaymentAuditLog, PaymentTransaction, User, utcnow
from api.services.payment_engine import (
    APPLIED_STATUSES,
    LedgerError,
    PaymentResult,
    PaymentStatus,
    UserNotFoundError,
)

logger = logging.getLogger(__name__)


def credits_from_payload(raw_payload: Optional[dict]) -> int:
    """
    Credits recorded for a transaction at crediting time.

    raw_payload is otherwise opaque; "credits" is the one key the
    recovery sweep depends on.
    """
    if not isinstance(raw_payload, dict):
        return 0
    value = raw_payload.get("credits")
    if isinstance(value, bool):
        return 0
    try:
        credits = int(value)
    except (TypeError, ValueError):
        return 0
    return credits if credits > 0 else 0


class RecoveryService:
    """Finds and repairs COMPLETED transactions whose credits were never applied."""

    def __init__(self, session_factory=AsyncSessionLocal, balance_cache=None):
        self._session_factory = session_factory
        self.balance_cache = balance_cache

    async def recover_missing_credits(self, user_id: Optional[str]) -> PaymentResult:
        from api.services.metrics import credits_recovered_total

        if not user_id:
            return PaymentResult(
                success=False,
                message="Authentication required",
                can_retry=False,
                error="AUTHENTICATION_REQUIRED",
            )

        now = utcnow()
        async with self._session_factory() as session:
            try:
                # Take the user's row lock first so concurrent sweeps serialize
                balance = (await session.execute(
                    update(User)
                    .where(User.external_id == user_id)
                    .values(updated_at=now)
                    .returning(User.credits)
                    .execution_options(synchronize_session=False)
                )).scalar_one_or_none()
                if balance is None:
                    await session.rollback()
                    raise UserNotFoundError(user_id)

                applied = exists().where(and_(
                    PaymentAuditLog.transaction_id == PaymentTransaction.id,
                    PaymentAuditLog.new_status.in_(APPLIED_STATUSES),
                ))
                result = await session.execute(
                    select(PaymentTransaction)
                    .where(
                        PaymentTransaction.user_id == user_id,
                        PaymentTransaction.status == PaymentStatus.COMPLETED.value,
                        PaymentTransaction.verified_at.is_not(None),
                        ~applied,
                    )
                    .order_by(PaymentTransaction.id)
                )
                candidates = result.scalars().all()

                recovered = []
                for txn in candidates:
                    credits = credits_from_payload(txn.raw_payload)
                    if credits == 0:
                        logger.warning(f"Transaction {txn.id} ({txn.order_id}) has no credits in payload, skipping")
                        continue
                    recovered.append((txn, credits))

                if not recovered:
                    await session.rollback()
                    return PaymentResult(success=True, message="No missing credits found", new_balance=balance)

                total = sum(credits for _, credits in recovered)
                new_balance = (await session.execute(
                    update(User)
                    .where(User.external_id == user_id)
                    .values(credits=User.credits + total, updated_at=now)
                    .returning(User.credits)
                    .execution_options(synchronize_session=False)
                )).scalar_one()

                session.add_all([
                    PaymentAuditLog(
                        transaction_id=txn.id,
                        previous_status=PaymentStatus.COMPLETED.value,
                        new_status=PaymentStatus.CREDITS_RECOVERED.value,
                        changed_by="recovery_system",
                        reason=f"Recovered {credits} missing credits",
                    )
                    for txn, credits in recovered
                ])
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise LedgerError(f"Credit recovery failed for {user_id}: {e}") from e

        credits_recovered_total.inc(total)
        logger.info(f"Recovered {total} credits across {len(recovered)} transactions for {user_id}")
        if self.balance_cache is not None:
            await self.balance_cache.invalidate(user_id)

        return PaymentResult(
            success=True,
            message=f"Recovered {total} missing credits!",
            new_balance=new_balance,
        )
