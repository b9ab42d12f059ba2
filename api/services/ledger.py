"""
Payment ledger - idempotent crediting with an append-only audit trail.

Every (order_id, user_id) pair owns exactly one payment_transactions
row. Failed attempts create or advance that row; apply_credit is the
only path that moves it to COMPLETED and it does so in the same
database transaction that increments the user's credits and appends
the COMPLETED audit entry.
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from api.db.base import AsyncSessionLocal, PaymentAuditLog, PaymentTransaction, User, utcnow
from api.services.payment_engine import (
    TERMINAL_STATUSES,
    CreditOutcome,
    DuplicatePaymentError,
    LedgerError,
    PaymentStatus,
    UserNotFoundError,
)
from config.settings import PAYMENT_HISTORY_LIMIT

logger = logging.getLogger(__name__)


class PaymentLedger:
    """Reads and writes payment_transactions, payment_audit_logs and user credits."""

    def __init__(self, session_factory=AsyncSessionLocal):
        self._session_factory = session_factory

    @staticmethod
    def _row_stmt(order_id: str, user_id: str):
        return select(PaymentTransaction).where(
            PaymentTransaction.order_id == order_id,
            PaymentTransaction.user_id == user_id,
        )

    async def get_transaction(self, order_id: str, user_id: str) -> Optional[PaymentTransaction]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(self._row_stmt(order_id, user_id))
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to load transaction {order_id}: {e}") from e

    async def find_completed(self, order_id: str, user_id: str) -> Optional[PaymentTransaction]:
        """The row for this order if it already reached COMPLETED."""
        txn = await self.get_transaction(order_id, user_id)
        if txn is not None and txn.status in TERMINAL_STATUSES:
            return txn
        return None

    async def ensure_not_credited(self, order_id: str, user_id: str) -> None:
        """Raise DuplicatePaymentError if this order was already credited to this user."""
        txn = await self.find_completed(order_id, user_id)
        if txn is not None:
            raise DuplicatePaymentError(txn.id)

    async def get_balance(self, user_id: str) -> Optional[int]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(User.credits).where(User.external_id == user_id))
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to read balance for {user_id}: {e}") from e

    async def record_attempt(
        self,
        user_id: str,
        order_id: str,
        status: str,
        reason: Optional[str] = None,
        provider: str = "paypal",
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        capture_id: Optional[str] = None,
        raw_payload: Optional[dict] = None,
        verified: bool = False,
        changed_by: str = "system",
        request_id: Optional[str] = None,
    ) -> Optional[int]:
        """
        Create or advance the non-terminal row for an order and log the change.

        Terminal rows are left untouched. Returns the row id.
        """
        if status in TERMINAL_STATUSES:
            raise ValueError(f"{status} can only be written by apply_credit")

        now = utcnow()
        values = {"status": status, "provider": provider, "updated_at": now}
        if amount is not None:
            values["amount"] = str(amount)
        if currency:
            values["currency"] = currency
        if capture_id:
            values["capture_id"] = capture_id
        if raw_payload is not None:
            values["raw_payload"] = raw_payload
        if verified:
            values["verified_at"] = now

        async with self._session_factory() as session:
            try:
                existing = (await session.execute(self._row_stmt(order_id, user_id))).scalar_one_or_none()
                if existing is None:
                    txn = PaymentTransaction(user_id=user_id, order_id=order_id, **values)
                    session.add(txn)
                    await session.flush()
                    txn_id, previous = txn.id, None
                else:
                    if existing.status in TERMINAL_STATUSES:
                        return existing.id
                    txn_id, previous = existing.id, existing.status
                    result = await session.execute(
                        update(PaymentTransaction)
                        .where(
                            PaymentTransaction.id == txn_id,
                            PaymentTransaction.status.not_in(TERMINAL_STATUSES),
                        )
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        # Completed by a concurrent credit between our read and write
                        await session.rollback()
                        return txn_id

                session.add(PaymentAuditLog(
                    transaction_id=txn_id,
                    previous_status=previous,
                    new_status=status,
                    changed_by=changed_by,
                    reason=reason,
                    request_id=request_id,
                ))
                await session.commit()
                return txn_id
            except IntegrityError:
                # Another attempt inserted the row first; it now owns the history
                await session.rollback()
                txn = await self.get_transaction(order_id, user_id)
                return txn.id if txn else None
            except SQLAlchemyError as e:
                await session.rollback()
                raise LedgerError(f"Failed to record {status} for order {order_id}: {e}") from e

    async def apply_credit(
        self,
        user_id: str,
        order_id: str,
        credits: int,
        provider: str = "paypal",
        amount: Optional[Decimal] = None,
        currency: str = "USD",
        capture_id: Optional[str] = None,
        raw_payload: Optional[dict] = None,
        changed_by: str = "system",
        reason: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> CreditOutcome:
        """
        Atomically mark an order COMPLETED and add its credits.

        In one transaction: claim the (order_id, user_id) row (insert,
        or promote a non-terminal row with a conditional update),
        increment the user's credits and append the COMPLETED audit
        entry. Losing a race to a concurrent credit is reported as
        already_processed, never as a second credit.
        """
        if credits <= 0:
            raise ValueError("Credits must be positive")

        now = utcnow()
        values = {
            "status": PaymentStatus.COMPLETED.value,
            "provider": provider,
            "amount": str(amount) if amount is not None else "0",
            "currency": currency or "USD",
            "capture_id": capture_id,
            "raw_payload": raw_payload,
            "verified_at": now,
            "updated_at": now,
        }

        async with self._session_factory() as session:
            try:
                existing = (await session.execute(self._row_stmt(order_id, user_id))).scalar_one_or_none()
                if existing is not None and existing.status in TERMINAL_STATUSES:
                    return await self._already_processed(order_id, user_id)

                if existing is None:
                    txn = PaymentTransaction(user_id=user_id, order_id=order_id, **values)
                    session.add(txn)
                    await session.flush()
                    txn_id, previous = txn.id, None
                else:
                    txn_id, previous = existing.id, existing.status
                    result = await session.execute(
                        update(PaymentTransaction)
                        .where(
                            PaymentTransaction.id == txn_id,
                            PaymentTransaction.status.not_in(TERMINAL_STATUSES),
                        )
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        await session.rollback()
                        return await self._already_processed(order_id, user_id)

                new_balance = (await session.execute(
                    update(User)
                    .where(User.external_id == user_id)
                    .values(credits=User.credits + credits, updated_at=now)
                    .returning(User.credits)
                    .execution_options(synchronize_session=False)
                )).scalar_one_or_none()
                if new_balance is None:
                    await session.rollback()
                    raise UserNotFoundError(user_id)

                session.add(PaymentAuditLog(
                    transaction_id=txn_id,
                    previous_status=previous,
                    new_status=PaymentStatus.COMPLETED.value,
                    changed_by=changed_by,
                    reason=reason,
                    request_id=request_id,
                ))
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return await self._already_processed(order_id, user_id)
            except SQLAlchemyError as e:
                await session.rollback()
                raise LedgerError(f"Failed to credit order {order_id}: {e}") from e

        logger.info(f"Credited {credits} credits to {user_id} for {provider} order {order_id}, balance={new_balance}")
        return CreditOutcome(transaction_id=txn_id, new_balance=new_balance)

    async def _already_processed(self, order_id: str, user_id: str) -> CreditOutcome:
        txn = await self.find_completed(order_id, user_id)
        if txn is None:
            # Conflict on the row but nobody completed it; let the caller retry
            raise LedgerError(f"Concurrent update on order {order_id}")
        balance = await self.get_balance(user_id)
        logger.info(f"Order {order_id} already credited for {user_id} (transaction {txn.id})")
        return CreditOutcome(transaction_id=txn.id, new_balance=balance or 0, already_processed=True)

    async def payment_history(self, user_id: str, limit: int = PAYMENT_HISTORY_LIMIT) -> list[PaymentTransaction]:
        """Most recent ledger rows for a user, newest first."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(PaymentTransaction)
                    .where(PaymentTransaction.user_id == user_id)
                    .order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
                    .limit(limit)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to load payment history for {user_id}: {e}") from e
