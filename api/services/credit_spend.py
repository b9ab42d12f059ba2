"""Credit debit for story generation: one credit per saved story."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from api.db.base import AsyncSessionLocal, StoryRecord, User, utcnow
from api.services.payment_engine import AuthenticationRequiredError, InsufficientCreditsError, LedgerError
from config.settings import CREDITS_PER_STORY

logger = logging.getLogger(__name__)


@dataclass
class SpendResult:
    record_id: int
    story_id: str
    credits_remaining: int


async def spend_credit_and_record(
    user_id: Optional[str],
    record: dict,
    session_factory=AsyncSessionLocal,
    cost: int = CREDITS_PER_STORY,
) -> SpendResult:
    """
    Deduct credits and save the story in a single transaction.

    The deduction is a conditional UPDATE (credits >= cost), so two
    concurrent spends against a balance of 1 leave exactly one story
    and a balance of 0. When no row qualifies nothing is written and
    InsufficientCreditsError is raised.
    """
    if not user_id:
        raise AuthenticationRequiredError("Authentication required")

    async with session_factory() as session:
        try:
            remaining = (await session.execute(
                update(User)
                .where(User.external_id == user_id, User.credits >= cost)
                .values(credits=User.credits - cost, updated_at=utcnow())
                .returning(User.credits)
                .execution_options(synchronize_session=False)
            )).scalar_one_or_none()

            if remaining is None:
                await session.rollback()
                raise InsufficientCreditsError(user_id)

            story = StoryRecord(user_id=user_id, **record)
            session.add(story)
            await session.flush()
            result = SpendResult(record_id=story.id, story_id=story.story_id, credits_remaining=remaining)
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise LedgerError(f"Failed to save story for {user_id}: {e}") from e

    logger.info(f"Spent {cost} credit(s) for {user_id}, story={result.story_id}, remaining={remaining}")
    return result
