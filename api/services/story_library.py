"""Read access to a user's saved stories."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from api.db.base import AsyncSessionLocal, StoryRecord
from api.services.payment_engine import LedgerError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


@dataclass
class StorySummary:
    story_id: str
    story_subject: str
    story_type: str
    age_group: str
    image_style: str
    language1: str
    language2: str
    output: dict
    created_at: datetime
    genre: Optional[str] = None
    cover_image: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "storyId": self.story_id,
            "storySubject": self.story_subject,
            "storyType": self.story_type,
            "ageGroup": self.age_group,
            "imageStyle": self.image_style,
            "genre": self.genre,
            "language1": self.language1,
            "language2": self.language2,
            "story": self.output,
            "coverImage": self.cover_image,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class StoryLibrary:
    def __init__(self, session_factory=AsyncSessionLocal):
        self._session_factory = session_factory

    async def list_stories(self, user_id: str, limit: int = 20) -> list[StorySummary]:
        """The user's stories, newest first."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(StoryRecord)
                    .where(StoryRecord.user_id == user_id)
                    .order_by(StoryRecord.created_at.desc(), StoryRecord.id.desc())
                    .limit(limit)
                )
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to list stories for {user_id}: {e}") from e

        return [
            StorySummary(
                story_id=row.story_id,
                story_subject=row.story_subject,
                story_type=row.story_type,
                age_group=row.age_group,
                image_style=row.image_style,
                language1=row.language1,
                language2=row.language2,
                output=row.output,
                created_at=row.created_at,
                genre=row.genre,
                cover_image=row.cover_image,
            )
            for row in rows
        ]
