"""Story generation and history endpoints."""

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from api.dependencies import get_story_library, get_story_pipeline
from api.routes.auth import get_current_user, get_current_user_id
from api.services.auth_service import UserInfo
from api.services.generation_pipeline import StoryAuthor, StoryGenerationPipeline
from api.services.story_generator import StoryForm
from api.services.story_library import MAX_PAGE_SIZE, StoryLibrary

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["stories"])


@router.post("/stories")
async def create_story(
    form: StoryForm,
    user: UserInfo = Depends(get_current_user),
    pipeline: StoryGenerationPipeline = Depends(get_story_pipeline),
):
    """
    Generate an illustrated bilingual story for the caller.

    Costs one credit, taken only once the story and its cover are saved.
    """
    author = StoryAuthor(user_id=user.user_id, email=user.email, name=user.name, image_url=user.picture)
    outcome = await pipeline.generate(author, form)

    headers = {"Retry-After": str(outcome.retry_after)} if outcome.retry_after else None
    return JSONResponse(status_code=outcome.status_code, content=outcome.to_dict(), headers=headers)


@router.get("/stories")
async def list_stories(
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    user_id: str = Depends(get_current_user_id),
    library: StoryLibrary = Depends(get_story_library),
):
    """The caller's saved stories, newest first."""
    stories = await library.list_stories(user_id, limit)
    return {"stories": [story.to_dict() for story in stories]}
