"""
Story generation pipeline.

rate limit -> credit pre-check -> story -> parse -> cover image ->
image fetch -> upload -> debit and save.

Every external step runs under its own timeout and retry limit. The
credit is taken only in the final step, in the same transaction that
saves the story, so a failure anywhere upstream costs the user nothing.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Optional

from api.db.base import AsyncSessionLocal
from api.services.blob_storage import BlobStorage
from api.services.credit_spend import spend_credit_and_record
from api.services.payment_engine import (
    AuthenticationRequiredError,
    InsufficientCreditsError,
    LedgerError,
    PaymentError,
)
from api.services.rate_limiter import RateLimiter
from api.services.retry import OperationTimeoutError, execute_with_retry, with_timeout
from api.services.story_generator import (
    GenerationError,
    ReplicateClient,
    StoryForm,
    build_story_prompt,
    cover_image_prompt,
    parse_story,
)
from config.settings import (
    CREDITS_PER_STORY,
    DB_TIMEOUT_SECONDS,
    GENERATION_MAX_RETRIES,
    GENERATION_RETRY_BASE_DELAY,
    IMAGE_FETCH_TIMEOUT_SECONDS,
    IMAGE_TIMEOUT_SECONDS,
    STORY_TIMEOUT_SECONDS,
    UPLOAD_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

UPSTREAM_AUTH_STATUSES = (401, 403)

MSG_SLOW = "Story generation is taking longer than expected. Please try again in a few moments."

USER_MESSAGES = {
    "AUTHENTICATION_REQUIRED": "Please sign in to create a story.",
    "INSUFFICIENT_CREDITS": "You don't have enough credits to create a story. Please purchase more credits.",
    "TIMEOUT_ERROR": MSG_SLOW,
    "CLAUDE_GENERATION_FAILED": MSG_SLOW,
    "IMAGE_GENERATION_FAILED": MSG_SLOW,
    "STORY_PARSE_ERROR": "We couldn't put your story together this time. Please try again.",
    "CONFIGURATION_ERROR": "Service temporarily unavailable. Please try again later.",
    "FIREBASE_UPLOAD_FAILED": "We couldn't save your story's illustration. Please try again.",
    "DATABASE_ERROR": "We couldn't save your story. Please try again.",
}
MSG_DEFAULT = "Something went wrong while creating your story. Please try again."


def user_message(code: str, retry_after: int = 0) -> str:
    if code == "RATE_LIMITED":
        return f"You're creating stories too quickly. Please wait {retry_after} seconds and try again."
    return USER_MESSAGES.get(code, MSG_DEFAULT)


@dataclass
class StoryAuthor:
    """Signed-in user a story is generated for."""
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    image_url: Optional[str] = None


@dataclass
class GenerationOutcome:
    success: bool
    message: str
    status_code: int = 200
    code: Optional[str] = None
    story_id: Optional[str] = None
    story: Optional[dict] = None
    cover_image: Optional[str] = None
    credits_remaining: Optional[int] = None
    retry_after: Optional[int] = None
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        if self.success:
            return {
                "success": True,
                "message": self.message,
                "storyId": self.story_id,
                "story": self.story,
                "coverImage": self.cover_image,
                "creditsRemaining": self.credits_remaining,
            }
        data = {"success": False, "error": self.message, "code": self.code}
        if self.retry_after:
            data["retryAfter"] = self.retry_after
        return data


class StoryGenerationPipeline:
    def __init__(
        self,
        rate_limiter: RateLimiter,
        accounts,
        generator: ReplicateClient,
        storage: BlobStorage,
        session_factory=AsyncSessionLocal,
        balance_cache=None,
        max_retries: int = GENERATION_MAX_RETRIES,
        base_delay: float = GENERATION_RETRY_BASE_DELAY,
        sleep=asyncio.sleep,
    ):
        self.rate_limiter = rate_limiter
        self.accounts = accounts
        self.generator = generator
        self.storage = storage
        self.session_factory = session_factory
        self.balance_cache = balance_cache
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep

    async def _step(self, name: str, func, timeout: float):
        from api.services.metrics import StepTimer

        with StepTimer(name):
            return await execute_with_retry(
                func,
                name,
                max_retries=self.max_retries,
                base_delay=self.base_delay,
                timeout=timeout,
                sleep=self._sleep,
            )

    def _fail(self, code: str, status_code: int, retry_after: int = 0, details: Optional[dict] = None) -> GenerationOutcome:
        from api.services.metrics import story_generations_total

        story_generations_total.labels(status=code.lower()).inc()
        return GenerationOutcome(
            success=False,
            message=user_message(code, retry_after),
            status_code=status_code,
            code=code,
            retry_after=retry_after or None,
            details=details or {},
        )

    async def generate(self, author: Optional[StoryAuthor], form: StoryForm) -> GenerationOutcome:
        from api.services.metrics import credits_spent_total, rate_limit_rejections_total, story_generations_total

        if author is None or not author.user_id:
            return self._fail("AUTHENTICATION_REQUIRED", 401)

        request_id = secrets.token_hex(6)
        user_id = author.user_id

        decision = await self.rate_limiter.check(user_id)
        if not decision.allowed:
            rate_limit_rejections_total.inc()
            logger.info(f"[{request_id}] Rate limited {user_id}, retry in {decision.retry_after}s")
            return self._fail("RATE_LIMITED", 429, decision.retry_after)

        try:
            # Early exit only; the debit re-checks the balance atomically
            account = await self.accounts.get_account(user_id)
            if account is None or account.credits < CREDITS_PER_STORY:
                return self._fail("INSUFFICIENT_CREDITS", 402)

            prompt = build_story_prompt(form)
            raw_story = await self._step(
                "story", lambda: self.generator.generate_story(prompt), STORY_TIMEOUT_SECONDS,
            )
            story = parse_story(raw_story)

            image_prompt = cover_image_prompt(story, form)
            image_url = await self._step(
                "image", lambda: self.generator.generate_image(image_prompt), IMAGE_TIMEOUT_SECONDS,
            )
            image_data = await self._step(
                "image_fetch", lambda: self.generator.fetch_image(image_url), IMAGE_FETCH_TIMEOUT_SECONDS,
            )
            path = f"images/{int(time.time() * 1000)}-{request_id}.webp"
            cover_url = await self._step(
                "upload", lambda: self.storage.store(image_data, path, "image/webp"), UPLOAD_TIMEOUT_SECONDS,
            )

            story_id = f"story_{int(time.time() * 1000)}_{request_id}"
            record = {
                "story_id": story_id,
                "story_subject": form.story_subject,
                "story_type": form.story_type,
                "age_group": form.age_group,
                "image_style": form.image_style,
                "genre": form.genre,
                "language1": form.language1,
                "language2": form.language2,
                "output": story,
                "cover_image": cover_url,
                "user_email": author.email,
                "user_name": author.name,
                "user_image": author.image_url,
            }
            # Not retried: a second attempt after an ambiguous failure could debit twice
            spent = await with_timeout(
                spend_credit_and_record(user_id, record, self.session_factory),
                DB_TIMEOUT_SECONDS,
                "save",
            )
        except InsufficientCreditsError:
            return self._fail("INSUFFICIENT_CREDITS", 402)
        except AuthenticationRequiredError:
            return self._fail("AUTHENTICATION_REQUIRED", 401)
        except GenerationError as e:
            logger.error(f"[{request_id}] Generation failed for {user_id}: {e.code} {e}")
            if e.status in UPSTREAM_AUTH_STATUSES:
                # Upstream rejected our own credentials
                return self._fail(
                    "CONFIGURATION_ERROR", 503, details={"upstreamCode": e.code, "upstreamStatus": e.status},
                )
            return self._fail(e.code, e.status, details=e.details)
        except OperationTimeoutError as e:
            logger.error(f"[{request_id}] {e}")
            return self._fail("TIMEOUT_ERROR", 408, details={"operation": e.operation})
        except (LedgerError, PaymentError) as e:
            logger.error(f"[{request_id}] Database error for {user_id}: {e}")
            return self._fail("DATABASE_ERROR", 500)

        if self.balance_cache is not None:
            await self.balance_cache.invalidate(user_id)
        credits_spent_total.inc(CREDITS_PER_STORY)
        story_generations_total.labels(status="success").inc()
        logger.info(f"[{request_id}] Story {story_id} created for {user_id}")
        return GenerationOutcome(
            success=True,
            message="Story created successfully",
            story_id=spent.story_id,
            story=story,
            cover_image=cover_url,
            credits_remaining=spent.credits_remaining,
        )
