"""Test doubles for payment providers, story generation and sleeps."""

import asyncio
import json
from decimal import Decimal
from typing import Optional

from api.services.payment_engine import (
    PaymentEvent,
    PaymentEventSink,
    ProviderVerifier,
    VerificationResult,
)


class FakeVerifier(ProviderVerifier):
    """Scripted provider: returns (or raises) the queued results in order, repeating the last."""

    def __init__(self, *results, delay: float = 0.0, provider: str = "paypal"):
        self._results = list(results) or [captured()]
        self.delay = delay
        self._name = provider
        self.calls: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return self._name

    async def verify_order(self, order_id: str, request_id: str) -> VerificationResult:
        self.calls.append((order_id, request_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self._results[min(len(self.calls) - 1, len(self._results) - 1)]
        if isinstance(result, Exception):
            raise result
        return result


class RecordingSink(PaymentEventSink):
    def __init__(self):
        self.events: list[PaymentEvent] = []

    async def record(self, event: PaymentEvent) -> None:
        self.events.append(event)

    @property
    def statuses(self) -> list[str]:
        return [event.status for event in self.events]


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays without waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def captured(amount: str = "4.99", status: str = "COMPLETED", capture_id: str = "CAP-1") -> VerificationResult:
    return VerificationResult(
        success=True,
        amount=Decimal(amount),
        currency="USD",
        capture_id=capture_id,
        status=status,
        raw={"id": "ORDER", "status": status},
    )


def failed(error_code: str, retryable: bool = False, status: Optional[str] = None, http_status: Optional[int] = None) -> VerificationResult:
    return VerificationResult(
        success=False,
        status=status,
        error=f"{error_code} from provider",
        error_code=error_code,
        retryable=retryable,
        http_status=http_status,
    )


def story_payload(chapters: int = 5, l1: str = "en", l2: str = "es") -> dict:
    """A well-formed story as the text model is asked to return it."""
    return {
        "bookTitle": {l1: "The Brave Fox", l2: "El zorro valiente"},
        "cover": {"imagePrompt": "A fox in a forest", "imageText": "Cover"},
        "chapters": [
            {
                "chapterNumber": i,
                "chapterTitle": {l1: f"Chapter {i}", l2: f"Capitulo {i}"},
                "storyText": {l1: "The fox ran through the trees.", l2: "El zorro corrio entre los arboles."},
                "imagePrompt": f"Scene {i}",
                "imageText": f"Image {i}",
                "difficultWords": [],
            }
            for i in range(1, chapters + 1)
        ],
        "moralOfTheStory": {"moral": {l1: "Be brave.", l2: "Se valiente."}},
    }


class FakeGenerator:
    """Scripted text/image client. Each step takes a list of results, consumed in order."""

    def __init__(self, story=None, image=None, fetch=None):
        self.story = list(story or [json.dumps(story_payload())])
        self.image = list(image or ["https://replicate.delivery/cover.webp"])
        self.fetch = list(fetch or [b"RIFF....WEBP"])
        self.calls: list[str] = []

    async def _next(self, name: str, results: list):
        self.calls.append(name)
        result = results.pop(0) if len(results) > 1 else results[0]
        if isinstance(result, Exception):
            raise result
        return result

    async def generate_story(self, prompt: str) -> str:
        return await self._next("story", self.story)

    async def generate_image(self, prompt: str) -> str:
        return await self._next("image", self.image)

    async def fetch_image(self, url: str) -> bytes:
        return await self._next("image_fetch", self.fetch)


class FakeStorage:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.uploads: list[tuple[str, str]] = []

    async def store(self, data: bytes, path: str, content_type: str) -> str:
        self.uploads.append((path, content_type))
        if self.error is not None:
            raise self.error
        return f"https://storage.example.com/{path}"
