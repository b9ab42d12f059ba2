"""
Story generation through the Replicate HTTP API.

Builds the bilingual story prompt, runs the text and image models,
fetches the generated image and validates the story JSON the model
returns. Every failure is a GenerationError carrying a code and a
retryable flag for the pipeline's retry wrapper.
"""

import asyncio
import json
import logging
import re
import time
from typing import Any, Optional

import httpx
from pydantic import BaseModel, Field, field_validator, model_validator

from config.settings import MAX_IMAGE_BYTES, REPLICATE_BASE_URL

logger = logging.getLogger(__name__)

STORY_MODEL = "anthropic/claude-3.5-haiku"
IMAGE_MODEL = "black-forest-labs/flux-dev-lora"

REQUIRED_CHAPTERS = 5
MIN_SUBJECT_LENGTH = 2
MAX_SUBJECT_LENGTH = 500
MAX_PROMPT_LENGTH = 10000
MIN_STORY_LENGTH = 100

LANGUAGE_NAMES = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "nl": "Dutch",
    "ru": "Russian",
    "ja": "Japanese",
    "ko": "Korean",
    "zh": "Chinese",
    "ar": "Arabic",
    "hi": "Hindi",
    "tr": "Turkish",
}


class GenerationError(Exception):
    """Failure in a generation step."""

    def __init__(
        self,
        message: str,
        status: int = 500,
        code: str = "INTERNAL_ERROR",
        details: Optional[dict] = None,
        retryable: bool = False,
    ):
        self.status = status
        self.code = code
        self.details = details or {}
        self.retryable = retryable
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "message": str(self),
            "status": self.status,
            "code": self.code,
            "details": self.details,
            "retryable": self.retryable,
        }


class StoryForm(BaseModel):
    """Story creation form."""
    story_subject: str = Field(..., alias="storySubject")
    story_type: str = Field(..., alias="storyType", min_length=1)
    age_group: str = Field(..., alias="ageGroup", min_length=1)
    image_style: str = Field(..., alias="imageStyle", min_length=1)
    language1: str = Field(..., min_length=1)  # known language
    language2: str = Field(..., min_length=1)  # language being learned
    genre: str = Field(..., min_length=1)

    model_config = {"populate_by_name": True, "str_strip_whitespace": True}

    @field_validator("story_subject")
    @classmethod
    def subject_length(cls, value: str) -> str:
        if len(value) < MIN_SUBJECT_LENGTH:
            raise ValueError("Story subject must be at least 2 characters")
        if len(value) > MAX_SUBJECT_LENGTH:
            raise ValueError("Story subject too long")
        return value

    @model_validator(mode="after")
    def languages_differ(self):
        if self.language1 == self.language2:
            raise ValueError("Target language must be different from known language")
        return self


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code, code)


def build_story_prompt(form: StoryForm) -> str:
    known = language_name(form.language1)
    target = language_name(form.language2)
    l1, l2 = form.language1, form.language2

    chapters = ",".join(
        f"""
    {{
      "chapterNumber": {i},
      "chapterTitle": {{
        "{l1}": "Chapter {i} title in {known}",
        "{l2}": "Chapter {i} title in {target}"
      }},
      "storyText": {{
        "{l1}": "2-3 clear, engaging sentences in {known} for chapter {i}. Make it educational and appropriate for {form.age_group}.",
        "{l2}": "2-3 clear, engaging sentences in {target} for chapter {i}. Make it educational and appropriate for {form.age_group}."
      }},
      "imagePrompt": "Detailed {form.image_style} style illustration for chapter {i} scene, showing key story elements, colorful and engaging for {form.age_group}",
      "imageText": "Accessibility description for chapter {i} image",
      "difficultWords": [
        {{
          "word": "challenging vocabulary word from {target} text",
          "meaning": "simple explanation in {known}",
          "pronunciation": "phonetic guide if helpful"
        }}
      ]
    }}"""
        for i in range(1, REQUIRED_CHAPTERS + 1)
    )

    prompt = f"""You are an expert storyteller and language learning specialist. Create an educational bilingual story for language learners.

STORY SPECIFICATIONS:
- Subject: {form.story_subject}
- Type: {form.story_type}
- Genre: {form.genre}
- Target Audience: {form.age_group}
- Known Language: {known}
- Learning Language: {target}
- Visual Style: {form.image_style}

STRUCTURE REQUIREMENTS:
- Create exactly {REQUIRED_CHAPTERS} chapters
- Each chapter should have 2-3 sentences per language
- Include educational vocabulary for language learning
- Ensure age-appropriate content
- Maintain engaging storytelling throughout

CRITICAL: Respond with ONLY valid JSON in this exact format (no markdown, no extra text):

{{
  "bookTitle": {{
    "{l1}": "Engaging title in {known}",
    "{l2}": "Same title translated to {target}"
  }},
  "cover": {{
    "imagePrompt": "Professional {form.image_style} style book cover illustration depicting the main theme of '{form.story_subject}', suitable for {form.age_group}, vibrant and engaging",
    "imageText": "Cover description for accessibility"
  }},
  "chapters": [{chapters}
  ],
  "moralOfTheStory": {{
    "moral": {{
      "{l1}": "Positive, educational lesson or message in {known}",
      "{l2}": "Same positive, educational lesson or message in {target}"
    }}
  }}
}}

IMPORTANT: Return only the JSON object above, with no additional formatting or text."""

    if len(prompt) > MAX_PROMPT_LENGTH:
        raise GenerationError(
            "Generated prompt too long",
            400,
            "PROMPT_TOO_LONG",
            {"promptLength": len(prompt), "maxLength": MAX_PROMPT_LENGTH},
        )
    return prompt


def cover_image_prompt(story: dict, form: StoryForm) -> str:
    return (
        f"{story['cover']['imagePrompt']}. Professional {form.image_style} style, high quality, "
        f"vibrant colors, no text overlay, suitable for {form.age_group}."
    )


# ============================================================================
# Story parsing
# ============================================================================

def validate_story_structure(story: Any) -> dict:
    if not isinstance(story, dict):
        raise GenerationError("Invalid story format: not an object", code="INVALID_STORY_OBJECT")

    missing = [name for name in ("bookTitle", "cover", "chapters", "moralOfTheStory") if not story.get(name)]
    if missing:
        raise GenerationError(
            f"Story missing required fields: {', '.join(missing)}",
            code="MISSING_STORY_FIELDS",
            details={"missingFields": missing},
        )

    chapters = story["chapters"]
    if not isinstance(chapters, list):
        raise GenerationError("Invalid chapters format: must be array", code="INVALID_CHAPTERS_FORMAT")
    if len(chapters) != REQUIRED_CHAPTERS:
        raise GenerationError(
            f"Invalid chapter count: expected {REQUIRED_CHAPTERS}, got {len(chapters)}",
            code="INVALID_CHAPTER_COUNT",
            details={"expected": REQUIRED_CHAPTERS, "actual": len(chapters)},
        )

    cover = story["cover"]
    if not isinstance(cover, dict) or not isinstance(cover.get("imagePrompt"), str) or not cover["imagePrompt"]:
        raise GenerationError("Cover missing or invalid image prompt", code="MISSING_COVER_PROMPT")

    for number, chapter in enumerate(chapters, start=1):
        if not isinstance(chapter, dict):
            raise GenerationError(f"Chapter {number} is not an object", code="INVALID_CHAPTER_STRUCTURE")
        missing = [name for name in ("chapterTitle", "storyText", "imagePrompt") if not chapter.get(name)]
        if missing:
            raise GenerationError(
                f"Chapter {number} missing fields: {', '.join(missing)}",
                code="INVALID_CHAPTER_STRUCTURE",
                details={"chapterNumber": number, "missingFields": missing},
            )
        if not isinstance(chapter["chapterTitle"], dict) or not isinstance(chapter["storyText"], dict):
            raise GenerationError(
                f"Chapter {number} must have bilingual content structure",
                code="INVALID_BILINGUAL_STRUCTURE",
            )
        if len(chapter["chapterTitle"]) < 2 or len(chapter["storyText"]) < 2:
            raise GenerationError(
                f"Chapter {number} must have bilingual content",
                code="INSUFFICIENT_BILINGUAL_CONTENT",
            )

    return story


def parse_story(raw_text: str) -> dict:
    """Strip markdown fences and chatter around the JSON object, then validate it."""
    cleaned = re.sub(r"```json", "", raw_text, flags=re.IGNORECASE).replace("```", "")
    start, end = cleaned.find("{"), cleaned.rfind("}")
    try:
        if start == -1 or end < start:
            raise ValueError("Response doesn't contain valid JSON structure")
        story = json.loads(cleaned[start:end + 1])
        return validate_story_structure(story)
    except (ValueError, GenerationError) as e:
        logger.error(f"Story parsing/validation error: {e}; preview={raw_text[:200]!r}")
        raise GenerationError(
            "Model generated invalid story format. Please try again.",
            code="STORY_PARSE_ERROR",
            details={"parseError": str(e), "textLength": len(raw_text)},
        )


# ============================================================================
# Replicate client
# ============================================================================

class ReplicateClient:
    """Minimal Replicate predictions client (create, then poll until done)."""

    FINAL_STATES = ("succeeded", "failed", "canceled")

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = REPLICATE_BASE_URL,
        poll_interval: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if not self.api_key or len(self.api_key) < 10:
            raise GenerationError(
                "Replicate API key missing or invalid", 500, "CONFIGURATION_ERROR",
            )
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                    "User-Agent": "StoryGenerator/3.0",
                },
                timeout=httpx.Timeout(60.0, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _check_response(response: httpx.Response, code: str) -> dict:
        if response.status_code >= 400:
            retryable = response.status_code >= 500 or response.status_code == 429
            raise GenerationError(
                f"Replicate returned HTTP {response.status_code}",
                response.status_code,
                code,
                {"body": response.text[:200]},
                retryable=retryable,
            )
        try:
            return response.json()
        except ValueError:
            raise GenerationError("Invalid JSON from Replicate", 502, code, retryable=True)

    async def run(self, model: str, model_input: dict, code: str) -> Any:
        """Create a prediction and wait for its output."""
        from api.services.metrics import track_api_request

        client = await self._get_client()
        start_time = time.time()
        try:
            response = await client.post(
                f"/models/{model}/predictions",
                json={"input": model_input},
                headers={"Prefer": "wait"},
            )
            prediction = self._check_response(response, code)

            while prediction.get("status") not in self.FINAL_STATES:
                await self._sleep(self.poll_interval)
                response = await client.get(f"/predictions/{prediction['id']}")
                prediction = self._check_response(response, code)
        except httpx.TimeoutException as e:
            raise GenerationError(f"Replicate request timed out: {e}", 408, "TIMEOUT_ERROR", retryable=True)
        except httpx.RequestError as e:
            raise GenerationError(f"Replicate network error: {e}", 503, code, retryable=True)
        finally:
            track_api_request("replicate", model, time.time() - start_time)

        if prediction.get("status") != "succeeded":
            raise GenerationError(
                f"Prediction {prediction.get('status')}: {prediction.get('error')}",
                500,
                code,
                {"predictionId": prediction.get("id")},
                retryable=True,
            )
        return prediction.get("output")

    async def generate_story(self, prompt: str) -> str:
        output = await self.run(
            STORY_MODEL,
            {"prompt": prompt, "max_tokens": 8192, "temperature": 0.7, "top_p": 0.9, "top_k": 50},
            "CLAUDE_GENERATION_FAILED",
        )
        text = ("".join(str(part) for part in output) if isinstance(output, list) else str(output or "")).strip()
        if not text:
            raise GenerationError("Model returned empty response", code="EMPTY_CLAUDE_RESPONSE", retryable=True)
        if len(text) < MIN_STORY_LENGTH:
            raise GenerationError(
                "Model response too short",
                code="INSUFFICIENT_CONTENT",
                details={"responseLength": len(text)},
                retryable=True,
            )
        return text

    async def generate_image(self, prompt: str) -> str:
        if not prompt or not prompt.strip():
            raise GenerationError("Empty image prompt", 400, "EMPTY_IMAGE_PROMPT")
        output = await self.run(
            IMAGE_MODEL,
            {
                "prompt": prompt.strip(),
                "aspect_ratio": "1:1",
                "output_format": "webp",
                "output_quality": 90,
                "num_inference_steps": 4,
                "guidance_scale": 7.5,
            },
            "IMAGE_GENERATION_FAILED",
        )
        url = extract_image_url(output)
        if not url or not url.startswith("http"):
            raise GenerationError(
                "Invalid image URL returned",
                code="INVALID_IMAGE_URL_RETURNED",
                details={"received": str(url)[:100]},
                retryable=True,
            )
        return url

    async def fetch_image(self, url: str, max_bytes: int = MAX_IMAGE_BYTES) -> bytes:
        """Download a generated image, checking content type and size."""
        if not url or not url.startswith("http"):
            raise GenerationError("Invalid image URL provided", 400, "INVALID_IMAGE_URL")

        try:
            async with httpx.AsyncClient(timeout=60.0, transport=self._transport) as client:
                response = await client.get(
                    url,
                    headers={"User-Agent": "StoryGenerator/3.0", "Accept": "image/*,*/*;q=0.8"},
                )
        except httpx.TimeoutException as e:
            raise GenerationError(f"Image fetch timed out: {e}", 408, "TIMEOUT_ERROR", retryable=True)
        except httpx.RequestError as e:
            raise GenerationError(f"Image fetch failed: {e}", 500, "IMAGE_CONVERSION_FAILED", retryable=True)

        if response.status_code >= 400:
            raise GenerationError(
                f"Failed to fetch image: HTTP {response.status_code}",
                response.status_code if response.status_code >= 500 else 500,
                "IMAGE_FETCH_FAILED",
                retryable=response.status_code >= 500,
            )
        content_type = response.headers.get("content-type", "")
        if not content_type.startswith("image/"):
            raise GenerationError(
                "Invalid image content type", 400, "INVALID_CONTENT_TYPE", {"contentType": content_type},
            )
        data = response.content
        if not data:
            raise GenerationError("Empty image response", 500, "EMPTY_IMAGE_RESPONSE", retryable=True)
        if len(data) > max_bytes:
            raise GenerationError("Image too large", 400, "IMAGE_TOO_LARGE", {"size": len(data)})
        return data


def extract_image_url(output: Any) -> Optional[str]:
    """Replicate image models return a URL, a list of URLs, or objects holding one."""
    if isinstance(output, list):
        output = output[0] if output else None
    if isinstance(output, str):
        return output
    if isinstance(output, dict):
        for key in ("url", "image_url", "image", "output"):
            if isinstance(output.get(key), str):
                return output[key]
    return None
