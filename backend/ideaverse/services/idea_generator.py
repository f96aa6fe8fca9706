"""Idea generator client - the opaque (prompt) -> GameIdea call"""
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from ideaverse.core.config import settings
from ideaverse.core.errors import IdeaGenerationError
from ideaverse.schemas.generations import DEFAULT_PROMPT, GameIdea

logger = logging.getLogger(__name__)


class HttpIdeaGenerator:
    """Calls the generation service over HTTP.

    The service answers ``{"idea": {...}, "mock": bool}``. A mock answer is a
    canned fallback from a failed model call and is treated as a failure, so
    the user is not charged for it.
    """

    def __init__(self, url: Optional[str] = None, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.url = url or settings.GENERATION_SERVICE_URL
        self.api_key = api_key if api_key is not None else settings.GENERATION_SERVICE_API_KEY
        self.timeout = timeout or settings.GENERATION_TIMEOUT_SECONDS

    def __call__(self, prompt: Optional[str]) -> GameIdea:
        return self.generate(prompt)

    def generate(self, prompt: Optional[str]) -> GameIdea:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.url, json={"prompt": prompt or DEFAULT_PROMPT}, headers=headers)
                response.raise_for_status()
                body = response.json()
        except httpx.TimeoutException as e:
            logger.error(f"Idea generation timed out after {self.timeout}s")
            raise IdeaGenerationError("Idea generation timed out") from e
        except httpx.HTTPStatusError as e:
            logger.error(f"Idea generation service returned {e.response.status_code}")
            raise IdeaGenerationError("Idea generation service failed") from e
        except (httpx.RequestError, ValueError) as e:
            logger.error(f"Idea generation request failed: {e}")
            raise IdeaGenerationError("Idea generation service unavailable") from e

        if not isinstance(body, dict) or body.get("mock"):
            logger.warning("Idea generation service returned a fallback idea")
            raise IdeaGenerationError("Idea generation failed")

        try:
            return GameIdea.model_validate(body.get("idea", body))
        except ValidationError as e:
            logger.error(f"Idea generation service returned an invalid idea: {e.error_count()} errors")
            raise IdeaGenerationError("Idea generation returned an invalid idea") from e
