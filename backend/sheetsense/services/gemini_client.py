"""
Google Gemini client shared by roll-number detection and AI correction.
"""

import asyncio
import logging
from typing import Optional

import google.generativeai as genai

from ..concurrency import llm_semaphore
from ..config.settings import settings
from ..errors import ExternalServiceError

logger = logging.getLogger(__name__)


class GeminiClient:
    """Single-turn text/vision calls against a Gemini model."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.model_name = model_name or settings.GEMINI_MODEL
        self.timeout = timeout or settings.LLM_TIMEOUT
        genai.configure(api_key=api_key or settings.LLM_API_KEY)

    async def generate(
        self,
        prompt: str,
        data: Optional[bytes] = None,
        mime_type: str = "image/jpeg",
        max_output_tokens: int = 1000,
    ) -> str:
        """
        Send a prompt with an optional inline image/PDF and return the response text.

        Raises:
            ExternalServiceError: On timeout, API failure or empty response
        """
        content = [{"text": prompt}]
        if data is not None:
            content.append({"mime_type": mime_type, "data": data})

        model = genai.GenerativeModel(self.model_name)

        try:
            async with llm_semaphore:
                response = await asyncio.wait_for(
                    asyncio.to_thread(
                        lambda: model.generate_content(
                            content,
                            generation_config=genai.types.GenerationConfig(
                                temperature=settings.LLM_TEMPERATURE,
                                max_output_tokens=max_output_tokens,
                            ),
                        )
                    ),
                    timeout=self.timeout,
                )
        except asyncio.TimeoutError:
            raise ExternalServiceError(f"Gemini call timed out after {self.timeout}s")
        except Exception as e:
            raise ExternalServiceError(f"Gemini call failed: {e}") from e

        try:
            text = response.text
        except ValueError as e:
            # Raised by the SDK when the candidate was blocked or empty
            raise ExternalServiceError(f"Gemini returned no text: {e}") from e

        if not text or not text.strip():
            raise ExternalServiceError("Gemini returned an empty response")

        return text.strip()
