# app/services/openai_service.py
"""
OpenAI service for structured intelligence calls.

Every pipeline agent funnels through generate_structured(): one chat
completion in JSON mode, retried on transient failures, and validated
against the pydantic model the caller expects back.
"""

import asyncio
from typing import Any, TypeVar

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

OutputModel = TypeVar("OutputModel", bound=BaseModel)


class OpenAIServiceError(Exception):
    """Base exception for OpenAI service errors."""

    def __init__(
        self,
        message: str,
        api_error: str | None = None,
        operation: str | None = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.api_error = api_error
        self.operation = operation
        self.recoverable = recoverable


class OpenAIService:
    """
    Thin async wrapper around the chat completions API.

    Retry policy: rate limits back off exponentially (max 30s), timeouts and
    5xx errors are retried, 4xx errors fail immediately.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        max_retries: int | None = None,
    ):
        self.model = model or settings.OPENAI_MODEL
        self.max_retries = max_retries or settings.OPENAI_MAX_RETRIES
        self.client: AsyncOpenAI | None = None
        self._initialize_client(api_key or settings.OPENAI_API_KEY)

    def _initialize_client(self, api_key: str | None) -> None:
        """Initialize OpenAI async client with configuration."""
        if not api_key:
            logger.warning("OPENAI_API_KEY not configured, AI calls will fail")
            return

        try:
            self.client = AsyncOpenAI(api_key=api_key, timeout=settings.OPENAI_TIMEOUT_SECONDS)
            logger.info(
                "OpenAI client initialized",
                model=self.model,
                timeout=settings.OPENAI_TIMEOUT_SECONDS,
            )
        except Exception as e:
            logger.error("Failed to initialize OpenAI client", error=str(e))
            raise OpenAIServiceError(f"OpenAI client initialization failed: {e}") from e

    async def generate_structured(
        self,
        system_message: str,
        user_message: str,
        output_model: type[OutputModel],
        *,
        operation: str,
    ) -> OutputModel:
        """
        Run one JSON-mode completion and validate it into ``output_model``.

        Raises:
            OpenAIServiceError: client missing, retries exhausted, or the
                response did not match the expected schema
        """
        if not self.client:
            raise OpenAIServiceError(
                "OpenAI client not initialized", operation=operation, recoverable=False
            )

        raw_result = await self._call_openai_with_retry(system_message, user_message, operation)

        try:
            return output_model.model_validate_json(raw_result)
        except ValidationError as e:
            logger.error(
                "OpenAI response did not match schema",
                operation=operation,
                error=str(e),
                raw_result=raw_result[:200],
            )
            raise OpenAIServiceError(
                f"Invalid {output_model.__name__} returned by OpenAI",
                api_error=str(e),
                operation=operation,
            ) from e

    async def _call_openai_with_retry(
        self, system_message: str, user_message: str, operation: str
    ) -> str:
        """Call OpenAI API with retry logic for transient failures."""

        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                logger.debug(
                    "Calling OpenAI API",
                    operation=operation,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    model=self.model,
                )

                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system_message},
                        {"role": "user", "content": user_message},
                    ],
                    max_tokens=settings.OPENAI_MAX_TOKENS,
                    temperature=settings.OPENAI_TEMPERATURE,
                    response_format={"type": "json_object"},
                )

                if not response.choices or not response.choices[0].message.content:
                    raise OpenAIServiceError("Empty response from OpenAI API", operation=operation)

                result = response.choices[0].message.content.strip()

                logger.debug(
                    "OpenAI API call successful",
                    operation=operation,
                    attempt=attempt + 1,
                    usage_tokens=response.usage.total_tokens if response.usage else 0,
                )
                return result

            except openai.RateLimitError as e:
                last_error = e
                wait_time = min(2**attempt, 30)  # Exponential backoff, max 30s

                logger.warning(
                    "OpenAI rate limit hit, retrying",
                    operation=operation,
                    attempt=attempt + 1,
                    wait_time=wait_time,
                    error=str(e),
                )

                if attempt < self.max_retries - 1:
                    await asyncio.sleep(wait_time)

            except openai.APITimeoutError as e:
                last_error = e
                logger.warning(
                    "OpenAI API timeout, retrying",
                    operation=operation,
                    attempt=attempt + 1,
                    error=str(e),
                )

            except openai.APIStatusError as e:
                last_error = e
                # Don't retry on client errors (4xx)
                if 400 <= e.status_code < 500:
                    logger.error(
                        "OpenAI client error (not retrying)", operation=operation, error=str(e)
                    )
                    raise OpenAIServiceError(
                        f"OpenAI rejected {operation} request",
                        api_error=str(e),
                        operation=operation,
                        recoverable=False,
                    ) from e

                logger.warning(
                    "OpenAI API error, retrying", operation=operation, attempt=attempt + 1, error=str(e)
                )

            except (openai.APIError, OpenAIServiceError) as e:
                last_error = e
                logger.warning(
                    "OpenAI call failed, retrying",
                    operation=operation,
                    attempt=attempt + 1,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        logger.error(
            "OpenAI API call failed after all retries",
            operation=operation,
            max_retries=self.max_retries,
            final_error=str(last_error),
        )

        raise OpenAIServiceError(
            f"OpenAI API failed after {self.max_retries} attempts",
            api_error=str(last_error),
            operation=operation,
            recoverable=True,
        ) from last_error

    def health_check(self) -> dict[str, Any]:
        """Configuration-level health; does not spend tokens."""
        return {
            "healthy": self.client is not None,
            "service": "openai_service",
            "model": self.model,
            "api_key_configured": self.client is not None,
            "max_retries": self.max_retries,
        }
