"""OpenAI chat-completion adapter behind the ``ContentGenerator`` interface."""

from __future__ import annotations

import asyncio

from openai import AsyncOpenAI, OpenAIError

from config.settings import get_settings
from src.core.exceptions import GenerationError
from src.core.interfaces import ContentGenerator
from src.core.logging import get_logger
from src.core.types import GenerationResult

log = get_logger(__name__)

ALT_TEXT_SYSTEM_PROMPT = (
    "You write concise, descriptive alternative text for images on websites. "
    "Reply with the alt text only, at most 125 characters, without quotes."
)


class OpenAIGenerator(ContentGenerator):
    """Single chat completion with a hard timeout.

    Failures are raised, never retried here: the caller has not been
    charged yet and the plugin retries on its own.
    """

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model_name: str | None = None,
        timeout_seconds: int | None = None,
        system_prompt: str = ALT_TEXT_SYSTEM_PROMPT,
        max_tokens: int = 300,
    ) -> None:
        settings = get_settings()
        self._client = client or AsyncOpenAI(
            api_key=settings.openai_api_key.get_secret_value(),
        )
        self._model_name = model_name or settings.openai_model
        self._timeout = timeout_seconds or settings.generation_timeout_seconds
        self._system_prompt = system_prompt
        self._max_tokens = max_tokens

    async def generate(self, prompt: str) -> GenerationResult:
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self._model_name,
                    messages=[
                        {"role": "system", "content": self._system_prompt},
                        {"role": "user", "content": prompt},
                    ],
                    max_tokens=self._max_tokens,
                    temperature=0.2,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            log.warning("generation_timeout", model=self._model_name, timeout=self._timeout)
            raise GenerationError(
                f"Generation timed out after {self._timeout}s",
                context={"model": self._model_name},
            ) from exc
        except OpenAIError as exc:
            log.warning("generation_failed", model=self._model_name, error=str(exc))
            raise GenerationError(str(exc), context={"model": self._model_name}) from exc

        content = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not content:
            raise GenerationError("Empty response from model", context={"model": self._model_name})

        usage = response.usage
        result = GenerationResult(
            text=content,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )
        log.info(
            "generation_completed",
            model=self._model_name,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )
        return result
