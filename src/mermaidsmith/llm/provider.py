"""LLM provider interface and Gemini implementation."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Protocol

from google import genai
from google.genai import errors, types

from mermaidsmith import config
from mermaidsmith.errors import ThrottleSignal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Completion:
    """Tagged result of one provider call: either ``text`` or ``error``."""

    text: str | None = None
    error: str | None = None
    throttle: ThrottleSignal | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, text: str) -> Completion:
        return cls(text=text)

    @classmethod
    def failure(cls, error: str, throttle: ThrottleSignal | None = None) -> Completion:
        return cls(error=error, throttle=throttle)


class GenerationProvider(Protocol):
    """Protocol for text generation providers."""

    def generate(self, prompt: str, system: str | None = None) -> Completion:
        """Generate text from a prompt. Failures are returned, not raised."""
        ...


def _header_seconds(headers: Any, name: str) -> float | None:
    if not headers:
        return None
    value = headers.get(name)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _retry_delay_from_details(details: Any) -> float | None:
    """Pull ``retryDelay`` (e.g. ``"17s"``) out of a google.rpc RetryInfo detail."""
    if not isinstance(details, dict):
        return None
    for item in details.get("error", {}).get("details", []) or []:
        if isinstance(item, dict) and "retryDelay" in item:
            m = re.match(r"([\d.]+)s", str(item["retryDelay"]))
            if m:
                return float(m.group(1))
    return None


def throttle_from_error(err: errors.APIError) -> ThrottleSignal | None:
    """Build a ThrottleSignal from a rate-limit API error, or None for other errors."""
    if err.code != 429 and err.status != "RESOURCE_EXHAUSTED":
        return None
    headers = getattr(getattr(err, "response", None), "headers", None)
    retry_after = _header_seconds(headers, "retry-after")
    if retry_after is None:
        retry_after = _retry_delay_from_details(err.details)
    return ThrottleSignal(
        retry_after=retry_after,
        reset_tokens_after=_header_seconds(headers, "x-ratelimit-reset-tokens"),
    )


class GeminiProvider:
    """Gemini implementation of the generation provider."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
    ) -> None:
        self._client = genai.Client(api_key=api_key or config.GEMINI_API_KEY)
        self._model = model or config.GEMINI_MODEL

    def generate(self, prompt: str, system: str | None = None) -> Completion:
        """Generate text using Gemini.

        Args:
            prompt: The user prompt.
            system: Optional system instruction.

        Returns:
            A Completion holding the response text, or the error (with a
            throttle signal when the provider reported rate limiting).
        """
        logger.debug("Generate via %s (%d char prompt)", self._model, len(prompt))
        t0 = time.perf_counter()
        gen_config = None
        if system:
            gen_config = types.GenerateContentConfig(
                system_instruction=system,
            )
        try:
            response = self._client.models.generate_content(
                model=self._model,
                contents=prompt,
                config=gen_config,
            )
        except errors.APIError as e:
            throttle = throttle_from_error(e)
            if throttle is not None:
                logger.warning("Gemini rate limited (%s): %s", throttle, e.message)
            else:
                logger.error("Gemini error %s: %s", e.code, e.message)
            return Completion.failure(f"{e.code} {e.status}: {e.message}", throttle=throttle)

        text = response.text or ""
        logger.debug("Generate complete: %d chars, %.0fms", len(text), (time.perf_counter() - t0) * 1000)
        if not text.strip():
            return Completion.failure("Invalid or empty response from AI model")
        return Completion.success(text)
