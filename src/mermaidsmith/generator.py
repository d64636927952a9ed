"""Model-facing generation: category determination, retry loop, titles."""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mermaidsmith import config
from mermaidsmith.diagram_types import DEFAULT_TYPE, is_known_type
from mermaidsmith.diagram_utils import clean_diagram_code
from mermaidsmith.errors import GenerationExhaustedError, InvalidInputError, ProviderError
from mermaidsmith.llm.provider import Completion, GenerationProvider
from mermaidsmith.llm.scheduler import RateLimitedScheduler, backoff_delay
from mermaidsmith.prompts import (
    GENERATION_SYSTEM_PROMPT,
    build_category_prompt,
    build_generation_prompt,
    build_title_prompt,
    build_validation_prompt,
    strategy_for_attempt,
)
from mermaidsmith.validation import DiagramValidator

logger = logging.getLogger(__name__)

DEFAULT_INVALID_MESSAGE = (
    "The provided text doesn't contain enough information for a meaningful diagram"
)
DEFAULT_TITLE = "Untitled Diagram"
MAX_TITLE_CHARS = 50

_JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


# ── Response schemas ──


class ValidationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_valid: bool = Field(alias="isValid")
    understanding: str | None = None
    error: str | None = None


class CategoryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    reasoning: str | None = None
    enhanced_text: str | None = Field(default=None, alias="enhancedText")


def extract_json(text: str) -> str | None:
    """Return the JSON object embedded in a model reply, fenced or bare."""
    m = _JSON_BLOCK_RE.search(text)
    if m:
        return m.group(1)
    m = _JSON_OBJECT_RE.search(text)
    return m.group(0) if m else None


def parse_response(model: type[BaseModel], text: str | None) -> BaseModel | None:
    """Validate a model reply against ``model``; None when it does not match."""
    if not text:
        return None
    raw = extract_json(text)
    if raw is None:
        return None
    try:
        return model.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning("Unparseable %s: %s", model.__name__, e)
        return None


# ── Results ──


@dataclass
class Determination:
    is_valid: bool
    diagram_type: str = DEFAULT_TYPE
    enhanced_text: str | None = None
    understanding: str | None = None
    error: str | None = None


@dataclass
class GeneratedDiagram:
    code: str
    diagram_type: str
    attempts: int
    strategy: str
    enhanced_text: str | None = None
    title: str | None = None


class DiagramGenerator:
    """Drives the model through determination, generation, and titling.

    Every model call goes through the shared scheduler.
    """

    def __init__(
        self,
        provider: GenerationProvider,
        scheduler: RateLimitedScheduler,
        validator: DiagramValidator,
        max_attempts: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._provider = provider
        self._scheduler = scheduler
        self._validator = validator
        self._max_attempts = max_attempts or config.MAX_ATTEMPTS
        self._sleep = sleep

    def _call(self, prompt: str, estimated_tokens: int, system: str | None = None) -> Completion:
        future = self._scheduler.submit(
            lambda: self._provider.generate(prompt, system=system), estimated_tokens,
        )
        try:
            return future.result()
        except Exception as e:
            return Completion.failure(f"{type(e).__name__}: {e}")

    # ── Determination ──

    def determine(self, text: str) -> Determination:
        """Check the prompt is diagrammable, then pick a category.

        Raises:
            ProviderError: If the validity call itself failed.
        """
        t0 = time.perf_counter()
        completion = self._call(build_validation_prompt(text), config.VALIDATION_TOKENS)
        if not completion.ok:
            raise ProviderError(completion.error or "Validation call failed", completion.throttle)

        validation = parse_response(ValidationResponse, completion.text)
        if validation is None or not validation.is_valid:
            error = validation.error if validation is not None and validation.error else DEFAULT_INVALID_MESSAGE
            logger.info("Prompt rejected as not diagrammable: %s", error)
            return Determination(is_valid=False, error=error)

        understanding = validation.understanding or ""
        completion = self._call(build_category_prompt(text, understanding), config.CATEGORY_TOKENS)
        category = parse_response(CategoryResponse, completion.text) if completion.ok else None
        if not completion.ok:
            logger.warning("Category call failed (%s); defaulting to %s", completion.error, DEFAULT_TYPE)

        if category is not None and is_known_type(category.type):
            result = Determination(
                is_valid=True,
                diagram_type=category.type,
                enhanced_text=category.enhanced_text or understanding or None,
                understanding=understanding,
            )
        else:
            if category is not None:
                logger.info("Unknown category %r; defaulting to %s", category.type, DEFAULT_TYPE)
            result = Determination(
                is_valid=True,
                diagram_type=DEFAULT_TYPE,
                enhanced_text=understanding or None,
                understanding=understanding,
            )
        logger.info("Determined %s (%.2fs)", result.diagram_type, time.perf_counter() - t0)
        return result

    # ── Generation ──

    def generate_code(
        self,
        text: str,
        diagram_type: str,
        is_complex: bool = False,
        history: list[dict] | None = None,
        change_description: str | None = None,
    ) -> GeneratedDiagram:
        """Run the attempt loop until the validator accepts a diagram.

        Raises:
            GenerationExhaustedError: No attempt produced renderable code.
        """
        last_error: str | None = None
        for attempt in range(self._max_attempts):
            strategy = strategy_for_attempt(attempt)
            prompt = build_generation_prompt(
                text, diagram_type, strategy,
                is_complex=is_complex,
                previous_error=last_error,
                history=history,
                change_description=change_description,
            )
            logger.info(
                "Attempt %d/%d (%s strategy, %s)",
                attempt + 1, self._max_attempts, strategy.name, diagram_type,
            )
            completion = self._call(prompt, config.GENERATION_TOKENS, system=GENERATION_SYSTEM_PROMPT)

            if not completion.ok:
                last_error = completion.error
                logger.warning("Attempt %d failed: %s", attempt + 1, last_error)
                if completion.throttle is not None and attempt + 1 < self._max_attempts:
                    delay = backoff_delay(attempt, completion.throttle)
                    logger.info("Rate limited; retrying in %.1fs", delay)
                    self._sleep(delay)
                continue

            code = clean_diagram_code(completion.text or "")
            if not code:
                last_error = "Invalid or empty response from AI model"
                logger.warning("Attempt %d failed: %s", attempt + 1, last_error)
                continue

            if not self._validator.can_render(code):
                last_error = "Generated diagram failed validation"
                logger.warning("Attempt %d failed: %s", attempt + 1, last_error)
                continue

            logger.info("Attempt %d produced a valid diagram (%d chars)", attempt + 1, len(code))
            return GeneratedDiagram(
                code=code,
                diagram_type=diagram_type,
                attempts=attempt + 1,
                strategy=strategy.name,
            )

        raise GenerationExhaustedError(self._max_attempts, last_error)

    def generate_title(self, text: str, diagram_type: str) -> str:
        """Short title for a diagram. Never raises."""
        completion = self._call(build_title_prompt(text, diagram_type), config.TITLE_TOKENS)
        if not completion.ok or not completion.text:
            logger.info("Title generation failed: %s", completion.error)
            return DEFAULT_TITLE
        title = completion.text.strip().split("\n", 1)[0].strip().strip("\"'`*# ").strip()
        if not title:
            return DEFAULT_TITLE
        return title[:MAX_TITLE_CHARS].rstrip()

    # ── Full run ──

    def generate(
        self,
        prompt: str,
        is_complex: bool = False,
        history: list[dict] | None = None,
        change_description: str | None = None,
        diagram_type: str | None = None,
        with_title: bool = True,
    ) -> GeneratedDiagram:
        """Determine (unless ``diagram_type`` is given), generate, and title.

        Raises:
            InvalidInputError: The prompt was judged not diagrammable.
            ProviderError: The determination call failed.
            GenerationExhaustedError: No attempt validated.
        """
        enhanced_text = None
        if diagram_type is None:
            determination = self.determine(prompt)
            if not determination.is_valid:
                raise InvalidInputError(determination.error or DEFAULT_INVALID_MESSAGE)
            diagram_type = determination.diagram_type
            enhanced_text = determination.enhanced_text

        result = self.generate_code(
            enhanced_text or prompt,
            diagram_type,
            is_complex=is_complex,
            history=history,
            change_description=change_description,
        )
        result.enhanced_text = enhanced_text
        if with_title:
            result.title = self.generate_title(prompt, diagram_type)
        return result
