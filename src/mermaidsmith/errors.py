"""Error taxonomy shared by the ledger, pipeline, store, and API."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ThrottleSignal:
    """Provider-supplied throttle hint, in seconds from the time it was received."""

    retry_after: float | None = None
    reset_tokens_after: float | None = None

    @property
    def delay(self) -> float | None:
        """Seconds until the provider budget resets, preferring the token reset."""
        if self.reset_tokens_after is not None:
            return self.reset_tokens_after
        return self.retry_after


class DiagramError(Exception):
    """Base class for errors surfaced to callers. ``code`` tags the kind."""

    code = "internal_error"


class InvalidInputError(DiagramError):
    """The prompt (or caller identity) cannot be used for generation."""

    code = "invalid_input"


class GenerationExhaustedError(DiagramError):
    """No generation attempt produced a renderable diagram."""

    code = "generation_exhausted"

    def __init__(self, attempts: int, last_error: str | None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Failed to generate a valid diagram after {attempts} attempts. "
            f"Last error: {last_error or 'Unknown error'}"
        )


class ProviderError(DiagramError):
    """The model provider failed for a reason other than content validity."""

    code = "provider_error"

    def __init__(self, message: str, throttle: ThrottleSignal | None = None) -> None:
        self.throttle = throttle
        super().__init__(message)


class InsufficientCreditsError(DiagramError):
    code = "insufficient_credits"


class AnonymousQuotaExceededError(DiagramError):
    code = "anonymous_quota_exceeded"


class NotFoundError(DiagramError):
    """Missing row, or a row owned by someone else."""

    code = "not_found"
