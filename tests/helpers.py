"""Shared test helpers: scripted providers, a manual clock, canned model replies."""

from __future__ import annotations

import json
import threading

from mermaidsmith.llm.provider import Completion

VALID_FLOWCHART = "flowchart TD\n    A[Start] --> B[End]"


def validity_reply(is_valid: bool = True, understanding: str | None = "A simple process",
                   error: str | None = None) -> str:
    body = {"isValid": is_valid, "understanding": understanding, "error": error}
    return f"```json\n{json.dumps(body)}\n```"


def category_reply(diagram_type: str = "flowchart", enhanced_text: str | None = None) -> str:
    body = {"type": diagram_type, "reasoning": "fits", "enhancedText": enhanced_text}
    return f"```json\n{json.dumps(body)}\n```"


def classify(prompt: str, system: str | None) -> str:
    """Which pipeline step a provider call belongs to, from its prompt."""
    if system is not None:
        return "generate"
    if "determine whether a diagram can be generated" in prompt:
        return "validate"
    if "most suitable Mermaid diagram type" in prompt:
        return "category"
    if "descriptive title" in prompt:
        return "title"
    raise AssertionError(f"unrecognized prompt: {prompt[:80]!r}")


class RoutedProvider:
    """Provider that answers each step from a per-step script.

    Each script entry is a reply string or a Completion. The last entry of a
    script repeats once the script runs out.
    """

    def __init__(self, validate=None, category=None, generate=None, title=None) -> None:
        self.scripts = {
            "validate": list(validate or [validity_reply()]),
            "category": list(category or [category_reply()]),
            "generate": list(generate or [VALID_FLOWCHART]),
            "title": list(title or ["Simple Process"]),
        }
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def generate(self, prompt: str, system: str | None = None) -> Completion:
        kind = classify(prompt, system)
        with self._lock:
            self.calls.append((kind, prompt))
            script = self.scripts[kind]
            reply = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(reply, Completion):
            return reply
        return Completion.success(reply)

    def count(self, kind: str) -> int:
        return sum(1 for k, _ in self.calls if k == kind)

    def prompts(self, kind: str) -> list[str]:
        return [p for k, p in self.calls if k == kind]


class ManualClock:
    """Monotonic clock that only moves when ``sleep`` is called."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class AcceptAll:
    def can_render(self, code: str) -> bool:
        return True


class RejectAll:
    def can_render(self, code: str) -> bool:
        return False
