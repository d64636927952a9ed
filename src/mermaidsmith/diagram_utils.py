"""Deterministic cleanup of raw model output into Mermaid source."""

from __future__ import annotations

import re

from mermaidsmith.diagram_types import DECLARATION_KEYWORDS

_FENCE_RE = re.compile(r"```[ \t]*(?:mermaid)?[ \t]*\n?|\n?```")
_DUPLICATE_DECL_RE = re.compile(
    r"\A(\s*)(" + "|".join(re.escape(k) for k in sorted(DECLARATION_KEYWORDS, key=len, reverse=True)) + r")\s+\2(?=\s|$)"
)
_BLANK_LINE_RE = re.compile(r"^\s*[\r\n]", re.MULTILINE)

_STYLE_LINE_RE = re.compile(r"^[ \t]*(?:style|classDef|linkStyle)[ \t]+[^\n]*$", re.MULTILINE)
_CLASS_LINE_RE = re.compile(r"^[ \t]*class[ \t]+[^\n]*$", re.MULTILINE)
_EMPTY_RUN_RE = re.compile(r"\n\s*\n")


def format_diagram_code(code: str) -> str:
    """Strip code fences, collapse a doubled declaration, and drop blank lines."""
    formatted = _FENCE_RE.sub("", code).strip()
    formatted = _DUPLICATE_DECL_RE.sub(r"\1\2", formatted)
    return _BLANK_LINE_RE.sub("", formatted).strip()


def remove_styles(code: str) -> str:
    """Remove cosmetic styling lines (style, class, classDef, linkStyle).

    In a classDiagram ``class Foo`` declares a class, so those lines stay.
    """
    cleaned = _STYLE_LINE_RE.sub("", code)
    if not cleaned.lstrip().startswith("classDiagram"):
        cleaned = _CLASS_LINE_RE.sub("", cleaned)
    return _EMPTY_RUN_RE.sub("\n", cleaned).strip()


def clean_diagram_code(raw: str) -> str:
    return remove_styles(format_diagram_code(raw))


def first_line(code: str) -> str:
    stripped = code.strip()
    return stripped.split("\n", 1)[0].strip() if stripped else ""
