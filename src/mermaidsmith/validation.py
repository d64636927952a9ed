"""Diagram validators: decide whether Mermaid source will render."""

from __future__ import annotations

import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Protocol

from mermaidsmith import config
from mermaidsmith.diagram_types import DECLARATION_KEYWORDS
from mermaidsmith.diagram_utils import first_line

logger = logging.getLogger(__name__)


class DiagramValidator(Protocol):
    def can_render(self, code: str) -> bool: ...


class HeaderValidator:
    """Accepts code whose first line starts with a Mermaid declaration keyword.

    Cheap, offline check; does not parse the body.
    """

    def can_render(self, code: str) -> bool:
        if not code or not code.strip():
            return False
        head = first_line(code)
        return any(head == kw or head.startswith(kw + " ") or head.startswith(kw + "\t")
                   for kw in DECLARATION_KEYWORDS)


class MermaidCliValidator:
    """Renders the code with mermaid-cli (``mmdc``); a successful render is valid."""

    def __init__(self, mmdc_path: str | None = None, timeout: float | None = None) -> None:
        self._mmdc = mmdc_path or config.MMDC_PATH
        self._timeout = timeout or config.MMDC_TIMEOUT_SECS

    def can_render(self, code: str) -> bool:
        if not code or not code.strip():
            return False
        with tempfile.TemporaryDirectory(prefix="mermaidsmith-") as tmp:
            input_file = Path(tmp) / "input.mmd"
            output_file = Path(tmp) / "output.svg"
            input_file.write_text(code, encoding="utf-8")
            try:
                subprocess.run(
                    [self._mmdc, "-i", str(input_file), "-o", str(output_file), "--quiet"],
                    capture_output=True,
                    text=True,
                    timeout=self._timeout,
                    check=True,
                )
            except subprocess.CalledProcessError as e:
                logger.info("Mermaid validation failed: %s", (e.stderr or "").strip()[:500])
                return False
            except subprocess.TimeoutExpired:
                logger.warning("Mermaid validation timed out after %.0fs", self._timeout)
                return False
            except FileNotFoundError:
                logger.error("mmdc not found at %r; treating diagram as unrenderable", self._mmdc)
                return False
            return output_file.exists()


def create_validator(kind: str | None = None) -> DiagramValidator:
    kind = kind or config.VALIDATOR
    if kind == "header":
        return HeaderValidator()
    if kind == "mmdc":
        return MermaidCliValidator()
    raise ValueError(f"Unknown validator {kind!r}. Available: mmdc, header")
