"""Caller-facing operations: charge, generate, and record diagrams."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from mermaidsmith import config
from mermaidsmith.credits import CreditLedger
from mermaidsmith.errors import InvalidInputError, NotFoundError
from mermaidsmith.generator import DEFAULT_TITLE, DiagramGenerator
from mermaidsmith.llm.provider import GeminiProvider
from mermaidsmith.llm.scheduler import RateLimitedScheduler
from mermaidsmith.storage.sqlite_store import Diagram, DiagramThread, Owner, SqliteStore
from mermaidsmith.validation import create_validator

logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    diagram: Diagram
    thread: DiagramThread | None
    attempts: int
    enhanced_text: str | None = None
    credits_remaining: int | None = None


class GenerationPipeline:
    """Gates on the ledger, generates through the model, writes the revision graph.

    Every operation that touches an existing diagram or thread checks
    ownership first and reports a foreign row as not found.
    """

    def __init__(
        self,
        store: SqliteStore,
        ledger: CreditLedger,
        generator: DiagramGenerator,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._generator = generator

    # ── Generation ──

    def generate_root(self, prompt: str, is_complex: bool, owner: Owner) -> GenerationResult:
        """Start a new thread from a prompt.

        Credits are charged before the prompt is checked, so a prompt that is
        rejected as not diagrammable still costs its credits.
        """
        prompt = prompt.strip()
        if not prompt:
            raise InvalidInputError("Please provide text to generate a diagram")

        logger.info("Root generation for %s: %r", _describe(owner), prompt[:120])
        t0 = time.perf_counter()
        remaining = self._ledger.gate(owner, is_complex)

        result = self._generator.generate(prompt, is_complex=is_complex)

        with self._store.transaction():
            thread = self._store.create_thread(result.title or DEFAULT_TITLE, owner)
            diagram = self._store.create_diagram(
                prompt=prompt,
                code=result.code,
                diagram_type=result.diagram_type,
                is_complex=is_complex,
                owner=owner,
                thread_id=thread.id,
            )
            self._store.set_thread_root(thread.id, diagram.id)
        thread.root_diagram_id = diagram.id

        logger.info(
            "Created %s diagram %s in thread %s after %d attempt(s) (%.2fs)",
            diagram.diagram_type, diagram.id, thread.id, result.attempts,
            time.perf_counter() - t0,
        )
        return GenerationResult(
            diagram=diagram,
            thread=thread,
            attempts=result.attempts,
            enhanced_text=result.enhanced_text,
            credits_remaining=remaining,
        )

    def generate_follow_up(
        self,
        parent_diagram_id: str,
        prompt: str,
        is_complex: bool,
        change_description: str | None,
        owner: Owner,
    ) -> GenerationResult:
        """Revise an existing diagram, keeping the full ancestor chain as context.

        The revision inherits the parent's category and thread.
        """
        prompt = prompt.strip()
        if not prompt:
            raise InvalidInputError("Please describe the change to make")

        parent = self._store.get_diagram(parent_diagram_id, owner=owner)
        if parent is None:
            raise NotFoundError("Diagram not found or unauthorized")
        thread = None
        if parent.thread_id is not None:
            thread = self._store.get_thread(parent.thread_id, owner=owner)
            if thread is None:
                raise NotFoundError("Thread not found or unauthorized")

        logger.info("Follow-up on %s for %s: %r", parent.id, _describe(owner), prompt[:120])
        t0 = time.perf_counter()
        remaining = self._ledger.gate(owner, is_complex)

        history = self._store.get_ancestor_chain(parent.id)
        result = self._generator.generate(
            prompt,
            is_complex=is_complex,
            history=history,
            change_description=change_description,
            diagram_type=parent.diagram_type,
            with_title=False,
        )

        with self._store.transaction():
            diagram = self._store.create_diagram(
                prompt=prompt,
                code=result.code,
                diagram_type=result.diagram_type,
                is_complex=is_complex,
                owner=owner,
                parent_diagram_id=parent.id,
                thread_id=parent.thread_id,
            )
            if parent.thread_id is not None:
                self._store.touch_thread(parent.thread_id)

        logger.info(
            "Created revision %s of %s (%d ancestors, %d attempt(s), %.2fs)",
            diagram.id, parent.id, len(history), result.attempts, time.perf_counter() - t0,
        )
        return GenerationResult(
            diagram=diagram,
            thread=thread,
            attempts=result.attempts,
            credits_remaining=remaining,
        )

    # ── Diagrams ──

    def get_diagram(self, diagram_id: str, owner: Owner) -> Diagram:
        diagram = self._store.get_diagram(diagram_id, owner=owner)
        if diagram is None:
            raise NotFoundError("Diagram not found or unauthorized")
        return diagram

    def list_diagrams(self, owner: Owner, limit: int | None = None) -> list[Diagram]:
        return self._store.list_diagrams(owner, limit=limit)

    def get_lineage(self, diagram_id: str, owner: Owner) -> list[dict]:
        """Root-to-diagram prompt/code pairs for a diagram the owner can see."""
        self.get_diagram(diagram_id, owner)
        return self._store.get_ancestor_chain(diagram_id)

    def update_diagram(
        self, diagram_id: str, owner: Owner, code: str | None = None, prompt: str | None = None,
    ) -> Diagram:
        """Overwrite a diagram's code and/or prompt in place."""
        self.get_diagram(diagram_id, owner)
        if code is not None and not code.strip():
            raise InvalidInputError("Diagram code cannot be empty")
        updated = self._store.update_diagram(diagram_id, code=code, prompt=prompt)
        assert updated is not None
        return updated

    def delete_diagram(self, diagram_id: str, owner: Owner) -> int:
        """Delete a diagram and its direct revisions. Returns rows removed."""
        self.get_diagram(diagram_id, owner)
        return self._store.delete_diagram(diagram_id)

    # ── Threads ──

    def list_threads(self, owner: Owner) -> list[tuple[DiagramThread, Diagram | None]]:
        """Owner's threads, each paired with its latest diagram."""
        out = []
        for thread in self._store.list_threads(owner):
            latest = self._store.list_diagrams(owner, thread_id=thread.id, limit=1)
            out.append((thread, latest[0] if latest else None))
        return out

    def get_thread(self, thread_id: str, owner: Owner) -> tuple[DiagramThread, list[Diagram]]:
        """A thread and its diagrams, newest first."""
        thread = self._store.get_thread(thread_id, owner=owner)
        if thread is None:
            raise NotFoundError("Thread not found or unauthorized")
        return thread, self._store.list_diagrams(owner, thread_id=thread_id)

    def rename_thread(self, thread_id: str, name: str, owner: Owner) -> DiagramThread:
        name = name.strip()
        if not name:
            raise InvalidInputError("Thread name cannot be empty")
        if self._store.get_thread(thread_id, owner=owner) is None:
            raise NotFoundError("Thread not found or unauthorized")
        self._store.rename_thread(thread_id, name)
        thread = self._store.get_thread(thread_id)
        assert thread is not None
        return thread

    def delete_thread(self, thread_id: str, owner: Owner) -> int:
        if self._store.get_thread(thread_id, owner=owner) is None:
            raise NotFoundError("Thread not found or you don't have permission to delete it")
        return self._store.delete_thread(thread_id)

    # ── Credits ──

    def get_credits(self, owner: Owner) -> dict:
        return self._ledger.get_balance(owner)


def _describe(owner: Owner) -> str:
    return f"user {owner.user_id}" if owner.user_id else f"anonymous {owner.anonymous_id}"


def create_pipeline(
    store: SqliteStore | None = None,
    scheduler: RateLimitedScheduler | None = None,
    api_key: str | None = None,
) -> GenerationPipeline:
    """Wire a pipeline from config: Gemini provider, configured validator, SQLite store."""
    if store is None:
        store = SqliteStore(config.SQLITE_PATH)
        store.init_db()
        logger.info("SQLite store: %s", config.SQLITE_PATH)
    if scheduler is None:
        scheduler = RateLimitedScheduler()
    logger.info("Model: %s, validator: %s", config.GEMINI_MODEL, config.VALIDATOR)
    generator = DiagramGenerator(
        provider=GeminiProvider(api_key=api_key),
        scheduler=scheduler,
        validator=create_validator(),
    )
    return GenerationPipeline(store=store, ledger=CreditLedger(store), generator=generator)
