"""SQLite storage for diagrams, threads, and user credits."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path

from mermaidsmith import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Owner:
    """Authenticated user id or anonymous id. Exactly one is set."""

    user_id: str | None = None
    anonymous_id: str | None = None

    def __post_init__(self) -> None:
        if bool(self.user_id) == bool(self.anonymous_id):
            raise ValueError("Owner needs exactly one of user_id or anonymous_id")

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None


@dataclass
class Diagram:
    id: str
    prompt: str
    code: str
    diagram_type: str
    is_complex: bool
    user_id: str | None
    anonymous_id: str | None
    parent_diagram_id: str | None
    thread_id: str | None
    created_at: str
    updated_at: str

    @property
    def is_root(self) -> bool:
        return self.parent_diagram_id is None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Diagram:
        data = dict(row)
        data["is_complex"] = bool(data["is_complex"])
        return cls(**data)


@dataclass
class DiagramThread:
    id: str
    name: str
    root_diagram_id: str | None
    user_id: str | None
    anonymous_id: str | None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> DiagramThread:
        return cls(**dict(row))


@dataclass
class UserCredits:
    user_id: str
    credits: int
    last_credit_reset: date
    last_monthly_grant: date | None = None
    monthly_credits_granted: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> UserCredits:
        return cls(
            user_id=row["user_id"],
            credits=row["credits"],
            last_credit_reset=date.fromisoformat(row["last_credit_reset"]),
            last_monthly_grant=(
                date.fromisoformat(row["last_monthly_grant"]) if row["last_monthly_grant"] else None
            ),
            monthly_credits_granted=row["monthly_credits_granted"],
        )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


def _owner_clause(owner: Owner) -> tuple[str, str]:
    if owner.user_id is not None:
        return "user_id = ?", owner.user_id
    return "anonymous_id = ?", owner.anonymous_id  # type: ignore[return-value]


class SqliteStore:
    """Repository over a single SQLite file.

    The connection runs in autocommit mode; multi-statement writes go through
    ``transaction()``. Use one store per thread.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), isolation_level=None, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._tx_depth = 0

    def init_db(self) -> None:
        """Create all tables and indexes."""
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS diagram_threads (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                root_diagram_id TEXT,
                user_id TEXT,
                anonymous_id TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK ((user_id IS NULL) != (anonymous_id IS NULL))
            );
            CREATE INDEX IF NOT EXISTS idx_threads_user ON diagram_threads(user_id);
            CREATE INDEX IF NOT EXISTS idx_threads_anon ON diagram_threads(anonymous_id);

            CREATE TABLE IF NOT EXISTS diagrams (
                id TEXT PRIMARY KEY,
                prompt TEXT NOT NULL,
                code TEXT NOT NULL,
                diagram_type TEXT NOT NULL,
                is_complex INTEGER NOT NULL DEFAULT 0,
                user_id TEXT,
                anonymous_id TEXT,
                parent_diagram_id TEXT,
                thread_id TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK ((user_id IS NULL) != (anonymous_id IS NULL)),
                FOREIGN KEY (thread_id) REFERENCES diagram_threads(id)
            );
            CREATE INDEX IF NOT EXISTS idx_diagrams_user ON diagrams(user_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_diagrams_anon ON diagrams(anonymous_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_diagrams_parent ON diagrams(parent_diagram_id);
            CREATE INDEX IF NOT EXISTS idx_diagrams_thread ON diagrams(thread_id);

            CREATE TABLE IF NOT EXISTS user_credits (
                user_id TEXT PRIMARY KEY,
                credits INTEGER NOT NULL CHECK (credits >= 0),
                last_credit_reset TEXT NOT NULL,
                last_monthly_grant TEXT,
                monthly_credits_granted INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL
            );
            """
        )

    @contextmanager
    def transaction(self) -> Iterator[SqliteStore]:
        """Run the enclosed statements as one write transaction.

        ``BEGIN IMMEDIATE`` takes the write lock up front, so a concurrent
        read-modify-write on another connection waits instead of reading a
        stale row. Nested use joins the outer transaction.
        """
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self
            finally:
                self._tx_depth -= 1
            return

        self._conn.execute("BEGIN IMMEDIATE")
        self._tx_depth = 1
        try:
            yield self
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        else:
            self._conn.execute("COMMIT")
        finally:
            self._tx_depth = 0

    # ── Threads ──

    def create_thread(
        self, name: str, owner: Owner, root_diagram_id: str | None = None,
    ) -> DiagramThread:
        now = _now_iso()
        thread = DiagramThread(
            id=str(uuid.uuid4()),
            name=name,
            root_diagram_id=root_diagram_id,
            user_id=owner.user_id,
            anonymous_id=owner.anonymous_id,
            created_at=now,
            updated_at=now,
        )
        self._conn.execute(
            """INSERT INTO diagram_threads
               (id, name, root_diagram_id, user_id, anonymous_id, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (thread.id, thread.name, thread.root_diagram_id, thread.user_id,
             thread.anonymous_id, thread.created_at, thread.updated_at),
        )
        return thread

    def get_thread(self, thread_id: str, owner: Owner | None = None) -> DiagramThread | None:
        """Fetch a thread; with ``owner``, a thread owned by someone else is None."""
        if owner is None:
            cur = self._conn.execute("SELECT * FROM diagram_threads WHERE id = ?", (thread_id,))
        else:
            clause, value = _owner_clause(owner)
            cur = self._conn.execute(
                f"SELECT * FROM diagram_threads WHERE id = ? AND {clause}",  # noqa: S608
                (thread_id, value),
            )
        row = cur.fetchone()
        return DiagramThread.from_row(row) if row else None

    def list_threads(self, owner: Owner) -> list[DiagramThread]:
        """Owner's threads, most recently updated first."""
        clause, value = _owner_clause(owner)
        cur = self._conn.execute(
            f"SELECT * FROM diagram_threads WHERE {clause} ORDER BY updated_at DESC",  # noqa: S608
            (value,),
        )
        return [DiagramThread.from_row(row) for row in cur.fetchall()]

    def rename_thread(self, thread_id: str, name: str) -> None:
        self._conn.execute(
            "UPDATE diagram_threads SET name = ?, updated_at = ? WHERE id = ?",
            (name, _now_iso(), thread_id),
        )

    def set_thread_root(self, thread_id: str, diagram_id: str | None) -> None:
        self._conn.execute(
            "UPDATE diagram_threads SET root_diagram_id = ?, updated_at = ? WHERE id = ?",
            (diagram_id, _now_iso(), thread_id),
        )

    def touch_thread(self, thread_id: str) -> None:
        self._conn.execute(
            "UPDATE diagram_threads SET updated_at = ? WHERE id = ?", (_now_iso(), thread_id),
        )

    def delete_thread(self, thread_id: str) -> int:
        """Delete a thread and every diagram in it. Returns diagrams removed."""
        with self.transaction():
            cur = self._conn.execute("DELETE FROM diagrams WHERE thread_id = ?", (thread_id,))
            removed = cur.rowcount
            self._conn.execute("DELETE FROM diagram_threads WHERE id = ?", (thread_id,))
        logger.info("Deleted thread %s (%d diagrams)", thread_id, removed)
        return removed

    # ── Diagrams ──

    def create_diagram(
        self,
        prompt: str,
        code: str,
        diagram_type: str,
        is_complex: bool,
        owner: Owner,
        parent_diagram_id: str | None = None,
        thread_id: str | None = None,
        created_at: datetime | None = None,
    ) -> Diagram:
        ts = _to_iso(created_at) if created_at else _now_iso()
        diagram = Diagram(
            id=str(uuid.uuid4()),
            prompt=prompt,
            code=code,
            diagram_type=diagram_type,
            is_complex=is_complex,
            user_id=owner.user_id,
            anonymous_id=owner.anonymous_id,
            parent_diagram_id=parent_diagram_id,
            thread_id=thread_id,
            created_at=ts,
            updated_at=ts,
        )
        self._conn.execute(
            """INSERT INTO diagrams
               (id, prompt, code, diagram_type, is_complex, user_id, anonymous_id,
                parent_diagram_id, thread_id, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (diagram.id, diagram.prompt, diagram.code, diagram.diagram_type,
             int(diagram.is_complex), diagram.user_id, diagram.anonymous_id,
             diagram.parent_diagram_id, diagram.thread_id, diagram.created_at,
             diagram.updated_at),
        )
        return diagram

    def get_diagram(self, diagram_id: str, owner: Owner | None = None) -> Diagram | None:
        """Fetch a diagram; with ``owner``, a diagram owned by someone else is None."""
        if owner is None:
            cur = self._conn.execute("SELECT * FROM diagrams WHERE id = ?", (diagram_id,))
        else:
            clause, value = _owner_clause(owner)
            cur = self._conn.execute(
                f"SELECT * FROM diagrams WHERE id = ? AND {clause}",  # noqa: S608
                (diagram_id, value),
            )
        row = cur.fetchone()
        return Diagram.from_row(row) if row else None

    def list_diagrams(
        self,
        owner: Owner,
        thread_id: str | None = None,
        newest_first: bool = True,
        limit: int | None = None,
    ) -> list[Diagram]:
        clause, value = _owner_clause(owner)
        sql = f"SELECT * FROM diagrams WHERE {clause}"  # noqa: S608
        params: list = [value]
        if thread_id is not None:
            sql += " AND thread_id = ?"
            params.append(thread_id)
        sql += " ORDER BY created_at " + ("DESC" if newest_first else "ASC")
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        cur = self._conn.execute(sql, params)
        return [Diagram.from_row(row) for row in cur.fetchall()]

    def get_children(self, diagram_id: str) -> list[Diagram]:
        cur = self._conn.execute(
            "SELECT * FROM diagrams WHERE parent_diagram_id = ? ORDER BY created_at",
            (diagram_id,),
        )
        return [Diagram.from_row(row) for row in cur.fetchall()]

    def update_diagram(
        self, diagram_id: str, code: str | None = None, prompt: str | None = None,
    ) -> Diagram | None:
        """Overwrite code and/or prompt in place. Returns the updated row."""
        sets = []
        params: list = []
        if code is not None:
            sets.append("code = ?")
            params.append(code)
        if prompt is not None:
            sets.append("prompt = ?")
            params.append(prompt)
        if sets:
            sets.append("updated_at = ?")
            params.append(_now_iso())
            params.append(diagram_id)
            self._conn.execute(
                f"UPDATE diagrams SET {', '.join(sets)} WHERE id = ?",  # noqa: S608
                params,
            )
        return self.get_diagram(diagram_id)

    def delete_diagram(self, diagram_id: str) -> int:
        """Delete a diagram and its direct children. Returns rows removed.

        Grandchildren are left with a dangling parent pointer; deeper trees
        are removed by repeating the call on each child first.
        """
        with self.transaction():
            cur = self._conn.execute(
                "DELETE FROM diagrams WHERE parent_diagram_id = ?", (diagram_id,),
            )
            removed = cur.rowcount
            cur = self._conn.execute("DELETE FROM diagrams WHERE id = ?", (diagram_id,))
            removed += cur.rowcount
            self._conn.execute(
                "UPDATE diagram_threads SET root_diagram_id = NULL WHERE root_diagram_id = ?",
                (diagram_id,),
            )
        logger.info("Deleted diagram %s (%d rows)", diagram_id, removed)
        return removed

    def count_recent_anonymous(self, anonymous_id: str, since: datetime) -> int:
        """Diagrams created by an anonymous id at or after ``since``."""
        cur = self._conn.execute(
            "SELECT count(*) FROM diagrams WHERE anonymous_id = ? AND created_at >= ?",
            (anonymous_id, _to_iso(since)),
        )
        return cur.fetchone()[0]

    def get_ancestor_chain(self, diagram_id: str, max_depth: int | None = None) -> list[dict]:
        """Prompt/code pairs from the root down to ``diagram_id`` (inclusive).

        Stops at a missing parent, a repeated id, or ``max_depth`` nodes.
        """
        max_depth = max_depth or config.MAX_ANCESTOR_DEPTH
        chain: list[dict] = []
        seen: set[str] = set()
        current: str | None = diagram_id
        while current is not None and current not in seen:
            if len(chain) >= max_depth:
                logger.warning("Ancestor walk from %s hit depth limit %d", diagram_id, max_depth)
                break
            seen.add(current)
            row = self._conn.execute(
                "SELECT id, prompt, code, parent_diagram_id FROM diagrams WHERE id = ?",
                (current,),
            ).fetchone()
            if row is None:
                break
            chain.append({"id": row["id"], "prompt": row["prompt"], "code": row["code"]})
            current = row["parent_diagram_id"]
        if current is not None and current in seen:
            logger.warning("Cycle in diagram lineage at %s", current)
        chain.reverse()
        return chain

    # ── Credits ──

    def get_credits(self, user_id: str) -> UserCredits | None:
        row = self._conn.execute(
            "SELECT * FROM user_credits WHERE user_id = ?", (user_id,),
        ).fetchone()
        return UserCredits.from_row(row) if row else None

    def insert_credits(self, user_id: str, credits: int, last_credit_reset: date) -> None:
        self._conn.execute(
            """INSERT INTO user_credits (user_id, credits, last_credit_reset, updated_at)
               VALUES (?, ?, ?, ?)""",
            (user_id, credits, last_credit_reset.isoformat(), _now_iso()),
        )

    def update_credits(
        self,
        user_id: str,
        credits: int,
        last_credit_reset: date | None = None,
        last_monthly_grant: date | None = None,
        monthly_credits_granted: int | None = None,
    ) -> None:
        sets = ["credits = ?", "updated_at = ?"]
        params: list = [credits, _now_iso()]
        if last_credit_reset is not None:
            sets.append("last_credit_reset = ?")
            params.append(last_credit_reset.isoformat())
        if last_monthly_grant is not None:
            sets.append("last_monthly_grant = ?")
            params.append(last_monthly_grant.isoformat())
        if monthly_credits_granted is not None:
            sets.append("monthly_credits_granted = ?")
            params.append(monthly_credits_granted)
        params.append(user_id)
        self._conn.execute(
            f"UPDATE user_credits SET {', '.join(sets)} WHERE user_id = ?",  # noqa: S608
            params,
        )

    # ── Counts ──

    def count(self, table: str) -> int:
        cur = self._conn.execute(f"SELECT count(*) FROM {table}")  # noqa: S608
        return cur.fetchone()[0]

    def close(self) -> None:
        self._conn.close()
