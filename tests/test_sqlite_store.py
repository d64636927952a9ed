"""Tests for SQLite storage: threads, the revision graph, credits rows."""

from __future__ import annotations

import sqlite3
from datetime import date, datetime, timedelta, timezone

import pytest

from mermaidsmith.storage.sqlite_store import Owner, SqliteStore


def _diagram(store, owner, prompt="p", parent=None, thread_id=None, created_at=None):
    return store.create_diagram(
        prompt=prompt,
        code=f"flowchart TD\n  {prompt.replace(' ', '_')}",
        diagram_type="flowchart",
        is_complex=False,
        owner=owner,
        parent_diagram_id=parent,
        thread_id=thread_id,
        created_at=created_at,
    )


class TestOwner:
    def test_exactly_one_identity(self):
        with pytest.raises(ValueError):
            Owner()
        with pytest.raises(ValueError):
            Owner(user_id="u", anonymous_id="a")
        assert Owner(anonymous_id="a").is_anonymous
        assert not Owner(user_id="u").is_anonymous


class TestSchema:
    def test_init_db_is_idempotent(self, store):
        store.init_db()
        assert store.count("diagrams") == 0

    def test_owner_xor_enforced(self, store):
        with pytest.raises(sqlite3.IntegrityError):
            store._conn.execute(
                """INSERT INTO diagrams (id, prompt, code, diagram_type, user_id, anonymous_id,
                   created_at, updated_at) VALUES ('x', 'p', 'c', 'flowchart', 'u', 'a', 't', 't')"""
            )

    def test_negative_credits_rejected(self, store):
        with pytest.raises(sqlite3.IntegrityError):
            store.insert_credits("u", -1, date(2026, 1, 1))


class TestDiagrams:
    def test_create_and_get(self, store, user):
        d = _diagram(store, user, "car engine")
        got = store.get_diagram(d.id)
        assert got == d
        assert got.is_root
        assert got.is_complex is False

    def test_foreign_owner_sees_nothing(self, store, user):
        d = _diagram(store, user)
        assert store.get_diagram(d.id, owner=Owner(user_id="someone-else")) is None
        assert store.get_diagram(d.id, owner=Owner(anonymous_id="user-1")) is None
        assert store.get_diagram(d.id, owner=user) is not None

    def test_list_newest_first(self, store, user):
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        ids = [_diagram(store, user, f"p{i}", created_at=base + timedelta(minutes=i)).id for i in range(3)]
        assert [d.id for d in store.list_diagrams(user)] == ids[::-1]
        assert [d.id for d in store.list_diagrams(user, newest_first=False)] == ids
        assert len(store.list_diagrams(user, limit=2)) == 2

    def test_update_overwrites_in_place(self, store, user):
        d = _diagram(store, user)
        updated = store.update_diagram(d.id, code="flowchart LR\n  X-->Y")
        assert updated.id == d.id
        assert updated.code == "flowchart LR\n  X-->Y"
        assert updated.prompt == d.prompt

    def test_delete_removes_direct_children_only(self, store, user):
        root = _diagram(store, user, "root")
        a = _diagram(store, user, "a", parent=root.id)
        b = _diagram(store, user, "b", parent=a.id)
        sibling = _diagram(store, user, "s", parent=root.id)

        assert {c.id for c in store.get_children(root.id)} == {a.id, sibling.id}
        removed = store.delete_diagram(root.id)

        assert removed == 3
        assert store.get_diagram(root.id) is None
        assert store.get_diagram(a.id) is None
        assert store.get_diagram(sibling.id) is None
        # grandchild survives with a dangling parent
        orphan = store.get_diagram(b.id)
        assert orphan is not None
        assert orphan.parent_diagram_id == a.id
        assert store.get_children(root.id) == []
        assert [c.id for c in store.get_children(a.id)] == [b.id]

    def test_children_oldest_first(self, store, user):
        root = _diagram(store, user, "root")
        late = _diagram(store, user, "late", parent=root.id, created_at=datetime(2026, 3, 2, tzinfo=timezone.utc))
        early = _diagram(store, user, "early", parent=root.id, created_at=datetime(2026, 3, 1, tzinfo=timezone.utc))
        _diagram(store, user, "grandchild", parent=early.id)
        assert [c.id for c in store.get_children(root.id)] == [early.id, late.id]
        assert store.get_children("missing") == []

    def test_delete_clears_thread_root(self, store, user):
        thread = store.create_thread("t", user)
        root = _diagram(store, user, thread_id=thread.id)
        store.set_thread_root(thread.id, root.id)
        store.delete_diagram(root.id)
        assert store.get_thread(thread.id).root_diagram_id is None

    def test_count_recent_anonymous(self, store, anon):
        now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        _diagram(store, anon, created_at=now - timedelta(hours=25))
        _diagram(store, anon, created_at=now - timedelta(hours=2))
        _diagram(store, anon, created_at=now - timedelta(minutes=1))
        _diagram(store, Owner(anonymous_id="other"), created_at=now)
        assert store.count_recent_anonymous("anon-1", now - timedelta(hours=24)) == 2


class TestAncestorChain:
    def test_root_to_leaf_order(self, store, user):
        root = _diagram(store, user, "root")
        a = _diagram(store, user, "A", parent=root.id)
        b = _diagram(store, user, "B", parent=a.id)
        c = _diagram(store, user, "C", parent=b.id)
        chain = store.get_ancestor_chain(c.id)
        assert [e["prompt"] for e in chain] == ["root", "A", "B", "C"]
        assert [e["id"] for e in chain] == [root.id, a.id, b.id, c.id]
        assert chain[0]["code"] == root.code

    def test_root_alone(self, store, user):
        root = _diagram(store, user, "root")
        assert [e["id"] for e in store.get_ancestor_chain(root.id)] == [root.id]

    def test_missing_diagram(self, store):
        assert store.get_ancestor_chain("nope") == []

    def test_stops_at_dangling_parent(self, store, user):
        leaf = _diagram(store, user, "leaf", parent="deleted-parent")
        assert [e["id"] for e in store.get_ancestor_chain(leaf.id)] == [leaf.id]

    def test_cycle_terminates(self, store, user):
        a = _diagram(store, user, "a")
        b = _diagram(store, user, "b", parent=a.id)
        store._conn.execute("UPDATE diagrams SET parent_diagram_id = ? WHERE id = ?", (b.id, a.id))
        chain = store.get_ancestor_chain(b.id)
        assert sorted(e["id"] for e in chain) == sorted([a.id, b.id])

    def test_depth_limit(self, store, user):
        parent = None
        for i in range(10):
            parent = _diagram(store, user, f"v{i}", parent=parent).id
        chain = store.get_ancestor_chain(parent, max_depth=4)
        assert [e["prompt"] for e in chain] == ["v6", "v7", "v8", "v9"]


class TestThreads:
    def test_create_and_list(self, store, user):
        t1 = store.create_thread("First", user)
        store.create_thread("Other", Owner(user_id="u2"))
        threads = store.list_threads(user)
        assert [t.id for t in threads] == [t1.id]
        assert threads[0].name == "First"

    def test_rename(self, store, user):
        t = store.create_thread("Old", user)
        store.rename_thread(t.id, "New")
        assert store.get_thread(t.id).name == "New"

    def test_delete_removes_members(self, store, user):
        t = store.create_thread("t", user)
        root = _diagram(store, user, thread_id=t.id)
        _diagram(store, user, parent=root.id, thread_id=t.id)
        keep = _diagram(store, user)
        assert store.delete_thread(t.id) == 2
        assert store.get_thread(t.id) is None
        assert store.get_diagram(keep.id) is not None

    def test_thread_foreign_key(self, store, user):
        with pytest.raises(sqlite3.IntegrityError):
            _diagram(store, user, thread_id="no-such-thread")


class TestTransaction:
    def test_rollback_on_error(self, store, user):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.create_thread("doomed", user)
                raise RuntimeError("boom")
        assert store.list_threads(user) == []

    def test_nested_joins_outer(self, store, user):
        with pytest.raises(RuntimeError):
            with store.transaction():
                with store.transaction():
                    store.create_thread("inner", user)
                raise RuntimeError("boom")
        assert store.list_threads(user) == []


class TestCredits:
    def test_roundtrip_and_update(self, store):
        store.insert_credits("u", 9, date(2026, 1, 5))
        store.update_credits("u", 4, last_monthly_grant=date(2026, 1, 6), monthly_credits_granted=500)
        row = store.get_credits("u")
        assert row.credits == 4
        assert row.last_credit_reset == date(2026, 1, 5)
        assert row.last_monthly_grant == date(2026, 1, 6)
        assert row.monthly_credits_granted == 500

    def test_missing(self, store):
        assert store.get_credits("nobody") is None

    def test_separate_connections_share_file(self, db_path):
        a = SqliteStore(db_path)
        b = SqliteStore(db_path)
        a.insert_credits("u", 3, date(2026, 1, 1))
        assert b.get_credits("u").credits == 3
        a.close()
        b.close()
