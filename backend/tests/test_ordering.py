# tests/test_ordering.py — Position index tests
from types import SimpleNamespace

from ordering import clamp, place, renumber
from permissions import has_access


def _rows(*ids):
    return [SimpleNamespace(id=i, position=n, created_at=None) for n, i in enumerate(ids)]


def test_clamp_bounds():
    assert clamp(None, 3) == 3
    assert clamp(7, 3) == 3
    assert clamp(-2, 3) == 0
    assert clamp(1, 3) == 1


def test_place_moves_and_inserts():
    assert place(["a", "b", "c"], "a", 2) == ["b", "c", "a"]
    assert place(["a", "b", "c"], "c", 0) == ["c", "a", "b"]
    assert place(["a", "b"], "x", 1) == ["a", "x", "b"]
    assert place(["a", "b"], "x", 99) == ["a", "b", "x"]


def test_place_is_idempotent():
    once = place(["a", "b", "c", "d"], "b", 3)
    assert place(once, "b", 3) == once


def test_renumber_counts_changes():
    rows = _rows("a", "b", "c")
    assert renumber(rows, ["c", "a", "b"]) == 3
    assert sorted((r.position, r.id) for r in rows) == [(0, "c"), (1, "a"), (2, "b")]
    assert renumber(rows, ["c", "a", "b"]) == 0


def test_renumber_skips_unknown_rows():
    rows = _rows("a", "b")
    assert renumber(rows, ["b"]) == 1
    assert [(r.id, r.position) for r in rows] == [("a", 0), ("b", 0)]


def test_has_access_owner_or_collaborator():
    board = SimpleNamespace(owner_id="owner")
    assert has_access(board, [], "owner")
    assert has_access(board, ["bob"], "bob")
    assert not has_access(board, ["bob"], "carol")
