# ordering.py — Position index for lists within a board and cards within a list
"""
Positions are contiguous indices 0..n-1 inside their container. The server
arbitrates every insert and move: the moved item is spliced into the
sibling sequence at the requested index (clamped to the valid range) and
the whole sequence is renumbered. Applying the same move twice yields the
same ordering.
"""
from typing import List, Sequence


def clamp(index: int, size: int) -> int:
    """Clamp an insertion index into [0, size]."""
    if index is None or index > size:
        return size
    return max(index, 0)


def place(ids: Sequence[str], item_id: str, index: int) -> List[str]:
    """Return ``ids`` with ``item_id`` removed and re-inserted at ``index``."""
    remaining = [i for i in ids if i != item_id]
    remaining.insert(clamp(index, len(remaining)), item_id)
    return remaining


def renumber(items: Sequence, order: Sequence[str]) -> int:
    """Assign ``position`` on ORM rows to match ``order``.

    Rows whose id is not in ``order`` are left untouched. Returns the number
    of rows whose position changed.
    """
    index = {item_id: pos for pos, item_id in enumerate(order)}
    changed = 0
    for item in items:
        pos = index.get(item.id)
        if pos is not None and item.position != pos:
            item.position = pos
            changed += 1
    return changed
