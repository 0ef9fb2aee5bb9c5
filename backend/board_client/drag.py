# board_client/drag.py — Turn drag gestures into optimistic moves
"""
drag_start() remembers what is being dragged, resolve_drop() works out the
move intent from what it was dropped on (pure, reads the store only), and
drag_end() applies the intent optimistically, persists it through the API
and, if the API call fails, re-fetches the board to undo the optimistic
change before re-raising.

Moves are not queued: overlapping drags race and the last response wins.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Union

from board_client.api import ApiError, KanbanApiClient
from board_client.store import BoardStore, refresh_current_board

logger = logging.getLogger("kanbanflow.client.drag")

CARD = "card"
LIST = "list"


@dataclass(frozen=True)
class CardMoveIntent:
    card_id: str
    from_list_id: str
    to_list_id: str
    position: int


@dataclass(frozen=True)
class ListMoveIntent:
    list_id: str
    position: int


@dataclass(frozen=True)
class DropTarget:
    """What the pointer is over: a card, or a list container (its empty area or header)."""
    kind: str
    id: str


Intent = Union[CardMoveIntent, ListMoveIntent]


class DragReorderController:

    def __init__(self, store: BoardStore, api: KanbanApiClient):
        self.store = store
        self.api = api
        self.active_kind: Optional[str] = None
        self.active_id: Optional[str] = None

    @property
    def board(self) -> Optional[dict]:
        return self.store.state.current_board

    def drag_start(self, kind: str, item_id: str) -> None:
        if kind not in (CARD, LIST):
            raise ValueError(f"Cannot drag a {kind}")
        self.active_kind = kind
        self.active_id = item_id

    def drag_cancel(self) -> None:
        self.active_kind = None
        self.active_id = None

    # ---------------- lookups ----------------

    def _lists(self) -> list:
        return (self.board or {}).get("lists", [])

    def _locate_card(self, card_id: str):
        for lst in self._lists():
            for idx, card in enumerate(lst.get("cards", [])):
                if card.get("id") == card_id:
                    return lst, idx
        return None, -1

    def _list_index(self, list_id: str) -> int:
        for idx, lst in enumerate(self._lists()):
            if lst.get("id") == list_id:
                return idx
        return -1

    # ---------------- intent ----------------

    def resolve_drop(self, target: Optional[DropTarget]) -> Optional[Intent]:
        if target is None or self.active_id is None or self.board is None:
            return None
        if self.active_kind == CARD:
            return self._resolve_card_drop(target)
        return self._resolve_list_drop(target)

    def _resolve_card_drop(self, target: DropTarget) -> Optional[CardMoveIntent]:
        source, source_idx = self._locate_card(self.active_id)
        if source is None:
            return None

        if target.kind == CARD:
            if target.id == self.active_id:
                return None
            dest, dest_idx = self._locate_card(target.id)
            if dest is None:
                return None
            if dest["id"] == source["id"] and dest_idx == source_idx:
                return None
            return CardMoveIntent(self.active_id, source["id"], dest["id"], dest_idx)

        # dropped on a list container with no card under the pointer
        dest_idx = self._list_index(target.id)
        if dest_idx == -1 or target.id == source["id"]:
            return None
        dest = self._lists()[dest_idx]
        return CardMoveIntent(self.active_id, source["id"], dest["id"], len(dest.get("cards", [])))

    def _resolve_list_drop(self, target: DropTarget) -> Optional[ListMoveIntent]:
        current = self._list_index(self.active_id)
        if current == -1:
            return None
        over_list = target.id
        if target.kind == CARD:
            lst, _ = self._locate_card(target.id)
            if lst is None:
                return None
            over_list = lst["id"]
        position = self._list_index(over_list)
        if position == -1 or position == current:
            return None
        return ListMoveIntent(self.active_id, position)

    # ---------------- drop ----------------

    async def drag_end(self, target: Optional[DropTarget]):
        """Finish the drag. Returns the server's copy of the moved item, or None for a no-op."""
        intent = self.resolve_drop(target)
        self.drag_cancel()
        if intent is None:
            return None

        board_id = self.board["id"]
        if isinstance(intent, CardMoveIntent):
            self.store.dispatch("card.move", {
                "cardId": intent.card_id,
                "boardId": board_id,
                "fromListId": intent.from_list_id,
                "toListId": intent.to_list_id,
                "position": intent.position,
            })
            try:
                card = await self.api.move_card(intent.card_id, intent.to_list_id, intent.position)
            except ApiError:
                await self._resync(board_id)
                raise
            self.store.dispatch("card.update", card)
            return card

        self.store.dispatch("list.update", {"id": intent.list_id, "boardId": board_id, "position": intent.position})
        try:
            lst = await self.api.update_list(intent.list_id, {"position": intent.position})
        except ApiError:
            await self._resync(board_id)
            raise
        self.store.dispatch("list.update", lst)
        return lst

    async def _resync(self, board_id: str) -> None:
        """Replace the optimistic board with the server's copy."""
        try:
            board = await self.api.get_board(board_id)
        except ApiError as e:
            logger.error(f"Could not re-fetch board {board_id} after a failed move: {e}")
            return
        self.store.apply(refresh_current_board, board)
