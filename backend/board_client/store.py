# board_client/store.py — Client-side board state and its reducers
"""
Reducers are pure: ``reducer(state, payload) -> new state``. The input
state is never mutated. Boards, lists, cards and comments are plain dicts
in the same camelCase shape the API returns. Every "add" is an upsert by
id, so a mutation that arrives both as an HTTP response and as a room
broadcast is applied once.
"""
import copy
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional


Reducer = Callable[["BoardState", Any], "BoardState"]


@dataclass(frozen=True)
class BoardState:
    current_board: Optional[dict] = None
    boards: List[dict] = field(default_factory=list)
    connected_users: List[str] = field(default_factory=list)


# ============================================================
# HELPERS
# ============================================================

def _index_of(items: List[dict], item_id: str) -> int:
    for i, item in enumerate(items):
        if item.get("id") == item_id:
            return i
    return -1


def _renumber(items: List[dict]) -> None:
    for i, item in enumerate(items):
        item["position"] = i


def _insert_at(items: List[dict], item: dict, position: Optional[int]) -> None:
    if position is None or position > len(items):
        position = len(items)
    items.insert(max(position, 0), item)


def _editable_board(state: BoardState) -> Optional[dict]:
    if state.current_board is None:
        return None
    return copy.deepcopy(state.current_board)


def _find_list(board: dict, list_id: str) -> Optional[dict]:
    for lst in board.get("lists", []):
        if lst.get("id") == list_id:
            return lst
    return None


def _find_card(board: dict, card_id: str):
    for lst in board.get("lists", []):
        idx = _index_of(lst.get("cards", []), card_id)
        if idx != -1:
            return lst, idx
    return None, -1


# ============================================================
# BOARD COLLECTION
# ============================================================

def set_boards(state: BoardState, boards: List[dict]) -> BoardState:
    return replace(state, boards=copy.deepcopy(list(boards)))


def set_current_board(state: BoardState, board: Optional[dict]) -> BoardState:
    return replace(state, current_board=copy.deepcopy(board), connected_users=[])


def refresh_current_board(state: BoardState, board: dict) -> BoardState:
    """Swap in a fresh server copy of the open board, keeping presence."""
    return replace(state, current_board=copy.deepcopy(board))


def add_board(state: BoardState, board: dict) -> BoardState:
    boards = copy.deepcopy(state.boards)
    idx = _index_of(boards, board["id"])
    if idx == -1:
        boards.append(copy.deepcopy(board))
    else:
        boards[idx] = copy.deepcopy(board)
    return replace(state, boards=boards)


def update_board(state: BoardState, board: dict) -> BoardState:
    """Replace by id in the collection and the open board; never inserts."""
    boards = copy.deepcopy(state.boards)
    idx = _index_of(boards, board["id"])
    if idx != -1:
        boards[idx] = {**boards[idx], **copy.deepcopy(board)}

    current = state.current_board
    if current is not None and current.get("id") == board["id"]:
        current = {**copy.deepcopy(current), **copy.deepcopy(board)}
    return replace(state, boards=boards, current_board=current)


def delete_board(state: BoardState, payload: dict) -> BoardState:
    board_id = payload["boardId"]
    boards = [copy.deepcopy(b) for b in state.boards if b.get("id") != board_id]
    current = state.current_board
    if current is not None and current.get("id") == board_id:
        return replace(state, boards=boards, current_board=None, connected_users=[])
    return replace(state, boards=boards)


# ============================================================
# LISTS
# ============================================================

def add_list(state: BoardState, lst: dict) -> BoardState:
    board = _editable_board(state)
    if board is None:
        return state
    lists = board.setdefault("lists", [])
    idx = _index_of(lists, lst["id"])
    if idx != -1:
        lists[idx] = {**lists[idx], **copy.deepcopy(lst)}
        return replace(state, current_board=board)
    new_list = copy.deepcopy(lst)
    new_list.setdefault("cards", [])
    _insert_at(lists, new_list, lst.get("position"))
    _renumber(lists)
    return replace(state, current_board=board)


def update_list(state: BoardState, lst: dict) -> BoardState:
    """Replace a list by id. A position in the payload repositions it."""
    board = _editable_board(state)
    if board is None:
        return state
    lists = board.get("lists", [])
    idx = _index_of(lists, lst["id"])
    if idx == -1:
        return state
    merged = {**lists[idx], **copy.deepcopy(lst)}
    if lst.get("position") is not None:
        lists.pop(idx)
        _insert_at(lists, merged, lst["position"])
        _renumber(lists)
    else:
        lists[idx] = merged
    return replace(state, current_board=board)


def delete_list(state: BoardState, payload: dict) -> BoardState:
    board = _editable_board(state)
    if board is None:
        return state
    board["lists"] = [l for l in board.get("lists", []) if l.get("id") != payload["listId"]]
    _renumber(board["lists"])
    return replace(state, current_board=board)


# ============================================================
# CARDS
# ============================================================

def add_card(state: BoardState, card: dict) -> BoardState:
    board = _editable_board(state)
    if board is None:
        return state
    lst = _find_list(board, card.get("listId"))
    if lst is None:
        return state
    cards = lst.setdefault("cards", [])
    idx = _index_of(cards, card["id"])
    if idx != -1:
        cards[idx] = {**cards[idx], **copy.deepcopy(card)}
        return replace(state, current_board=board)
    new_card = copy.deepcopy(card)
    new_card.setdefault("comments", [])
    _insert_at(cards, new_card, card.get("position"))
    _renumber(cards)
    return replace(state, current_board=board)


def update_card(state: BoardState, card: dict) -> BoardState:
    board = _editable_board(state)
    if board is None:
        return state
    lst, idx = _find_card(board, card["id"])
    if lst is None:
        return state
    merged = {**lst["cards"][idx], **copy.deepcopy(card)}
    # the server copy is authoritative about where the card lives
    target = _find_list(board, merged.get("listId"))
    if target is None:
        return state
    lst["cards"].pop(idx)
    _insert_at(target.setdefault("cards", []), merged, merged.get("position", idx))
    _renumber(lst["cards"])
    _renumber(target["cards"])
    return replace(state, current_board=board)


def move_card(state: BoardState, payload: dict) -> BoardState:
    """Move a card between (or within) lists.

    ``fromListId`` is a hint: when the card is not there the reducer looks
    through every list, so a stale source id still lands the card correctly.
    """
    board = _editable_board(state)
    if board is None:
        return state
    card_id = payload["cardId"]
    target = _find_list(board, payload["toListId"])
    if target is None:
        return state

    source = _find_list(board, payload.get("fromListId"))
    idx = _index_of(source.get("cards", []), card_id) if source is not None else -1
    if idx == -1:
        source, idx = _find_card(board, card_id)
        if source is None:
            return state

    card = source["cards"].pop(idx)
    card["listId"] = target["id"]
    _insert_at(target.setdefault("cards", []), card, payload.get("position"))
    _renumber(source["cards"])
    _renumber(target["cards"])
    return replace(state, current_board=board)


def delete_card(state: BoardState, payload: dict) -> BoardState:
    board = _editable_board(state)
    if board is None:
        return state
    for lst in board.get("lists", []):
        before = len(lst.get("cards", []))
        lst["cards"] = [c for c in lst.get("cards", []) if c.get("id") != payload["cardId"]]
        if len(lst["cards"]) != before:
            _renumber(lst["cards"])
    return replace(state, current_board=board)


def add_comment(state: BoardState, comment: dict) -> BoardState:
    board = _editable_board(state)
    if board is None:
        return state
    lst, idx = _find_card(board, comment["cardId"])
    if lst is None:
        return state
    comments = lst["cards"][idx].setdefault("comments", [])
    pos = _index_of(comments, comment["id"])
    entry = {k: v for k, v in copy.deepcopy(comment).items() if k != "boardId"}
    if pos == -1:
        comments.append(entry)
    else:
        comments[pos] = entry
    return replace(state, current_board=board)


# ============================================================
# PRESENCE
# ============================================================

def set_connected_users(state: BoardState, user_ids: List[str]) -> BoardState:
    return replace(state, connected_users=list(dict.fromkeys(user_ids)))


def user_join(state: BoardState, payload: dict) -> BoardState:
    if payload["userId"] in state.connected_users:
        return state
    return replace(state, connected_users=state.connected_users + [payload["userId"]])


def user_leave(state: BoardState, payload: dict) -> BoardState:
    return replace(state, connected_users=[u for u in state.connected_users if u != payload["userId"]])


# ============================================================
# EVENT ROUTING
# ============================================================

EVENT_REDUCERS: Dict[str, Reducer] = {
    "board.update": update_board,
    "board.delete": delete_board,
    "list.create": add_list,
    "list.update": update_list,
    "list.delete": delete_list,
    "card.create": add_card,
    "card.update": update_card,
    "card.move": move_card,
    "card.delete": delete_card,
    "comment.create": add_comment,
    "user.join": user_join,
    "user.leave": user_leave,
}

# Events that act on the board collection rather than the open board
_COLLECTION_EVENTS = {"board.update", "board.delete"}


def reduce(state: BoardState, event: str, payload: Any) -> BoardState:
    """Apply a realtime event. Unknown events and other boards' events are ignored."""
    reducer = EVENT_REDUCERS.get(event)
    if reducer is None:
        return state
    if event not in _COLLECTION_EVENTS and isinstance(payload, dict):
        board_id = payload.get("boardId")
        current = state.current_board
        if current is None or (board_id is not None and board_id != current.get("id")):
            return state
    return reducer(state, payload)


class BoardStore:
    """Mutable holder around the immutable state, with change listeners."""

    def __init__(self, state: Optional[BoardState] = None):
        self.state = state or BoardState()
        self._listeners: List[Callable[[BoardState], None]] = []

    def subscribe(self, listener: Callable[[BoardState], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _set(self, state: BoardState) -> BoardState:
        if state is not self.state:
            self.state = state
            for listener in list(self._listeners):
                listener(state)
        return self.state

    def dispatch(self, event: str, payload: Any) -> BoardState:
        return self._set(reduce(self.state, event, payload))

    def apply(self, reducer: Reducer, payload: Any) -> BoardState:
        return self._set(reducer(self.state, payload))

    def apply_message(self, message: dict) -> BoardState:
        """Apply a server frame ``{"type", "payload", ...}``."""
        return self.dispatch(message.get("type", ""), message.get("payload"))
