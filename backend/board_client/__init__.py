# board_client — Python client for KanbanFlow: REST calls, board state, drag reordering
from board_client.api import ApiError, KanbanApiClient
from board_client.drag import CardMoveIntent, DragReorderController, DropTarget, ListMoveIntent
from board_client.store import BoardState, BoardStore, reduce

__all__ = [
    "ApiError",
    "BoardState",
    "BoardStore",
    "CardMoveIntent",
    "DragReorderController",
    "DropTarget",
    "KanbanApiClient",
    "ListMoveIntent",
    "reduce",
]
