# routers/boards.py — Boards, lists, cards, comments and activity
from typing import List

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from board_service import BoardService
from database import get_db_session
from realtime import hub
from schemas import (
    AuditLogOut, BoardCreate, BoardOut, BoardUpdate, CardCreate, CardMove, CardOut,
    CardUpdate, CommentCreate, CommentOut, ListCreate, ListOut, ListUpdate, MessageOut,
    wire,
)

router = APIRouter(prefix="/api/boards", tags=["Boards"])


async def _publish(request: Request, board_id: str, event: str, payload: dict) -> None:
    """Broadcast a REST mutation to the board room (minus the caller's own socket, if named)."""
    await hub.broadcast(board_id, event, payload, exclude=request.headers.get("X-Connection-ID"))


# ============================================================
# BOARD ENDPOINTS
# ============================================================

@router.get("", response_model=List[BoardOut])
async def list_boards(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Boards the user owns or collaborates on"""
    return await BoardService.list_boards(db, user.id)


@router.get("/{board_id}", response_model=BoardOut)
async def get_board(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    board = await BoardService.get_accessible_board(db, board_id, user.id)
    return await BoardService.board_out(db, board)


@router.post("", response_model=BoardOut, status_code=201)
async def create_board(
    data: BoardCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return await BoardService.create_board(db, user.id, data)


@router.put("/{board_id}", response_model=BoardOut)
async def update_board(
    board_id: str,
    data: BoardUpdate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Update board title, description or color (owner only)"""
    board = await BoardService.update_board(db, board_id, user.id, data)
    await _publish(request, board.id, "board.update", wire(board))
    return board


@router.delete("/{board_id}", status_code=204)
async def delete_board(
    board_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a board with all its lists, cards, comments and invitations"""
    await BoardService.delete_board(db, board_id, user.id)
    await _publish(request, board_id, "board.delete", {"boardId": board_id})
    return Response(status_code=204)


@router.get("/{board_id}/activity", response_model=List[AuditLogOut])
async def board_activity(
    board_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Most recent activity on a board, newest first"""
    return await BoardService.list_activity(db, board_id, user.id, limit)


# ============================================================
# LIST ENDPOINTS
# ============================================================

@router.post("/{board_id}/lists", response_model=ListOut, status_code=201)
async def create_list(
    board_id: str,
    data: ListCreate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    lst = await BoardService.create_list(db, board_id, user.id, data)
    await _publish(request, lst.board_id, "list.create", wire(lst))
    return lst


@router.put("/lists/{list_id}", response_model=ListOut)
async def update_list(
    list_id: str,
    data: ListUpdate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    lst = await BoardService.update_list(db, list_id, user.id, data)
    await _publish(request, lst.board_id, "list.update", wire(lst))
    return lst


@router.delete("/lists/{list_id}", response_model=MessageOut)
async def delete_list(
    list_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a list together with its cards and their comments"""
    lst = await BoardService.delete_list(db, list_id, user.id)
    await _publish(request, lst.board_id, "list.delete", {"listId": lst.id, "boardId": lst.board_id})
    return MessageOut(message="List deleted successfully")


# ============================================================
# CARD ENDPOINTS
# ============================================================

@router.post("/{board_id}/cards", response_model=CardOut, status_code=201)
async def create_card(
    board_id: str,
    data: CardCreate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    card = await BoardService.create_card(db, board_id, user.id, data)
    await _publish(request, card.board_id, "card.create", wire(card))
    return card


@router.put("/cards/{card_id}", response_model=CardOut)
async def update_card(
    card_id: str,
    data: CardUpdate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Partially update a card; omitted fields are left untouched"""
    card = await BoardService.update_card(db, card_id, user.id, data)
    await _publish(request, card.board_id, "card.update", wire(card))
    return card


@router.put("/cards/{card_id}/move", response_model=CardOut)
async def move_card(
    card_id: str,
    data: CardMove,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    card, from_list_id = await BoardService.move_card(db, card_id, user.id, data.list_id, data.position)
    await _publish(request, card.board_id, "card.move", {
        "cardId": card.id,
        "boardId": card.board_id,
        "fromListId": from_list_id,
        "toListId": card.list_id,
        "position": card.position,
    })
    return card


@router.delete("/cards/{card_id}", response_model=MessageOut)
async def delete_card(
    card_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    card = await BoardService.delete_card(db, card_id, user.id)
    await _publish(request, card.board_id, "card.delete", {
        "cardId": card.id,
        "listId": card.list_id,
        "boardId": card.board_id,
    })
    return MessageOut(message="Card deleted successfully")


@router.post("/cards/{card_id}/comments", response_model=CommentOut, status_code=201)
async def add_comment(
    card_id: str,
    data: CommentCreate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    comment, card = await BoardService.add_comment(db, card_id, user.id, data.content)
    await _publish(request, card.board_id, "comment.create", {**wire(comment), "boardId": card.board_id})
    return comment
