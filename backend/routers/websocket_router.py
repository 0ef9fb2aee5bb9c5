# routers/websocket_router.py — Real-time board collaboration over WebSocket
#
# Client frames:  {"type": <event>, "payload": {...}, "request_id": <opaque>}
# Server frames:  {"type": <event>, "payload": {...}, "timestamp": <iso>}
# Every client frame is answered with exactly one ack frame:
#   {"type": "ack", "request_id", "event", "ok": true,  "payload": {...}}
#   {"type": "ack", "request_id", "event", "ok": false, "error": {"status", "message"}}
# except "ping", which is answered with "pong".
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query
from pydantic import BaseModel, ValidationError as PydanticValidationError

from auth import AuthService, to_current_user
from board_service import BoardService
from database import async_session_maker
from errors import AuthError, KanbanError, ValidationError, pydantic_errors
from realtime import BoardConnection, BoardHub, ConnectionState, InvalidTransition, hub, make_message
from schemas import (
    BoardUpdate, CardCreate, CardMove, CardUpdate, CommentCreate, ListCreate, ListUpdate, wire,
)

router = APIRouter(tags=["WebSocket"])
logger = logging.getLogger("kanbanflow.ws")


def _field(payload: Dict[str, Any], name: str) -> str:
    value = payload.get(name)
    if not value:
        raise ValidationError(f"{name} is required")
    return value


def _body(model: type, payload: Dict[str, Any], *id_fields: str) -> BaseModel:
    """Validate the payload (minus routing ids) against a request schema."""
    data = {k: v for k, v in payload.items() if k not in id_fields}
    return model.model_validate(data)


def ack(frame: Dict[str, Any], payload: Any = None, error: Optional[dict] = None) -> dict:
    message = {
        "type": "ack",
        "request_id": frame.get("request_id"),
        "event": frame.get("type"),
        "ok": error is None,
    }
    if error is None:
        message["payload"] = payload if payload is not None else {}
    else:
        message["error"] = error
    return message


class RealtimeDispatcher:
    """Routes socket events through the same service layer as REST."""

    def __init__(self, board_hub: BoardHub, session_factory=async_session_maker):
        self.hub = board_hub
        self.session_factory = session_factory
        self._handlers = {
            "join-board": self.join_board,
            "leave-board": self.leave_board,
            "board.update": self.board_update,
            "list.create": self.list_create,
            "list.update": self.list_update,
            "list.delete": self.list_delete,
            "card.create": self.card_create,
            "card.update": self.card_update,
            "card.delete": self.card_delete,
            "card.move": self.card_move,
            "comment.create": self.comment_create,
        }

    async def handle(self, conn: BoardConnection, frame: Dict[str, Any]) -> dict:
        event = frame.get("type", "")
        if event == "ping":
            return make_message("pong", {})

        handler = self._handlers.get(event)
        try:
            if conn.state == ConnectionState.UNAUTHENTICATED:
                raise AuthError("Not authorized")
            if handler is None:
                raise ValidationError(f"Unknown event: {event}")
            payload = frame.get("payload") or {}
            if not isinstance(payload, dict):
                raise ValidationError("payload must be an object")
            return ack(frame, await handler(conn, payload))
        except KanbanError as e:
            return ack(frame, error=e.to_dict())
        except PydanticValidationError as e:
            return ack(frame, error=ValidationError(errors=pydantic_errors(e.errors())).to_dict())
        except InvalidTransition as e:
            return ack(frame, error={"status": 400, "message": str(e)})
        except Exception as e:
            logger.error(f"Realtime handler '{event}' failed: {e}", exc_info=True)
            return ack(frame, error={"status": 500, "message": str(e)})

    async def _emit(self, conn: BoardConnection, board_id: str, event: str, payload: dict) -> None:
        await self.hub.broadcast(board_id, event, payload, exclude=conn.id)

    # ---------------- rooms ----------------

    async def join_board(self, conn, payload):
        board_id = _field(payload, "boardId")
        async with self.session_factory() as db:
            await BoardService.get_accessible_board(db, board_id, conn.user_id)
        users = await self.hub.join(conn, board_id)
        logger.info(f"user={conn.user_id[:8]} joined board={board_id[:8]}")
        return {"boardId": board_id, "users": users}

    async def leave_board(self, conn, payload):
        board_id = await self.hub.leave(conn)
        return {"boardId": board_id}

    # ---------------- mutations ----------------

    async def board_update(self, conn, payload):
        board_id = _field(payload, "boardId")
        data = _body(BoardUpdate, payload, "boardId")
        async with self.session_factory() as db:
            board = wire(await BoardService.update_board(db, board_id, conn.user_id, data))
        await self._emit(conn, board_id, "board.update", board)
        return board

    async def list_create(self, conn, payload):
        board_id = _field(payload, "boardId")
        data = _body(ListCreate, payload, "boardId")
        async with self.session_factory() as db:
            lst = wire(await BoardService.create_list(db, board_id, conn.user_id, data))
        await self._emit(conn, board_id, "list.create", lst)
        return lst

    async def list_update(self, conn, payload):
        list_id = _field(payload, "listId")
        data = _body(ListUpdate, payload, "listId", "boardId")
        async with self.session_factory() as db:
            lst = wire(await BoardService.update_list(db, list_id, conn.user_id, data))
        await self._emit(conn, lst["boardId"], "list.update", lst)
        return lst

    async def list_delete(self, conn, payload):
        list_id = _field(payload, "listId")
        async with self.session_factory() as db:
            lst = await BoardService.delete_list(db, list_id, conn.user_id)
        out = {"listId": lst.id, "boardId": lst.board_id}
        await self._emit(conn, lst.board_id, "list.delete", out)
        return out

    async def card_create(self, conn, payload):
        board_id = _field(payload, "boardId")
        data = _body(CardCreate, payload, "boardId")
        async with self.session_factory() as db:
            card = wire(await BoardService.create_card(db, board_id, conn.user_id, data))
        await self._emit(conn, board_id, "card.create", card)
        return card

    async def card_update(self, conn, payload):
        card_id = _field(payload, "cardId")
        data = _body(CardUpdate, payload, "cardId", "boardId", "listId")
        async with self.session_factory() as db:
            card = wire(await BoardService.update_card(db, card_id, conn.user_id, data))
        await self._emit(conn, card["boardId"], "card.update", card)
        return card

    async def card_delete(self, conn, payload):
        card_id = _field(payload, "cardId")
        async with self.session_factory() as db:
            card = await BoardService.delete_card(db, card_id, conn.user_id)
        out = {"cardId": card.id, "listId": card.list_id, "boardId": card.board_id}
        await self._emit(conn, card.board_id, "card.delete", out)
        return out

    async def card_move(self, conn, payload):
        card_id = _field(payload, "cardId")
        move = CardMove.model_validate({
            "listId": _field(payload, "toListId"),
            "position": payload.get("position"),
        })
        async with self.session_factory() as db:
            card, from_list_id = await BoardService.move_card(
                db, card_id, conn.user_id, move.list_id, move.position,
            )
        out = {
            "cardId": card.id,
            "boardId": card.board_id,
            "fromListId": from_list_id,
            "toListId": card.list_id,
            "position": card.position,
        }
        await self._emit(conn, card.board_id, "card.move", out)
        return out

    async def comment_create(self, conn, payload):
        card_id = _field(payload, "cardId")
        data = _body(CommentCreate, payload, "cardId", "boardId")
        async with self.session_factory() as db:
            comment, card = await BoardService.add_comment(db, card_id, conn.user_id, data.content)
        out = {**wire(comment), "boardId": card.board_id}
        await self._emit(conn, card.board_id, "comment.create", out)
        return out


dispatcher = RealtimeDispatcher(hub)


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
):
    """Main WebSocket endpoint for live board collaboration"""
    try:
        async with dispatcher.session_factory() as db:
            user = await AuthService.user_from_token(token, db)
    except AuthError as e:
        await websocket.close(code=4001, reason=e.message)
        return

    await websocket.accept()
    conn = BoardConnection(websocket)
    conn.authenticate(to_current_user(user))
    hub.register(conn)

    await conn.send(make_message("connected", {
        "connectionId": conn.id,
        "user": conn.user.model_dump(),
    }))

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            try:
                raw = message.get("text")
                if raw is None:
                    raise ValueError("binary frames are not supported")
                frame = json.loads(raw)
                if not isinstance(frame, dict):
                    raise ValueError("frame must be an object")
            except ValueError:
                await conn.send(ack({}, error={"status": 400, "message": "Malformed message"}))
                continue
            await conn.send(await dispatcher.handle(conn, frame))
    except WebSocketDisconnect:
        pass
    finally:
        await hub.unregister(conn)


@router.get("/api/ws/stats")
async def websocket_stats():
    """Get WebSocket connection statistics"""
    return hub.get_stats()
