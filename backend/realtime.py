# realtime.py — Board rooms, presence and broadcast fan-out
"""
Every WebSocket connection is a small state machine:

    UNAUTHENTICATED -> AUTHENTICATED -> IN_ROOM(board_id)

A connection sits in at most one board room. Room membership lives in a
PresenceRegistry and messages are fanned out through a BroadcastBus. The
local bus delivers in-process; the Redis bus publishes every message on a
shared channel so each API instance can deliver to its own room members.
Without REDIS_URL (or when Redis is unreachable at startup) the hub runs
in local-only mode.
"""
import os
import json
import uuid
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from telemetry import span

logger = logging.getLogger("kanbanflow.realtime")

REDIS_URL = os.getenv("REDIS_URL", "")
REDIS_CHANNEL = os.getenv("REDIS_CHANNEL", "kanbanflow:board-events")
RECONNECT_DELAY = float(os.getenv("REDIS_RECONNECT_DELAY", "0.5"))
RECONNECT_MAX_DELAY = 30.0

Deliver = Callable[[str, dict, Optional[str]], Awaitable[None]]


def make_message(event: str, payload: Dict[str, Any]) -> dict:
    return {
        "type": event,
        "payload": payload,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ============================================================
# CONNECTION STATE MACHINE
# ============================================================

class ConnectionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    IN_ROOM = "in_room"


class InvalidTransition(Exception):
    pass


class BoardConnection:
    """One client socket plus who it belongs to and which board it watches."""

    def __init__(self, websocket, connection_id: Optional[str] = None):
        self.websocket = websocket
        self.id = connection_id or str(uuid.uuid4())
        self.state = ConnectionState.UNAUTHENTICATED
        self.user = None
        self.board_id: Optional[str] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user else None

    def _require(self, *states: ConnectionState) -> None:
        if self.state not in states:
            raise InvalidTransition(f"Connection is {self.state.value}")

    def authenticate(self, user) -> None:
        self._require(ConnectionState.UNAUTHENTICATED)
        self.user = user
        self.state = ConnectionState.AUTHENTICATED

    def enter_room(self, board_id: str) -> None:
        self._require(ConnectionState.AUTHENTICATED)
        self.board_id = board_id
        self.state = ConnectionState.IN_ROOM

    def exit_room(self) -> str:
        self._require(ConnectionState.IN_ROOM)
        board_id, self.board_id = self.board_id, None
        self.state = ConnectionState.AUTHENTICATED
        return board_id

    async def send(self, message: dict) -> None:
        await self.websocket.send_json(message)


# ============================================================
# PRESENCE
# ============================================================

class PresenceRegistry(ABC):
    """Which connections (and users) are in which board room."""

    @abstractmethod
    def add(self, board_id: str, connection_id: str, user_id: str) -> None: ...

    @abstractmethod
    def remove(self, board_id: str, connection_id: str) -> None: ...

    @abstractmethod
    def connections(self, board_id: str) -> List[str]: ...

    @abstractmethod
    def users(self, board_id: str) -> List[str]: ...

    @abstractmethod
    def rooms(self) -> List[str]: ...

    @abstractmethod
    def clear(self) -> None: ...


class InMemoryPresenceRegistry(PresenceRegistry):

    def __init__(self):
        self._rooms: Dict[str, Dict[str, str]] = {}  # board_id -> {connection_id -> user_id}

    def add(self, board_id, connection_id, user_id):
        self._rooms.setdefault(board_id, {})[connection_id] = user_id

    def remove(self, board_id, connection_id):
        room = self._rooms.get(board_id)
        if room is None:
            return
        room.pop(connection_id, None)
        if not room:
            del self._rooms[board_id]

    def connections(self, board_id):
        return list(self._rooms.get(board_id, {}).keys())

    def users(self, board_id):
        # distinct, in join order
        return list(dict.fromkeys(self._rooms.get(board_id, {}).values()))

    def rooms(self):
        return list(self._rooms.keys())

    def clear(self):
        self._rooms.clear()


# ============================================================
# BROADCAST BUS
# ============================================================

class BroadcastBus(ABC):
    """Carries room messages to every instance's local deliverer."""

    name = "abstract"

    def __init__(self):
        self._deliver: Optional[Deliver] = None

    def bind(self, deliver: Deliver) -> None:
        self._deliver = deliver

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    @abstractmethod
    async def publish(self, board_id: str, message: dict, exclude: Optional[str] = None) -> None: ...


class LocalBroadcastBus(BroadcastBus):
    name = "local"

    async def publish(self, board_id, message, exclude=None):
        if self._deliver is not None:
            await self._deliver(board_id, message, exclude)


class RedisBroadcastBus(BroadcastBus):
    """Redis pub/sub fan-out. Until started, publishes are delivered locally.

    The listener resubscribes with exponential backoff when the subscription
    drops; a message that cannot be decoded is logged and skipped.
    """

    name = "redis"

    def __init__(self, url: str, channel: str = REDIS_CHANNEL, client=None,
                 reconnect_delay: float = RECONNECT_DELAY):
        super().__init__()
        self.url = url
        self.channel = channel
        self.reconnect_delay = reconnect_delay
        self._redis = client
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self._listener is not None and not self._listener.done()

    async def start(self):
        if self._redis is None:
            self._redis = aioredis.from_url(self.url, decode_responses=True)
        await self._redis.ping()
        await self._subscribe()
        self._listener = asyncio.create_task(self._listen())
        logger.info(f"Redis broadcast bus subscribed to {self.channel}")

    async def stop(self):
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self.channel)
            except (RedisError, OSError) as e:
                logger.debug(f"Redis unsubscribe failed: {e}")
            await self._drop_subscription()
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, board_id, message, exclude=None):
        if self.connected:
            envelope = {"board_id": board_id, "exclude": exclude, "message": message}
            try:
                await self._redis.publish(self.channel, json.dumps(envelope))
                return
            except (RedisError, OSError) as e:
                logger.warning(f"Redis publish failed ({e}); delivering to this instance only")
        if self._deliver is not None:
            await self._deliver(board_id, message, exclude)

    async def _subscribe(self):
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self.channel)

    async def _drop_subscription(self):
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.debug(f"Closing stale Redis subscription failed: {e}")

    async def _listen(self):
        delay = self.reconnect_delay
        try:
            while True:
                try:
                    if self._pubsub is None:
                        await self._subscribe()
                        logger.info(f"Redis broadcast bus resubscribed to {self.channel}")
                    async for item in self._pubsub.listen():
                        delay = self.reconnect_delay
                        if item.get("type") == "message":
                            await self._handle(item["data"])
                except (RedisError, OSError) as e:
                    logger.warning(f"⚠️  Redis subscription lost ({e}); retrying in {delay:.1f}s")
                else:
                    logger.warning(f"⚠️  Redis subscription ended; retrying in {delay:.1f}s")
                await self._drop_subscription()
                await asyncio.sleep(delay)
                delay = min(delay * 2, RECONNECT_MAX_DELAY)
        except asyncio.CancelledError:
            logger.info("Redis broadcast bus listener stopped")
            raise
        except Exception as e:
            logger.error(f"Redis broadcast bus listener crashed: {e}", exc_info=True)
            raise

    async def _handle(self, data):
        try:
            envelope = json.loads(data)
            await self._deliver(envelope["board_id"], envelope["message"], envelope.get("exclude"))
        except Exception as e:
            logger.warning(f"Dropping malformed bus message: {e}")


def build_bus(url: str = REDIS_URL) -> BroadcastBus:
    if url:
        return RedisBroadcastBus(url)
    return LocalBroadcastBus()


# ============================================================
# HUB
# ============================================================

class BoardHub:
    """Room-scoped fan-out of board events to connected clients."""

    def __init__(self, presence: Optional[PresenceRegistry] = None, bus: Optional[BroadcastBus] = None):
        self.presence = presence or InMemoryPresenceRegistry()
        self.bus = bus or LocalBroadcastBus()
        self.bus.bind(self._deliver)
        self._connections: Dict[str, BoardConnection] = {}

    async def start(self) -> None:
        try:
            await self.bus.start()
        except (RedisError, OSError) as e:
            logger.warning(f"⚠️  Broadcast bus '{self.bus.name}' unavailable ({e}); running in local-only mode")
            await self.bus.stop()
            self.bus = LocalBroadcastBus()
            self.bus.bind(self._deliver)

    async def stop(self) -> None:
        await self.bus.stop()

    def reset(self) -> None:
        self._connections.clear()
        self.presence.clear()

    # --- connection lifecycle ---

    def register(self, conn: BoardConnection) -> None:
        self._connections[conn.id] = conn
        logger.info(f"WS connected: user={conn.user_id[:8] if conn.user_id else '?'} conn={conn.id[:8]}")

    async def unregister(self, conn: BoardConnection) -> None:
        await self.leave(conn)
        self._connections.pop(conn.id, None)
        logger.info(f"WS disconnected: conn={conn.id[:8]}")

    async def join(self, conn: BoardConnection, board_id: str) -> List[str]:
        """Put the connection in a board room; returns the user ids now present.

        Peers hear ``user.join`` only for a user's first connection in the
        room. Re-joining the current room changes nothing.
        """
        if conn.state == ConnectionState.IN_ROOM:
            if conn.board_id == board_id:
                return self.presence.users(board_id)
            await self.leave(conn)
        already_present = conn.user_id in self.presence.users(board_id)
        conn.enter_room(board_id)
        self.presence.add(board_id, conn.id, conn.user_id)
        if not already_present:
            await self.broadcast(board_id, "user.join", {
                "userId": conn.user_id,
                "user": conn.user.model_dump() if conn.user else None,
                "boardId": board_id,
            }, exclude=conn.id)
        return self.presence.users(board_id)

    async def leave(self, conn: BoardConnection) -> Optional[str]:
        if conn.state != ConnectionState.IN_ROOM:
            return None
        board_id = conn.exit_room()
        self.presence.remove(board_id, conn.id)
        # another tab of the same user keeps them present
        if conn.user_id not in self.presence.users(board_id):
            await self.broadcast(board_id, "user.leave", {
                "userId": conn.user_id,
                "boardId": board_id,
            }, exclude=conn.id)
        return board_id

    # --- fan-out ---

    async def broadcast(self, board_id: str, event: str, payload: Dict[str, Any], exclude: Optional[str] = None) -> None:
        with span("realtime.broadcast", board_id=board_id, event=event, bus=self.bus.name):
            await self.bus.publish(board_id, make_message(event, payload), exclude)

    async def _deliver(self, board_id: str, message: dict, exclude: Optional[str]) -> None:
        dead = []
        for connection_id in self.presence.connections(board_id):
            if connection_id == exclude:
                continue
            conn = self._connections.get(connection_id)
            if conn is None:
                continue
            try:
                await conn.send(message)
            except Exception as e:
                logger.debug(f"Dropping dead connection {connection_id[:8]}: {e}")
                dead.append(connection_id)
        for connection_id in dead:
            self.presence.remove(board_id, connection_id)

    def room_users(self, board_id: str) -> List[str]:
        return self.presence.users(board_id)

    def get_stats(self) -> dict:
        return {
            "total_connections": len(self._connections),
            "rooms": len(self.presence.rooms()),
            "bus": self.bus.name,
        }


# Global hub
hub = BoardHub(bus=build_bus())
