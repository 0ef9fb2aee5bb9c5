# tests/test_realtime.py — Rooms, presence, broadcast fan-out and socket event dispatch
import asyncio
import json

import pytest
from fakeredis import FakeServer, aioredis as fake_aioredis
from httpx import AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from auth import CurrentUser, to_current_user
from realtime import (
    BoardConnection, BoardHub, ConnectionState, InMemoryPresenceRegistry, InvalidTransition,
    LocalBroadcastBus, RedisBroadcastBus, hub, make_message,
)
from routers.websocket_router import RealtimeDispatcher, ack
from tests.conftest import (
    add_collaborator, create_board, create_card, create_list, get_auth_headers,
)


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def events(self):
        return [m["type"] for m in self.sent]


def _connect(user, board_hub: BoardHub, fail: bool = False) -> BoardConnection:
    conn = BoardConnection(FakeWebSocket(fail=fail))
    conn.authenticate(to_current_user(user))
    board_hub.register(conn)
    return conn


@pytest.fixture
def local_hub():
    return BoardHub()


@pytest.fixture
def dispatcher(local_hub, session_factory):
    return RealtimeDispatcher(local_hub, session_factory)


# ============================================================
# Connection state machine
# ============================================================

def test_connection_state_transitions():
    user = CurrentUser(id="u1", name="Ann", email="ann@example.com")
    conn = BoardConnection(FakeWebSocket())
    assert conn.state == ConnectionState.UNAUTHENTICATED
    with pytest.raises(InvalidTransition):
        conn.enter_room("board-1")

    conn.authenticate(user)
    assert conn.user_id == "u1"
    with pytest.raises(InvalidTransition):
        conn.authenticate(user)
    with pytest.raises(InvalidTransition):
        conn.exit_room()

    conn.enter_room("board-1")
    assert conn.state == ConnectionState.IN_ROOM
    assert conn.exit_room() == "board-1"
    assert conn.state == ConnectionState.AUTHENTICATED
    assert conn.board_id is None


def test_presence_registry_distinct_users():
    presence = InMemoryPresenceRegistry()
    presence.add("b1", "c1", "u1")
    presence.add("b1", "c2", "u1")
    presence.add("b1", "c3", "u2")
    assert presence.users("b1") == ["u1", "u2"]
    assert presence.connections("b1") == ["c1", "c2", "c3"]

    for conn_id in ("c1", "c2", "c3"):
        presence.remove("b1", conn_id)
    assert presence.rooms() == []
    presence.remove("missing", "c1")


def test_make_message_shape():
    msg = make_message("card.create", {"id": "x"})
    assert msg["type"] == "card.create"
    assert msg["payload"] == {"id": "x"}
    assert msg["timestamp"]


# ============================================================
# Hub: rooms & fan-out
# ============================================================

@pytest.mark.asyncio
async def test_join_broadcasts_presence_to_others(local_hub, owner, bob):
    alice_conn = _connect(owner, local_hub)
    bob_conn = _connect(bob, local_hub)

    assert await local_hub.join(alice_conn, "board-1") == [owner.id]
    assert alice_conn.websocket.sent == []

    assert await local_hub.join(bob_conn, "board-1") == [owner.id, bob.id]
    assert alice_conn.websocket.events() == ["user.join"]
    assert alice_conn.websocket.sent[0]["payload"]["userId"] == bob.id
    assert alice_conn.websocket.sent[0]["payload"]["user"]["name"] == "Bob Builder"
    assert bob_conn.websocket.sent == []

    await local_hub.unregister(bob_conn)
    assert alice_conn.websocket.events() == ["user.join", "user.leave"]
    assert local_hub.room_users("board-1") == [owner.id]
    assert local_hub.get_stats() == {"total_connections": 1, "rooms": 1, "bus": "local"}


@pytest.mark.asyncio
async def test_joining_another_board_leaves_the_first(local_hub, owner, bob):
    alice_conn = _connect(owner, local_hub)
    bob_conn = _connect(bob, local_hub)
    await local_hub.join(alice_conn, "board-1")
    await local_hub.join(bob_conn, "board-1")

    await local_hub.join(bob_conn, "board-2")
    assert bob_conn.board_id == "board-2"
    assert local_hub.room_users("board-1") == [owner.id]
    assert alice_conn.websocket.events() == ["user.join", "user.leave"]

    await local_hub.broadcast("board-1", "list.create", {"id": "l1"})
    assert alice_conn.websocket.events()[-1] == "list.create"
    assert "list.create" not in bob_conn.websocket.events()


@pytest.mark.asyncio
async def test_broadcast_exclude_and_dead_sockets(local_hub, owner, bob, outsider):
    alice_conn = _connect(owner, local_hub)
    bob_conn = _connect(bob, local_hub)
    dead_conn = _connect(outsider, local_hub, fail=True)
    for conn in (alice_conn, bob_conn, dead_conn):
        await local_hub.join(conn, "board-1")

    await local_hub.broadcast("board-1", "card.update", {"id": "c1"}, exclude=alice_conn.id)
    assert "card.update" not in alice_conn.websocket.events()
    assert bob_conn.websocket.events()[-1] == "card.update"
    assert dead_conn.id not in local_hub.presence.connections("board-1")


@pytest.mark.asyncio
async def test_unstarted_redis_bus_delivers_locally(owner):
    board_hub = BoardHub(bus=RedisBroadcastBus("redis://127.0.0.1:1"))
    conn = _connect(owner, board_hub)
    board_hub.presence.add("board-1", conn.id, owner.id)
    conn.enter_room("board-1")

    await board_hub.broadcast("board-1", "board.update", {"id": "board-1"})
    assert conn.websocket.events() == ["board.update"]


@pytest.mark.asyncio
async def test_unreachable_redis_falls_back_to_local():
    board_hub = BoardHub(bus=RedisBroadcastBus("redis://127.0.0.1:1"))
    await board_hub.start()
    assert isinstance(board_hub.bus, LocalBroadcastBus)
    assert board_hub.get_stats()["bus"] == "local"
    await board_hub.stop()


@pytest.mark.asyncio
async def test_second_tab_does_not_repeat_presence(local_hub, owner, bob):
    watcher = _connect(owner, local_hub)
    tab1 = _connect(bob, local_hub)
    tab2 = _connect(bob, local_hub)
    await local_hub.join(watcher, "board-1")
    await local_hub.join(tab1, "board-1")
    await local_hub.join(tab2, "board-1")
    assert watcher.websocket.events() == ["user.join"]

    await local_hub.unregister(tab1)
    assert watcher.websocket.events() == ["user.join"]
    assert local_hub.room_users("board-1") == [owner.id, bob.id]

    await local_hub.unregister(tab2)
    assert watcher.websocket.events() == ["user.join", "user.leave"]
    assert local_hub.room_users("board-1") == [owner.id]


@pytest.mark.asyncio
async def test_rejoining_current_room_is_silent(local_hub, owner, bob):
    watcher = _connect(owner, local_hub)
    bob_conn = _connect(bob, local_hub)
    await local_hub.join(watcher, "board-1")
    await local_hub.join(bob_conn, "board-1")

    assert await local_hub.join(bob_conn, "board-1") == [owner.id, bob.id]
    assert watcher.websocket.events() == ["user.join"]
    assert bob_conn.board_id == "board-1"


# ============================================================
# Redis bus
# ============================================================

async def _wait_for(predicate, timeout: float = 2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


def _fake_redis_bus(server) -> RedisBroadcastBus:
    client = fake_aioredis.FakeRedis(server=server, decode_responses=True)
    return RedisBroadcastBus("redis://fake", client=client, reconnect_delay=0)


@pytest.mark.asyncio
async def test_redis_bus_fans_out_across_instances(owner, bob):
    server = FakeServer()
    hub_a = BoardHub(bus=_fake_redis_bus(server))
    hub_b = BoardHub(bus=_fake_redis_bus(server))
    await hub_a.start()
    await hub_b.start()
    try:
        assert hub_a.get_stats()["bus"] == "redis"
        alice_conn = _connect(owner, hub_a)
        bob_conn = _connect(bob, hub_b)
        await hub_a.join(alice_conn, "board-1")
        await hub_b.join(bob_conn, "board-1")
        await _wait_for(lambda: "user.join" in alice_conn.websocket.events())

        await hub_a.broadcast("board-1", "card.update", {"id": "c1"}, exclude=alice_conn.id)
        await hub_a.broadcast("board-1", "list.create", {"id": "l1"})
        await _wait_for(lambda: "list.create" in alice_conn.websocket.events())
        await _wait_for(lambda: "list.create" in bob_conn.websocket.events())

        assert "card.update" not in alice_conn.websocket.events()
        board_events = [m for m in bob_conn.websocket.sent if m["type"] != "user.join"]
        assert [m["type"] for m in board_events] == ["card.update", "list.create"]
        assert board_events[0]["payload"] == {"id": "c1"}
    finally:
        await hub_a.stop()
        await hub_b.stop()


class ScriptedPubSub:
    """Yields the given pubsub items, then fails with ``error`` or blocks."""

    def __init__(self, items, error=None):
        self.items = items
        self.error = error
        self.closed = False

    async def subscribe(self, channel):
        self.channel = channel

    async def unsubscribe(self, channel):
        pass

    async def aclose(self):
        self.closed = True

    async def listen(self):
        for item in self.items:
            yield item
        if self.error is not None:
            raise self.error
        await asyncio.Event().wait()


class ScriptedRedis:
    def __init__(self, *subscriptions):
        self.subscriptions = list(subscriptions)

    async def ping(self):
        return True

    def pubsub(self):
        return self.subscriptions.pop(0)

    async def aclose(self):
        pass


def _envelope(event: str) -> dict:
    return {"type": "message", "data": json.dumps({"board_id": "board-1", "exclude": None, "message": make_message(event, {})})}


@pytest.mark.asyncio
async def test_redis_listener_survives_bad_messages_and_resubscribes():
    delivered = []

    async def deliver(board_id, message, exclude):
        delivered.append(message["type"])

    first = ScriptedPubSub(
        [{"type": "subscribe", "data": 1}, {"type": "message", "data": "[1, 2]"},
         {"type": "message", "data": "not json"}, _envelope("card.update")],
        error=RedisConnectionError("connection reset"),
    )
    second = ScriptedPubSub([_envelope("card.move")])
    bus = RedisBroadcastBus("redis://fake", client=ScriptedRedis(first, second), reconnect_delay=0)
    bus.bind(deliver)
    await bus.start()
    try:
        await _wait_for(lambda: len(delivered) == 2)
        assert delivered == ["card.update", "card.move"]
        assert first.closed
        assert bus.connected
    finally:
        await bus.stop()
    assert second.closed


# ============================================================
# Dispatcher: socket events
# ============================================================

def test_ack_shape():
    frame = {"type": "card.move", "request_id": "r1"}
    assert ack(frame, {"a": 1}) == {"type": "ack", "request_id": "r1", "event": "card.move", "ok": True, "payload": {"a": 1}}
    failed = ack(frame, error={"status": 403, "message": "Access denied"})
    assert failed["ok"] is False
    assert failed["error"]["status"] == 403


@pytest.mark.asyncio
async def test_ping_and_unknown_events(dispatcher, local_hub, owner):
    conn = _connect(owner, local_hub)
    assert (await dispatcher.handle(conn, {"type": "ping"}))["type"] == "pong"

    reply = await dispatcher.handle(conn, {"type": "board.explode", "request_id": "r9"})
    assert reply["ok"] is False
    assert reply["request_id"] == "r9"
    assert reply["error"]["status"] == 400


@pytest.mark.asyncio
async def test_unauthenticated_connection_rejected(dispatcher):
    conn = BoardConnection(FakeWebSocket())
    reply = await dispatcher.handle(conn, {"type": "join-board", "payload": {"boardId": "x"}})
    assert reply["ok"] is False
    assert reply["error"]["status"] == 401


@pytest.mark.asyncio
async def test_join_board_checks_access(client: AsyncClient, dispatcher, local_hub, owner, outsider):
    board = await create_board(client, owner)

    conn = _connect(outsider, local_hub)
    reply = await dispatcher.handle(conn, {"type": "join-board", "payload": {"boardId": board["id"]}})
    assert reply["ok"] is False
    assert reply["error"] == {"status": 403, "message": "Access denied"}
    assert conn.state == ConnectionState.AUTHENTICATED
    assert local_hub.room_users(board["id"]) == []

    conn = _connect(owner, local_hub)
    reply = await dispatcher.handle(conn, {"type": "join-board", "payload": {"boardId": board["id"]}})
    assert reply["ok"] is True
    assert reply["payload"] == {"boardId": board["id"], "users": [owner.id]}

    reply = await dispatcher.handle(conn, {"type": "leave-board", "payload": {}})
    assert reply["payload"] == {"boardId": board["id"]}
    assert conn.state == ConnectionState.AUTHENTICATED


@pytest.mark.asyncio
async def test_card_move_acks_sender_and_broadcasts_to_peers(
    client: AsyncClient, dispatcher, local_hub, owner, bob, db_session,
):
    board = await create_board(client, owner)
    await add_collaborator(db_session, board["id"], bob)
    todo = await create_list(client, owner, board["id"], "Todo")
    done = await create_list(client, owner, board["id"], "Done")
    card = await create_card(client, owner, board["id"], todo["id"], "Fix bug")

    alice_conn = _connect(owner, local_hub)
    bob_conn = _connect(bob, local_hub)
    for conn in (alice_conn, bob_conn):
        reply = await dispatcher.handle(conn, {"type": "join-board", "payload": {"boardId": board["id"]}})
        assert reply["ok"], reply

    reply = await dispatcher.handle(alice_conn, {
        "type": "card.move",
        "request_id": "m1",
        "payload": {"cardId": card["id"], "boardId": board["id"], "toListId": done["id"], "position": 0},
    })
    assert reply["ok"] is True
    expected = {
        "cardId": card["id"],
        "boardId": board["id"],
        "fromListId": todo["id"],
        "toListId": done["id"],
        "position": 0,
    }
    assert reply["payload"] == expected

    assert bob_conn.websocket.sent[-1]["type"] == "card.move"
    assert bob_conn.websocket.sent[-1]["payload"] == expected
    assert "card.move" not in alice_conn.websocket.events()

    resp = await client.get(f"/api/boards/{board['id']}", headers=get_auth_headers(owner))
    assert [c["id"] for c in resp.json()["lists"][1]["cards"]] == [card["id"]]


@pytest.mark.asyncio
async def test_socket_mutations_share_rest_rules(client: AsyncClient, dispatcher, local_hub, owner, bob, db_session):
    board = await create_board(client, owner)
    await add_collaborator(db_session, board["id"], bob)
    todo = await create_list(client, owner, board["id"], "Todo")

    bob_conn = _connect(bob, local_hub)
    alice_conn = _connect(owner, local_hub)
    await dispatcher.handle(bob_conn, {"type": "join-board", "payload": {"boardId": board["id"]}})
    await dispatcher.handle(alice_conn, {"type": "join-board", "payload": {"boardId": board["id"]}})

    reply = await dispatcher.handle(bob_conn, {
        "type": "card.create",
        "payload": {"boardId": board["id"], "listId": todo["id"]},
    })
    assert reply["ok"] is False
    assert reply["error"]["status"] == 400
    assert reply["error"]["errors"][0]["field"] == "title"

    reply = await dispatcher.handle(bob_conn, {
        "type": "card.create",
        "payload": {"boardId": board["id"], "listId": todo["id"], "title": "From socket"},
    })
    assert reply["ok"] is True
    card = reply["payload"]
    assert card["createdBy"]["id"] == bob.id
    assert alice_conn.websocket.sent[-1]["type"] == "card.create"
    assert alice_conn.websocket.sent[-1]["payload"] == card

    reply = await dispatcher.handle(bob_conn, {
        "type": "comment.create",
        "payload": {"cardId": card["id"], "content": "done?"},
    })
    assert reply["payload"]["boardId"] == board["id"]
    assert alice_conn.websocket.sent[-1]["type"] == "comment.create"

    reply = await dispatcher.handle(bob_conn, {
        "type": "board.update",
        "payload": {"boardId": board["id"], "title": "Hijacked"},
    })
    assert reply["ok"] is False
    assert reply["error"]["status"] == 403

    reply = await dispatcher.handle(bob_conn, {"type": "card.delete", "payload": {"cardId": card["id"]}})
    assert reply["payload"] == {"cardId": card["id"], "listId": todo["id"], "boardId": board["id"]}
    assert alice_conn.websocket.sent[-1]["type"] == "card.delete"

    reply = await dispatcher.handle(bob_conn, {"type": "list.delete", "payload": {}})
    assert reply["error"] == {"status": 400, "message": "listId is required"}


# ============================================================
# REST mutations reach the room
# ============================================================

@pytest.mark.asyncio
async def test_rest_mutation_broadcast_matches_response(client: AsyncClient, owner, bob, db_session):
    board = await create_board(client, owner)
    await add_collaborator(db_session, board["id"], bob)
    todo = await create_list(client, owner, board["id"], "Todo")

    watcher = _connect(bob, hub)
    await hub.join(watcher, board["id"])
    sender = _connect(owner, hub)
    await hub.join(sender, board["id"])

    card = await create_card(client, owner, board["id"], todo["id"], "Fix bug")
    assert watcher.websocket.sent[-1]["type"] == "card.create"
    assert watcher.websocket.sent[-1]["payload"] == card
    assert "card.create" in sender.websocket.events()

    headers = {**get_auth_headers(owner), "X-Connection-ID": sender.id}
    resp = await client.put(f"/api/boards/cards/{card['id']}", json={"title": "Fixed"}, headers=headers)
    assert resp.status_code == 200
    assert watcher.websocket.sent[-1]["payload"] == resp.json()
    assert "card.update" not in sender.websocket.events()

    resp = await client.delete(f"/api/boards/{board['id']}", headers=get_auth_headers(owner))
    assert resp.status_code == 204
    assert watcher.websocket.sent[-1]["type"] == "board.delete"
    assert watcher.websocket.sent[-1]["payload"] == {"boardId": board["id"]}
