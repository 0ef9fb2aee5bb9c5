# tests/test_store.py — Client board-state reducer tests
import pytest

from board_client.store import (
    BoardState, BoardStore, add_board, add_card, add_comment, add_list, delete_board,
    delete_list, move_card, reduce, refresh_current_board, set_boards, set_connected_users,
    set_current_board, update_board, update_card,
)


def _card(card_id, list_id, position, **extra):
    return {"id": card_id, "listId": list_id, "boardId": "b1", "position": position, "title": card_id, **extra}


@pytest.fixture
def board():
    return {
        "id": "b1",
        "title": "Sprint",
        "lists": [
            {"id": "A", "boardId": "b1", "position": 0, "cards": [_card("c1", "A", 0), _card("c2", "A", 1)]},
            {"id": "B", "boardId": "b1", "position": 1, "cards": []},
        ],
    }


@pytest.fixture
def state(board):
    return set_current_board(BoardState(boards=[{"id": "b1", "title": "Sprint"}]), board)


def _layout(state):
    return {
        lst["id"]: [(c["id"], c["position"]) for c in lst["cards"]]
        for lst in state.current_board["lists"]
    }


def test_move_card_between_lists(state):
    payload = {"cardId": "c1", "boardId": "b1", "fromListId": "A", "toListId": "B", "position": 0}
    moved = move_card(state, payload)
    assert _layout(moved) == {"A": [("c2", 0)], "B": [("c1", 0)]}
    assert moved.current_board["lists"][1]["cards"][0]["listId"] == "B"
    # input untouched
    assert _layout(state) == {"A": [("c1", 0), ("c2", 1)], "B": []}


def test_move_card_with_stale_source_hint(state):
    payload = {"cardId": "c2", "boardId": "b1", "fromListId": "B", "toListId": "B", "position": 5}
    moved = move_card(state, payload)
    assert _layout(moved) == {"A": [("c1", 0)], "B": [("c2", 0)]}


def test_move_card_within_list(state):
    moved = move_card(state, {"cardId": "c1", "fromListId": "A", "toListId": "A", "position": 1})
    assert _layout(moved) == {"A": [("c2", 0), ("c1", 1)], "B": []}


def test_move_card_unknown_target_is_noop(state):
    assert move_card(state, {"cardId": "c1", "fromListId": "A", "toListId": "Z", "position": 0}) is state


def test_add_card_is_an_upsert(state):
    card = _card("c3", "B", 0)
    once = add_card(state, card)
    twice = add_card(once, card)
    assert _layout(twice) == {"A": [("c1", 0), ("c2", 1)], "B": [("c3", 0)]}
    assert twice.current_board["lists"][1]["cards"][0]["comments"] == []


def test_add_card_to_unknown_list_is_noop(state):
    assert add_card(state, _card("c9", "nowhere", 0)) is state


def test_update_card_relocates_to_server_position(state):
    optimistic = move_card(state, {"cardId": "c1", "fromListId": "A", "toListId": "B", "position": 0})
    # server disagreed: the card stayed at the end of A
    server = update_card(optimistic, _card("c1", "A", 1, title="Fix bug"))
    assert _layout(server) == {"A": [("c2", 0), ("c1", 1)], "B": []}
    assert server.current_board["lists"][0]["cards"][1]["title"] == "Fix bug"


def test_update_card_into_unknown_list_is_noop(state):
    assert update_card(state, _card("c1", "Z", 0, title="Elsewhere")) is state
    assert state.current_board["lists"][0]["cards"][0]["listId"] == "A"


def test_add_list_inserts_at_position_and_upserts(state):
    lst = {"id": "C", "boardId": "b1", "title": "Backlog", "position": 0}
    added = add_list(add_list(state, lst), lst)
    assert [l["id"] for l in added.current_board["lists"]] == ["C", "A", "B"]
    assert [l["position"] for l in added.current_board["lists"]] == [0, 1, 2]
    assert added.current_board["lists"][0]["cards"] == []


def test_delete_list_renumbers(state):
    trimmed = delete_list(state, {"listId": "A", "boardId": "b1"})
    assert [(l["id"], l["position"]) for l in trimmed.current_board["lists"]] == [("B", 0)]


def test_add_comment_upserts_and_strips_board_id(state):
    comment = {"id": "m1", "cardId": "c2", "content": "hi", "boardId": "b1"}
    after = add_comment(add_comment(state, comment), comment)
    comments = after.current_board["lists"][0]["cards"][1]["comments"]
    assert comments == [{"id": "m1", "cardId": "c2", "content": "hi"}]


def test_board_collection_reducers(state):
    added = add_board(state, {"id": "b2", "title": "Roadmap"})
    added = add_board(added, {"id": "b2", "title": "Roadmap"})
    assert [b["id"] for b in added.boards] == ["b1", "b2"]

    renamed = update_board(added, {"id": "b1", "title": "Sprint 2"})
    assert renamed.boards[0]["title"] == "Sprint 2"
    assert renamed.current_board["title"] == "Sprint 2"
    assert len(renamed.current_board["lists"]) == 2

    assert update_board(renamed, {"id": "b9", "title": "Ghost"}).boards == renamed.boards

    gone = delete_board(renamed, {"boardId": "b1"})
    assert gone.current_board is None
    assert [b["id"] for b in gone.boards] == ["b2"]


def test_presence_reducers(state):
    joined = reduce(state, "user.join", {"userId": "u1", "boardId": "b1"})
    joined = reduce(joined, "user.join", {"userId": "u1", "boardId": "b1"})
    joined = reduce(joined, "user.join", {"userId": "u2", "boardId": "b1"})
    assert joined.connected_users == ["u1", "u2"]
    assert reduce(joined, "user.leave", {"userId": "u1", "boardId": "b1"}).connected_users == ["u2"]

    refreshed = refresh_current_board(joined, {"id": "b1", "lists": []})
    assert refreshed.connected_users == ["u1", "u2"]
    assert set_current_board(joined, {"id": "b1", "lists": []}).connected_users == []
    assert set_connected_users(state, ["u1", "u1", "u3"]).connected_users == ["u1", "u3"]


def test_reduce_ignores_other_boards_and_unknown_events(state):
    foreign = {"cardId": "c1", "boardId": "other", "fromListId": "A", "toListId": "B", "position": 0}
    assert reduce(state, "card.move", foreign) is state
    assert reduce(state, "card.explode", {"boardId": "b1"}) is state
    assert reduce(BoardState(), "list.create", {"id": "L", "boardId": "b1"}).current_board is None


def test_store_notifies_subscribers_on_change(state):
    store = BoardStore(state)
    seen = []
    unsubscribe = store.subscribe(seen.append)

    store.apply_message({"type": "card.delete", "payload": {"cardId": "c1", "listId": "A", "boardId": "b1"}})
    assert _layout(store.state) == {"A": [("c2", 0)], "B": []}
    assert len(seen) == 1

    store.dispatch("card.move", {"cardId": "c1", "boardId": "other", "toListId": "B", "position": 0})
    assert len(seen) == 1

    unsubscribe()
    store.apply(set_boards, [])
    assert store.state.boards == []
    assert len(seen) == 1
