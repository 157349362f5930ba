import threading

import pytest

from kanban.access import AccountGrant, Permission
from kanban.db import ScopeLocks
from kanban.errors import AnchorNotFound, BadRequest, WipLimitExceeded
from kanban.lexorank import DEFAULT_KEY
from kanban.schemas import BoardIn, CardIn, CardMove, ColumnIn, ColumnPatch, TeamIn, UserCreate


@pytest.fixture
def setup(state):
    session = state.teams.register(UserCreate(email="mover@example.com", displayName="Mover"))
    user_id = session.user.id
    team = state.teams.create_team(user_id, TeamIn(name="Movers"))
    board = state.teams.create_board(team.id, user_id, BoardIn(name="Ordering"))
    grant = AccountGrant(board_id=board.id, user_id=user_id, team_role="owner", permission=Permission.EDIT)
    return state.boards, board.id, grant


def _column(boards, board_id, grant, name, wip_limit=None):
    return boards.create_column(board_id, grant, ColumnIn(name=name, wipLimit=wip_limit)).id


def _card(boards, board_id, grant, column_id, title):
    return boards.create_card(board_id, grant, CardIn(columnId=column_id, title=title))


def _order(boards, board_id, grant, column_id):
    view = boards.get_board_view(board_id, grant)
    return [(c.title, c.position) for c in view.cards if c.columnId == column_id]


def test_move_into_empty_column_takes_default_key(setup):
    boards, board_id, grant = setup
    source = _column(boards, board_id, grant, "Source")
    empty = _column(boards, board_id, grant, "Empty")
    card = _card(boards, board_id, grant, source, "C")

    moved = boards.move_card(board_id, grant, card.id, CardMove(columnId=empty, afterId=None))

    assert moved.position == DEFAULT_KEY
    assert moved.columnId == empty
    assert [title for title, _ in _order(boards, board_id, grant, empty)] == ["C"]


def test_wip_rejection_leaves_column_untouched(setup):
    boards, board_id, grant = setup
    x = _column(boards, board_id, grant, "X")
    other = _column(boards, board_id, grant, "Other")
    a = _card(boards, board_id, grant, x, "A")
    _card(boards, board_id, grant, x, "B")
    _card(boards, board_id, grant, x, "C")
    d = _card(boards, board_id, grant, other, "D")
    boards.update_column(board_id, grant, x, ColumnPatch(wipLimit=2))
    before = _order(boards, board_id, grant, x)

    with pytest.raises(WipLimitExceeded) as exc:
        boards.move_card(board_id, grant, d.id, CardMove(columnId=x, afterId=a.id))

    assert exc.value.details["wipLimit"] == 2
    assert _order(boards, board_id, grant, x) == before
    assert [title for title, _ in before] == ["A", "B", "C"]
    assert boards.get_card(board_id, d.id).columnId == other


def test_create_card_in_full_column_is_rejected(setup):
    boards, board_id, grant = setup
    x = _column(boards, board_id, grant, "X", wip_limit=1)
    _card(boards, board_id, grant, x, "A")

    with pytest.raises(WipLimitExceeded):
        _card(boards, board_id, grant, x, "B")


def test_reorder_within_column_skips_wip_check(setup):
    boards, board_id, grant = setup
    x = _column(boards, board_id, grant, "X", wip_limit=3)
    a = _card(boards, board_id, grant, x, "A")
    _card(boards, board_id, grant, x, "B")
    c = _card(boards, board_id, grant, x, "C")

    boards.move_card(board_id, grant, c.id, CardMove(columnId=x, afterId=a.id))

    assert [title for title, _ in _order(boards, board_id, grant, x)] == ["A", "C", "B"]


def test_concurrent_inserts_into_same_gap(setup):
    boards, board_id, grant = setup
    x = _column(boards, board_id, grant, "X")
    y = _column(boards, board_id, grant, "Y")
    a = _card(boards, board_id, grant, x, "A")
    b = _card(boards, board_id, grant, x, "B")
    movers = [_card(boards, board_id, grant, y, "C"), _card(boards, board_id, grant, y, "D")]

    barrier = threading.Barrier(len(movers))
    results, errors = {}, []

    def move(card):
        barrier.wait()
        try:
            results[card.id] = boards.move_card(board_id, grant, card.id, CardMove(columnId=x, afterId=a.id))
        except Exception as exc:  # surfaced through ``errors``
            errors.append(exc)

    threads = [threading.Thread(target=move, args=(card,)) for card in movers]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    keys = [results[card.id].position for card in movers]
    assert keys[0] != keys[1]
    for key in keys:
        assert a.position < key < b.position

    order = _order(boards, board_id, grant, x)
    assert len(order) == 4
    assert order[0][0] == "A" and order[-1][0] == "B"
    assert {title for title, _ in order[1:3]} == {"C", "D"}


def test_deleted_anchor_is_reported_and_nothing_changes(setup):
    boards, board_id, grant = setup
    x = _column(boards, board_id, grant, "X")
    y = _column(boards, board_id, grant, "Y")
    a = _card(boards, board_id, grant, x, "A")
    _card(boards, board_id, grant, x, "B")
    c = _card(boards, board_id, grant, y, "C")
    boards.delete_card(board_id, grant, a.id)
    before = _order(boards, board_id, grant, x)

    with pytest.raises(AnchorNotFound):
        boards.move_card(board_id, grant, c.id, CardMove(columnId=x, afterId=a.id))

    assert _order(boards, board_id, grant, x) == before
    assert boards.get_card(board_id, c.id).columnId == y


def test_archived_card_is_not_an_anchor(setup):
    boards, board_id, grant = setup
    x = _column(boards, board_id, grant, "X")
    a = _card(boards, board_id, grant, x, "A")
    b = _card(boards, board_id, grant, x, "B")
    boards.archive_card(board_id, grant, a.id)

    with pytest.raises(AnchorNotFound):
        boards.move_card(board_id, grant, b.id, CardMove(columnId=x, afterId=a.id))


def test_archived_cards_cannot_move_and_unarchive_respects_wip(setup):
    boards, board_id, grant = setup
    x = _column(boards, board_id, grant, "X", wip_limit=1)
    a = _card(boards, board_id, grant, x, "A")
    boards.archive_card(board_id, grant, a.id)
    _card(boards, board_id, grant, x, "B")

    with pytest.raises(BadRequest):
        boards.move_card(board_id, grant, a.id, CardMove(columnId=x, afterId=None))
    with pytest.raises(WipLimitExceeded):
        boards.archive_card(board_id, grant, a.id, archived=False)


def test_column_moves_use_board_scope(setup):
    boards, board_id, grant = setup
    view = boards.get_board_view(board_id, grant)
    first, _, third = [c.id for c in view.columns]

    boards.move_column(board_id, grant, first, third)

    names = [c.name for c in boards.get_board_view(board_id, grant).columns]
    assert names == ["In Progress", "Done", "To Do"]


def test_scope_locks_are_dropped_once_released():
    locks = ScopeLocks()
    with locks.hold("col-b", "col-a", "col-a"):
        assert len(locks) == 2
        with locks.hold("col-z"):
            assert len(locks) == 3
        assert len(locks) == 2
    assert len(locks) == 0

    with pytest.raises(RuntimeError):
        with locks.hold("col-c"):
            raise RuntimeError("boom")
    assert len(locks) == 0


def test_scope_lock_table_does_not_grow_with_traffic(setup):
    boards, board_id, grant = setup
    column = _column(boards, board_id, grant, "Busy")
    for i in range(5):
        _card(boards, board_id, grant, column, f"card {i}")
    assert len(boards.locks) == 0
