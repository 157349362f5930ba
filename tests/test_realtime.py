import asyncio
import threading

import pytest
from pydantic import ValidationError

from kanban.access import AccountGrant, Permission, ShareGrant
from kanban.errors import Forbidden
from kanban.events import BoardDeleted, BoardJoin, ClientFrame, ColumnDeleted, Ping, parse_client_message
from kanban.realtime import Broadcaster

MEMBER = AccountGrant(board_id="b1", user_id="u1", team_role="member", permission=Permission.EDIT)
VIEWER = ShareGrant(board_id="b1", share_id="s1", permission=Permission.READ)


class Recorder:
    def __init__(self, fail=False):
        self.frames = []
        self.fail = fail

    async def __call__(self, frame):
        if self.fail:
            raise ConnectionError("socket gone")
        self.frames.append(frame)

    @property
    def events(self):
        return [f["event"] for f in self.frames]


async def settle(rounds=20):
    for _ in range(rounds):
        await asyncio.sleep(0)


def deleted(column_id, board_id="b1"):
    return ColumnDeleted(boardId=board_id, columnId=column_id)


def run(scenario):
    async def main():
        broadcaster = Broadcaster()
        broadcaster.init()
        try:
            await scenario(broadcaster)
        finally:
            await broadcaster.teardown()

    asyncio.run(main())


def test_broadcast_skips_the_originating_connection():
    async def scenario(b):
        a, c = Recorder(), Recorder()
        b.connect("a", a)
        b.connect("c", c)
        b.join_board_room("a", "b1", MEMBER)
        b.join_board_room("c", "b1", VIEWER)

        b.broadcast("b1", deleted("x"), exclude_connection_id="a")
        await settle()
        assert a.frames == []
        assert c.frames == [{"event": "column:deleted", "payload": {"boardId": "b1", "columnId": "x"}}]

        b.broadcast("b1", deleted("y"))
        await settle()
        assert a.events == ["column:deleted"]
        assert len(c.frames) == 2

    run(scenario)


def test_join_with_grant_for_another_board_is_refused():
    async def scenario(b):
        rec = Recorder()
        b.connect("a", rec)
        with pytest.raises(Forbidden):
            b.join_board_room("a", "b2", MEMBER)
        assert b.room_members("b2") == set()

        # the connection is still usable
        b.deliver("a", {"event": "pong", "payload": {}})
        await settle()
        assert rec.events == ["pong"]

    run(scenario)


def test_joining_another_board_leaves_the_previous_room():
    async def scenario(b):
        rec = Recorder()
        b.connect("a", rec)
        b.join_board_room("a", "b1", MEMBER)
        other = AccountGrant(board_id="b2", user_id="u1", team_role="member", permission=Permission.EDIT)
        b.join_board_room("a", "b2", other)

        assert b.room_members("b1") == set()
        assert b.room_members("b2") == {"a"}
        b.broadcast("b1", deleted("x"))
        await settle()
        assert rec.frames == []

        b.leave_board_room("a", "b2")
        assert b.room_members("b2") == set()

    run(scenario)


def test_notify_user_reaches_every_device_of_that_user_only():
    async def scenario(b):
        phone, laptop, someone_else = Recorder(), Recorder(), Recorder()
        b.connect("phone", phone, user_id="u1")
        b.connect("laptop", laptop, user_id="u1")
        b.connect("other", someone_else, user_id="u2")
        assert b.user_connections("u1") == {"phone", "laptop"}

        b.notify_user("u1", deleted("x"))
        await settle()
        assert phone.events == laptop.events == ["column:deleted"]
        assert someone_else.frames == []

    run(scenario)


def test_broadcasts_from_a_worker_thread_keep_their_order():
    async def scenario(b):
        rec = Recorder()
        b.connect("a", rec)
        b.join_board_room("a", "b1", VIEWER)

        def publish():
            for i in range(50):
                b.broadcast("b1", deleted(f"c{i}"))

        worker = threading.Thread(target=publish)
        worker.start()
        await asyncio.get_running_loop().run_in_executor(None, worker.join)
        for _ in range(10):
            await settle()
            if len(rec.frames) == 50:
                break

        assert [f["payload"]["columnId"] for f in rec.frames] == [f"c{i}" for i in range(50)]

    run(scenario)


def test_failed_send_drops_only_that_connection():
    async def scenario(b):
        good, bad = Recorder(), Recorder(fail=True)
        b.connect("good", good, user_id="u1")
        b.connect("bad", bad, user_id="u2")
        b.join_board_room("good", "b1", MEMBER)
        b.join_board_room("bad", "b1", VIEWER)

        b.broadcast("b1", deleted("x"))
        await settle()
        assert b.room_members("b1") == {"good"}
        assert b.user_connections("u2") == set()

        b.broadcast("b1", deleted("y"))
        await settle()
        assert len(good.frames) == 2

    run(scenario)


def test_disconnect_cleans_up_rooms_and_channels():
    async def scenario(b):
        b.connect("a", Recorder(), user_id="u1")
        b.join_board_room("a", "b1", MEMBER)
        b.disconnect("a")
        b.disconnect("a")
        assert b.room_members("b1") == set()
        assert b.user_connections("u1") == set()

    run(scenario)


def test_idle_broadcaster_drops_frames_quietly():
    b = Broadcaster()
    assert not b.running
    b.broadcast("b1", deleted("x"))
    b.notify_user("u1", deleted("x"))
    with pytest.raises(RuntimeError):
        b.connect("a", Recorder())


def test_closing_a_room_delivers_queued_frames_first():
    async def scenario(b):
        rec = Recorder()
        b.connect("a", rec)
        b.join_board_room("a", "b1", MEMBER)

        b.broadcast("b1", BoardDeleted(boardId="b1"))
        b.close_room("b1")
        await settle()
        assert rec.events == ["board:deleted"]
        assert b.room_members("b1") == set()

        b.broadcast("b1", deleted("x"))
        await settle()
        assert rec.events == ["board:deleted"]

        # the connection itself survives and can join elsewhere
        other = AccountGrant(board_id="b2", user_id="u1", team_role="member", permission=Permission.EDIT)
        b.join_board_room("a", "b2", other)
        assert b.room_members("b2") == {"a"}

    run(scenario)


def test_client_messages_are_validated_by_event():
    join = parse_client_message(ClientFrame(event="board:join", payload={"boardId": "b1"}))
    assert isinstance(join, BoardJoin)
    assert join.shareToken is None
    assert isinstance(parse_client_message(ClientFrame(event="ping")), Ping)

    with pytest.raises(ValidationError):
        parse_client_message(ClientFrame(event="board:join", payload={"boardId": {"x": 1}}))
    with pytest.raises(ValidationError):
        parse_client_message(ClientFrame(event="board:join", payload={"boardId": ""}))
    with pytest.raises(ValidationError):
        parse_client_message(ClientFrame(event="auth", payload={"token": 42}))
    with pytest.raises(ValidationError):
        ClientFrame.model_validate_json('{"event": "board:join", "payload": "oops"}')
