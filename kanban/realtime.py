"""Board rooms and user channels over live connections.

The broadcaster is created by the application, started with ``init`` once the
event loop runs and stopped with ``teardown`` on shutdown. Registry changes
(connect, join, leave) happen on the loop thread; ``broadcast`` and
``notify_user`` may be called from any thread and never block or raise.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional


from .access import Grant, Permission
from .errors import Forbidden, NotFound
from .events import BoardEvent, UserEvent, to_frame

logger = logging.getLogger(__name__)

Frame = dict[str, Any]
Sender = Callable[[Frame], Awaitable[None]]

QUEUE_SIZE = 1000


@dataclass
class Connection:
    id: str
    send: Sender
    user_id: Optional[str] = None
    board_id: Optional[str] = None
    grant: Optional[Grant] = None
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=QUEUE_SIZE))
    task: Optional[asyncio.Task] = None


class Broadcaster:
    def __init__(self) -> None:
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connections: dict[str, Connection] = {}
        self._rooms: dict[str, set[str]] = {}
        self._users: dict[str, set[str]] = {}

    # === Lifecycle ===

    def init(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        logger.info("broadcaster started")

    async def teardown(self) -> None:
        tasks = [conn.task for conn in self._connections.values() if conn.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._connections.clear()
        self._rooms.clear()
        self._users.clear()
        self._loop = None
        logger.info("broadcaster stopped")

    @property
    def running(self) -> bool:
        return self._loop is not None

    # === Connections ===

    def connect(self, connection_id: str, send: Sender, user_id: Optional[str] = None) -> Connection:
        if self._loop is None:
            raise RuntimeError("broadcaster is not running")
        conn = Connection(id=connection_id, send=send)
        conn.task = self._loop.create_task(self._pump(conn))
        self._connections[connection_id] = conn
        if user_id is not None:
            self.authenticate(connection_id, user_id)
        logger.info("connection %s opened (user=%s)", connection_id, user_id)
        return conn

    def authenticate(self, connection_id: str, user_id: str) -> None:
        """Bind a connection to a user and subscribe it to that user's channel."""
        conn = self._get(connection_id)
        if conn.user_id is not None:
            self._discard(self._users, conn.user_id, connection_id)
        conn.user_id = user_id
        self._users.setdefault(user_id, set()).add(connection_id)

    def disconnect(self, connection_id: str) -> None:
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return
        if conn.board_id is not None:
            self._discard(self._rooms, conn.board_id, connection_id)
        if conn.user_id is not None:
            self._discard(self._users, conn.user_id, connection_id)
        if conn.task is not None and conn.task is not asyncio.current_task():
            conn.task.cancel()
        logger.info("connection %s closed", connection_id)

    # === Rooms ===

    def join_board_room(self, connection_id: str, board_id: str, grant: Grant) -> None:
        """Admit a connection to a board room; it leaves any other board room first.

        Raises ``Forbidden`` unless ``grant`` is for this board with at least read
        access. The connection itself stays open either way.
        """
        if grant.board_id != board_id or grant.permission < Permission.READ:
            logger.warning("connection %s denied room for board %s", connection_id, board_id)
            raise Forbidden("not allowed to view this board")
        conn = self._get(connection_id)
        if conn.board_id is not None and conn.board_id != board_id:
            self._discard(self._rooms, conn.board_id, connection_id)
        conn.board_id = board_id
        conn.grant = grant
        self._rooms.setdefault(board_id, set()).add(connection_id)
        logger.info("connection %s joined board %s (%s)", connection_id, board_id, grant.permission.label)

    def leave_board_room(self, connection_id: str, board_id: Optional[str] = None) -> None:
        conn = self._connections.get(connection_id)
        if conn is None or conn.board_id is None:
            return
        if board_id is not None and conn.board_id != board_id:
            return
        self._discard(self._rooms, conn.board_id, connection_id)
        conn.board_id = None
        conn.grant = None

    def close_room(self, board_id: str) -> None:
        """Empty a board's room once frames already dispatched to it are queued."""
        self._dispatch(self._close_room, board_id)

    def _close_room(self, board_id: str) -> None:
        for connection_id in self._rooms.pop(board_id, set()):
            conn = self._connections.get(connection_id)
            if conn is not None:
                conn.board_id = None
                conn.grant = None
        logger.info("room for board %s closed", board_id)

    def room_members(self, board_id: str) -> set[str]:
        return set(self._rooms.get(board_id, ()))

    def user_connections(self, user_id: str) -> set[str]:
        return set(self._users.get(user_id, ()))

    # === Delivery ===

    def broadcast(self, board_id: str, event: BoardEvent, exclude_connection_id: Optional[str] = None) -> None:
        """Send ``event`` to every connection in the board's room except ``exclude_connection_id``."""
        self._dispatch(self._fan_out_room, board_id, to_frame(event), exclude_connection_id)

    def notify_user(self, user_id: str, event: UserEvent) -> None:
        self._dispatch(self._fan_out_user, user_id, to_frame(event))

    def deliver(self, connection_id: str, frame: Frame) -> None:
        """Queue a frame for one connection, behind anything already queued for it."""
        self._dispatch(self._enqueue, connection_id, frame)

    def _dispatch(self, callback: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None:
            logger.debug("broadcaster not running, dropping frame")
            return
        # call_soon_threadsafe keeps callbacks in submission order, which is
        # what keeps per-connection delivery in commit order.
        try:
            loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug("event loop closed, dropping frame")

    def _fan_out_room(self, board_id: str, frame: Frame, exclude_connection_id: Optional[str]) -> None:
        for connection_id in tuple(self._rooms.get(board_id, ())):
            if connection_id != exclude_connection_id:
                self._enqueue(connection_id, frame)

    def _fan_out_user(self, user_id: str, frame: Frame) -> None:
        for connection_id in tuple(self._users.get(user_id, ())):
            self._enqueue(connection_id, frame)

    def _enqueue(self, connection_id: str, frame: Frame) -> None:
        conn = self._connections.get(connection_id)
        if conn is None:
            return
        try:
            conn.queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("outbound queue full for %s, dropping %s", connection_id, frame.get("event"))

    async def _pump(self, conn: Connection) -> None:
        while True:
            frame = await conn.queue.get()
            try:
                await conn.send(frame)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.debug("delivery to %s failed, dropping connection", conn.id, exc_info=True)
                self.disconnect(conn.id)
                return

    # === Helpers ===

    def _get(self, connection_id: str) -> Connection:
        conn = self._connections.get(connection_id)
        if conn is None:
            raise NotFound("connection not found")
        return conn

    @staticmethod
    def _discard(registry: dict[str, set[str]], key: str, connection_id: str) -> None:
        members = registry.get(key)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del registry[key]
