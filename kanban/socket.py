"""WebSocket endpoint: authentication, board room membership and heartbeats.

Frames in both directions are ``{"event": <name>, "payload": {...}}``. Every
outbound frame, replies included, goes through the connection's broadcaster
queue so a single pump writes to the socket.
"""
import logging
from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from .access import Credentials, Permission
from .db import User
from .errors import KanbanError, Unauthorized
from .events import CLIENT_EVENTS, Auth, BoardJoin, BoardLeave, ClientFrame, Ping, parse_client_message
from .utils import new_uuid

logger = logging.getLogger(__name__)

router = APIRouter()

# Close code for a handshake carrying an invalid session token.
CLOSE_UNAUTHORIZED = 4401


def _frame(event: str, **payload: Any) -> dict[str, Any]:
    return {"event": event, "payload": payload}


def _error_payload(exc: KanbanError) -> dict[str, Any]:
    return {"code": exc.code, "message": exc.message}


def _resolve_user(state, token: str) -> str:
    user_id = state.gate.authenticate(token)
    with state.boards.reading() as session:
        if session.get(User, user_id) is None:
            raise Unauthorized("unknown user")
    return user_id


def _authorize(state, board_id: str, credentials: Credentials):
    with state.boards.reading() as session:
        return state.gate.authorize(session, board_id, credentials, Permission.READ)


class SocketSession:
    """Per-connection protocol state."""

    def __init__(self, websocket: WebSocket, connection_id: str, token: Optional[str], user_id: Optional[str]):
        self.websocket = websocket
        self.state = websocket.app.state
        self.broadcaster = self.state.broadcaster
        self.connection_id = connection_id
        self.token = token
        self.user_id = user_id

    def reply(self, event: str, **payload: Any) -> None:
        self.broadcaster.deliver(self.connection_id, _frame(event, **payload))

    async def receive(self, text: str) -> None:
        try:
            frame = ClientFrame.model_validate_json(text)
        except ValidationError:
            logger.warning("malformed frame from connection %s", self.connection_id)
            self.reply("error", code="invalid_message", message="frames must be JSON objects with an event name")
            return
        if frame.event not in CLIENT_EVENTS:
            self.reply("error", code="unknown_event", message=f"unsupported event {frame.event!r}")
            return
        try:
            message = parse_client_message(frame)
        except ValidationError as exc:
            logger.warning("invalid %s payload from connection %s", frame.event, self.connection_id)
            self.reply(
                "error",
                code="invalid_message",
                message=f"invalid payload for {frame.event!r}",
                errors=[{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()],
            )
            return

        if isinstance(message, Ping):
            self.reply("pong")
        elif isinstance(message, Auth):
            await self.authenticate(message.token)
        elif isinstance(message, BoardJoin):
            await self.join(message.boardId, message.shareToken)
        elif isinstance(message, BoardLeave):
            self.broadcaster.leave_board_room(self.connection_id, message.boardId)
            self.reply("board:left", boardId=message.boardId)

    async def authenticate(self, token: str) -> None:
        try:
            if not token:
                raise Unauthorized("authentication required")
            user_id = await run_in_threadpool(_resolve_user, self.state, token)
        except KanbanError as exc:
            self.reply("auth:error", **_error_payload(exc))
            return
        self.token, self.user_id = token, user_id
        self.broadcaster.authenticate(self.connection_id, user_id)
        self.reply("auth:ok", userId=user_id)

    async def join(self, board_id: str, share_token: Optional[str]) -> None:
        credentials = Credentials(session_token=self.token, share_token=share_token)
        try:
            grant = await run_in_threadpool(_authorize, self.state, board_id, credentials)
            self.broadcaster.join_board_room(self.connection_id, board_id, grant)
        except KanbanError as exc:
            self.reply("board:join:error", boardId=board_id, **_error_payload(exc))
            return
        self.reply("board:joined", boardId=board_id, permission=grant.permission.label)


@router.websocket("/v1/ws")
async def board_socket(websocket: WebSocket, token: Optional[str] = None):
    state = websocket.app.state
    user_id = None
    if token:
        try:
            user_id = await run_in_threadpool(_resolve_user, state, token)
        except KanbanError:
            logger.info("websocket handshake rejected: invalid token")
            await websocket.close(code=CLOSE_UNAUTHORIZED)
            return

    await websocket.accept()
    connection_id = new_uuid()
    state.broadcaster.connect(connection_id, websocket.send_json, user_id=user_id)
    session = SocketSession(websocket, connection_id, token, user_id)
    session.reply("connection:ready", connectionId=connection_id)
    try:
        while True:
            await session.receive(await websocket.receive_text())
    except WebSocketDisconnect:
        pass
    finally:
        state.broadcaster.disconnect(connection_id)
