"""Realtime frames in both directions.

Each server event is its own model tagged by a literal ``event`` name, and the tags
form closed discriminated unions: ``BoardEvent`` for board rooms and
``UserEvent`` for personal channels. A frame on the wire is
``{"event": <tag>, "payload": {...}}``. Client messages use the same shape and
are validated through ``ClientMessage``.
"""
from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from .schemas import BoardOut, CardOut, ColumnOut, CommentOut, LabelOut, NotificationOut, SwimlaneOut, UserSummary


class _Event(BaseModel):
    boardId: str


# === Boards ===


class BoardUpdated(_Event):
    event: Literal["board:updated"] = "board:updated"
    board: BoardOut


class BoardDeleted(_Event):
    event: Literal["board:deleted"] = "board:deleted"


# === Cards ===


class CardCreated(_Event):
    event: Literal["card:created"] = "card:created"
    card: CardOut


class CardUpdated(_Event):
    event: Literal["card:updated"] = "card:updated"
    card: CardOut


class CardMoved(_Event):
    event: Literal["card:moved"] = "card:moved"
    card: CardOut
    fromColumnId: str


class CardArchived(_Event):
    event: Literal["card:archived"] = "card:archived"
    card: CardOut


class CardDeleted(_Event):
    event: Literal["card:deleted"] = "card:deleted"
    cardId: str
    columnId: str


# === Columns ===


class ColumnCreated(_Event):
    event: Literal["column:created"] = "column:created"
    column: ColumnOut


class ColumnUpdated(_Event):
    event: Literal["column:updated"] = "column:updated"
    column: ColumnOut


class ColumnMoved(_Event):
    event: Literal["column:moved"] = "column:moved"
    column: ColumnOut


class ColumnDeleted(_Event):
    event: Literal["column:deleted"] = "column:deleted"
    columnId: str


# === Swimlanes ===


class SwimlaneCreated(_Event):
    event: Literal["swimlane:created"] = "swimlane:created"
    swimlane: SwimlaneOut


class SwimlaneUpdated(_Event):
    event: Literal["swimlane:updated"] = "swimlane:updated"
    swimlane: SwimlaneOut


class SwimlaneMoved(_Event):
    event: Literal["swimlane:moved"] = "swimlane:moved"
    swimlane: SwimlaneOut


class SwimlaneDeleted(_Event):
    event: Literal["swimlane:deleted"] = "swimlane:deleted"
    swimlaneId: str


# === Comments & assignees ===


class CommentCreated(_Event):
    event: Literal["comment:created"] = "comment:created"
    cardId: str
    comment: CommentOut


class CommentUpdated(_Event):
    event: Literal["comment:updated"] = "comment:updated"
    cardId: str
    comment: CommentOut


class CommentDeleted(_Event):
    event: Literal["comment:deleted"] = "comment:deleted"
    cardId: str
    commentId: str


class AssigneeAdded(_Event):
    event: Literal["assignee:added"] = "assignee:added"
    cardId: str
    user: UserSummary


class AssigneeRemoved(_Event):
    event: Literal["assignee:removed"] = "assignee:removed"
    cardId: str
    userId: str


# === Labels ===


class LabelCreated(_Event):
    event: Literal["label:created"] = "label:created"
    label: LabelOut


class LabelUpdated(_Event):
    event: Literal["label:updated"] = "label:updated"
    label: LabelOut


class LabelDeleted(_Event):
    event: Literal["label:deleted"] = "label:deleted"
    labelId: str


class CardLabelAdded(_Event):
    event: Literal["card:label:added"] = "card:label:added"
    cardId: str
    label: LabelOut


class CardLabelRemoved(_Event):
    event: Literal["card:label:removed"] = "card:label:removed"
    cardId: str
    labelId: str


# === Personal channel ===


class NotificationNew(BaseModel):
    event: Literal["notification:new"] = "notification:new"
    notification: NotificationOut


BoardEvent = Annotated[
    Union[
        BoardUpdated,
        BoardDeleted,
        CardCreated,
        CardUpdated,
        CardMoved,
        CardArchived,
        CardDeleted,
        ColumnCreated,
        ColumnUpdated,
        ColumnMoved,
        ColumnDeleted,
        SwimlaneCreated,
        SwimlaneUpdated,
        SwimlaneMoved,
        SwimlaneDeleted,
        CommentCreated,
        CommentUpdated,
        CommentDeleted,
        AssigneeAdded,
        AssigneeRemoved,
        LabelCreated,
        LabelUpdated,
        LabelDeleted,
        CardLabelAdded,
        CardLabelRemoved,
    ],
    Field(discriminator="event"),
]

# One variant so far; a discriminator needs at least two.
UserEvent = NotificationNew


def to_frame(event: BaseModel) -> dict[str, Any]:
    return {"event": event.event, "payload": event.model_dump(mode="json", exclude={"event"})}


# === Client messages ===


class ClientFrame(BaseModel):
    """Envelope of an inbound frame, checked before its payload."""

    event: str
    payload: Optional[dict[str, Any]] = None


class Ping(BaseModel):
    event: Literal["ping"] = "ping"


class Auth(BaseModel):
    event: Literal["auth"] = "auth"
    token: str


class BoardJoin(BaseModel):
    event: Literal["board:join"] = "board:join"
    boardId: str = Field(min_length=1)
    shareToken: Optional[str] = None


class BoardLeave(BaseModel):
    event: Literal["board:leave"] = "board:leave"
    boardId: Optional[str] = None


ClientMessage = Annotated[Union[Ping, Auth, BoardJoin, BoardLeave], Field(discriminator="event")]

client_messages = TypeAdapter(ClientMessage)

CLIENT_EVENTS = frozenset(model.model_fields["event"].default for model in (Ping, Auth, BoardJoin, BoardLeave))


def parse_client_message(frame: ClientFrame) -> BaseModel:
    """Validate a known client event's payload; raises ``ValidationError`` on a malformed one."""
    return client_messages.validate_python({**(frame.payload or {}), "event": frame.event})
