from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

PermissionName = Literal["read", "comment", "edit"]
CardType = Literal["story", "bug", "task"]
TeamRole = Literal["owner", "admin", "member"]

HEX_COLOR = r"^#[0-9a-fA-F]{6}$"


class ErrorEnvelope(BaseModel):
    code: str
    message: str
    details: Optional[dict[str, Any]] = None
    requestId: Optional[str] = None


class Health(BaseModel):
    status: str = "ok"


class Version(BaseModel):
    version: str = "1.0.0"


# === Accounts & teams ===


class UserSummary(BaseModel):
    id: str
    displayName: str
    avatarUrl: Optional[str] = None


class UserCreate(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    displayName: str = Field(min_length=1, max_length=100)
    avatarUrl: Optional[str] = None


class SessionCreate(BaseModel):
    email: str = Field(min_length=3, max_length=255)


class SessionOut(BaseModel):
    user: UserSummary
    token: str


class TeamIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)


class TeamOut(BaseModel):
    id: str
    name: str
    myRole: TeamRole
    createdAt: datetime


class MemberIn(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    role: TeamRole = "member"


class MemberRolePatch(BaseModel):
    role: TeamRole


class MemberOut(BaseModel):
    teamId: str
    user: UserSummary
    role: TeamRole
    createdAt: datetime


# === Boards ===


class BoardIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)


class BoardPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    isArchived: Optional[bool] = None


class BoardOut(BaseModel):
    id: str
    teamId: str
    name: str
    description: Optional[str]
    createdBy: str
    isArchived: bool = False
    createdAt: datetime
    updatedAt: datetime


# === Ordered items ===


class MoveIn(BaseModel):
    afterId: Optional[str] = None


class ColumnIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    wipLimit: Optional[int] = Field(default=None, ge=1)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR)


class ColumnPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    wipLimit: Optional[int] = Field(default=None, ge=1)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR)


class ColumnOut(BaseModel):
    id: str
    boardId: str
    name: str
    position: str
    wipLimit: Optional[int]
    color: Optional[str]
    createdAt: datetime
    updatedAt: datetime


class SwimlaneIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)


class SwimlaneOut(BaseModel):
    id: str
    boardId: str
    name: str
    position: str
    isDefault: bool
    createdAt: datetime
    updatedAt: datetime


class CardIn(BaseModel):
    columnId: str
    swimlaneId: Optional[str] = None
    parentCardId: Optional[str] = None
    cardType: CardType = "task"
    title: str = Field(min_length=1, max_length=500)
    description: Optional[str] = Field(default=None, max_length=8000)
    dueDate: Optional[datetime] = None


class CardPatch(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = Field(default=None, max_length=8000)
    cardType: Optional[CardType] = None
    dueDate: Optional[datetime] = None
    parentCardId: Optional[str] = None


class CardMove(BaseModel):
    columnId: str
    swimlaneId: Optional[str] = None
    afterId: Optional[str] = None


class CardOut(BaseModel):
    id: str
    boardId: str
    columnId: str
    swimlaneId: str
    parentCardId: Optional[str]
    cardType: CardType
    title: str
    description: Optional[str]
    position: str
    dueDate: Optional[datetime]
    isArchived: bool
    createdBy: Optional[str]
    createdAt: datetime
    updatedAt: datetime
    version: int
    labelIds: list[str] = Field(default_factory=list)
    assigneeIds: list[str] = Field(default_factory=list)


# === Labels, comments, assignees ===


class LabelIn(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    color: str = Field(pattern=HEX_COLOR)


class LabelPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR)


class LabelOut(BaseModel):
    id: str
    boardId: str
    name: str
    color: str


class CardLabelIn(BaseModel):
    labelId: str


class CommentIn(BaseModel):
    body: str = Field(min_length=1, max_length=8000)


class CommentOut(BaseModel):
    id: str
    cardId: str
    authorId: Optional[str]
    body: str
    createdAt: datetime
    updatedAt: datetime


class AssigneeIn(BaseModel):
    userId: str


# === Shares ===


class UserShareIn(BaseModel):
    email: str
    permission: PermissionName
    expiresAt: Optional[datetime] = None


class LinkShareIn(BaseModel):
    permission: PermissionName
    expiresAt: Optional[datetime] = None


class SharePatch(BaseModel):
    permission: Optional[PermissionName] = None
    expiresAt: Optional[datetime] = None


class ShareOut(BaseModel):
    id: str
    boardId: str
    userId: Optional[str]
    permission: PermissionName
    createdBy: str
    expiresAt: Optional[datetime]
    createdAt: datetime
    # Only returned once, when a link share is created.
    token: Optional[str] = None


# === Activity & notifications ===


class ActivityOut(BaseModel):
    id: str
    boardId: str
    cardId: Optional[str]
    userId: Optional[str]
    action: str
    entityType: str
    entityId: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    createdAt: datetime


class ActivitiesPage(BaseModel):
    activities: list[ActivityOut]
    nextCursor: Optional[str] = None


class NotificationOut(BaseModel):
    id: str
    activityId: str
    isRead: bool
    createdAt: datetime
    activity: ActivityOut


class NotificationsPage(BaseModel):
    notifications: list[NotificationOut]
    nextCursor: Optional[str] = None


# === Aggregates ===


class BoardView(BaseModel):
    board: BoardOut
    permission: PermissionName
    columns: list[ColumnOut]
    swimlanes: list[SwimlaneOut]
    cards: list[CardOut]
    labels: list[LabelOut]


# === Search ===


class SearchResult(BaseModel):
    id: str
    title: str
    cardType: CardType
    dueDate: Optional[datetime]
    labels: list[LabelOut] = Field(default_factory=list)
    boardId: str
    boardName: str
    teamId: str
    columnId: str
    columnName: str


class SearchPage(BaseModel):
    results: list[SearchResult]
    total: int
    hasMore: bool
