import json

from .db import Activity, Board, BoardColumn, BoardShare, Card, Comment, Label, Notification, Swimlane, User
from .schemas import (
    ActivityOut,
    BoardOut,
    CardOut,
    ColumnOut,
    CommentOut,
    LabelOut,
    NotificationOut,
    ShareOut,
    SwimlaneOut,
    UserSummary,
)
from .utils import as_utc


def user_summary(user: User) -> UserSummary:
    return UserSummary(id=user.id, displayName=user.display_name, avatarUrl=user.avatar_url)


def board_out(board: Board) -> BoardOut:
    return BoardOut(
        id=board.id,
        teamId=board.team_id,
        name=board.name,
        description=board.description,
        createdBy=board.created_by,
        isArchived=board.is_archived,
        createdAt=board.created_at,
        updatedAt=board.updated_at,
    )


def column_out(column: BoardColumn) -> ColumnOut:
    return ColumnOut(
        id=column.id,
        boardId=column.board_id,
        name=column.name,
        position=column.position,
        wipLimit=column.wip_limit,
        color=column.color,
        createdAt=column.created_at,
        updatedAt=column.updated_at,
    )


def swimlane_out(swimlane: Swimlane) -> SwimlaneOut:
    return SwimlaneOut(
        id=swimlane.id,
        boardId=swimlane.board_id,
        name=swimlane.name,
        position=swimlane.position,
        isDefault=swimlane.is_default,
        createdAt=swimlane.created_at,
        updatedAt=swimlane.updated_at,
    )


def card_out(card: Card) -> CardOut:
    return CardOut(
        id=card.id,
        boardId=card.board_id,
        columnId=card.column_id,
        swimlaneId=card.swimlane_id,
        parentCardId=card.parent_card_id,
        cardType=card.card_type,
        title=card.title,
        description=card.description,
        position=card.position,
        dueDate=card.due_date,
        isArchived=card.is_archived,
        createdBy=card.created_by,
        createdAt=card.created_at,
        updatedAt=card.updated_at,
        version=card.version,
        labelIds=[link.label_id for link in card.labels],
        assigneeIds=[assignee.user_id for assignee in card.assignees],
    )


def label_out(label: Label) -> LabelOut:
    return LabelOut(id=label.id, boardId=label.board_id, name=label.name, color=label.color)


def comment_out(comment: Comment) -> CommentOut:
    return CommentOut(
        id=comment.id,
        cardId=comment.card_id,
        authorId=comment.author_id,
        body=comment.body,
        createdAt=comment.created_at,
        updatedAt=comment.updated_at,
    )


def share_out(share: BoardShare, token: str | None = None) -> ShareOut:
    return ShareOut(
        id=share.id,
        boardId=share.board_id,
        userId=share.user_id,
        permission=share.permission,
        createdBy=share.created_by,
        expiresAt=as_utc(share.expires_at),
        createdAt=share.created_at,
        token=token,
    )


def activity_out(activity: Activity) -> ActivityOut:
    return ActivityOut(
        id=activity.id,
        boardId=activity.board_id,
        cardId=activity.card_id,
        userId=activity.user_id,
        action=activity.action,
        entityType=activity.entity_type,
        entityId=activity.entity_id,
        metadata=json.loads(activity.meta) if activity.meta else {},
        createdAt=activity.created_at,
    )


def notification_out(notification: Notification) -> NotificationOut:
    return NotificationOut(
        id=notification.id,
        activityId=notification.activity_id,
        isRead=notification.is_read,
        createdAt=notification.created_at,
        activity=activity_out(notification.activity),
    )
