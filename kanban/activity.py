from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from .db import Activity, Board, Card, Notification, TeamMembership
from .errors import BadRequest, NotFound
from .events import NotificationNew
from .presenters import activity_out, notification_out
from .schemas import ActivitiesPage, NotificationsPage
from .utils import as_utc

if TYPE_CHECKING:
    from .service import Mutation

logger = logging.getLogger(__name__)

# Values stored in Activity.action.
CARD_CREATED = "card.created"
CARD_UPDATED = "card.updated"
CARD_MOVED = "card.moved"
CARD_ARCHIVED = "card.archived"
COMMENT_CREATED = "comment.created"
COMMENT_DELETED = "comment.deleted"
ASSIGNEE_ADDED = "assignee.added"
ASSIGNEE_REMOVED = "assignee.removed"
LABEL_ADDED = "label.added"
LABEL_REMOVED = "label.removed"
COLUMN_CREATED = "column.created"
COLUMN_DELETED = "column.deleted"
SWIMLANE_CREATED = "swimlane.created"
SWIMLANE_DELETED = "swimlane.deleted"
DUE_DATE_SET = "dueDate.set"
DUE_DATE_CLEARED = "dueDate.cleared"

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def _make_cursor(created_at: datetime, row_id: str) -> str:
    return f"{as_utc(created_at).isoformat()}|{row_id}"


def _parse_cursor(cursor: Optional[str]) -> Optional[tuple[datetime, Optional[str]]]:
    """Split a ``<timestamp>|<id>`` cursor; a bare timestamp is accepted too."""
    if not cursor:
        return None
    stamp, _, row_id = cursor.partition("|")
    try:
        return as_utc(datetime.fromisoformat(stamp)), row_id or None
    except ValueError:
        raise BadRequest("invalid cursor", details={"cursor": cursor})


def _before(created_at, row_id, cursor: Optional[str]):
    """Condition selecting rows strictly after ``cursor`` in newest-first order."""
    parsed = _parse_cursor(cursor)
    if parsed is None:
        return None
    stamp, last_id = parsed
    if last_id is None:
        return created_at < stamp
    return or_(created_at < stamp, and_(created_at == stamp, row_id < last_id))


def _page_size(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_PAGE_SIZE
    return max(1, min(limit, MAX_PAGE_SIZE))


def purge_notifications(session: Session, board_ids: list[str]) -> None:
    """Drop notifications pointing at activity on boards about to be deleted."""
    if not board_ids:
        return
    activity_ids = select(Activity.id).where(Activity.board_id.in_(board_ids))
    session.execute(
        delete(Notification)
        .where(Notification.activity_id.in_(activity_ids))
        .execution_options(synchronize_session=False)
    )


class ActivityLog:
    """Board activity feed and the per-user notifications derived from it."""

    def record(
        self,
        tx: Mutation,
        action: str,
        entity_type: str,
        entity_id: str,
        card_id: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> Activity:
        """Write an activity row and notify every other member of the board's team.

        Runs inside the mutation's transaction; the ``notification:new`` pushes
        are queued on ``tx`` and only go out once it commits.
        """
        session = tx.session
        activity = Activity(
            board_id=tx.board_id,
            card_id=card_id,
            user_id=tx.actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            meta=json.dumps(meta) if meta else None,
        )
        session.add(activity)
        session.flush()

        team_id = session.scalar(select(Board.team_id).where(Board.id == tx.board_id))
        recipients = [
            user_id
            for user_id in session.scalars(select(TeamMembership.user_id).where(TeamMembership.team_id == team_id))
            if user_id != tx.actor_id
        ]
        notifications = [Notification(user_id=user_id, activity=activity) for user_id in recipients]
        session.add_all(notifications)
        session.flush()

        for notification in notifications:
            tx.notify(notification.user_id, NotificationNew(notification=notification_out(notification)))
        logger.debug("activity %s on board %s, %d notification(s)", action, tx.board_id, len(notifications))
        return activity

    def list_board(
        self, session: Session, board_id: str, cursor: Optional[str] = None, limit: Optional[int] = None
    ) -> ActivitiesPage:
        return self._page(session, Activity.board_id == board_id, cursor, limit)

    def list_card(
        self,
        session: Session,
        board_id: str,
        card_id: str,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> ActivitiesPage:
        card = session.get(Card, card_id)
        if card is None or card.board_id != board_id:
            raise NotFound("card not found")
        return self._page(session, Activity.card_id == card_id, cursor, limit)

    def _page(self, session: Session, condition, cursor: Optional[str], limit: Optional[int]) -> ActivitiesPage:
        size = _page_size(limit)
        stmt = select(Activity).where(condition)
        before = _before(Activity.created_at, Activity.id, cursor)
        if before is not None:
            stmt = stmt.where(before)
        rows = list(session.scalars(stmt.order_by(Activity.created_at.desc(), Activity.id.desc()).limit(size + 1)))
        items = rows[:size]
        next_cursor = _make_cursor(items[-1].created_at, items[-1].id) if len(rows) > size else None
        return ActivitiesPage(activities=[activity_out(a) for a in items], nextCursor=next_cursor)

    # === Notifications ===

    def list_notifications(
        self,
        session: Session,
        user_id: str,
        unread_only: bool = False,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> NotificationsPage:
        size = _page_size(limit)
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        before = _before(Notification.created_at, Notification.id, cursor)
        if before is not None:
            stmt = stmt.where(before)
        rows = list(
            session.scalars(stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(size + 1))
        )
        items = rows[:size]
        next_cursor = _make_cursor(items[-1].created_at, items[-1].id) if len(rows) > size else None
        return NotificationsPage(notifications=[notification_out(n) for n in items], nextCursor=next_cursor)

    def unread_count(self, session: Session, user_id: str) -> int:
        stmt = select(func.count(Notification.id)).where(
            Notification.user_id == user_id, Notification.is_read.is_(False)
        )
        return session.scalar(stmt) or 0

    def mark_read(self, session: Session, user_id: str, notification_id: str) -> None:
        notification = session.get(Notification, notification_id)
        if notification is None or notification.user_id != user_id:
            raise NotFound("notification not found")
        notification.is_read = True

    def mark_all_read(self, session: Session, user_id: str) -> None:
        session.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True)
        )
