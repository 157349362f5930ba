"""Board mutations.

Every write runs inside ``BoardService.mutation``: scope locks are taken, one
session/transaction does the work, and the events it queued are handed to the
broadcaster right after commit. The commit and the hand-off share a per-board
publish lock, so events reach the broadcaster in commit order.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from . import activity as actions
from .access import AccountGrant, Grant
from .activity import ActivityLog, purge_notifications
from .db import (
    Board,
    BoardColumn,
    Card,
    CardAssignee,
    CardLabel,
    Comment,
    Label,
    ScopeLocks,
    Swimlane,
    TeamMembership,
    User,
)
from .errors import BadRequest, Conflict, Forbidden, NotFound
from .events import (
    AssigneeAdded,
    AssigneeRemoved,
    BoardDeleted,
    BoardEvent,
    BoardUpdated,
    CardArchived,
    CardCreated,
    CardDeleted,
    CardLabelAdded,
    CardLabelRemoved,
    CardMoved,
    CardUpdated,
    ColumnCreated,
    ColumnDeleted,
    ColumnMoved,
    ColumnUpdated,
    CommentCreated,
    CommentDeleted,
    CommentUpdated,
    LabelCreated,
    LabelDeleted,
    LabelUpdated,
    SwimlaneCreated,
    SwimlaneDeleted,
    SwimlaneMoved,
    SwimlaneUpdated,
    UserEvent,
)
from .moves import ItemKind, MoveResolver, scope_key
from .presenters import board_out, card_out, column_out, comment_out, label_out, swimlane_out, user_summary
from .realtime import Broadcaster
from .schemas import (
    BoardOut,
    BoardPatch,
    BoardView,
    CardIn,
    CardMove,
    CardOut,
    CardPatch,
    ColumnIn,
    ColumnOut,
    ColumnPatch,
    CommentOut,
    LabelIn,
    LabelOut,
    LabelPatch,
    SwimlaneIn,
    SwimlaneOut,
)

logger = logging.getLogger(__name__)


class Mutation:
    """One write transaction plus the events it will publish once committed."""

    def __init__(self, session: Session, board_id: str, actor_id: Optional[str]) -> None:
        self.session = session
        self.board_id = board_id
        self.actor_id = actor_id
        self.events: list[BoardEvent] = []
        self.notifications: list[tuple[str, UserEvent]] = []

    def emit(self, event: BoardEvent) -> None:
        self.events.append(event)

    def notify(self, user_id: str, event: UserEvent) -> None:
        self.notifications.append((user_id, event))


class BoardService:
    def __init__(
        self,
        session_factory: sessionmaker,
        broadcaster: Broadcaster,
        resolver: Optional[MoveResolver] = None,
        locks: Optional[ScopeLocks] = None,
        activity: Optional[ActivityLog] = None,
    ) -> None:
        self.session_factory = session_factory
        self.broadcaster = broadcaster
        self.resolver = resolver or MoveResolver()
        self.locks = locks or ScopeLocks()
        self.activity = activity or ActivityLog()

    # === Transactions ===

    @contextmanager
    def reading(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
        finally:
            session.close()

    @contextmanager
    def mutation(
        self,
        board_id: str,
        grant: Grant,
        *scope_keys: str,
        connection_id: Optional[str] = None,
    ) -> Iterator[Mutation]:
        with self.locks.hold(*scope_keys):
            session = self.session_factory()
            tx = Mutation(session, board_id, grant.actor_id)
            try:
                yield tx
                with self.locks.hold(f"publish:{board_id}"):
                    session.commit()
                    self._publish(tx, connection_id)
            except IntegrityError as exc:
                session.rollback()
                logger.info("integrity conflict on board %s: %s", board_id, exc.orig)
                raise Conflict("conflicting concurrent change, refetch and retry") from exc
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def _publish(self, tx: Mutation, connection_id: Optional[str]) -> None:
        for event in tx.events:
            self.broadcaster.broadcast(tx.board_id, event, exclude_connection_id=connection_id)
        for user_id, event in tx.notifications:
            self.broadcaster.notify_user(user_id, event)

    # === Lookups ===

    def _board(self, session: Session, board_id: str) -> Board:
        board = session.get(Board, board_id)
        if board is None:
            raise NotFound("board not found")
        return board

    def _column(self, session: Session, board_id: str, column_id: str) -> BoardColumn:
        column = session.get(BoardColumn, column_id)
        if column is None or column.board_id != board_id:
            raise NotFound("column not found on this board")
        return column

    def _swimlane(self, session: Session, board_id: str, swimlane_id: str) -> Swimlane:
        swimlane = session.get(Swimlane, swimlane_id)
        if swimlane is None or swimlane.board_id != board_id:
            raise NotFound("swimlane not found on this board")
        return swimlane

    def _card(self, session: Session, board_id: str, card_id: str) -> Card:
        card = session.get(Card, card_id)
        if card is None or card.board_id != board_id:
            raise NotFound("card not found")
        return card

    def _label(self, session: Session, board_id: str, label_id: str) -> Label:
        label = session.get(Label, label_id)
        if label is None or label.board_id != board_id:
            raise NotFound("label not found on this board")
        return label

    def _comment(self, session: Session, card_id: str, comment_id: str) -> Comment:
        comment = session.get(Comment, comment_id)
        if comment is None or comment.card_id != card_id:
            raise NotFound("comment not found")
        return comment

    def _default_swimlane(self, session: Session, board_id: str) -> Swimlane:
        swimlane = session.scalar(
            select(Swimlane).where(Swimlane.board_id == board_id, Swimlane.is_default.is_(True))
        )
        if swimlane is None:
            raise Conflict("board has no default swimlane")
        return swimlane

    def _check_parent(self, session: Session, board_id: str, parent_id: str, card_id: Optional[str] = None) -> None:
        if parent_id == card_id:
            raise BadRequest("a card cannot be its own parent")
        parent = session.get(Card, parent_id)
        if parent is None or parent.board_id != board_id:
            raise NotFound("parent card not found on this board")
        if parent.parent_card_id is not None:
            raise BadRequest("cannot nest subtasks more than one level deep")
        if card_id is not None:
            has_children = session.scalar(select(Card.id).where(Card.parent_card_id == card_id).limit(1))
            if has_children is not None:
                raise BadRequest("cannot set a parent on a card that already has subtasks")

    def _card_column_id(self, board_id: str, card_id: str) -> str:
        with self.reading() as session:
            return self._card(session, board_id, card_id).column_id

    # === Boards ===

    def get_board_view(self, board_id: str, grant: Grant, include_archived: bool = False) -> BoardView:
        with self.reading() as session:
            board = self._board(session, board_id)
            columns = session.scalars(
                select(BoardColumn).where(BoardColumn.board_id == board_id).order_by(BoardColumn.position)
            )
            swimlanes = session.scalars(
                select(Swimlane).where(Swimlane.board_id == board_id).order_by(Swimlane.position)
            )
            stmt = select(Card).where(Card.board_id == board_id)
            if not include_archived:
                stmt = stmt.where(Card.is_archived.is_(False))
            cards = session.scalars(stmt.order_by(Card.column_id, Card.position))
            labels = session.scalars(select(Label).where(Label.board_id == board_id).order_by(Label.name))
            return BoardView(
                board=board_out(board),
                permission=grant.permission.label,
                columns=[column_out(c) for c in columns],
                swimlanes=[swimlane_out(s) for s in swimlanes],
                cards=[card_out(c) for c in cards],
                labels=[label_out(label) for label in labels],
            )

    def update_board(
        self, board_id: str, grant: Grant, patch: BoardPatch, connection_id: Optional[str] = None
    ) -> BoardOut:
        with self.mutation(board_id, grant, connection_id=connection_id) as tx:
            board = self._board(tx.session, board_id)
            fields = patch.model_fields_set
            if "name" in fields and patch.name is not None:
                board.name = patch.name
            if "description" in fields:
                board.description = patch.description
            if patch.isArchived is not None:
                board.is_archived = patch.isArchived
            tx.session.flush()
            out = board_out(board)
            tx.emit(BoardUpdated(boardId=board_id, board=out))
        return out

    def delete_board(self, board_id: str, grant: Grant, connection_id: Optional[str] = None) -> None:
        """Delete a board with everything on it. Only team members may do this, not share holders."""
        if not isinstance(grant, AccountGrant):
            raise Forbidden("only team members can delete a board")
        with self.mutation(board_id, grant, connection_id=connection_id) as tx:
            board = self._board(tx.session, board_id)
            purge_notifications(tx.session, [board_id])
            tx.session.delete(board)
            tx.emit(BoardDeleted(boardId=board_id))
        self.broadcaster.close_room(board_id)
        logger.info("board %s deleted", board_id)

    # === Columns ===

    def create_column(
        self, board_id: str, grant: Grant, data: ColumnIn, connection_id: Optional[str] = None
    ) -> ColumnOut:
        scope = scope_key(ItemKind.COLUMN, board_id)
        with self.mutation(board_id, grant, scope, connection_id=connection_id) as tx:
            self.resolver.lock_scope(tx.session, ItemKind.COLUMN, board_id)
            column = BoardColumn(
                board_id=board_id,
                name=data.name,
                wip_limit=data.wipLimit,
                color=data.color,
                position=self.resolver.append_position(tx.session, ItemKind.COLUMN, board_id),
            )
            tx.session.add(column)
            tx.session.flush()
            self.activity.record(tx, actions.COLUMN_CREATED, "column", column.id, meta={"columnName": column.name})
            out = column_out(column)
            tx.emit(ColumnCreated(boardId=board_id, column=out))
        return out

    def update_column(
        self, board_id: str, grant: Grant, column_id: str, patch: ColumnPatch, connection_id: Optional[str] = None
    ) -> ColumnOut:
        with self.mutation(board_id, grant, connection_id=connection_id) as tx:
            column = self._column(tx.session, board_id, column_id)
            fields = patch.model_fields_set
            if "name" in fields and patch.name is not None:
                column.name = patch.name
            if "wipLimit" in fields:
                # Lowering the limit below the current count is allowed; it only gates new arrivals.
                column.wip_limit = patch.wipLimit
            if "color" in fields:
                column.color = patch.color
            tx.session.flush()
            out = column_out(column)
            tx.emit(ColumnUpdated(boardId=board_id, column=out))
        return out

    def move_column(
        self, board_id: str, grant: Grant, column_id: str, after_id: Optional[str], connection_id: Optional[str] = None
    ) -> ColumnOut:
        scope = scope_key(ItemKind.COLUMN, board_id)
        with self.mutation(board_id, grant, scope, connection_id=connection_id) as tx:
            self.resolver.lock_scope(tx.session, ItemKind.COLUMN, board_id)
            column = self._column(tx.session, board_id, column_id)
            placement = self.resolver.resolve_move(tx.session, ItemKind.COLUMN, column, board_id, after_id)
            column.position = placement.position
            tx.session.flush()
            out = column_out(column)
            tx.emit(ColumnMoved(boardId=board_id, column=out))
        return out

    def delete_column(self, board_id: str, grant: Grant, column_id: str, connection_id: Optional[str] = None) -> None:
        scope = scope_key(ItemKind.CARD, column_id)
        with self.mutation(board_id, grant, scope, connection_id=connection_id) as tx:
            column = self._column(tx.session, board_id, column_id)
            count = tx.session.scalar(select(func.count(Card.id)).where(Card.column_id == column_id)) or 0
            if count:
                raise BadRequest("cannot delete a column that contains cards", details={"cardCount": count})
            self.activity.record(tx, actions.COLUMN_DELETED, "column", column_id, meta={"columnName": column.name})
            tx.session.delete(column)
            tx.emit(ColumnDeleted(boardId=board_id, columnId=column_id))

    # === Swimlanes ===

    def create_swimlane(
        self, board_id: str, grant: Grant, data: SwimlaneIn, connection_id: Optional[str] = None
    ) -> SwimlaneOut:
        scope = scope_key(ItemKind.SWIMLANE, board_id)
        with self.mutation(board_id, grant, scope, connection_id=connection_id) as tx:
            self.resolver.lock_scope(tx.session, ItemKind.SWIMLANE, board_id)
            swimlane = Swimlane(
                board_id=board_id,
                name=data.name,
                position=self.resolver.append_position(tx.session, ItemKind.SWIMLANE, board_id),
            )
            tx.session.add(swimlane)
            tx.session.flush()
            self.activity.record(
                tx, actions.SWIMLANE_CREATED, "swimlane", swimlane.id, meta={"swimlaneName": swimlane.name}
            )
            out = swimlane_out(swimlane)
            tx.emit(SwimlaneCreated(boardId=board_id, swimlane=out))
        return out

    def update_swimlane(
        self, board_id: str, grant: Grant, swimlane_id: str, data: SwimlaneIn, connection_id: Optional[str] = None
    ) -> SwimlaneOut:
        with self.mutation(board_id, grant, connection_id=connection_id) as tx:
            swimlane = self._swimlane(tx.session, board_id, swimlane_id)
            swimlane.name = data.name
            tx.session.flush()
            out = swimlane_out(swimlane)
            tx.emit(SwimlaneUpdated(boardId=board_id, swimlane=out))
        return out

    def move_swimlane(
        self,
        board_id: str,
        grant: Grant,
        swimlane_id: str,
        after_id: Optional[str],
        connection_id: Optional[str] = None,
    ) -> SwimlaneOut:
        scope = scope_key(ItemKind.SWIMLANE, board_id)
        with self.mutation(board_id, grant, scope, connection_id=connection_id) as tx:
            self.resolver.lock_scope(tx.session, ItemKind.SWIMLANE, board_id)
            swimlane = self._swimlane(tx.session, board_id, swimlane_id)
            placement = self.resolver.resolve_move(tx.session, ItemKind.SWIMLANE, swimlane, board_id, after_id)
            swimlane.position = placement.position
            tx.session.flush()
            out = swimlane_out(swimlane)
            tx.emit(SwimlaneMoved(boardId=board_id, swimlane=out))
        return out

    def delete_swimlane(
        self, board_id: str, grant: Grant, swimlane_id: str, connection_id: Optional[str] = None
    ) -> None:
        with self.mutation(board_id, grant, connection_id=connection_id) as tx:
            swimlane = self._swimlane(tx.session, board_id, swimlane_id)
            if swimlane.is_default:
                raise BadRequest("cannot delete the default swimlane")
            count = tx.session.scalar(select(func.count(Card.id)).where(Card.swimlane_id == swimlane_id)) or 0
            if count:
                raise BadRequest("cannot delete a swimlane that contains cards", details={"cardCount": count})
            self.activity.record(
                tx, actions.SWIMLANE_DELETED, "swimlane", swimlane_id, meta={"swimlaneName": swimlane.name}
            )
            tx.session.delete(swimlane)
            tx.emit(SwimlaneDeleted(boardId=board_id, swimlaneId=swimlane_id))

    # === Cards ===

    def get_card(self, board_id: str, card_id: str) -> CardOut:
        with self.reading() as session:
            return card_out(self._card(session, board_id, card_id))

    def create_card(self, board_id: str, grant: Grant, data: CardIn, connection_id: Optional[str] = None) -> CardOut:
        scope = scope_key(ItemKind.CARD, data.columnId)
        with self.mutation(board_id, grant, scope, connection_id=connection_id) as tx:
            session = tx.session
            self._column(session, board_id, data.columnId)
            column = self.resolver.lock_scope(session, ItemKind.CARD, data.columnId)
            if data.swimlaneId is not None:
                swimlane = self._swimlane(session, board_id, data.swimlaneId)
            else:
                swimlane = self._default_swimlane(session, board_id)
            if data.parentCardId is not None:
                self._check_parent(session, board_id, data.parentCardId)
            self.resolver.check_wip(session, column)

            card = Card(
                board_id=board_id,
                column_id=column.id,
                swimlane_id=swimlane.id,
                parent_card_id=data.parentCardId,
                card_type=data.cardType,
                title=data.title,
                description=data.description,
                due_date=data.dueDate,
                created_by=tx.actor_id,
                position=self.resolver.append_position(session, ItemKind.CARD, column.id),
            )
            session.add(card)
            session.flush()
            self.activity.record(tx, actions.CARD_CREATED, "card", card.id, card_id=card.id, meta={"title": card.title})
            out = card_out(card)
            tx.emit(CardCreated(boardId=board_id, card=out))
        return out

    def update_card(
        self, board_id: str, grant: Grant, card_id: str, patch: CardPatch, connection_id: Optional[str] = None
    ) -> CardOut:
        with self.mutation(board_id, grant, connection_id=connection_id) as tx:
            session = tx.session
            card = self._card(session, board_id, card_id)
            fields = patch.model_fields_set
            if "parentCardId" in fields and patch.parentCardId is not None:
                self._check_parent(session, board_id, patch.parentCardId, card_id=card.id)

            changed = []
            for field, attr in (
                ("title", "title"),
                ("description", "description"),
                ("cardType", "card_type"),
                ("dueDate", "due_date"),
                ("parentCardId", "parent_card_id"),
            ):
                if field not in fields:
                    continue
                value = getattr(patch, field)
                if value is None and field in ("title", "cardType"):
                    continue
                setattr(card, attr, value)
                changed.append(field)
            card.version += 1
            session.flush()

            if "dueDate" in changed:
                if patch.dueDate is None:
                    self.activity.record(tx, actions.DUE_DATE_CLEARED, "card", card.id, card_id=card.id)
                else:
                    self.activity.record(
                        tx,
                        actions.DUE_DATE_SET,
                        "card",
                        card.id,
                        card_id=card.id,
                        meta={"dueDate": patch.dueDate.isoformat()},
                    )
            elif changed:
                self.activity.record(tx, actions.CARD_UPDATED, "card", card.id, card_id=card.id, meta={"fields": changed})
            out = card_out(card)
            tx.emit(CardUpdated(boardId=board_id, card=out))
        return out

    def move_card(
        self, board_id: str, grant: Grant, card_id: str, move: CardMove, connection_id: Optional[str] = None
    ) -> CardOut:
        source_column_id = self._card_column_id(board_id, card_id)
        scopes = {scope_key(ItemKind.CARD, source_column_id), scope_key(ItemKind.CARD, move.columnId)}
        with self.mutation(board_id, grant, *scopes, connection_id=connection_id) as tx:
            session = tx.session
            card = self._card(session, board_id, card_id)
            if card.column_id != source_column_id:
                raise Conflict("card was moved concurrently, refetch and retry")
            if card.is_archived:
                raise BadRequest("archived cards cannot be moved")
            self._column(session, board_id, move.columnId)
            self.resolver.lock_scope(session, ItemKind.CARD, move.columnId)
            if move.swimlaneId is not None:
                card.swimlane_id = self._swimlane(session, board_id, move.swimlaneId).id

            placement = self.resolver.resolve_move(session, ItemKind.CARD, card, move.columnId, move.afterId)
            from_column_id = card.column_id
            card.column_id = placement.scope_id
            card.position = placement.position
            card.version += 1
            session.flush()
            self.activity.record(
                tx,
                actions.CARD_MOVED,
                "card",
                card.id,
                card_id=card.id,
                meta={"fromColumnId": from_column_id, "toColumnId": card.column_id},
            )
            out = card_out(card)
            tx.emit(CardMoved(boardId=board_id, card=out, fromColumnId=from_column_id))
        return out

    def archive_card(
        self, board_id: str, grant: Grant, card_id: str, archived: bool = True, connection_id: Optional[str] = None
    ) -> CardOut:
        column_id = self._card_column_id(board_id, card_id)
        with self.mutation(board_id, grant, scope_key(ItemKind.CARD, column_id), connection_id=connection_id) as tx:
            session = tx.session
            card = self._card(session, board_id, card_id)
            if card.column_id != column_id:
                raise Conflict("card was moved concurrently, refetch and retry")
            if card.is_archived == archived:
                return card_out(card)
            if not archived:
                column = self.resolver.lock_scope(session, ItemKind.CARD, column_id)
                self.resolver.check_wip(session, column, exclude_id=card.id)
            card.is_archived = archived
            card.version += 1
            session.flush()
            out = card_out(card)
            if archived:
                self.activity.record(tx, actions.CARD_ARCHIVED, "card", card.id, card_id=card.id)
                tx.emit(CardArchived(boardId=board_id, card=out))
            else:
                tx.emit(CardUpdated(boardId=board_id, card=out))
        return out

    def delete_card(self, board_id: str, grant: Grant, card_id: str, connection_id: Optional[str] = None) -> None:
        column_id = self._card_column_id(board_id, card_id)
        with self.mutation(board_id, grant, scope_key(ItemKind.CARD, column_id), connection_id=connection_id) as tx:
            session = tx.session
            card = self._card(session, board_id, card_id)
            session.execute(update(Card).where(Card.parent_card_id == card.id).values(parent_card_id=None))
            session.delete(card)
            tx.emit(CardDeleted(boardId=board_id, cardId=card_id, columnId=card.column_id))

    # === Labels ===

    def list_labels(self, board_id: str) -> list[LabelOut]:
        with self.reading() as session:
            labels = session.scalars(select(Label).where(Label.board_id == board_id).order_by(Label.name))
            return [label_out(label) for label in labels]

    def _check_label_name(self, session: Session, board_id: str, name: str, label_id: Optional[str] = None) -> None:
        stmt = select(Label.id).where(Label.board_id == board_id, Label.name == name)
        if label_id is not None:
            stmt = stmt.where(Label.id != label_id)
        if session.scalar(stmt) is not None:
            raise Conflict("a label with this name already exists on this board")

    def create_label(self, board_id: str, grant: Grant, data: LabelIn, connection_id: Optional[str] = None) -> LabelOut:
        with self.mutation(board_id, grant, f"labels:{board_id}", connection_id=connection_id) as tx:
            self._check_label_name(tx.session, board_id, data.name)
            label = Label(board_id=board_id, name=data.name, color=data.color)
            tx.session.add(label)
            tx.session.flush()
            out = label_out(label)
            tx.emit(LabelCreated(boardId=board_id, label=out))
        return out

    def update_label(
        self, board_id: str, grant: Grant, label_id: str, patch: LabelPatch, connection_id: Optional[str] = None
    ) -> LabelOut:
        with self.mutation(board_id, grant, f"labels:{board_id}", connection_id=connection_id) as tx:
            label = self._label(tx.session, board_id, label_id)
            if patch.name is not None:
                self._check_label_name(tx.session, board_id, patch.name, label_id=label.id)
                label.name = patch.name
            if patch.color is not None:
                label.color = patch.color
            tx.session.flush()
            out = label_out(label)
            tx.emit(LabelUpdated(boardId=board_id, label=out))
        return out

    def delete_label(self, board_id: str, grant: Grant, label_id: str, connection_id: Optional[str] = None) -> None:
        with self.mutation(board_id, grant, f"labels:{board_id}", connection_id=connection_id) as tx:
            label = self._label(tx.session, board_id, label_id)
            tx.session.execute(delete(CardLabel).where(CardLabel.label_id == label.id))
            tx.session.delete(label)
            tx.emit(LabelDeleted(boardId=board_id, labelId=label_id))

    def add_card_label(
        self, board_id: str, grant: Grant, card_id: str, label_id: str, connection_id: Optional[str] = None
    ) -> CardOut:
        with self.mutation(board_id, grant, connection_id=connection_id) as tx:
            card = self._card(tx.session, board_id, card_id)
            label = self._label(tx.session, board_id, label_id)
            if any(link.label_id == label.id for link in card.labels):
                raise Conflict("label already assigned to this card")
            card.labels.append(CardLabel(label_id=label.id))
            card.version += 1
            tx.session.flush()
            self.activity.record(
                tx, actions.LABEL_ADDED, "card", card.id, card_id=card.id, meta={"labelName": label.name}
            )
            tx.emit(CardLabelAdded(boardId=board_id, cardId=card.id, label=label_out(label)))
            out = card_out(card)
        return out

    def remove_card_label(
        self, board_id: str, grant: Grant, card_id: str, label_id: str, connection_id: Optional[str] = None
    ) -> None:
        with self.mutation(board_id, grant, connection_id=connection_id) as tx:
            card = self._card(tx.session, board_id, card_id)
            link = next((link for link in card.labels if link.label_id == label_id), None)
            if link is None:
                raise NotFound("label is not assigned to this card")
            card.labels.remove(link)
            card.version += 1
            tx.session.flush()
            self.activity.record(tx, actions.LABEL_REMOVED, "card", card.id, card_id=card.id)
            tx.emit(CardLabelRemoved(boardId=board_id, cardId=card.id, labelId=label_id))

    # === Comments ===

    def list_comments(self, board_id: str, card_id: str) -> list[CommentOut]:
        with self.reading() as session:
            self._card(session, board_id, card_id)
            comments = session.scalars(
                select(Comment).where(Comment.card_id == card_id).order_by(Comment.created_at, Comment.id)
            )
            return [comment_out(c) for c in comments]

    def create_comment(
        self, board_id: str, grant: Grant, card_id: str, body: str, connection_id: Optional[str] = None
    ) -> CommentOut:
        with self.mutation(board_id, grant, connection_id=connection_id) as tx:
            self._card(tx.session, board_id, card_id)
            comment = Comment(card_id=card_id, author_id=tx.actor_id, body=body)
            tx.session.add(comment)
            tx.session.flush()
            self.activity.record(
                tx, actions.COMMENT_CREATED, "comment", comment.id, card_id=card_id, meta={"snippet": body[:100]}
            )
            out = comment_out(comment)
            tx.emit(CommentCreated(boardId=board_id, cardId=card_id, comment=out))
        return out

    def _own_comment(self, tx: Mutation, board_id: str, card_id: str, comment_id: str, verb: str) -> Comment:
        self._card(tx.session, board_id, card_id)
        comment = self._comment(tx.session, card_id, comment_id)
        if tx.actor_id is None or comment.author_id != tx.actor_id:
            raise Forbidden(f"only the author can {verb} this comment")
        return comment

    def update_comment(
        self,
        board_id: str,
        grant: Grant,
        card_id: str,
        comment_id: str,
        body: str,
        connection_id: Optional[str] = None,
    ) -> CommentOut:
        with self.mutation(board_id, grant, connection_id=connection_id) as tx:
            comment = self._own_comment(tx, board_id, card_id, comment_id, "edit")
            comment.body = body
            tx.session.flush()
            out = comment_out(comment)
            tx.emit(CommentUpdated(boardId=board_id, cardId=card_id, comment=out))
        return out

    def delete_comment(
        self, board_id: str, grant: Grant, card_id: str, comment_id: str, connection_id: Optional[str] = None
    ) -> None:
        with self.mutation(board_id, grant, connection_id=connection_id) as tx:
            comment = self._own_comment(tx, board_id, card_id, comment_id, "delete")
            tx.session.delete(comment)
            self.activity.record(tx, actions.COMMENT_DELETED, "comment", comment_id, card_id=card_id)
            tx.emit(CommentDeleted(boardId=board_id, cardId=card_id, commentId=comment_id))

    # === Assignees ===

    def add_assignee(
        self, board_id: str, grant: Grant, card_id: str, user_id: str, connection_id: Optional[str] = None
    ) -> CardOut:
        with self.mutation(board_id, grant, connection_id=connection_id) as tx:
            session = tx.session
            board = self._board(session, board_id)
            card = self._card(session, board_id, card_id)
            member = session.scalar(
                select(TeamMembership).where(TeamMembership.team_id == board.team_id, TeamMembership.user_id == user_id)
            )
            if member is None:
                raise BadRequest("user is not a member of this team", details={"userId": user_id})
            if any(a.user_id == user_id for a in card.assignees):
                raise Conflict("user already assigned to this card")
            user = session.get(User, user_id)
            card.assignees.append(CardAssignee(user_id=user_id))
            card.version += 1
            session.flush()
            self.activity.record(
                tx,
                actions.ASSIGNEE_ADDED,
                "card",
                card.id,
                card_id=card.id,
                meta={"assigneeId": user_id, "assigneeName": user.display_name},
            )
            tx.emit(AssigneeAdded(boardId=board_id, cardId=card.id, user=user_summary(user)))
            out = card_out(card)
        return out

    def remove_assignee(
        self, board_id: str, grant: Grant, card_id: str, user_id: str, connection_id: Optional[str] = None
    ) -> None:
        with self.mutation(board_id, grant, connection_id=connection_id) as tx:
            card = self._card(tx.session, board_id, card_id)
            assignee = next((a for a in card.assignees if a.user_id == user_id), None)
            if assignee is None:
                raise NotFound("user is not assigned to this card")
            card.assignees.remove(assignee)
            card.version += 1
            tx.session.flush()
            self.activity.record(
                tx, actions.ASSIGNEE_REMOVED, "card", card.id, card_id=card.id, meta={"assigneeId": user_id}
            )
            tx.emit(AssigneeRemoved(boardId=board_id, cardId=card.id, userId=user_id))
