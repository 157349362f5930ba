from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .db import Board, BoardColumn, Card, Swimlane
from .errors import AnchorNotFound, NotFound, WipLimitExceeded
from .lexorank import key_between

logger = logging.getLogger(__name__)

Orderable = Union[Card, BoardColumn, Swimlane]


class ItemKind(str, Enum):
    CARD = "card"
    COLUMN = "column"
    SWIMLANE = "swimlane"


# kind -> (item model, attribute holding the scope id, scope model)
_SCOPES = {
    ItemKind.CARD: (Card, "column_id", BoardColumn),
    ItemKind.COLUMN: (BoardColumn, "board_id", Board),
    ItemKind.SWIMLANE: (Swimlane, "board_id", Board),
}


@dataclass(frozen=True)
class Placement:
    position: str
    scope_id: str


def scope_key(kind: ItemKind, scope_id: str) -> str:
    """Lock name for one ordered list."""
    return f"{kind.value}s:{scope_id}"


class MoveResolver:
    """Computes order keys for inserts and moves against freshly read state.

    Every call re-reads the target list inside the caller's transaction; client
    supplied neighbour keys are never trusted. Nothing here retries: a stale
    anchor or exhausted key range goes straight back to the caller.
    """

    def lock_scope(self, session: Session, kind: ItemKind, scope_id: str):
        """Load the scope row, locking it where the backend supports row locks."""
        _, _, scope_model = _SCOPES[kind]
        return session.get(scope_model, scope_id, with_for_update=True)

    def ordered_items(
        self,
        session: Session,
        kind: ItemKind,
        scope_id: str,
        exclude_id: Optional[str] = None,
    ) -> list[Orderable]:
        model, scope_attr, _ = _SCOPES[kind]
        stmt = select(model).where(getattr(model, scope_attr) == scope_id)
        if exclude_id is not None:
            stmt = stmt.where(model.id != exclude_id)
        # Archived cards keep their keys, so they stay in the list to avoid reuse.
        return list(session.scalars(stmt.order_by(model.position, model.id)))

    def append_position(self, session: Session, kind: ItemKind, scope_id: str) -> str:
        items = self.ordered_items(session, kind, scope_id)
        return key_between(items[-1].position if items else None, None)

    def active_card_count(self, session: Session, column_id: str, exclude_id: Optional[str] = None) -> int:
        stmt = select(func.count(Card.id)).where(Card.column_id == column_id, Card.is_archived.is_(False))
        if exclude_id is not None:
            stmt = stmt.where(Card.id != exclude_id)
        return session.scalar(stmt) or 0

    def check_wip(self, session: Session, column: BoardColumn, exclude_id: Optional[str] = None) -> None:
        """Reject adding one more active card to ``column`` if that breaks its WIP limit."""
        if column.wip_limit is None:
            return
        count = self.active_card_count(session, column.id, exclude_id)
        if count + 1 > column.wip_limit:
            raise WipLimitExceeded(
                f"column '{column.name}' has reached its WIP limit ({column.wip_limit})",
                details={"columnId": column.id, "wipLimit": column.wip_limit, "count": count},
            )

    def resolve_move(
        self,
        session: Session,
        kind: ItemKind,
        item: Orderable,
        target_scope_id: str,
        after_id: Optional[str],
    ) -> Placement:
        """Place ``item`` right after ``after_id`` in the target list, or first if it is ``None``."""
        siblings = self.ordered_items(session, kind, target_scope_id, exclude_id=item.id)

        if after_id is None:
            position = key_between(None, siblings[0].position if siblings else None)
        else:
            index = next(
                (
                    i
                    for i, sibling in enumerate(siblings)
                    if sibling.id == after_id and not getattr(sibling, "is_archived", False)
                ),
                None,
            )
            if index is None:
                raise AnchorNotFound(
                    f"{kind.value} {after_id} is not in the target list",
                    details={"afterId": after_id, "scopeId": target_scope_id},
                )
            following = siblings[index + 1].position if index + 1 < len(siblings) else None
            position = key_between(siblings[index].position, following)

        if kind is ItemKind.CARD and target_scope_id != item.column_id:
            column = session.get(BoardColumn, target_scope_id)
            if column is None:
                raise NotFound("column not found")
            self.check_wip(session, column, exclude_id=item.id)

        logger.debug("placing %s %s in %s at %s", kind.value, item.id, target_scope_id, position)
        return Placement(position=position, scope_id=target_scope_id)
