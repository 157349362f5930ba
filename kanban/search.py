from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from .access import AccessGate, Credentials, Permission
from .db import Board, BoardColumn, BoardShare, Card, CardLabel, Label, TeamMembership
from .presenters import label_out
from .schemas import CardType, SearchPage, SearchResult
from .utils import as_utc, now_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchQuery:
    q: str
    team_id: Optional[str] = None
    board_id: Optional[str] = None
    label_id: Optional[str] = None
    card_type: Optional[CardType] = None
    has_due_date: Optional[bool] = None
    limit: int = 20
    offset: int = 0


def _like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class SearchService:
    """Card search across every board the caller can read.

    Without a ``board_id`` that is the non-archived boards of the caller's teams
    plus boards shared with them directly; with one, the usual board access
    check applies.
    """

    def __init__(self, session_factory: sessionmaker, gate: AccessGate) -> None:
        self.session_factory = session_factory
        self.gate = gate

    def _accessible_boards(
        self, session: Session, user_id: str, credentials: Credentials, query: SearchQuery
    ) -> list[str]:
        if query.board_id is not None:
            self.gate.authorize(session, query.board_id, credentials, Permission.READ)
            return [query.board_id]

        teams = select(TeamMembership.team_id).where(TeamMembership.user_id == user_id)
        if query.team_id is not None:
            teams = teams.where(TeamMembership.team_id == query.team_id)
        visible = Board.team_id.in_(teams)
        if query.team_id is None:
            now = now_utc()
            shared = [
                share.board_id
                for share in session.scalars(select(BoardShare).where(BoardShare.user_id == user_id))
                if share.expires_at is None or as_utc(share.expires_at) >= now
            ]
            if shared:
                visible = or_(visible, Board.id.in_(shared))
        return list(session.scalars(select(Board.id).where(visible, Board.is_archived.is_(False))))

    def search_cards(self, user_id: str, credentials: Credentials, query: SearchQuery) -> SearchPage:
        with self.session_factory() as session:
            board_ids = self._accessible_boards(session, user_id, credentials, query)
            if not board_ids:
                return SearchPage(results=[], total=0, hasMore=False)

            pattern = _like_pattern(query.q)
            stmt = (
                select(Card, Board, BoardColumn)
                .join(Board, Card.board_id == Board.id)
                .join(BoardColumn, Card.column_id == BoardColumn.id)
                .where(
                    Card.board_id.in_(board_ids),
                    Card.is_archived.is_(False),
                    or_(Card.title.ilike(pattern, escape="\\"), Card.description.ilike(pattern, escape="\\")),
                )
            )
            if query.card_type is not None:
                stmt = stmt.where(Card.card_type == query.card_type)
            if query.has_due_date is True:
                stmt = stmt.where(Card.due_date.is_not(None))
            elif query.has_due_date is False:
                stmt = stmt.where(Card.due_date.is_(None))
            if query.label_id is not None:
                stmt = stmt.where(Card.id.in_(select(CardLabel.card_id).where(CardLabel.label_id == query.label_id)))

            stmt = stmt.order_by(Card.updated_at.desc(), Card.id).offset(query.offset).limit(query.limit + 1)
            rows = session.execute(stmt).all()
            has_more = len(rows) > query.limit
            rows = rows[: query.limit]

            labels: dict[str, list] = {}
            card_ids = [card.id for card, _, _ in rows]
            if card_ids:
                links = session.execute(
                    select(CardLabel.card_id, Label)
                    .join(Label, CardLabel.label_id == Label.id)
                    .where(CardLabel.card_id.in_(card_ids))
                    .order_by(Label.name)
                )
                for card_id, label in links:
                    labels.setdefault(card_id, []).append(label_out(label))

            results = [
                SearchResult(
                    id=card.id,
                    title=card.title,
                    cardType=card.card_type,
                    dueDate=card.due_date,
                    labels=labels.get(card.id, []),
                    boardId=board.id,
                    boardName=board.name,
                    teamId=board.team_id,
                    columnId=column.id,
                    columnName=column.name,
                )
                for card, board, column in rows
            ]
            logger.debug("search %r by %s matched %d card(s)", query.q, user_id, len(results))
            return SearchPage(results=results, total=len(results), hasMore=has_more)
