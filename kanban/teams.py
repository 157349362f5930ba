from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .activity import purge_notifications
from .auth import SessionSigner
from .db import Board, BoardColumn, Swimlane, Team, TeamMembership, User
from .errors import BadRequest, Conflict, Forbidden, NotFound, Unauthorized
from .events import BoardDeleted
from .lexorank import key_between
from .presenters import board_out, user_summary
from .realtime import Broadcaster
from .schemas import (
    BoardIn,
    BoardOut,
    MemberIn,
    MemberOut,
    MemberRolePatch,
    SessionOut,
    TeamIn,
    TeamOut,
    UserCreate,
    UserSummary,
)

logger = logging.getLogger(__name__)

STARTER_COLUMNS = ("To Do", "In Progress", "Done")
DEFAULT_SWIMLANE = "Default"


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class TeamService:
    """Accounts, teams and team-scoped board creation."""

    def __init__(
        self, session_factory: sessionmaker, signer: SessionSigner, broadcaster: Optional[Broadcaster] = None
    ) -> None:
        self.session_factory = session_factory
        self.signer = signer
        self.broadcaster = broadcaster

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _membership(self, session: Session, team_id: str, user_id: str) -> TeamMembership:
        if session.get(Team, team_id) is None:
            raise NotFound("team not found")
        membership = session.scalar(
            select(TeamMembership).where(TeamMembership.team_id == team_id, TeamMembership.user_id == user_id)
        )
        if membership is None:
            raise Forbidden("not a member of this team")
        return membership

    def _require_role(self, session: Session, team_id: str, user_id: str, roles: Iterable[str]) -> TeamMembership:
        membership = self._membership(session, team_id, user_id)
        if membership.role not in set(roles):
            raise Forbidden("insufficient team role")
        return membership

    def _member_out(self, session: Session, membership: TeamMembership) -> MemberOut:
        user = session.get(User, membership.user_id)
        return MemberOut(
            teamId=membership.team_id,
            user=user_summary(user),
            role=membership.role,
            createdAt=membership.created_at,
        )

    # === Accounts ===

    def register(self, data: UserCreate) -> SessionOut:
        email = _normalize_email(data.email)
        with self._transaction() as session:
            if session.scalar(select(User.id).where(User.email == email)) is not None:
                raise Conflict("email already registered")
            user = User(email=email, display_name=data.displayName, avatar_url=data.avatarUrl)
            session.add(user)
            session.flush()
            logger.info("registered user %s", user.id)
            return SessionOut(user=user_summary(user), token=self.signer.issue(user.id))

    def login(self, email: str) -> SessionOut:
        with self._transaction() as session:
            user = session.scalar(select(User).where(User.email == _normalize_email(email)))
            if user is None:
                raise Unauthorized("unknown account")
            return SessionOut(user=user_summary(user), token=self.signer.issue(user.id))

    def me(self, user_id: str) -> UserSummary:
        with self._transaction() as session:
            user = session.get(User, user_id)
            if user is None:
                raise Unauthorized("unknown user")
            return user_summary(user)

    # === Teams ===

    def create_team(self, user_id: str, data: TeamIn) -> TeamOut:
        with self._transaction() as session:
            team = Team(name=data.name)
            session.add(team)
            session.flush()
            session.add(TeamMembership(team_id=team.id, user_id=user_id, role="owner"))
            session.flush()
            return TeamOut(id=team.id, name=team.name, myRole="owner", createdAt=team.created_at)

    def list_teams(self, user_id: str) -> list[TeamOut]:
        with self._transaction() as session:
            rows = session.execute(
                select(Team, TeamMembership.role)
                .join(TeamMembership, TeamMembership.team_id == Team.id)
                .where(TeamMembership.user_id == user_id)
                .order_by(Team.created_at)
            )
            return [TeamOut(id=team.id, name=team.name, myRole=role, createdAt=team.created_at) for team, role in rows]

    def get_team(self, team_id: str, user_id: str) -> TeamOut:
        with self._transaction() as session:
            membership = self._membership(session, team_id, user_id)
            team = session.get(Team, team_id)
            return TeamOut(id=team.id, name=team.name, myRole=membership.role, createdAt=team.created_at)

    def update_team(self, team_id: str, user_id: str, data: TeamIn) -> TeamOut:
        with self._transaction() as session:
            membership = self._require_role(session, team_id, user_id, ("owner", "admin"))
            team = session.get(Team, team_id)
            team.name = data.name
            session.flush()
            return TeamOut(id=team.id, name=team.name, myRole=membership.role, createdAt=team.created_at)

    def delete_team(self, team_id: str, user_id: str) -> None:
        """Delete a team, its memberships and all of its boards. Owners only."""
        with self._transaction() as session:
            self._require_role(session, team_id, user_id, ("owner",))
            board_ids = list(session.scalars(select(Board.id).where(Board.team_id == team_id)))
            purge_notifications(session, board_ids)
            session.delete(session.get(Team, team_id))
        logger.info("team %s deleted with %d board(s)", team_id, len(board_ids))
        if self.broadcaster is not None:
            for board_id in board_ids:
                self.broadcaster.broadcast(board_id, BoardDeleted(boardId=board_id))
                self.broadcaster.close_room(board_id)

    def list_members(self, team_id: str, user_id: str) -> list[MemberOut]:
        with self._transaction() as session:
            self._membership(session, team_id, user_id)
            memberships = session.scalars(
                select(TeamMembership).where(TeamMembership.team_id == team_id).order_by(TeamMembership.created_at)
            )
            return [self._member_out(session, m) for m in memberships]

    def add_member(self, team_id: str, user_id: str, data: MemberIn) -> MemberOut:
        with self._transaction() as session:
            self._require_role(session, team_id, user_id, ("owner", "admin"))
            invitee = session.scalar(select(User).where(User.email == _normalize_email(data.email)))
            if invitee is None:
                raise NotFound("no user with this email")
            existing = session.scalar(
                select(TeamMembership.id).where(
                    TeamMembership.team_id == team_id, TeamMembership.user_id == invitee.id
                )
            )
            if existing is not None:
                raise Conflict("user is already a team member")
            membership = TeamMembership(team_id=team_id, user_id=invitee.id, role=data.role)
            session.add(membership)
            session.flush()
            return self._member_out(session, membership)

    def remove_member(self, team_id: str, user_id: str, target_user_id: str) -> None:
        with self._transaction() as session:
            self._require_role(session, team_id, user_id, ("owner", "admin"))
            if target_user_id == user_id:
                raise BadRequest("cannot remove yourself")
            membership = session.scalar(
                select(TeamMembership).where(
                    TeamMembership.team_id == team_id, TeamMembership.user_id == target_user_id
                )
            )
            if membership is None:
                raise NotFound("member not found")
            session.delete(membership)

    def update_member_role(
        self, team_id: str, user_id: str, target_user_id: str, patch: MemberRolePatch
    ) -> MemberOut:
        with self._transaction() as session:
            self._require_role(session, team_id, user_id, ("owner",))
            if target_user_id == user_id:
                raise BadRequest("cannot change your own role")
            membership = session.scalar(
                select(TeamMembership).where(
                    TeamMembership.team_id == team_id, TeamMembership.user_id == target_user_id
                )
            )
            if membership is None:
                raise NotFound("member not found")
            membership.role = patch.role
            session.flush()
            logger.info("member %s of team %s is now %s", target_user_id, team_id, patch.role)
            return self._member_out(session, membership)

    # === Boards ===

    def create_board(self, team_id: str, user_id: str, data: BoardIn) -> BoardOut:
        with self._transaction() as session:
            self._membership(session, team_id, user_id)
            board = Board(team_id=team_id, name=data.name, description=data.description, created_by=user_id)
            session.add(board)
            session.flush()
            session.add(
                Swimlane(board_id=board.id, name=DEFAULT_SWIMLANE, position=key_between(None, None), is_default=True)
            )
            position = None
            for name in STARTER_COLUMNS:
                position = key_between(position, None)
                session.add(BoardColumn(board_id=board.id, name=name, position=position))
            session.flush()
            logger.info("board %s created in team %s", board.id, team_id)
            return board_out(board)

    def list_boards(self, team_id: str, user_id: str) -> list[BoardOut]:
        with self._transaction() as session:
            self._membership(session, team_id, user_id)
            boards = session.scalars(
                select(Board)
                .where(Board.team_id == team_id, Board.is_archived.is_(False))
                .order_by(Board.created_at)
            )
            return [board_out(b) for b in boards]
