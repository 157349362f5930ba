from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .access import AccessGate, Credentials, Permission
from .db import Board, BoardShare, TeamMembership, User
from .errors import Conflict, NotFound, Unauthorized
from .presenters import share_out
from .schemas import BoardView, LinkShareIn, ShareOut, SharePatch, UserShareIn
from .service import BoardService
from .utils import new_share_token, sha256_hex

logger = logging.getLogger(__name__)

SHARE_ADMIN_ROLES = ("owner", "admin")


class ShareService:
    """Board shares: per-user grants and bearer links.

    Link tokens are only stored hashed; the plain token is returned once, from
    ``create_link_share``.
    """

    def __init__(self, session_factory: sessionmaker, gate: AccessGate, boards: BoardService) -> None:
        self.session_factory = session_factory
        self.gate = gate
        self.boards = boards

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

    def _share(self, session: Session, board_id: str, share_id: str) -> BoardShare:
        share = session.get(BoardShare, share_id)
        if share is None or share.board_id != board_id:
            raise NotFound("share not found")
        return share

    def list_shares(self, board_id: str, user_id: str) -> list[ShareOut]:
        with self._transaction() as session:
            self.gate.require_team_role(session, board_id, user_id, SHARE_ADMIN_ROLES)
            shares = session.scalars(
                select(BoardShare).where(BoardShare.board_id == board_id).order_by(BoardShare.created_at)
            )
            return [share_out(s) for s in shares]

    def create_user_share(self, board_id: str, user_id: str, data: UserShareIn) -> ShareOut:
        with self._transaction() as session:
            self.gate.require_team_role(session, board_id, user_id, SHARE_ADMIN_ROLES)
            board = session.get(Board, board_id)
            target = session.scalar(select(User).where(User.email == data.email.strip().lower()))
            if target is None:
                raise NotFound("no user with this email")
            member = session.scalar(
                select(TeamMembership.id).where(
                    TeamMembership.team_id == board.team_id, TeamMembership.user_id == target.id
                )
            )
            if member is not None:
                raise Conflict("user is already a team member and has full access")
            existing = session.scalar(
                select(BoardShare.id).where(BoardShare.board_id == board_id, BoardShare.user_id == target.id)
            )
            if existing is not None:
                raise Conflict("user already has a share for this board")

            share = BoardShare(
                board_id=board_id,
                user_id=target.id,
                permission=data.permission,
                created_by=user_id,
                expires_at=data.expiresAt,
            )
            session.add(share)
            session.flush()
            logger.info("board %s shared with user %s (%s)", board_id, target.id, data.permission)
            return share_out(share)

    def create_link_share(self, board_id: str, user_id: str, data: LinkShareIn) -> ShareOut:
        with self._transaction() as session:
            self.gate.require_team_role(session, board_id, user_id, SHARE_ADMIN_ROLES)
            token = new_share_token()
            share = BoardShare(
                board_id=board_id,
                token_hash=sha256_hex(token),
                permission=data.permission,
                created_by=user_id,
                expires_at=data.expiresAt,
            )
            session.add(share)
            session.flush()
            logger.info("link share %s created on board %s (%s)", share.id, board_id, data.permission)
            return share_out(share, token=token)

    def update_share(self, board_id: str, share_id: str, user_id: str, patch: SharePatch) -> ShareOut:
        with self._transaction() as session:
            self.gate.require_team_role(session, board_id, user_id, SHARE_ADMIN_ROLES)
            share = self._share(session, board_id, share_id)
            if patch.permission is not None:
                share.permission = patch.permission
            if "expiresAt" in patch.model_fields_set:
                share.expires_at = patch.expiresAt
            session.flush()
            return share_out(share)

    def revoke_share(self, board_id: str, share_id: str, user_id: str) -> None:
        with self._transaction() as session:
            self.gate.require_team_role(session, board_id, user_id, SHARE_ADMIN_ROLES)
            session.delete(self._share(session, board_id, share_id))
            logger.info("share %s on board %s revoked", share_id, board_id)

    def board_by_token(self, token: str) -> BoardView:
        with self._transaction() as session:
            board_id = session.scalar(select(BoardShare.board_id).where(BoardShare.token_hash == sha256_hex(token)))
            if board_id is None:
                raise Unauthorized("unknown share token")
            grant = self.gate.authorize(session, board_id, Credentials(share_token=token), Permission.READ)
        return self.boards.get_board_view(board_id, grant)
