"""Board access resolution.

A caller reaches a board either through a team account (session token) or
through a share (a link token, or a share record bound to their account).
Both paths end in one ``Grant`` value that downstream checks consume without
caring how it was obtained.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from typing import TYPE_CHECKING, Callable, Iterable, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import Board, BoardShare, TeamMembership, User
from .errors import Forbidden, NotFound, ShareExpired, Unauthorized
from .utils import as_utc, now_utc, sha256_hex

if TYPE_CHECKING:
    from .auth import SessionSigner

logger = logging.getLogger(__name__)


class Permission(IntEnum):
    READ = 0
    COMMENT = 1
    EDIT = 2

    @classmethod
    def parse(cls, value: str) -> Permission:
        return cls[value.upper()]

    @property
    def label(self) -> str:
        return self.name.lower()


ROLE_PERMISSIONS = {
    "owner": Permission.EDIT,
    "admin": Permission.EDIT,
    "member": Permission.EDIT,
}


@dataclass(frozen=True)
class Credentials:
    session_token: Optional[str] = None
    share_token: Optional[str] = None


@dataclass(frozen=True)
class AccountGrant:
    board_id: str
    user_id: str
    team_role: str
    permission: Permission

    @property
    def actor_id(self) -> Optional[str]:
        return self.user_id


@dataclass(frozen=True)
class ShareGrant:
    board_id: str
    share_id: str
    permission: Permission
    expires_at: Optional[datetime] = None
    user_id: Optional[str] = None

    @property
    def actor_id(self) -> Optional[str]:
        return self.user_id


Grant = Union[AccountGrant, ShareGrant]


def require(grant: Grant, minimum: Permission) -> Grant:
    if grant.permission < minimum:
        raise Forbidden(f"requires at least '{minimum.label}' permission")
    return grant


class AccessGate:
    def __init__(self, signer: SessionSigner, clock: Callable[[], datetime] = now_utc) -> None:
        self.signer = signer
        self.clock = clock

    def authenticate(self, token: Optional[str]) -> str:
        if not token:
            raise Unauthorized("authentication required")
        return self.signer.verify(token)

    def authorize(
        self,
        session: Session,
        board_id: str,
        credentials: Credentials,
        minimum: Permission = Permission.READ,
    ) -> Grant:
        board = session.get(Board, board_id)
        if board is None:
            raise NotFound("board not found")

        if credentials.share_token:
            try:
                return require(self._share_token_grant(session, board, credentials.share_token), minimum)
            except (Unauthorized, Forbidden, ShareExpired):
                if not credentials.session_token:
                    raise
        return require(self._account_grant(session, board, credentials.session_token), minimum)

    def _share_token_grant(self, session: Session, board: Board, token: str) -> ShareGrant:
        share = session.scalar(select(BoardShare).where(BoardShare.token_hash == sha256_hex(token)))
        if share is None:
            raise Unauthorized("unknown share token")
        self._check_expiry(share)
        if share.board_id != board.id:
            raise Forbidden("share token is for another board")
        return ShareGrant(
            board_id=board.id,
            share_id=share.id,
            permission=Permission.parse(share.permission),
            expires_at=as_utc(share.expires_at),
        )

    def _account_grant(self, session: Session, board: Board, token: Optional[str]) -> Grant:
        user_id = self.authenticate(token)
        if session.get(User, user_id) is None:
            raise Unauthorized("unknown user")

        membership = session.scalar(
            select(TeamMembership).where(
                TeamMembership.team_id == board.team_id,
                TeamMembership.user_id == user_id,
            )
        )
        if membership is not None:
            return AccountGrant(
                board_id=board.id,
                user_id=user_id,
                team_role=membership.role,
                permission=ROLE_PERMISSIONS.get(membership.role, Permission.READ),
            )

        share = session.scalar(
            select(BoardShare).where(BoardShare.board_id == board.id, BoardShare.user_id == user_id)
        )
        if share is None:
            raise Forbidden("not a member of this team")
        self._check_expiry(share)
        return ShareGrant(
            board_id=board.id,
            share_id=share.id,
            permission=Permission.parse(share.permission),
            expires_at=as_utc(share.expires_at),
            user_id=user_id,
        )

    def _check_expiry(self, share: BoardShare) -> None:
        expires_at = as_utc(share.expires_at)
        if expires_at is not None and expires_at < self.clock():
            logger.info("share %s on board %s expired at %s", share.id, share.board_id, expires_at)
            raise ShareExpired("share has expired")

    def require_team_role(self, session: Session, board_id: str, user_id: str, roles: Iterable[str]) -> str:
        board = session.get(Board, board_id)
        if board is None:
            raise NotFound("board not found")
        role = session.scalar(
            select(TeamMembership.role).where(
                TeamMembership.team_id == board.team_id,
                TeamMembership.user_id == user_id,
            )
        )
        if role not in set(roles):
            raise Forbidden("insufficient team role")
        return role
