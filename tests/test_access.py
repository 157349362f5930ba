import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from conftest import register_user
from kanban.access import AccessGate, Credentials, Permission, ShareGrant, require
from kanban.auth import SessionSigner
from kanban.db import BoardShare
from kanban.errors import Forbidden, NotFound, ShareExpired, Unauthorized
from kanban.schemas import BoardIn, TeamIn, UserCreate
from kanban.utils import sha256_hex


def _link(client, owner, board_id, permission="read", expires_at=None):
    body = {"permission": permission}
    if expires_at is not None:
        body["expiresAt"] = expires_at.isoformat()
    resp = client.post(f"/v1/boards/{board_id}/shares/link", json=body, headers=owner["headers"])
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_read_only_share_can_view_but_not_write(client, owner, board):
    token = _link(client, owner, board["id"])["token"]
    headers = {"X-Share-Token": token}

    view = client.get(f"/v1/boards/{board['id']}", headers=headers)
    assert view.status_code == 200
    assert view.json()["permission"] == "read"

    resp = client.post(f"/v1/boards/{board['id']}/columns", json={"name": "Nope"}, headers=headers)
    assert resp.status_code == 403
    assert resp.json()["code"] == "forbidden"


def test_expired_share_differs_from_unknown_token(client, owner, board):
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    token = _link(client, owner, board["id"], expires_at=past)["token"]

    expired = client.get(f"/v1/boards/{board['id']}", headers={"X-Share-Token": token})
    assert expired.status_code == 410
    assert expired.json()["code"] == "share_expired"

    unknown = client.get(f"/v1/boards/{board['id']}", headers={"X-Share-Token": "not-a-token"})
    assert unknown.status_code == 401
    assert unknown.json()["code"] == "unauthorized"


def test_share_token_is_bound_to_its_board(client, owner, board):
    token = _link(client, owner, board["id"])["token"]
    other = client.post(
        f"/v1/teams/{board['teamId']}/boards", json={"name": "Other"}, headers=owner["headers"]
    ).json()

    resp = client.get(f"/v1/boards/{other['id']}", headers={"X-Share-Token": token})
    assert resp.status_code == 403


def test_account_paths(client, owner, board):
    outsider = register_user(client, "outsider@example.com")

    assert client.get(f"/v1/boards/{board['id']}").status_code == 401
    assert client.get(f"/v1/boards/{board['id']}", headers=outsider["headers"]).status_code == 403
    assert client.get("/v1/boards/missing", headers=owner["headers"]).status_code == 404
    bad = {"Authorization": "Bearer not.a.token"}
    assert client.get(f"/v1/boards/{board['id']}", headers=bad).status_code == 401


def test_user_share_with_comment_permission(client, owner, board):
    guest = register_user(client, "guest@example.com")
    resp = client.post(
        f"/v1/boards/{board['id']}/shares",
        json={"email": "guest@example.com", "permission": "comment"},
        headers=owner["headers"],
    )
    assert resp.status_code == 201
    card = client.post(
        f"/v1/boards/{board['id']}/cards",
        json={"columnId": board["columns"][0], "title": "Shared"},
        headers=owner["headers"],
    ).json()

    comment = client.post(
        f"/v1/boards/{board['id']}/cards/{card['id']}/comments", json={"body": "hi"}, headers=guest["headers"]
    )
    assert comment.status_code == 201
    assert comment.json()["authorId"] == guest["id"]

    create = client.post(
        f"/v1/boards/{board['id']}/cards",
        json={"columnId": board["columns"][0], "title": "Nope"},
        headers=guest["headers"],
    )
    assert create.status_code == 403


def test_share_administration_requires_owner_or_admin(client, owner, board):
    member = register_user(client, "member@example.com")
    client.post(
        f"/v1/teams/{board['teamId']}/members", json={"email": "member@example.com"}, headers=owner["headers"]
    )

    assert client.get(f"/v1/boards/{board['id']}/shares", headers=member["headers"]).status_code == 403
    resp = client.post(
        f"/v1/boards/{board['id']}/shares/link", json={"permission": "edit"}, headers=member["headers"]
    )
    assert resp.status_code == 403


def test_revoked_link_stops_working(client, owner, board):
    share = _link(client, owner, board["id"])
    headers = {"X-Share-Token": share["token"]}
    assert client.get(f"/v1/shared/{share['token']}").status_code == 200

    resp = client.delete(f"/v1/boards/{board['id']}/shares/{share['id']}", headers=owner["headers"])
    assert resp.status_code == 204
    assert client.get(f"/v1/boards/{board['id']}", headers=headers).status_code == 401
    assert client.get(f"/v1/shared/{share['token']}").status_code == 401


def test_listed_shares_never_expose_tokens(client, owner, board):
    _link(client, owner, board["id"])
    shares = client.get(f"/v1/boards/{board['id']}/shares", headers=owner["headers"]).json()
    assert len(shares) == 1
    assert shares[0]["token"] is None


# === Gate without HTTP ===


@pytest.fixture
def linked(state):
    """A board with one link share expiring at the start of 2030."""
    session = state.teams.register(UserCreate(email="clock@example.com", displayName="Clock"))
    team = state.teams.create_team(session.user.id, TeamIn(name="Clocks"))
    board = state.teams.create_board(team.id, session.user.id, BoardIn(name="Timed"))
    with state.boards.reading() as db:
        db.add(
            BoardShare(
                board_id=board.id,
                token_hash=sha256_hex("link-token"),
                permission="comment",
                created_by=session.user.id,
                expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
            )
        )
        db.commit()
    return board.id


def _gate(when):
    return AccessGate(SessionSigner("secret"), clock=lambda: when)


def test_gate_honours_expiry_against_its_clock(state, linked):
    credentials = Credentials(share_token="link-token")
    with state.boards.reading() as db:
        grant = _gate(datetime(2029, 6, 1, tzinfo=timezone.utc)).authorize(db, linked, credentials)
        assert isinstance(grant, ShareGrant)
        assert grant.permission is Permission.COMMENT
        assert grant.actor_id is None

        with pytest.raises(ShareExpired):
            _gate(datetime(2030, 6, 1, tzinfo=timezone.utc)).authorize(db, linked, credentials)


def test_gate_checks_minimum_permission_and_board(state, linked):
    gate = _gate(datetime(2029, 6, 1, tzinfo=timezone.utc))
    with state.boards.reading() as db:
        with pytest.raises(Forbidden):
            gate.authorize(db, linked, Credentials(share_token="link-token"), Permission.EDIT)
        with pytest.raises(NotFound):
            gate.authorize(db, "missing", Credentials(share_token="link-token"))
        with pytest.raises(Unauthorized):
            gate.authorize(db, linked, Credentials())


def test_share_grant_below_minimum_is_forbidden():
    grant = ShareGrant(board_id="b1", share_id="s1", permission=Permission.READ)
    assert require(grant, Permission.READ) is grant
    with pytest.raises(Forbidden):
        require(grant, Permission.COMMENT)


# === Session tokens ===


def _signed(signer, claims):
    """A correctly signed token around arbitrary claims."""
    payload = base64.urlsafe_b64encode(json.dumps(claims).encode()).rstrip(b"=").decode()
    signing_input = f"{SessionSigner._header}.{payload}"
    return f"{signing_input}.{signer._sign(signing_input)}"


def test_signer_round_trip_and_expiry():
    signer = SessionSigner("secret", ttl_seconds=60)
    token = signer.issue("u1", now=1000)
    assert signer.verify(token, now=1030) == "u1"
    with pytest.raises(Unauthorized) as exc:
        signer.verify(token, now=2000)
    assert exc.value.message == "token_expired"
    with pytest.raises(Unauthorized):
        SessionSigner("other").verify(token, now=1030)


@pytest.mark.parametrize(
    "claims",
    [
        {"sub": "u1", "exp": "later"},
        {"sub": "u1", "exp": True},
        {"sub": "u1"},
        {"sub": 7, "exp": 5000},
        {"sub": "", "exp": 5000},
        ["u1", 5000],
    ],
)
def test_signer_rejects_malformed_claims(claims):
    signer = SessionSigner("secret")
    with pytest.raises(Unauthorized) as exc:
        signer.verify(_signed(signer, claims), now=1000)
    assert exc.value.message == "invalid_token"


def test_signer_rejects_non_ascii_tokens():
    with pytest.raises(Unauthorized):
        SessionSigner("secret").verify("a.b.é")


def test_non_ascii_bearer_is_unauthorized(client):
    resp = client.get("/v1/me", headers={b"Authorization": b"Bearer a.b.\xe9"})
    assert resp.status_code == 401
    assert resp.json()["code"] == "unauthorized"
