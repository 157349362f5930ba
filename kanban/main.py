import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .access import AccessGate, Credentials, Grant, Permission
from .activity import ActivityLog
from .auth import SessionSigner, get_connection_id, get_credentials, get_current_user
from .config import Settings
from .db import ScopeLocks, init_db, make_engine, make_session_factory
from .errors import KanbanError
from .moves import MoveResolver
from .realtime import Broadcaster
from .schemas import (
    ActivitiesPage,
    AssigneeIn,
    BoardIn,
    BoardOut,
    BoardPatch,
    BoardView,
    CardIn,
    CardLabelIn,
    CardMove,
    CardType,
    CardOut,
    CardPatch,
    ColumnIn,
    ColumnOut,
    ColumnPatch,
    CommentIn,
    CommentOut,
    ErrorEnvelope,
    Health,
    LabelIn,
    LabelOut,
    LabelPatch,
    LinkShareIn,
    MemberIn,
    MemberOut,
    MemberRolePatch,
    MoveIn,
    NotificationsPage,
    SearchPage,
    SessionCreate,
    SessionOut,
    ShareOut,
    SharePatch,
    SwimlaneIn,
    SwimlaneOut,
    TeamIn,
    TeamOut,
    UserCreate,
    UserShareIn,
    UserSummary,
    Version,
)
from .search import SearchQuery, SearchService
from .service import BoardService
from .shares import ShareService
from .socket import router as socket_router
from .teams import TeamService
from .utils import new_uuid

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


# === Dependencies ===


def get_boards(request: Request) -> BoardService:
    return request.app.state.boards


def get_teams(request: Request) -> TeamService:
    return request.app.state.teams


def get_shares(request: Request) -> ShareService:
    return request.app.state.shares


def get_activity(request: Request) -> ActivityLog:
    return request.app.state.activity


def get_search(request: Request) -> SearchService:
    return request.app.state.search


def require_board(minimum: Permission) -> Callable[..., Grant]:
    """Dependency resolving the caller's grant on ``{board_id}``, rejecting anything below ``minimum``."""

    def dependency(
        board_id: str,
        request: Request,
        credentials: Credentials = Depends(get_credentials),
    ) -> Grant:
        state = request.app.state
        with state.boards.reading() as session:
            return state.gate.authorize(session, board_id, credentials, minimum)

    return dependency


can_read = require_board(Permission.READ)
can_comment = require_board(Permission.COMMENT)
can_edit = require_board(Permission.EDIT)


# === Health & metadata ===


@router.get("/health", response_model=Health)
def health():
    return Health()


@router.get("/version", response_model=Version)
def version():
    return Version()


# === Accounts & teams ===


@router.post("/users", response_model=SessionOut, status_code=201)
def register(payload: UserCreate, teams: TeamService = Depends(get_teams)):
    return teams.register(payload)


@router.post("/sessions", response_model=SessionOut, status_code=201)
def login(payload: SessionCreate, teams: TeamService = Depends(get_teams)):
    return teams.login(payload.email)


@router.get("/me", response_model=UserSummary)
def me(user: str = Depends(get_current_user), teams: TeamService = Depends(get_teams)):
    return teams.me(user)


@router.post("/teams", response_model=TeamOut, status_code=201)
def create_team(payload: TeamIn, user: str = Depends(get_current_user), teams: TeamService = Depends(get_teams)):
    return teams.create_team(user, payload)


@router.get("/teams", response_model=list[TeamOut])
def list_teams(user: str = Depends(get_current_user), teams: TeamService = Depends(get_teams)):
    return teams.list_teams(user)


@router.get("/teams/{team_id}", response_model=TeamOut)
def get_team(team_id: str, user: str = Depends(get_current_user), teams: TeamService = Depends(get_teams)):
    return teams.get_team(team_id, user)


@router.patch("/teams/{team_id}", response_model=TeamOut)
def update_team(
    team_id: str,
    payload: TeamIn,
    user: str = Depends(get_current_user),
    teams: TeamService = Depends(get_teams),
):
    return teams.update_team(team_id, user, payload)


@router.delete("/teams/{team_id}", status_code=204)
def delete_team(team_id: str, user: str = Depends(get_current_user), teams: TeamService = Depends(get_teams)):
    teams.delete_team(team_id, user)
    return Response(status_code=204)


@router.get("/teams/{team_id}/members", response_model=list[MemberOut])
def list_members(team_id: str, user: str = Depends(get_current_user), teams: TeamService = Depends(get_teams)):
    return teams.list_members(team_id, user)


@router.post("/teams/{team_id}/members", response_model=MemberOut, status_code=201)
def add_member(
    team_id: str,
    payload: MemberIn,
    user: str = Depends(get_current_user),
    teams: TeamService = Depends(get_teams),
):
    return teams.add_member(team_id, user, payload)


@router.delete("/teams/{team_id}/members/{user_id}", status_code=204)
def remove_member(
    team_id: str,
    user_id: str,
    user: str = Depends(get_current_user),
    teams: TeamService = Depends(get_teams),
):
    teams.remove_member(team_id, user, user_id)
    return Response(status_code=204)


@router.patch("/teams/{team_id}/members/{user_id}", response_model=MemberOut)
def update_member_role(
    team_id: str,
    user_id: str,
    payload: MemberRolePatch,
    user: str = Depends(get_current_user),
    teams: TeamService = Depends(get_teams),
):
    return teams.update_member_role(team_id, user, user_id, payload)


# === Board endpoints ===


@router.post("/teams/{team_id}/boards", response_model=BoardOut, status_code=201)
def create_board(
    team_id: str,
    payload: BoardIn,
    user: str = Depends(get_current_user),
    teams: TeamService = Depends(get_teams),
):
    return teams.create_board(team_id, user, payload)


@router.get("/teams/{team_id}/boards", response_model=list[BoardOut])
def list_boards(team_id: str, user: str = Depends(get_current_user), teams: TeamService = Depends(get_teams)):
    return teams.list_boards(team_id, user)


@router.get("/boards/{board_id}", response_model=BoardView)
def get_board(
    board_id: str,
    includeArchived: bool = False,
    grant: Grant = Depends(can_read),
    boards: BoardService = Depends(get_boards),
):
    return boards.get_board_view(board_id, grant, include_archived=includeArchived)


@router.patch("/boards/{board_id}", response_model=BoardOut)
def update_board(
    board_id: str,
    payload: BoardPatch,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.update_board(board_id, grant, payload, connection_id=socket_id)


@router.delete("/boards/{board_id}", status_code=204)
def delete_board(
    board_id: str,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    boards.delete_board(board_id, grant, connection_id=socket_id)
    return Response(status_code=204)


# === Column endpoints ===


@router.post("/boards/{board_id}/columns", response_model=ColumnOut, status_code=201)
def create_column(
    board_id: str,
    payload: ColumnIn,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.create_column(board_id, grant, payload, connection_id=socket_id)


@router.patch("/boards/{board_id}/columns/{column_id}", response_model=ColumnOut)
def update_column(
    board_id: str,
    column_id: str,
    payload: ColumnPatch,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.update_column(board_id, grant, column_id, payload, connection_id=socket_id)


@router.post("/boards/{board_id}/columns/{column_id}:move", response_model=ColumnOut)
def move_column(
    board_id: str,
    column_id: str,
    payload: MoveIn,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.move_column(board_id, grant, column_id, payload.afterId, connection_id=socket_id)


@router.delete("/boards/{board_id}/columns/{column_id}", status_code=204)
def delete_column(
    board_id: str,
    column_id: str,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    boards.delete_column(board_id, grant, column_id, connection_id=socket_id)
    return Response(status_code=204)


# === Swimlane endpoints ===


@router.post("/boards/{board_id}/swimlanes", response_model=SwimlaneOut, status_code=201)
def create_swimlane(
    board_id: str,
    payload: SwimlaneIn,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.create_swimlane(board_id, grant, payload, connection_id=socket_id)


@router.patch("/boards/{board_id}/swimlanes/{swimlane_id}", response_model=SwimlaneOut)
def update_swimlane(
    board_id: str,
    swimlane_id: str,
    payload: SwimlaneIn,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.update_swimlane(board_id, grant, swimlane_id, payload, connection_id=socket_id)


@router.post("/boards/{board_id}/swimlanes/{swimlane_id}:move", response_model=SwimlaneOut)
def move_swimlane(
    board_id: str,
    swimlane_id: str,
    payload: MoveIn,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.move_swimlane(board_id, grant, swimlane_id, payload.afterId, connection_id=socket_id)


@router.delete("/boards/{board_id}/swimlanes/{swimlane_id}", status_code=204)
def delete_swimlane(
    board_id: str,
    swimlane_id: str,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    boards.delete_swimlane(board_id, grant, swimlane_id, connection_id=socket_id)
    return Response(status_code=204)


# === Card endpoints ===


@router.post("/boards/{board_id}/cards", response_model=CardOut, status_code=201)
def create_card(
    board_id: str,
    payload: CardIn,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.create_card(board_id, grant, payload, connection_id=socket_id)


@router.get("/boards/{board_id}/cards/{card_id}", response_model=CardOut)
def get_card(
    board_id: str,
    card_id: str,
    grant: Grant = Depends(can_read),
    boards: BoardService = Depends(get_boards),
):
    return boards.get_card(board_id, card_id)


@router.patch("/boards/{board_id}/cards/{card_id}", response_model=CardOut)
def update_card(
    board_id: str,
    card_id: str,
    payload: CardPatch,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.update_card(board_id, grant, card_id, payload, connection_id=socket_id)


@router.post("/boards/{board_id}/cards/{card_id}:move", response_model=CardOut)
def move_card(
    board_id: str,
    card_id: str,
    payload: CardMove,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.move_card(board_id, grant, card_id, payload, connection_id=socket_id)


@router.post("/boards/{board_id}/cards/{card_id}:archive", response_model=CardOut)
def archive_card(
    board_id: str,
    card_id: str,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.archive_card(board_id, grant, card_id, archived=True, connection_id=socket_id)


@router.post("/boards/{board_id}/cards/{card_id}:unarchive", response_model=CardOut)
def unarchive_card(
    board_id: str,
    card_id: str,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.archive_card(board_id, grant, card_id, archived=False, connection_id=socket_id)


@router.delete("/boards/{board_id}/cards/{card_id}", status_code=204)
def delete_card(
    board_id: str,
    card_id: str,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    boards.delete_card(board_id, grant, card_id, connection_id=socket_id)
    return Response(status_code=204)


# === Label endpoints ===


@router.get("/boards/{board_id}/labels", response_model=list[LabelOut])
def list_labels(board_id: str, grant: Grant = Depends(can_read), boards: BoardService = Depends(get_boards)):
    return boards.list_labels(board_id)


@router.post("/boards/{board_id}/labels", response_model=LabelOut, status_code=201)
def create_label(
    board_id: str,
    payload: LabelIn,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.create_label(board_id, grant, payload, connection_id=socket_id)


@router.patch("/boards/{board_id}/labels/{label_id}", response_model=LabelOut)
def update_label(
    board_id: str,
    label_id: str,
    payload: LabelPatch,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.update_label(board_id, grant, label_id, payload, connection_id=socket_id)


@router.delete("/boards/{board_id}/labels/{label_id}", status_code=204)
def delete_label(
    board_id: str,
    label_id: str,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    boards.delete_label(board_id, grant, label_id, connection_id=socket_id)
    return Response(status_code=204)


@router.post("/boards/{board_id}/cards/{card_id}/labels", response_model=CardOut, status_code=201)
def add_card_label(
    board_id: str,
    card_id: str,
    payload: CardLabelIn,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.add_card_label(board_id, grant, card_id, payload.labelId, connection_id=socket_id)


@router.delete("/boards/{board_id}/cards/{card_id}/labels/{label_id}", status_code=204)
def remove_card_label(
    board_id: str,
    card_id: str,
    label_id: str,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    boards.remove_card_label(board_id, grant, card_id, label_id, connection_id=socket_id)
    return Response(status_code=204)


# === Comment endpoints ===


@router.get("/boards/{board_id}/cards/{card_id}/comments", response_model=list[CommentOut])
def list_comments(
    board_id: str,
    card_id: str,
    grant: Grant = Depends(can_read),
    boards: BoardService = Depends(get_boards),
):
    return boards.list_comments(board_id, card_id)


@router.post("/boards/{board_id}/cards/{card_id}/comments", response_model=CommentOut, status_code=201)
def create_comment(
    board_id: str,
    card_id: str,
    payload: CommentIn,
    grant: Grant = Depends(can_comment),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.create_comment(board_id, grant, card_id, payload.body, connection_id=socket_id)


@router.patch("/boards/{board_id}/cards/{card_id}/comments/{comment_id}", response_model=CommentOut)
def update_comment(
    board_id: str,
    card_id: str,
    comment_id: str,
    payload: CommentIn,
    grant: Grant = Depends(can_comment),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.update_comment(board_id, grant, card_id, comment_id, payload.body, connection_id=socket_id)


@router.delete("/boards/{board_id}/cards/{card_id}/comments/{comment_id}", status_code=204)
def delete_comment(
    board_id: str,
    card_id: str,
    comment_id: str,
    grant: Grant = Depends(can_comment),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    boards.delete_comment(board_id, grant, card_id, comment_id, connection_id=socket_id)
    return Response(status_code=204)


# === Assignee endpoints ===


@router.post("/boards/{board_id}/cards/{card_id}/assignees", response_model=CardOut, status_code=201)
def add_assignee(
    board_id: str,
    card_id: str,
    payload: AssigneeIn,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    return boards.add_assignee(board_id, grant, card_id, payload.userId, connection_id=socket_id)


@router.delete("/boards/{board_id}/cards/{card_id}/assignees/{user_id}", status_code=204)
def remove_assignee(
    board_id: str,
    card_id: str,
    user_id: str,
    grant: Grant = Depends(can_edit),
    socket_id: Optional[str] = Depends(get_connection_id),
    boards: BoardService = Depends(get_boards),
):
    boards.remove_assignee(board_id, grant, card_id, user_id, connection_id=socket_id)
    return Response(status_code=204)


# === Share endpoints ===


@router.get("/boards/{board_id}/shares", response_model=list[ShareOut])
def list_shares(board_id: str, user: str = Depends(get_current_user), shares: ShareService = Depends(get_shares)):
    return shares.list_shares(board_id, user)


@router.post("/boards/{board_id}/shares", response_model=ShareOut, status_code=201)
def create_user_share(
    board_id: str,
    payload: UserShareIn,
    user: str = Depends(get_current_user),
    shares: ShareService = Depends(get_shares),
):
    return shares.create_user_share(board_id, user, payload)


@router.post("/boards/{board_id}/shares/link", response_model=ShareOut, status_code=201)
def create_link_share(
    board_id: str,
    payload: LinkShareIn,
    user: str = Depends(get_current_user),
    shares: ShareService = Depends(get_shares),
):
    return shares.create_link_share(board_id, user, payload)


@router.patch("/boards/{board_id}/shares/{share_id}", response_model=ShareOut)
def update_share(
    board_id: str,
    share_id: str,
    payload: SharePatch,
    user: str = Depends(get_current_user),
    shares: ShareService = Depends(get_shares),
):
    return shares.update_share(board_id, share_id, user, payload)


@router.delete("/boards/{board_id}/shares/{share_id}", status_code=204)
def revoke_share(
    board_id: str,
    share_id: str,
    user: str = Depends(get_current_user),
    shares: ShareService = Depends(get_shares),
):
    shares.revoke_share(board_id, share_id, user)
    return Response(status_code=204)


@router.get("/shared/{token}", response_model=BoardView)
def shared_board(token: str, shares: ShareService = Depends(get_shares)):
    return shares.board_by_token(token)


# === Search ===


@router.get("/search", response_model=SearchPage)
def search_cards(
    q: str = Query(min_length=1, max_length=200),
    teamId: Optional[str] = None,
    boardId: Optional[str] = None,
    labelId: Optional[str] = None,
    type: Optional[CardType] = None,
    hasDueDate: Optional[bool] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: str = Depends(get_current_user),
    credentials: Credentials = Depends(get_credentials),
    search: SearchService = Depends(get_search),
):
    query = SearchQuery(
        q=q,
        team_id=teamId,
        board_id=boardId,
        label_id=labelId,
        card_type=type,
        has_due_date=hasDueDate,
        limit=limit,
        offset=offset,
    )
    return search.search_cards(user, credentials, query)


# === Activity & notifications ===


@router.get("/boards/{board_id}/activities", response_model=ActivitiesPage)
def list_activities(
    board_id: str,
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    grant: Grant = Depends(can_read),
    boards: BoardService = Depends(get_boards),
    activity: ActivityLog = Depends(get_activity),
):
    with boards.reading() as session:
        return activity.list_board(session, board_id, cursor=cursor, limit=limit)


@router.get("/boards/{board_id}/cards/{card_id}/activities", response_model=ActivitiesPage)
def list_card_activities(
    board_id: str,
    card_id: str,
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    grant: Grant = Depends(can_read),
    boards: BoardService = Depends(get_boards),
    activity: ActivityLog = Depends(get_activity),
):
    with boards.reading() as session:
        return activity.list_card(session, board_id, card_id, cursor=cursor, limit=limit)


@router.get("/notifications", response_model=NotificationsPage)
def list_notifications(
    unreadOnly: bool = False,
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    user: str = Depends(get_current_user),
    boards: BoardService = Depends(get_boards),
    activity: ActivityLog = Depends(get_activity),
):
    with boards.reading() as session:
        return activity.list_notifications(session, user, unread_only=unreadOnly, cursor=cursor, limit=limit)


@router.get("/notifications/unread-count", response_model=dict)
def unread_count(
    user: str = Depends(get_current_user),
    boards: BoardService = Depends(get_boards),
    activity: ActivityLog = Depends(get_activity),
):
    with boards.reading() as session:
        return {"count": activity.unread_count(session, user)}


@router.post("/notifications/{notification_id}:read", status_code=204)
def mark_notification_read(
    notification_id: str,
    user: str = Depends(get_current_user),
    boards: BoardService = Depends(get_boards),
    activity: ActivityLog = Depends(get_activity),
):
    with boards.reading() as session:
        activity.mark_read(session, user, notification_id)
        session.commit()
    return Response(status_code=204)


@router.post("/notifications:read-all", status_code=204)
def mark_all_notifications_read(
    user: str = Depends(get_current_user),
    boards: BoardService = Depends(get_boards),
    activity: ActivityLog = Depends(get_activity),
):
    with boards.reading() as session:
        activity.mark_all_read(session, user)
        session.commit()
    return Response(status_code=204)


# === Application ===


async def handle_kanban_error(request: Request, exc: KanbanError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    body = ErrorEnvelope(
        code=exc.code,
        message=exc.message,
        details=exc.details or None,
        requestId=getattr(request.state, "request_id", None),
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    body = ErrorEnvelope(
        code="validation_error",
        message="request validation failed",
        details={"errors": _validation_errors(exc)},
        requestId=getattr(request.state, "request_id", None),
    )
    return JSONResponse(status_code=422, content=body.model_dump())


def _validation_errors(exc: RequestValidationError) -> list:
    return [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()
    engine = make_engine(settings.database_url)
    session_factory = make_session_factory(engine)
    signer = SessionSigner(settings.session_secret, settings.session_ttl_seconds)
    gate = AccessGate(signer)
    broadcaster = Broadcaster()
    activity = ActivityLog()
    boards = BoardService(session_factory, broadcaster, MoveResolver(), ScopeLocks(), activity)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(engine)
        broadcaster.init(asyncio.get_running_loop())
        logger.info("kanban api ready (database=%s)", engine.url.render_as_string(hide_password=True))
        yield
        await broadcaster.teardown()
        engine.dispose()

    app = FastAPI(title="Kanban API", version=Version().version, lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.signer = signer
    app.state.gate = gate
    app.state.broadcaster = broadcaster
    app.state.activity = activity
    app.state.boards = boards
    app.state.teams = TeamService(session_factory, signer, broadcaster)
    app.state.shares = ShareService(session_factory, gate, boards)
    app.state.search = SearchService(session_factory, gate)

    @app.middleware("http")
    async def request_id(request: Request, call_next):
        request.state.request_id = request.headers.get("x-request-id") or new_uuid()
        response = await call_next(request)
        response.headers["X-Request-Id"] = request.state.request_id
        return response

    app.add_exception_handler(KanbanError, handle_kanban_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.include_router(router)
    app.include_router(socket_router)
    return app


app = create_app()
