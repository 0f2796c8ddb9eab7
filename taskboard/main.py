from __future__ import annotations

import logging
import os
import secrets
from logging.handlers import RotatingFileHandler
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware

from .assembly import (
    board_out,
    board_summary,
    card_out,
    checklist_item_out,
    lane_out,
    sort_by_priority,
    user_out,
)
from .auth import create_session, destroy_session, get_store, require_current_user
from .config import VERSION, Settings
from .db import Database, User
from .errors import InvalidInput, TaskboardError, Unauthorized
from .events import CHECKLIST_ASSIGNED, EventBus
from .line import (
    AssignmentNotifier,
    ChatCommandHandler,
    LineLoginClient,
    LineMessagingClient,
    verify_signature,
)
from .schemas import (
    BoardIn,
    BoardOut,
    BoardsPage,
    BoardView,
    CardIn,
    CardMove,
    CardOut,
    CardPatch,
    ChecklistItemIn,
    ChecklistItemOut,
    ChecklistItemPatch,
    ErrorEnvelope,
    Health,
    LaneIn,
    LaneMove,
    LaneOut,
    UserOut,
    Version,
)
from .storage import UNSET, Store
from .utils import new_uuid

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)s in %(module)s: %(message)s"


def setup_logging(settings: Settings) -> None:
    """Console logging always; rotating files when ``LOG_DIR`` is set.

    ``app.log`` gets INFO and above, ``error.log`` only errors.
    """
    root = logging.getLogger("taskboard")
    if root.handlers:
        return
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if settings.log_dir:
        os.makedirs(settings.log_dir, exist_ok=True)
        info_handler = RotatingFileHandler(
            os.path.join(settings.log_dir, "app.log"), maxBytes=10240000, backupCount=10
        )
        info_handler.setLevel(logging.INFO)
        info_handler.setFormatter(formatter)
        error_handler = RotatingFileHandler(
            os.path.join(settings.log_dir, "error.log"), maxBytes=10240000, backupCount=10
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(formatter)
        root.addHandler(info_handler)
        root.addHandler(error_handler)

    root.setLevel(settings.log_level.upper())


def error_response(status_code: int, code: str, message: str, details: Optional[dict] = None) -> JSONResponse:
    body = ErrorEnvelope(code=code, message=message, details=details or {}, requestId=new_uuid())
    return JSONResponse(status_code=status_code, content=body.model_dump())


router = APIRouter(prefix="/v1")


# === Health & metadata ===


@router.get("/health", response_model=Health)
def health() -> Health:
    return Health()


@router.get("/version", response_model=Version)
def version() -> Version:
    return Version(version=VERSION)


# === Auth ===


@router.get("/auth/line/login")
def line_login(request: Request):
    login_client: LineLoginClient = request.app.state.login_client
    return RedirectResponse(login_client.authorize_url(secrets.token_urlsafe(16)), status_code=302)


@router.get("/auth/line/callback")
def line_login_callback(request: Request, code: Optional[str] = None):
    if not code:
        raise InvalidInput("No code provided", {"field": "code"})
    login_client: LineLoginClient = request.app.state.login_client
    profile = login_client.get_profile(login_client.exchange_code(code))
    user = get_store(request).upsert_user_by_external_chat_id(
        profile.user_id, profile.display_name, profile.picture_url
    )
    create_session(request, user)
    logger.info("User %s logged in", user.id)
    settings: Settings = request.app.state.settings
    return RedirectResponse(f"{settings.app_url.rstrip('/')}/dashboard", status_code=302)


@router.post("/auth/logout", status_code=204)
def logout(request: Request):
    destroy_session(request)
    return Response(status_code=204)


@router.get("/auth/me", response_model=UserOut)
def me(user: User = Depends(require_current_user)):
    return user_out(user)


# === Users ===


@router.get("/users", response_model=dict)
def list_users(request: Request, user: User = Depends(require_current_user)):
    return {"users": [user_out(u) for u in get_store(request).list_users()]}


# === Board endpoints ===


@router.get("/boards", response_model=BoardsPage)
def list_boards(request: Request, user: User = Depends(require_current_user)):
    return BoardsPage(boards=[board_summary(b) for b in get_store(request).list_boards()])


@router.post("/boards", response_model=BoardOut, status_code=201)
def create_board(payload: BoardIn, request: Request, user: User = Depends(require_current_user)):
    return board_out(get_store(request).create_board(payload.name))


@router.get("/boards/{board_id}", response_model=BoardView)
def get_board(
    board_id: str,
    request: Request,
    sort: Optional[str] = None,
    user: User = Depends(require_current_user),
):
    if sort not in (None, "order", "priority"):
        raise InvalidInput("sort must be 'order' or 'priority'", {"sort": sort})
    view = get_store(request).board_view(board_id)
    if sort == "priority":
        view = sort_by_priority(view)
    return view


@router.patch("/boards/{board_id}", response_model=BoardOut)
def update_board(board_id: str, payload: BoardIn, request: Request, user: User = Depends(require_current_user)):
    return board_out(get_store(request).update_board(board_id, payload.name))


@router.delete("/boards/{board_id}", status_code=204)
def delete_board(board_id: str, request: Request, user: User = Depends(require_current_user)):
    get_store(request).delete_board(board_id)
    return Response(status_code=204)


# === Lane endpoints ===


@router.post("/boards/{board_id}/lanes", response_model=LaneOut, status_code=201)
def create_lane(board_id: str, payload: LaneIn, request: Request, user: User = Depends(require_current_user)):
    return lane_out(get_store(request).create_lane(board_id, payload.title))


@router.patch("/lanes/{lane_id}", response_model=LaneOut)
def rename_lane(lane_id: str, payload: LaneIn, request: Request, user: User = Depends(require_current_user)):
    return lane_out(get_store(request).update_lane(lane_id, payload.title))


@router.post("/lanes/{lane_id}:move", response_model=LaneOut)
def move_lane(lane_id: str, payload: LaneMove, request: Request, user: User = Depends(require_current_user)):
    return lane_out(get_store(request).move_lane(lane_id, payload.boardId, payload.position))


@router.delete("/lanes/{lane_id}", status_code=204)
def delete_lane(lane_id: str, request: Request, user: User = Depends(require_current_user)):
    get_store(request).delete_lane(lane_id)
    return Response(status_code=204)


# === Card endpoints ===


@router.post("/lanes/{lane_id}/cards", response_model=CardOut, status_code=201)
def create_card(lane_id: str, payload: CardIn, request: Request, user: User = Depends(require_current_user)):
    card = get_store(request).create_card(lane_id, payload.title, payload.description, payload.priority)
    return card_out(card)


@router.patch("/cards/{card_id}", response_model=CardOut)
def update_card(card_id: str, payload: CardPatch, request: Request, user: User = Depends(require_current_user)):
    card = get_store(request).update_card(card_id, payload.title, payload.description, payload.priority)
    return card_out(card)


@router.post("/cards/{card_id}:move", response_model=CardOut)
def move_card(card_id: str, payload: CardMove, request: Request, user: User = Depends(require_current_user)):
    return card_out(get_store(request).move_card(card_id, payload.laneId, payload.position))


@router.delete("/cards/{card_id}", status_code=204)
def delete_card(card_id: str, request: Request, user: User = Depends(require_current_user)):
    get_store(request).delete_card(card_id)
    return Response(status_code=204)


# === Checklist endpoints ===


@router.post("/cards/{card_id}/checklist", response_model=ChecklistItemOut, status_code=201)
def create_checklist_item(
    card_id: str, payload: ChecklistItemIn, request: Request, user: User = Depends(require_current_user)
):
    item = get_store(request).create_checklist_item(card_id, payload.text, payload.assignedToUserId)
    return checklist_item_out(item)


@router.patch("/checklist/{item_id}", response_model=ChecklistItemOut)
def update_checklist_item(
    item_id: str, payload: ChecklistItemPatch, request: Request, user: User = Depends(require_current_user)
):
    fields = payload.model_fields_set
    item = get_store(request).update_checklist_item(
        item_id,
        text=payload.text if payload.text is not None else UNSET,
        completed=payload.completed if payload.completed is not None else UNSET,
        assigned_to_user_id=payload.assignedToUserId if "assignedToUserId" in fields else UNSET,
    )
    return checklist_item_out(item)


@router.delete("/checklist/{item_id}", status_code=204)
def delete_checklist_item(item_id: str, request: Request, user: User = Depends(require_current_user)):
    get_store(request).delete_checklist_item(item_id)
    return Response(status_code=204)


# === LINE webhook ===


@router.post("/line/webhook")
async def line_webhook(request: Request):
    body = await request.body()
    settings: Settings = request.app.state.settings
    signature = request.headers.get("X-Line-Signature")
    if not verify_signature(settings.line_channel_secret, body, signature):
        raise Unauthorized("invalid signature")
    try:
        payload = await request.json()
    except ValueError:
        raise InvalidInput("invalid_json") from None
    if not isinstance(payload, dict) or not isinstance(payload.get("events", []), list):
        raise InvalidInput("invalid_json")
    events = payload.get("events", [])

    handler: ChatCommandHandler = request.app.state.chat_handler
    for event in events:
        try:
            await run_in_threadpool(handler.handle_event, event)
        except Exception:
            logger.exception("LINE event handling failed")
    return {"success": True}


# === Application factory ===


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    messenger: Optional[LineMessagingClient] = None,
    login_client: Optional[LineLoginClient] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings)

    database = database or Database(settings.database_url)
    database.create_all()

    events = EventBus()
    store = Store(database, events)
    messenger = messenger or LineMessagingClient(settings.line_channel_access_token)
    login_client = login_client or LineLoginClient(
        settings.line_login_channel_id,
        settings.line_login_channel_secret,
        settings.login_redirect_uri,
    )
    events.subscribe(CHECKLIST_ASSIGNED, AssignmentNotifier(messenger))

    app = FastAPI(title="Taskboard API", version=VERSION)
    app.state.settings = settings
    app.state.database = database
    app.state.store = store
    app.state.login_client = login_client
    app.state.chat_handler = ChatCommandHandler(store, messenger)

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        max_age=settings.session_max_age,
        same_site="lax",
        https_only=settings.is_production,
    )

    @app.exception_handler(TaskboardError)
    async def handle_taskboard_error(request: Request, exc: TaskboardError):
        if exc.status_code >= 500:
            logger.error("%s: %s %s", exc.code, exc.message, exc.details)
        return error_response(exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = [{"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg", "")} for e in exc.errors()]
        return error_response(400, InvalidInput.code, "Validation failed", {"errors": errors})

    app.include_router(router)
    logger.info("Application startup (%s)", settings.env)
    return app
