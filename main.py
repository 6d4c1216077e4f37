import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from errors import DirectoryError, Internal, Unauthenticated, ValidationFailed
from logging_config import configure_logging
from notifications import NotificationHub, channel_for
from schemas import (
    CreateBusinessRequest,
    LoginRequest,
    ReviewRequest,
    SignupRequest,
    UpdateBusinessRequest,
    UpgradePlanRequest,
)
from security import TokenIssuer
from services import AccountService, DirectoryService, public_user
from settings import Settings, settings as default_settings
from stores import BusinessStore, UserStore

logger = structlog.get_logger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

router = APIRouter(prefix="/api")

# Helpers


def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


def get_directory(request: Request) -> DirectoryService:
    return request.app.state.directory


def get_accounts(request: Request) -> AccountService:
    return request.app.state.accounts


def get_optional_user(
    token: Optional[str] = Depends(oauth2_scheme),
    accounts: AccountService = Depends(get_accounts),
) -> Optional[Dict[str, Any]]:
    # no token means anonymous; a bad token is still an error
    if not token:
        return None
    return accounts.resolve_token(token)


def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    accounts: AccountService = Depends(get_accounts),
) -> Dict[str, Any]:
    return accounts.resolve_token(token)


# Auth Routes

@router.post("/auth/signup", status_code=status.HTTP_201_CREATED)
def signup(payload: SignupRequest, accounts: AccountService = Depends(get_accounts)):
    return ok(accounts.signup(payload))


@router.post("/auth/login")
def login(payload: LoginRequest, accounts: AccountService = Depends(get_accounts)):
    return ok(accounts.login(payload.email, payload.password))


@router.get("/auth/me")
def me(current_user=Depends(get_current_user)):
    return ok(public_user(current_user))


@router.post("/auth/logout")
def logout(current_user=Depends(get_current_user)):
    # tokens are stateless; the client just drops it
    return ok(None)


# Business Routes

@router.get("/businesses")
def list_businesses(
    search: Optional[str] = None,
    category: Optional[str] = None,
    only_owned: bool = Query(False, alias="onlyOwned"),
    current_user=Depends(get_optional_user),
    directory: DirectoryService = Depends(get_directory),
):
    return ok(directory.list_businesses(current_user, search, category, only_owned))


@router.get("/businesses/{business_id}")
def get_business(business_id: str, directory: DirectoryService = Depends(get_directory)):
    return ok(directory.get_business(business_id))


@router.post("/businesses", status_code=status.HTTP_201_CREATED)
def create_business(
    payload: CreateBusinessRequest,
    current_user=Depends(get_current_user),
    directory: DirectoryService = Depends(get_directory),
):
    return ok(directory.create_business(current_user, payload))


@router.put("/businesses/{business_id}")
async def update_business(
    business_id: str,
    payload: UpdateBusinessRequest,
    current_user=Depends(get_current_user),
    directory: DirectoryService = Depends(get_directory),
):
    return ok(await directory.update_business(current_user, business_id, payload))


@router.delete("/businesses/{business_id}")
async def delete_business(
    business_id: str,
    current_user=Depends(get_current_user),
    directory: DirectoryService = Depends(get_directory),
):
    await directory.delete_business(current_user, business_id)
    return ok(None)


@router.post("/businesses/{business_id}/subscribe")
def subscribe(
    business_id: str,
    current_user=Depends(get_current_user),
    directory: DirectoryService = Depends(get_directory),
):
    directory.subscribe(current_user, business_id)
    return ok(None)


@router.delete("/businesses/{business_id}/subscribe")
def unsubscribe(
    business_id: str,
    current_user=Depends(get_current_user),
    directory: DirectoryService = Depends(get_directory),
):
    directory.unsubscribe(current_user, business_id)
    return ok(None)


# Reviews

@router.get("/businesses/{business_id}/reviews")
def list_reviews(business_id: str, directory: DirectoryService = Depends(get_directory)):
    return ok(directory.list_reviews(business_id))


@router.post("/businesses/{business_id}/review", status_code=status.HTTP_201_CREATED)
def add_review(
    business_id: str,
    payload: ReviewRequest,
    current_user=Depends(get_current_user),
    directory: DirectoryService = Depends(get_directory),
):
    return ok(directory.add_review(current_user, business_id, payload.comment))


@router.delete("/businesses/{business_id}/review/{review_id}")
def delete_review(
    business_id: str,
    review_id: str,
    current_user=Depends(get_current_user),
    directory: DirectoryService = Depends(get_directory),
):
    directory.delete_review(current_user, business_id, review_id)
    return ok(None)


# User Routes

@router.get("/users/saved-businesses")
def saved_businesses(current_user=Depends(get_current_user), accounts: AccountService = Depends(get_accounts)):
    return ok(accounts.saved_businesses(current_user))


@router.post("/users/upgrade-plan")
def upgrade_plan(
    payload: UpgradePlanRequest,
    current_user=Depends(get_current_user),
    accounts: AccountService = Depends(get_accounts),
):
    return ok(accounts.change_plan(current_user, payload.plan))


# Admin Routes

@router.get("/admin/reviews")
def admin_reviews(
    search: Optional[str] = None,
    current_user=Depends(get_current_user),
    directory: DirectoryService = Depends(get_directory),
):
    return ok(directory.admin_reviews(current_user, search))


# Bootstrap route for demo

@router.post("/init/bootstrap", status_code=status.HTTP_201_CREATED)
def bootstrap_admin(request: Request, accounts: AccountService = Depends(get_accounts)):
    """Create the default admin from settings if no admin exists yet."""
    config: Settings = request.app.state.settings
    admin = accounts.bootstrap_admin(
        config.DEFAULT_ADMIN_NAME,
        config.DEFAULT_ADMIN_EMAIL,
        config.DEFAULT_ADMIN_PASSWORD,
    )
    return ok(admin, message="Admin created")


# Live notifications

async def notifications_socket(websocket: WebSocket):
    accounts: AccountService = websocket.app.state.accounts
    hub: NotificationHub = websocket.app.state.hub

    token = websocket.query_params.get("token")
    if not token:
        header = websocket.headers.get("authorization", "")
        if header.lower().startswith("bearer "):
            token = header[7:]
    try:
        user = await run_in_threadpool(accounts.resolve_token, token)
    except Unauthenticated as e:
        logger.info("socket_rejected", reason=e.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    connection_id = uuid.uuid4().hex
    hub.connect(connection_id, websocket)
    structlog.contextvars.bind_contextvars(connection_id=connection_id, user_id=user["id"])
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except (ValueError, KeyError):
                # undecodable text or a binary frame
                await websocket.send_json({"event": "error", "message": "Malformed message"})
                continue
            event = message.get("event") if isinstance(message, dict) else None
            business_id = message.get("businessId") if isinstance(message, dict) else None
            if event == "subscribe" and business_id:
                hub.join(connection_id, channel_for(business_id))
                await websocket.send_json({"event": "subscribed", "businessId": business_id})
            elif event == "unsubscribe" and business_id:
                hub.leave(connection_id, channel_for(business_id))
                await websocket.send_json({"event": "unsubscribed", "businessId": business_id})
            elif event == "ping":
                await websocket.send_json({"event": "pong"})
            else:
                await websocket.send_json({"event": "error", "message": "Unknown event"})
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(connection_id)
        structlog.contextvars.unbind_contextvars("connection_id", "user_id")


# Error envelope

async def directory_error_handler(request: Request, exc: DirectoryError):
    return JSONResponse(status_code=exc.status_code, content=exc.envelope())


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    error = ValidationFailed(f"{field}: {first.get('msg')}" if field else None)
    return JSONResponse(
        status_code=error.status_code,
        content={**error.envelope(), "details": jsonable_encoder(errors)},
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail), "error": "http"},
        headers=getattr(exc, "headers", None),
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", path=request.url.path)
    error = Internal()
    return JSONResponse(status_code=error.status_code, content=error.envelope())


def create_app(db: Optional[Database] = None, config: Optional[Settings] = None) -> FastAPI:
    config = config or default_settings
    db = db if db is not None else database.db
    configure_logging(config)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        database.ensure_indexes(db)
        yield

    app = FastAPI(title=config.APP_NAME, lifespan=lifespan)
    origins = config.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    users = UserStore(db)
    businesses = BusinessStore(db, users)
    hub = NotificationHub()
    app.state.settings = config
    app.state.db = db
    app.state.hub = hub
    app.state.directory = DirectoryService(users, businesses, hub)
    app.state.accounts = AccountService(users, businesses, TokenIssuer.from_settings(config))

    app.add_exception_handler(DirectoryError, directory_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(router)
    app.add_api_websocket_route("/ws", notifications_socket)

    # Utility endpoints
    @app.get("/")
    def root():
        return {"message": "Business Directory API running"}

    @app.get("/test")
    def test_database():
        try:
            collections = db.list_collection_names()
            return {"backend": "ok", "database": "ok", "collections": collections}
        except Exception as e:
            logger.warning("database_check_failed", error=str(e))
            return {"backend": "ok", "database": f"error: {e}"}

    return app


app = create_app()
