"""HTTP endpoints: OAuth flow, channel registration and Google webhooks."""

from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, Form, Header, Request, Response
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse
import structlog

from . import __version__
from .config import Settings
from .database import DatabaseManager
from .exceptions import CalpushError
from .models import Credential
from .pages import render_calendar_picker, render_watch_confirmation
from .registrar import ChannelRegistrar
from .services import AuthenticationError, BaseAccountProvider, GoogleAccountProvider
from .sync_engine import SyncEngine

logger = structlog.get_logger(__name__)


def _error_response(error: CalpushError, status_code: Optional[int] = None) -> PlainTextResponse:
    return PlainTextResponse(str(error), status_code=status_code or error.status_code)


def _log_failure(log, message: str, error: CalpushError) -> None:
    if error.status_code < 500:
        log.warning(message, error=str(error), error_type=type(error).__name__)
    else:
        log.error(message, error=str(error), error_type=type(error).__name__)


def create_app(
    settings: Optional[Settings] = None,
    provider: Optional[BaseAccountProvider] = None,
    db_manager: Optional[DatabaseManager] = None,
) -> FastAPI:
    """Build the application; collaborators default to the Google/SQLAlchemy ones."""
    settings = settings or Settings()
    db_manager = db_manager or DatabaseManager(settings)
    provider = provider or GoogleAccountProvider(settings)

    app = FastAPI(title="calpush", version=__version__)
    app.state.settings = settings
    app.state.db_manager = db_manager
    app.state.provider = provider
    app.state.registrar = ChannelRegistrar(settings, db_manager)
    app.state.sync_engine = SyncEngine(settings, db_manager, provider)

    def base_url(request: Request) -> str:
        return settings.base_url_for(request.headers.get('host', request.url.netloc))

    @app.on_event("startup")
    async def on_startup():
        db_manager.init_db()
        logger.info("calpush started", webhook_path=settings.webhook_path)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("unhandled error", path=request.url.path, error_type=type(exc).__name__)
        return PlainTextResponse(str(exc), status_code=500)

    @app.get("/health")
    async def health():
        return {"ok": True, "version": __version__}

    @app.get("/auth")
    async def auth(request: Request):
        url = provider.authorization_url(base_url(request) + "/auth/callback", state=str(uuid4()))
        return RedirectResponse(url, status_code=307)

    @app.get("/auth/callback", response_class=HTMLResponse)
    async def auth_callback(request: Request, code: str = ""):
        log = logger.bind(handler="auth_callback")
        try:
            token = await provider.exchange_code(code, base_url(request) + "/auth/callback")
        except AuthenticationError as e:
            _log_failure(log, "failed to exchange code", e)
            return _error_response(e, status_code=400)

        try:
            user = await provider.get_user_info(token.access_token)
            log = log.bind(principal_id=user.id)
            db_manager.upsert_credential(Credential(
                principal_id=user.id,
                access_token=token.access_token,
                refresh_token=token.refresh_token or '',
                expires_at=token.expires_at,
            ))
            calendars = await provider.calendar_service(token.access_token).list_calendars()
        except CalpushError as e:
            _log_failure(log, "failed to complete authorization", e)
            return _error_response(e)

        return HTMLResponse(render_calendar_picker(user.given_name, token.access_token, calendars))

    @app.post("/auth/callback", response_class=HTMLResponse)
    async def register_channel(
        request: Request,
        access_token: str = Form(...),
        calendar_id: str = Form(...),
    ):
        log = logger.bind(handler="register", calendar_id=calendar_id)
        try:
            user = await provider.get_user_info(access_token)
            log = log.bind(principal_id=user.id)
            channel = await app.state.registrar.register(
                user.id,
                calendar_id,
                provider.calendar_service(access_token),
                base_url(request) + settings.webhook_path,
            )
        except CalpushError as e:
            _log_failure(log, "failed to register channel", e)
            return _error_response(e)

        return HTMLResponse(render_watch_confirmation(channel.channel_id))

    @app.post(settings.webhook_path)
    async def webhook(
        channel_id: str = Header("", alias="X-Goog-Channel-Id"),
        channel_token: str = Header("", alias="X-Goog-Channel-Token"),
        resource_id: str = Header("", alias="X-Goog-Resource-Id"),
        resource_state: str = Header("", alias="X-Goog-Resource-State"),
    ):
        log = logger.bind(handler="webhook", channel_id=channel_id, resource_state=resource_state)
        try:
            result = await app.state.sync_engine.handle_notification(channel_id, channel_token, resource_id)
        except CalpushError as e:
            _log_failure(log, "failed to handle notification", e)
            return _error_response(e)

        log.info("notification handled", pages=result.pages_fetched, patched=result.events_patched)
        return Response(status_code=200)

    return app
