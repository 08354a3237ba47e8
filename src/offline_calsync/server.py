"""FastAPI server exposing the calendar, sync and OAuth endpoints."""

import logging
import secrets
from datetime import datetime
from html import escape
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

from .app import CalendarApp
from .config import load_settings
from .event_store import EventNotFound
from .models import AlertKind, ConflictResolution, EventColor, EventDraft, Recurrence
from .services import AuthenticationError, CalendarServiceError

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/oauth2/callback"

_CALLBACK_PAGE = """<!doctype html>
<html><head><title>offline-calsync</title></head>
<body><h2>{title}</h2><p>{message}</p></body></html>
"""


class EventUpdate(BaseModel):
    """Partial event edit; only fields present in the request are applied."""

    title: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: Optional[bool] = None
    timezone: Optional[str] = None
    recurrence: Optional[Recurrence] = None
    recurrence_custom: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    color: Optional[EventColor] = None
    alert: Optional[AlertKind] = None
    alert_offset: Optional[int] = None


class ResolveRequest(BaseModel):
    resolution: ConflictResolution


def create_app(calendar_app: Optional[CalendarApp] = None) -> FastAPI:
    """Build the HTTP server around a CalendarApp.

    Args:
        calendar_app: Application to serve; built from the environment on
            startup when omitted
    """
    app = FastAPI(title="offline-calsync", version="1.0")
    app.state.calendar_app = calendar_app

    def get_app() -> CalendarApp:
        return app.state.calendar_app

    @app.on_event("startup")
    async def on_startup():
        if app.state.calendar_app is None:
            app.state.calendar_app = CalendarApp(load_settings())
        calendar = get_app()
        calendar.initialize()
        calendar.create_scheduler().start()
        # Initial pass on launch.
        calendar.request_sync()

    @app.on_event("shutdown")
    async def on_shutdown():
        await get_app().cleanup()

    @app.exception_handler(EventNotFound)
    async def event_not_found_handler(request: Request, exc: EventNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(request: Request, exc: AuthenticationError):
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    @app.exception_handler(CalendarServiceError)
    async def calendar_service_error_handler(request: Request, exc: CalendarServiceError):
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.get("/health")
    async def health():
        calendar = get_app()
        scheduler = calendar.scheduler
        last_sync = scheduler.last_sync if scheduler else None
        return {
            "ok": True,
            "last_sync": last_sync.isoformat() if last_sync else None,
            "interval_seconds": scheduler.loop_interval_seconds if scheduler else None,
            "sync_in_progress": calendar.engine.in_progress,
        }

    @app.get("/events")
    async def list_events():
        return [event.model_dump(mode="json") for event in get_app().list_events()]

    @app.post("/events", status_code=201)
    async def create_event(draft: EventDraft):
        return get_app().create_event(draft).model_dump(mode="json")

    @app.get("/events/search")
    async def search_events(
        q: str = "",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 0,
    ):
        events = get_app().search_events(q, from_date=start, to_date=end, limit=limit)
        return [event.model_dump(mode="json") for event in events]

    @app.get("/events/{event_id}")
    async def get_event(event_id: str):
        return get_app().get_event(event_id).model_dump(mode="json")

    @app.put("/events/{event_id}")
    async def update_event(event_id: str, update: EventUpdate):
        changes = update.model_dump(exclude_unset=True)
        return get_app().edit_event(event_id, changes).model_dump(mode="json")

    @app.delete("/events/{event_id}")
    async def delete_event(event_id: str):
        removed = get_app().delete_event(event_id)
        return {"removed": removed, "pending_remote_delete": not removed}

    @app.get("/conflicts")
    async def list_conflicts():
        return [event.model_dump(mode="json") for event in get_app().list_conflicts()]

    @app.post("/events/{event_id}/resolve")
    async def resolve_conflict(event_id: str, request: ResolveRequest):
        event = await get_app().resolve_conflict(event_id, request.resolution)
        return {"event": event.model_dump(mode="json") if event else None}

    @app.post("/sync")
    async def run_sync(push_only: bool = False):
        result = await get_app().run_sync(push_only=push_only)
        return result.model_dump(mode="json")

    @app.post("/focus")
    async def focus():
        return {"accepted": get_app().on_focus()}

    @app.get("/holidays")
    async def holidays(country: str = "us"):
        return [h.model_dump(mode="json") for h in await get_app().list_holidays(country)]

    @app.get("/auth/status")
    async def auth_status():
        return get_app().get_credential_status().model_dump(mode="json")

    @app.get("/auth/url")
    async def auth_url():
        state = secrets.token_urlsafe(16)
        return {"url": get_app().begin_authorization(state), "state": state}

    @app.post("/auth/logout")
    async def auth_logout():
        await get_app().logout()
        return Response(status_code=204)

    @app.get(CALLBACK_PATH, response_class=HTMLResponse)
    async def oauth_callback(
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
    ):
        if error or not code:
            message = escape(error or "missing authorization code")
            return HTMLResponse(
                _CALLBACK_PAGE.format(title="Authorization failed", message=message),
                status_code=400,
            )
        try:
            status = await get_app().exchange_authorization_code(code, state)
        except AuthenticationError as e:
            logger.warning(f"OAuth callback failed: {e}")
            return HTMLResponse(
                _CALLBACK_PAGE.format(title="Authorization failed", message=escape(str(e))),
                status_code=400,
            )
        account = escape(status.user_email or "your Google account")
        return HTMLResponse(_CALLBACK_PAGE.format(
            title="Connected",
            message=f"Connected to {account}. You can close this window.",
        ))

    return app


app = create_app()
