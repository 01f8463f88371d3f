import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .config import AppSettings, load_settings
from .db import Database, SessionNotFound
from .llm import ReasoningClient, ReasoningService
from .orchestrator import EventBus, run_research
from .schemas import OrchestrateRequest


logger = logging.getLogger("uvicorn.error")

TERMINAL_EVENTS = ("completed", "failed")

router = APIRouter()


def error_response(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message})


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_llm_client(request: Request) -> ReasoningService:
    return request.app.state.llm_client


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


@router.get("/health")
async def health(settings: AppSettings = Depends(get_settings)):
    return {
        "status": "ok",
        "models": {role: endpoint.model_id for role, endpoint in settings.routing},
        "limits": settings.limits.model_dump(),
    }


@router.post("/api/orchestrate")
async def orchestrate(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    llm_client: ReasoningService = Depends(get_llm_client),
):
    try:
        payload = await request.json()
    except ValueError:
        return error_response(400, "Invalid query", "Request body must be a JSON object")
    if not isinstance(payload, dict):
        return error_response(400, "Invalid query", "Request body must be a JSON object")
    try:
        body = OrchestrateRequest(**payload)
    except ValidationError:
        return error_response(400, "Invalid query", "Query is required and must be a non-empty string")
    try:
        result = await run_research(body.query, llm=llm_client, db=db, settings=settings, bus=bus)
    except Exception as exc:
        logger.exception("Orchestration failed for query %r", body.query)
        return error_response(500, "Orchestration failed", str(exc) or exc.__class__.__name__)
    return result.model_dump(mode="json")


@router.get("/api/sessions")
async def list_sessions(limit: int = 50, db: Database = Depends(get_db)):
    return {"sessions": await db.list_sessions(limit=limit)}


@router.get("/api/sessions/{session_id}")
async def get_session(session_id: str, db: Database = Depends(get_db)):
    try:
        return await db.get_session(session_id)
    except SessionNotFound:
        return error_response(404, "Session not found", f"No session with id {session_id}")


@router.get("/api/sessions/{session_id}/knowledge")
async def get_session_knowledge(session_id: str, db: Database = Depends(get_db)):
    try:
        await db.get_session(session_id)
    except SessionNotFound:
        return error_response(404, "Session not found", f"No session with id {session_id}")
    entries = await db.get_knowledge(session_id)
    return {"session_id": session_id, "knowledge": [entry.model_dump(mode="json") for entry in entries]}


@router.get("/api/sessions/{session_id}/events")
async def stream_session_events(
    session_id: str,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    try:
        session = await db.get_session(session_id)
    except SessionNotFound:
        return error_response(404, "Session not found", f"No session with id {session_id}")

    # Replay persisted events, then follow live ones until the run completes or fails.
    async def event_generator():
        queue = await bus.subscribe(session_id)
        try:
            last_seq = 0
            for ev in await db.list_events(session_id):
                last_seq = ev["seq"]
                yield sse_format(ev)
                if ev["event_type"] in TERMINAL_EVENTS:
                    return
            if session["status"] in TERMINAL_EVENTS:
                return
            while True:
                ev = await queue.get()
                if ev.get("seq") is not None and ev["seq"] <= last_seq:
                    continue
                yield sse_format(ev)
                if ev["event_type"] in TERMINAL_EVENTS:
                    return
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(session_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    llm_client: Optional[ReasoningService] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        logger.info("Deep research orchestrator ready: %s", app.state.settings.to_safe_dict()["routing"])
        try:
            yield
        finally:
            close = getattr(app.state.llm_client, "close", None)
            if close is not None:
                await close()

    app = FastAPI(title="Deep Research Orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.llm_client = llm_client or ReasoningClient.from_settings(settings)
    app.state.bus = EventBus(app.state.db)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("DEEP_RESEARCH_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "deep_research.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
