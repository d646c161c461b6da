import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from .config import CONFIG_PATH, AppSettings, load_settings, save_settings
from .db import Database
from .delegation_store import DelegationLedger
from .llm import ChatClient
from .schemas import CompleteDelegationRequest, CreateDelegationRequest
from .service import DelegationService
from .streaming import DelegationStreamBroadcaster, EventBus
from .tavily import TavilyClient

KEEP_ALIVE_SECONDS = 30.0


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_service(request: Request) -> DelegationService:
    return request.app.state.service


def get_ledger(request: Request) -> DelegationLedger:
    return request.app.state.service.ledger


def get_broadcaster(request: Request) -> DelegationStreamBroadcaster:
    return request.app.state.service.broadcaster


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


router = APIRouter()


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    payload: Dict[str, Any] = Body(default={}),
    settings: AppSettings = Depends(get_settings),
    service: DelegationService = Depends(get_service),
    config_path: Path = Depends(get_config_path),
):
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **payload})
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors(include_url=False))
    save_settings(new_settings, config_path)
    request.app.state.settings = new_settings
    request.app.state.llm_client.api_key = new_settings.llm_api_key
    web_client = request.app.state.web_client
    web_client.api_key = new_settings.tavily_api_key
    web_client.base_url = new_settings.tavily_base_url.rstrip("/")
    service.apply_settings(new_settings)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.get("/api/delegations")
async def list_delegations(
    status: Optional[str] = None,
    include_completed: bool = True,
    limit: int = Query(default=20, ge=1, le=500),
    ledger: DelegationLedger = Depends(get_ledger),
):
    if status == "active":
        delegations = await ledger.list_active(include_completed=include_completed, limit=limit)
    elif status is None:
        delegations = await ledger.list_recent(limit=limit)
    else:
        raise HTTPException(status_code=400, detail="Unsupported status filter.")
    return {"delegations": [d.model_dump() for d in delegations]}


@router.post("/api/delegations")
async def create_delegation(
    payload: CreateDelegationRequest,
    service: DelegationService = Depends(get_service),
):
    task = payload.task.strip()
    if not task:
        raise HTTPException(status_code=400, detail="Task is required.")
    focus = await service.resolve_focus(payload.focus_node_ids, payload.active_node_id)
    delegation = await service.create_delegation(
        task,
        payload.context,
        payload.expected_outcome,
        payload.agent_type,
        focus=focus,
    )
    service.start(
        delegation,
        workflow_key=payload.workflow_key,
        workflow_node_id=payload.workflow_node_id,
        focus=focus,
    )
    return {"delegation": delegation.model_dump()}


@router.get("/api/delegations/stream")
async def stream_delegation(
    session_id: str,
    broadcaster: DelegationStreamBroadcaster = Depends(get_broadcaster),
):
    if not session_id.strip():
        raise HTTPException(status_code=400, detail="session_id is required.")

    async def event_generator():
        observer = broadcaster.subscribe_queue(session_id)
        try:
            yield sse_format({"type": "CONNECTION_ESTABLISHED", "session_id": session_id})
            while True:
                try:
                    ev = await asyncio.wait_for(observer.queue.get(), timeout=KEEP_ALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            observer.close()
            broadcaster.unsubscribe(session_id, observer)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.post("/api/delegations/cleanup")
async def cleanup_delegations(
    timeout_minutes: Optional[int] = Query(default=None, ge=1),
    service: DelegationService = Depends(get_service),
):
    reaped = await service.reap(timeout_minutes)
    return {"count": len(reaped), "session_ids": reaped}


@router.get("/api/delegations/{session_id}")
async def get_delegation(session_id: str, ledger: DelegationLedger = Depends(get_ledger)):
    delegation = await ledger.get(session_id)
    if not delegation:
        raise HTTPException(status_code=404, detail="Delegation not found")
    return {"delegation": delegation.model_dump()}


async def _complete(session_id: str, payload: CompleteDelegationRequest, ledger: DelegationLedger) -> Dict[str, Any]:
    if payload.summary is None and payload.status is None:
        raise HTTPException(status_code=400, detail="summary or status is required.")
    existing = await ledger.get(session_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Delegation not found")
    summary = payload.summary if payload.summary is not None else (existing.summary or "")
    delegation = await ledger.complete(session_id, summary, payload.status or "completed")
    return {"delegation": delegation.model_dump() if delegation else None}


@router.patch("/api/delegations/{session_id}")
async def update_delegation(
    session_id: str,
    payload: CompleteDelegationRequest,
    ledger: DelegationLedger = Depends(get_ledger),
):
    return await _complete(session_id, payload, ledger)


@router.post("/api/delegations/{session_id}/summary")
async def submit_summary(
    session_id: str,
    payload: CompleteDelegationRequest,
    ledger: DelegationLedger = Depends(get_ledger),
):
    return await _complete(session_id, payload, ledger)


@router.delete("/api/delegations/{session_id}")
async def delete_delegation(session_id: str, ledger: DelegationLedger = Depends(get_ledger)):
    if not await ledger.delete(session_id):
        raise HTTPException(status_code=404, detail="Delegation not found")
    return {"ok": True}


@router.post("/api/delegations/{session_id}/stop")
async def stop_delegation(session_id: str, service: DelegationService = Depends(get_service)):
    result = await service.stop(session_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Delegation not found")
    return result


@router.get("/events")
async def stream_global_events(bus: EventBus = Depends(get_event_bus)):
    async def event_generator():
        queue = await bus.subscribe_global()
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe_global(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    llm_client: Optional[ChatClient] = None,
    web_client: Optional[TavilyClient] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        reaper: Optional[asyncio.Task] = None
        if app.state.settings.reaper_interval_s > 0:
            reaper = asyncio.create_task(app.state.service.run_reaper())
        try:
            yield
        finally:
            if reaper is not None:
                reaper.cancel()
                await asyncio.gather(reaper, return_exceptions=True)
            await app.state.service.shutdown()
            await app.state.llm_client.close()
            await app.state.web_client.close()

    app = FastAPI(title="Graph Agent Delegation Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.llm_client = llm_client or ChatClient(settings.llm_api_key)
    app.state.web_client = web_client or TavilyClient(settings.tavily_api_key, settings.tavily_base_url)
    app.state.bus = EventBus()
    app.state.service = DelegationService(
        app.state.db,
        app.state.llm_client,
        app.state.web_client,
        settings,
        bus=app.state.bus,
    )
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("GRAPHAGENT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "graphagent.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
