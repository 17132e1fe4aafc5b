"""FastAPI application: HTTP surface of the turn core.

Endpoints:

  GET  /health                          Health check
  POST /turns                           One caller utterance in, one response out
  POST /calls/{call_id}/hangup          Caller disconnected
  GET  /admin/calls/{call_id}           Committed session snapshot
  GET  /admin/calls/{call_id}/events    Audit event history
  WS   /admin/calls/{call_id}/events    Live audit event stream
  POST /admin/config/invalidate         Tenant configuration changed

The telephony/chat gateway calls /turns once per transcribed utterance and
/calls/{id}/hangup on disconnect. Admin endpoints need the admin token.
"""

from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

import logging
import re
import time
from typing import Optional

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-24s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from frontdesk.audit_events import find_broadcaster, get_broadcaster
from frontdesk.auth import require_admin_token, require_admin_ws
from frontdesk.booking import BookingSlotEngine, LLMSlotExtractor
from frontdesk.budget import SpendLedger
from frontdesk.config import Settings, settings
from frontdesk.faults import LeaseTimeout
from frontdesk.flows.cache import DirectoryConfigSource, TenantConfigCache
from frontdesk.lanes import LaneStateMachine
from frontdesk.llm import create_llm_client
from frontdesk.models.turn import InboundTurn, TurnResponse
from frontdesk.routing import IntelligentResponseRouter, default_tiers
from frontdesk.routing.embeddings import create_comparator
from frontdesk.store import create_store

log = logging.getLogger("frontdesk.app")

_START_TIME = time.time()

_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")


def _validate_id(value: str) -> str:
    if not _ID_PATTERN.match(value):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid call id")
    return value


class ConfigInvalidation(BaseModel):
    tenant_id: str
    version: Optional[int] = None


def build_state_machine(cfg: Settings) -> tuple[LaneStateMachine, TenantConfigCache]:
    """Wire the store, config cache, tiers, engine and lane state machine."""
    store = create_store(cfg.redis_url)
    configs = TenantConfigCache(
        DirectoryConfigSource(cfg.tenant_config_dir), staleness_s=cfg.config_staleness_s,
    )
    ledger = SpendLedger(store, tz_name=cfg.budget_timezone)
    llm_client = create_llm_client(cfg)

    router = IntelligentResponseRouter(default_tiers(
        comparator=create_comparator(cfg),
        llm_client=llm_client,
        ledger=ledger,
        cost_usd=cfg.llm_call_cost_usd,
        semantic_timeout_s=cfg.semantic_timeout_ms / 1000,
        llm_timeout_s=cfg.llm_timeout_ms / 1000,
    ))
    engine = BookingSlotEngine(llm_extractor=LLMSlotExtractor(
        llm_client, ledger, cfg.llm_call_cost_usd, cfg.llm_timeout_ms / 1000,
    ))
    machine = LaneStateMachine(store, configs, router, engine, cfg)
    return machine, configs


def create_app(
    machine: Optional[LaneStateMachine] = None,
    configs: Optional[TenantConfigCache] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    if machine is None or configs is None:
        for warning in settings.validate_startup():
            log.warning(warning)
        machine, configs = build_state_machine(settings)

    app = FastAPI(
        title="Frontdesk",
        description="Turn-processing core for AI phone and chat receptionists",
        version="0.1.0",
    )
    app.state.machine = machine
    app.state.configs = configs

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        """Lightweight health check."""
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({
            "status": "ok",
            "uptime": uptime,
            "store": type(machine.store).__name__,
        })

    # ── Gateway endpoints ──────────────────────────────────────

    @app.post("/turns", response_model=TurnResponse)
    async def post_turn(turn: InboundTurn) -> TurnResponse:
        _validate_id(turn.call_id)
        try:
            return await machine.handle_turn(turn)
        except LeaseTimeout as e:
            log.warning("Turn %s rejected: %s", turn.idempotency_key, e)
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    @app.post("/calls/{call_id}/hangup")
    async def hangup(call_id: str) -> JSONResponse:
        _validate_id(call_id)
        try:
            await machine.hangup(call_id)
        except LeaseTimeout as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        return JSONResponse({"call_id": call_id, "terminated": True})

    # ── Admin API ──────────────────────────────────────────────

    @app.get("/admin/calls/{call_id}", dependencies=[Depends(require_admin_token)])
    async def get_call(call_id: str) -> JSONResponse:
        _validate_id(call_id)
        session = await machine.store.load(call_id)
        if session is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Call not found")
        return JSONResponse(session.model_dump(mode="json"))

    @app.get("/admin/calls/{call_id}/events", dependencies=[Depends(require_admin_token)])
    async def get_call_events(call_id: str) -> JSONResponse:
        _validate_id(call_id)
        broadcaster = find_broadcaster(call_id)
        if broadcaster is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No events for call")
        return JSONResponse({"call_id": call_id, "events": broadcaster.event_log})

    @app.websocket("/admin/calls/{call_id}/events")
    async def stream_call_events(
        websocket: WebSocket,
        call_id: str,
        _auth: None = Depends(require_admin_ws),
    ) -> None:
        """Stream audit events for one call as they are emitted."""
        await websocket.accept()
        broadcaster = get_broadcaster(call_id)
        queue = broadcaster.subscribe()

        try:
            while True:
                event = await queue.get()
                await websocket.send_json(event)
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.unsubscribe(queue)

    @app.post("/admin/config/invalidate", dependencies=[Depends(require_admin_token)])
    async def invalidate_config(event: ConfigInvalidation) -> JSONResponse:
        invalidated = configs.invalidate(event.tenant_id, event.version)
        return JSONResponse({
            "tenant_id": event.tenant_id,
            "version": event.version,
            "invalidated": invalidated,
            "cached_version": configs.cached_version(event.tenant_id),
        })

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "frontdesk.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )
