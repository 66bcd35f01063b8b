"""HTTP entry point: run the processor on request and return the run summary as JSON."""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.datastructures import QueryParams

from event_processor.events.models import EmitRequest
from event_processor.processor import StoppedReason, clamp_limit, clamp_max_ms
from event_processor.services import ProcessorServices
from event_processor.settings import get_setting

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
}

router = APIRouter()


@dataclass(frozen=True)
class RunParams:
    consumer: str
    event_type: str
    limit: int
    max_ms: int
    run_id: str


class EmitEventBody(BaseModel):
    event_type: str = Field(min_length=1)
    entity_type: str = Field(min_length=1)
    entity_id: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    emitted_by: str | None = None
    tenant_id: str | None = None
    idempotency_key: str | None = None


def _services(request: Request) -> ProcessorServices:
    return request.app.state.services


def _json(body: dict[str, Any], status_code: int = 200) -> JSONResponse:
    return JSONResponse(body, status_code=status_code, headers=CORS_HEADERS)


def _int_param(params: QueryParams, name: str, default: int) -> int:
    raw = params.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Query parameter {name!r} must be an integer, got {raw!r}") from None


def parse_run_params(params: QueryParams, settings: dict[str, Any]) -> RunParams:
    """Read run parameters with defaults and caps. Raises ValueError on malformed integers."""
    limit = _int_param(params, "limit", int(get_setting(settings, "processor.default_limit", 10)))
    max_ms = _int_param(
        params, "max_ms", int(get_setting(settings, "processor.default_max_ms", 8000))
    )
    consumer = params.get("consumer")
    if consumer is None:
        consumer = get_setting(settings, "processor.default_consumer", "cold_agent_enroller")
    event_type = params.get("event_type")
    if event_type is None:
        event_type = get_setting(settings, "processor.default_event_type", "lead_created")
    return RunParams(
        consumer=consumer,
        event_type=event_type,
        limit=clamp_limit(limit, int(get_setting(settings, "processor.max_limit", 100))),
        max_ms=clamp_max_ms(
            max_ms, int(get_setting(settings, "processor.max_ms_ceiling", 55000))
        ),
        run_id=params.get("run_id") or str(uuid.uuid4()),
    )


@router.options("/event-processor")
async def event_processor_preflight() -> Response:
    return Response(status_code=200, headers=CORS_HEADERS)


@router.api_route("/event-processor", methods=["GET", "POST"])
async def run_event_processor(request: Request) -> JSONResponse:
    """Run one budgeted batch. 200 for every handled outcome, 500 only for unexpected errors."""
    services = _services(request)
    start = time.monotonic()
    params: RunParams | None = None
    try:
        params = parse_run_params(request.query_params, services.settings)
        summary = await services.processor.run(
            run_id=params.run_id,
            consumer_name=params.consumer,
            event_type=params.event_type,
            limit=params.limit,
            max_ms=params.max_ms,
            start_time=start,
        )
        return _json(summary.model_dump(mode="json"))
    except Exception as e:
        run_id = params.run_id if params else str(uuid.uuid4())
        error = str(e) or type(e).__name__
        logger.exception("event-processor: fatal error in run %s", run_id)
        services.run_log.log_error(
            "fatal_error",
            run_id=run_id,
            consumer=params.consumer if params else request.query_params.get("consumer", ""),
            event_type=params.event_type if params else request.query_params.get("event_type", ""),
            error=error,
        )
        return _json(
            {
                "success": False,
                "run_id": run_id,
                "error": error,
                "stopped_reason": StoppedReason.ERROR.value,
                "elapsed_ms": int((time.monotonic() - start) * 1000),
            },
            status_code=500,
        )


@router.post("/events")
async def emit_event(body: EmitEventBody, request: Request) -> JSONResponse:
    """Emit an event onto the bus. A repeated idempotency key returns the existing event."""
    services = _services(request)
    try:
        result = await services.bus.emit_event(
            EmitRequest(
                event_type=body.event_type,
                entity_type=body.entity_type,
                entity_id=body.entity_id,
                payload=body.payload,
                emitted_by=body.emitted_by,
                tenant_id=body.tenant_id,
                idempotency_key=body.idempotency_key,
            )
        )
    except Exception as e:
        logger.exception("events: emit of %s failed", body.event_type)
        return _json({"success": False, "error": str(e) or type(e).__name__}, status_code=500)
    return _json({"success": True, "event_id": result.event_id, "duplicate": result.duplicate})


@router.get("/events/stats")
async def event_stats(request: Request) -> JSONResponse:
    counts = await _services(request).store.count_by_status()
    return _json({"success": True, "counts": counts})


@router.get("/health", tags=["system"])
async def health(request: Request) -> dict[str, Any]:
    services = _services(request)
    return {"status": "ok", "consumers": services.registry.names()}


def create_app(services: ProcessorServices) -> FastAPI:
    """FastAPI app bound to services; connections are closed on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("event processor API starting (consumers=%s)", services.registry.names())
        try:
            yield
        finally:
            await services.close()

    app = FastAPI(title="Event Processor", version="0.1.0", lifespan=lifespan)
    app.state.services = services
    app.include_router(router)
    return app
