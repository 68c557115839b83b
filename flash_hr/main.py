import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from flash_hr.db import SessionLocal, engine
from flash_hr.errors import register_exception_handlers
from flash_hr.logging_utils import bind_request_id, reset_request_id, setup_json_logging
from flash_hr.routers import attendance, leave_periods
from flash_hr.services.leave_worker import LeaveConsolidationWorker, start_leave_worker, stop_leave_worker
from flash_hr.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from flash_hr.settings import get_cors_origins, get_settings

settings = get_settings()
setup_json_logging(settings.log_level)
request_logger = logging.getLogger("flash_hr.request")
lifecycle_logger = logging.getLogger("flash_hr.lifecycle")

# Set on request.state by the attendance routes and copied into the access log.
_REQUEST_LOG_FIELDS = ("employee_id", "location_status")

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)
app.include_router(attendance.router)
app.include_router(leave_periods.router)


@app.middleware("http")
async def access_log_middleware(request: Request, call_next):
    request.state.request_id = request.headers.get("X-Request-Id") or uuid4().hex
    token = bind_request_id(request.state.request_id)
    started = time.perf_counter()
    response = None
    try:
        response = await call_next(request)
        response.headers["X-Request-Id"] = request.state.request_id
        return response
    finally:
        fields: dict[str, Any] = {
            "request_id": request.state.request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code if response is not None else 500,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
        }
        for name in _REQUEST_LOG_FIELDS:
            value = getattr(request.state, name, None)
            if value is not None:
                fields[name] = value
        request_logger.info("request_complete", extra=fields)
        reset_request_id(token)


@app.on_event("startup")
async def on_startup() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if not result.ok:
        lifecycle_logger.error("schema_guard_failed", extra={"schema_guard": result.to_dict()})
        if settings.schema_guard_strict:
            raise RuntimeError("Runtime schema guard failed: " + "; ".join(result.issues))
    else:
        lifecycle_logger.info("schema_guard_ok", extra={"schema_guard": result.to_dict()})

    start_leave_worker(app.state, SessionLocal, settings)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await stop_leave_worker(app.state)


@app.get("/health")
def health() -> dict[str, Any]:
    guard: SchemaGuardResult | None = getattr(app.state, "schema_guard_result", None)
    if guard is None:
        guard = SchemaGuardResult(ok=False, checked_at_utc=datetime.now(timezone.utc), issues=["SCHEMA_GUARD_NOT_RUN"])
    worker: LeaveConsolidationWorker | None = getattr(app.state, "leave_worker", None)
    return {
        "status": "ok",
        "schema_guard": guard.to_dict(),
        "leave_worker": {
            "running": worker is not None,
            "pending_batches": worker.pending if worker is not None else 0,
        },
    }
