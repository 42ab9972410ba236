from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone

from .config import settings
from .db import get_conn, close_pools
from .errors import (
    ConcurrentModification,
    ConservationViolation,
    InvalidQuantity,
    InvalidTransition,
    PermissionDenied,
    RecordNotFound,
    TransferClaimLost,
)
from .logs import json_log
from .routers.picking import router as picking_router
from .routers.transfers import router as transfers_router

app = FastAPI(title="Warehouse Picking & Transfers API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _error(status_code: int, detail: str, exc: Exception, **extra) -> JSONResponse:
    content = {"detail": detail, **extra}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=status_code, content=content)


# Domain errors carry their own message; it is safe to return to the client.
@app.exception_handler(InvalidQuantity)
def _invalid_quantity(_req: Request, exc: Exception):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(PermissionDenied)
def _permission_denied(_req: Request, exc: Exception):
    return JSONResponse(status_code=403, content={"detail": str(exc) or "permission denied"})


@app.exception_handler(RecordNotFound)
def _record_not_found(_req: Request, exc: Exception):
    return JSONResponse(status_code=404, content={"detail": str(exc) or "not found"})


@app.exception_handler(InvalidTransition)
def _invalid_transition(_req: Request, exc: InvalidTransition):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "current": exc.current, "target": exc.target},
    )


@app.exception_handler(ConcurrentModification)
def _concurrent_modification(_req: Request, exc: ConcurrentModification):
    return JSONResponse(status_code=409, content={"detail": exc.detail, "record_id": exc.record_id})


@app.exception_handler(TransferClaimLost)
def _transfer_claim_lost(_req: Request, exc: TransferClaimLost):
    return JSONResponse(
        status_code=409,
        content={"detail": "transfer is being executed elsewhere", "transfer_id": exc.transfer_id},
    )


@app.exception_handler(ConservationViolation)
def _conservation_violation(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "inventory.conservation_violation",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    return _error(500, "inventory conservation check failed", exc, request_id=rid)


# Transfer and record ids are uuid columns; a malformed one in the path is a client error.
@app.exception_handler(pg_errors.InvalidTextRepresentation)
def _invalid_text_representation(_req: Request, exc: Exception):
    return _error(400, "invalid value", exc)


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    return _error(500, "internal error", exc, request_id=rid)


# Correlation id and one log line per request.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method
    response = await call_next(request)
    response.headers["X-Request-Id"] = rid
    if path != "/health":
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            duration_ms=int((time.time() - started) * 1000),
        )
    return response


# Operator UI runs on a different port during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(picking_router)
app.include_router(transfers_router)


def _db_health():
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, str(exc)


@app.on_event("startup")
def _startup():
    ok, err = _db_health()
    if ok:
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    else:
        json_log("warning", "startup.db_unavailable", env=settings.env, error=err)


@app.on_event("shutdown")
def _shutdown():
    close_pools()


@app.get("/health")
def health(req: Request):
    request_id = _current_request_id(req)
    ok, err = _db_health()
    content = {
        "status": "ok" if ok else "degraded",
        "env": settings.env,
        "db": "ok" if ok else "down",
        "service": "wms-backend",
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": request_id,
    }
    if not ok:
        if settings.env in {"local", "dev"}:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return content
