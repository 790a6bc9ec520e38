import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.config import (
    API_PREFIX,
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_LEVEL,
)
from backend.errors import (
    ConcurrencyError,
    ConflictError,
    GateError,
    PersistenceError,
    PunctooError,
)
from backend.routers import core, performances, presence, reference, scan_events
from database.db import create_tables

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Punctoo Attendance API")


# -----------------------------
# CORS
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


# -----------------------------
# Startup
# -----------------------------
@app.on_event("startup")
def _startup():
    create_tables()
    logger.info("Attendance tables ready")


# -----------------------------
# Error mapping
# -----------------------------
@app.exception_handler(GateError)
def _gate_error(request: Request, exc: GateError):
    return JSONResponse(status_code=exc.status_code, content=exc.body)


@app.exception_handler(ConflictError)
def _conflict_error(request: Request, exc: ConflictError):
    return JSONResponse(
        status_code=409,
        headers={"Retry-After": str(exc.retry_after_seconds)},
        content={
            "ok": True,
            "accepted": False,
            "ignored": False,
            "reason": exc.reason,
            "retry_after_seconds": exc.retry_after_seconds,
            "status_before": exc.status_before,
            "status_after": exc.status_before,
            "server_time": exc.server_time.isoformat(),
        },
    )


@app.exception_handler(ConcurrencyError)
def _concurrency_error(request: Request, exc: ConcurrencyError):
    return JSONResponse(
        status_code=503,
        headers={"Retry-After": "1"},
        content={"ok": False, "error": exc.message},
    )


@app.exception_handler(PersistenceError)
def _persistence_error(request: Request, exc: PersistenceError):
    return JSONResponse(status_code=500, content={"ok": False, "error": "internal storage error"})


@app.exception_handler(RequestValidationError)
def _request_validation_error(request: Request, exc: RequestValidationError):
    # Malformed bodies share the ValidationError envelope.
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg") or "invalid request"
    return JSONResponse(
        status_code=400,
        content={"ok": False, "error": f"{field}: {message}" if field else message},
    )


@app.exception_handler(PunctooError)
def _punctoo_error(request: Request, exc: PunctooError):
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": exc.message})


# -----------------------------
# Routers
# -----------------------------
app.include_router(core.router)
app.include_router(scan_events.router, prefix=API_PREFIX)
app.include_router(presence.router, prefix=API_PREFIX)
app.include_router(reference.router, prefix=API_PREFIX)
app.include_router(performances.router, prefix=API_PREFIX)
