# main.py — KanbanFlow API
# Features:
# - Request correlation IDs
# - Security headers
# - Uniform {message, request_id} error bodies
# - WebSocket rooms with optional Redis fan-out
# - Background sweep of expired invitations
# - Health check with DB verification

import os
import uuid
import time
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from board_service import BoardService
from database import init_db, close_db, get_db_session, get_db_context
from errors import DuplicateKeyError, KanbanError, pydantic_errors
from models import utcnow
from realtime import hub
from telemetry import setup_telemetry

VERSION = "1.0.0"

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("kanbanflow")

INVITATION_SWEEP_SECONDS = int(os.getenv("INVITATION_SWEEP_SECONDS", "3600"))


def _check_startup_config():
    """Validate critical configuration on startup."""
    warnings = []

    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append("⚠️  JWT_SECRET_KEY is not set or shorter than 32 chars — generate one: python -c \"import secrets; print(secrets.token_urlsafe(48))\"")

    if not os.getenv("REDIS_URL"):
        warnings.append("⚠️  REDIS_URL not set — realtime fan-out is limited to this process")

    if not os.getenv("RESEND_API_KEY"):
        warnings.append("⚠️  RESEND_API_KEY not set — invitation emails will only be logged")

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


async def _sweep_invitations():
    while True:
        await asyncio.sleep(INVITATION_SWEEP_SECONDS)
        try:
            async with get_db_context() as db:
                expired = await BoardService.expire_invitations(db)
            if expired:
                logger.info(f"Expired {expired} stale invitation(s)")
        except Exception as e:
            logger.error(f"Invitation sweep failed: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 Starting KanbanFlow API v{VERSION}...")
    await init_db()
    logger.info("✅ Database initialized")
    _check_startup_config()
    await hub.start()
    # Initialise OpenTelemetry (no-op if OTEL_EXPORTER_OTLP_ENDPOINT not set)
    setup_telemetry(app)
    sweeper = asyncio.create_task(_sweep_invitations())
    yield
    logger.info("🛑 Shutting down KanbanFlow API...")
    sweeper.cancel()
    await hub.stop()
    await close_db()


app = FastAPI(
    title="KanbanFlow",
    description="Collaborative Kanban boards with live updates",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CLIENT_URL", "http://localhost:5173").split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID", "X-Connection-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)


# ============================================================
# MIDDLEWARE: Correlation IDs + Timing
# ============================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    correlation_id = request.headers.get("X-Correlation-ID", request_id)
    request.state.request_id = request_id
    request.state.correlation_id = correlation_id

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Correlation-ID"] = correlation_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"

    logger.info(
        f"{request.method} {request.url.path} → {response.status_code} "
        f"({duration:.3f}s) [rid={request_id[:8]}]"
    )
    return response


# ============================================================
# MIDDLEWARE: Security Headers
# ============================================================

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = (
        "default-src 'self'; img-src 'self' data: https:; connect-src 'self' wss: https:;"
    )
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

def _error_response(request: Request, status_code: int, message: str, errors=None) -> JSONResponse:
    content = {
        "message": message,
        "request_id": getattr(request.state, "request_id", None),
    }
    if errors:
        content["errors"] = errors
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(KanbanError)
async def kanban_exception_handler(request: Request, exc: KanbanError):
    return _error_response(request, exc.status_code, exc.message, exc.errors)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return _error_response(request, 400, "Validation error", pydantic_errors(exc.errors()))


@app.exception_handler(IntegrityError)
async def integrity_exception_handler(request: Request, exc: IntegrityError):
    logger.warning(f"Integrity error: {exc.orig}")
    err = DuplicateKeyError()
    return _error_response(request, err.status_code, err.message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _error_response(request, exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error_response(request, 500, str(exc) or "Internal server error")


# ============================================================
# ROUTERS
# ============================================================

from routers import auth, boards, invitations, websocket_router

app.include_router(auth.router)
app.include_router(boards.router)
app.include_router(invitations.router)
app.include_router(websocket_router.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/api/health")
async def health_check():
    """Health check with database connectivity verification"""
    db_status = "unknown"
    try:
        async for db in get_db_session():
            await db.execute(text("SELECT 1"))
            db_status = "connected"
            break
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    return {
        "status": "OK" if db_status == "connected" else "degraded",
        "version": VERSION,
        "timestamp": utcnow().isoformat(),
        "database": db_status,
        "realtime": hub.get_stats(),
    }


@app.get("/")
async def root():
    return {
        "name": "KanbanFlow",
        "version": VERSION,
        "docs": "/docs",
        "health": "/api/health",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 5000)),
        reload=os.getenv("ENVIRONMENT") != "production",
    )
