# main.py — TaskWise API
# - Live task boards over WebSocket, backed by an in-process change feed
# - Catalogue-coded error responses ({detail, code, request_id})
# - Request ids, timing and hardened response headers on every reply
# - Health check reporting database and realtime state

import os
import json
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from database import async_session_maker, close_db, init_db
from errors import ERROR_CATALOGUE, ErrorChannel, TaskWiseError
from task_feed import TaskFeed
from telemetry import setup_telemetry

VERSION = "1.0.0"

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("taskwise")


def _startup_warnings() -> list:
    """Configuration problems worth shouting about at boot"""
    problems = []
    if len(os.getenv("JWT_SECRET_KEY", "")) < 32:
        problems.append("JWT_SECRET_KEY missing or shorter than 32 chars; tokens die with the process")
    if not os.getenv("SYSADMIN_EMAIL"):
        problems.append("SYSADMIN_EMAIL not set; nobody can be bootstrapped as sysadmin")

    configured = [k for k in ("GROQ_API_KEY", "OPENAI_API_KEY") if os.getenv(k)]
    if configured:
        logger.info(f"🤖 Summary providers: {', '.join(configured)}")
    elif os.getenv("LLM_PROVIDER", "").lower() != "local":
        problems.append("No LLM key configured; /api/v1/ai/summarize answers with stub summaries")
    return problems


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 TaskWise v{VERSION} starting")
    await init_db()
    for problem in _startup_warnings():
        logger.warning(f"⚠️  {problem}")
    setup_telemetry(app)
    yield
    logger.info("🛑 TaskWise stopping")
    await close_db()


app = FastAPI(
    title="TaskWise",
    description="Collaborative Kanban task manager with departments, role-gated workflow and audit history",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Process-wide pub/sub hubs, injected into routes via dependencies
app.state.task_feed = TaskFeed()
app.state.error_channel = ErrorChannel()

# ============================================================
# CORS
# ============================================================

CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173,http://localhost:9002").split(",")
    if o.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID", "Content-Disposition"],
)


# ============================================================
# MIDDLEWARE: Request context + response headers
# ============================================================

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
    "Content-Security-Policy": (
        "default-src 'self'; img-src 'self' data: https:; "
        "style-src 'self' 'unsafe-inline'; connect-src 'self' wss: https:;"
    ),
}


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    cid = request.headers.get("X-Correlation-ID") or rid
    request.state.request_id = rid
    request.state.correlation_id = cid

    started = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - started

    response.headers.update(SECURITY_HEADERS)
    response.headers["X-Request-ID"] = rid
    response.headers["X-Correlation-ID"] = cid
    response.headers["X-Response-Time"] = f"{elapsed:.4f}s"
    logger.info(f"{request.method} {request.url.path} → {response.status_code} ({elapsed:.3f}s) [rid={rid[:8]}]")
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

def _error_body(request: Request, detail, code=None) -> dict:
    body = {"detail": detail, "request_id": getattr(request.state, "request_id", None)}
    if code:
        body["code"] = code
    return body


@app.exception_handler(TaskWiseError)
async def taskwise_error_handler(request: Request, exc: TaskWiseError):
    return JSONResponse(status_code=exc.http_status, content=_error_body(request, exc.message, exc.code))


def _plain_validation_error(err: dict) -> dict:
    """Pydantic error entries may carry non-JSON inputs (bytes, Decimals, ...)"""
    item = {"type": str(err.get("type", "unknown")), "loc": list(err.get("loc", ())), "msg": str(err.get("msg", ""))}
    if "input" in err:
        try:
            json.dumps(err["input"])
            item["input"] = err["input"]
        except (TypeError, ValueError):
            item["input"] = repr(err["input"])
    return item


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content=_error_body(request, [_plain_validation_error(e) for e in exc.errors()]),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled {type(exc).__name__} on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=_error_body(request, ERROR_CATALOGUE["TW-SYS-001"]["message"], "TW-SYS-001"),
    )


# ============================================================
# ROUTERS
# ============================================================

from routers import (
    auth, users, departments, tasks, ai, errors, websocket_router,
)

for module in (auth, users, departments, tasks, ai, errors, websocket_router):
    app.include_router(module.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check():
    """Liveness plus a round trip to the database"""
    try:
        async with async_session_maker() as db:
            await db.execute(text("SELECT 1"))
        database = "connected"
    except (SQLAlchemyError, OSError) as e:
        database = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if database == "connected" else "degraded",
        "version": VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": database,
        "realtime": {
            "feed_subscribers": app.state.task_feed.subscriber_count,
            "error_listeners": app.state.error_channel.listener_count,
            "sockets": websocket_router.manager.get_stats(),
        },
    }


@app.get("/")
async def root():
    return {"name": "TaskWise", "version": VERSION, "docs": "/docs", "health": "/health"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("ENVIRONMENT") != "production",
    )
