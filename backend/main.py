# main.py — Teamspace API
# Features:
# - Request correlation IDs
# - Security headers
# - Uniform error bodies (validation, vault, storage, unhandled)
# - Health check with DB verification
# - All routers registered

import os
import json
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database import init_db, close_db, get_db_session
from encryption import DecryptionFailed
from storage import StorageError

VERSION = "1.0.0"

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("teamspace")


def _check_startup_config():
    """Warn about configuration that only works for local development."""
    warnings = []

    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append("JWT_SECRET_KEY is not set or shorter than 32 chars; sessions will not survive a restart")

    if not os.getenv("ENCRYPTION_KEY"):
        warnings.append("ENCRYPTION_KEY is not set; stored credentials will be unreadable after a restart")

    storage_type = os.getenv("STORAGE_TYPE", "local").lower()
    if storage_type == "s3":
        if not os.getenv("S3_BUCKET"):
            warnings.append("STORAGE_TYPE=s3 but S3_BUCKET is not set")
        else:
            logger.info(f"File storage: S3 bucket {os.getenv('S3_BUCKET')}")
    else:
        logger.info(f"File storage: local disk at {os.getenv('LOCAL_STORAGE_PATH', './uploads')}")

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting Teamspace v{VERSION}...")
    await init_db()
    _check_startup_config()
    yield
    logger.info("Shutting down Teamspace...")
    await close_db()


app = FastAPI(
    title="Teamspace",
    description="Multi-tenant collaboration API: organizations, groups, projects, boards, documents, files",
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
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID"],
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
        f"{request.method} {request.url.path} -> {response.status_code} "
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
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

def _request_id(request: Request):
    return getattr(request.state, "request_id", None)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # pydantic may put non-JSON values (bytes, exceptions) in "input"/"ctx"
    errors = []
    for err in exc.errors():
        clean_err = {
            "type": str(err.get("type", "unknown")),
            "loc": list(err.get("loc", [])),
            "msg": str(err.get("msg", "")),
        }
        if "input" in err:
            try:
                json.dumps(err["input"])
                clean_err["input"] = err["input"]
            except (TypeError, ValueError):
                clean_err["input"] = str(err["input"])
        errors.append(clean_err)

    return JSONResponse(status_code=422, content={"detail": errors, "request_id": _request_id(request)})


@app.exception_handler(DecryptionFailed)
async def decryption_failed_handler(request: Request, exc: DecryptionFailed):
    logger.error(f"Credential decryption failed on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Stored secret could not be read", "request_id": _request_id(request)},
    )


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error(f"Storage backend error on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "File storage is unavailable", "request_id": _request_id(request)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "request_id": _request_id(request)},
    )


# ============================================================
# ROUTERS
# ============================================================

from routers import (  # noqa: E402
    auth, users, organizations, invites, groups, projects,
    boards, sprints, tasks, documents, credentials, files, notifications,
)

app.include_router(auth.router)
app.include_router(users.router)
app.include_router(organizations.router)
app.include_router(invites.router)
app.include_router(groups.router)
app.include_router(projects.router)

# Boards: board/grant/column/label routes, then sprints and tasks under the same prefix
app.include_router(boards.router)
app.include_router(sprints.router)
app.include_router(tasks.router)

# Project content
app.include_router(documents.router)
app.include_router(credentials.router)
app.include_router(files.router)

app.include_router(notifications.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check(db: AsyncSession = Depends(get_db_session)):
    """Health check with database connectivity verification"""
    try:
        await db.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError as e:
        logger.warning(f"Health check database ping failed: {e}", exc_info=True)
        db_status = "error"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
    }


@app.get("/")
async def root():
    return {
        "name": "Teamspace",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
        "status": "operational",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") != "production",
        workers=int(os.getenv("WORKERS", 1)),
    )
