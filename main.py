"""
Pre-order backend application.

Receipt uploads, VIP codes, bonus claims and the derived entitlements
the book site reads.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env", override=False)

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlmodel.ext.asyncio.session import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

from database import get_session, init_db
from exceptions import PreorderServiceError, RateLimitError, StorageServiceError
from observability import ObservabilityMiddleware, get_logger, init_sentry
from observability.health import run_health_checks
from routes import admin, auth, bonus, codes, entitlements, excerpt, receipts
from services.rate_limiter import close_rate_limit_store
from storage import get_storage_provider

logger = get_logger(__name__)

init_sentry()

app = FastAPI(
    title="Pre-order Backend",
    description="Receipt verification, VIP codes and entitlements for the book launch",
    version="0.1.0",
)

GENERIC_ERROR_MESSAGE = "An unexpected error occurred. Please try again later."

# Configure CORS
allowed_origins = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "Retry-After"],
)
app.add_middleware(ObservabilityMiddleware)

app.include_router(receipts.router)
app.include_router(admin.router)
app.include_router(codes.router)
app.include_router(bonus.router)
app.include_router(entitlements.router)
app.include_router(excerpt.router)
app.include_router(auth.router)


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.exception_handler(PreorderServiceError)
async def preorder_error_handler(request: Request, exc: PreorderServiceError):
    headers = {}
    if isinstance(exc, RateLimitError) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)

    if exc.status_code >= 500:
        logger.error(
            "Request failed",
            extra={"path": request.url.path, "error_code": exc.error_code, "error_type": type(exc).__name__},
            exc_info=exc,
        )
        # Infrastructure details stay in the logs
        body = {"success": False, "message": GENERIC_ERROR_MESSAGE, "error": "INTERNAL_SERVER_ERROR"}
        if isinstance(exc, StorageServiceError) and exc.error_code == "STORAGE_NOT_CONFIGURED":
            body["error"] = exc.error_code
        return JSONResponse(status_code=exc.status_code, content=body)

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "message": "Invalid request",
            "error": "INVALID_REQUEST",
            "detail": {"fields": [f for f in fields if f]},
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    codes_by_status = {404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": str(exc.detail),
            "error": codes_by_status.get(exc.status_code, "HTTP_ERROR"),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Log the full error server-side and return a generic message."""
    logger.error(
        "Unhandled exception",
        extra={"path": request.url.path, "method": request.method, "error_type": type(exc).__name__},
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": GENERIC_ERROR_MESSAGE, "error": "INTERNAL_SERVER_ERROR"},
    )


# ---------------------------------------------------------------------------
# Health and metrics
# ---------------------------------------------------------------------------

@app.get("/health")
async def health_check(session: AsyncSession = Depends(get_session)):
    """Liveness plus database, storage and host checks. 503 only when the database is down."""
    try:
        storage = get_storage_provider()
        storage_kind, public_urls = storage.kind, storage.public_urls
    except StorageServiceError:
        storage_kind, public_urls = None, False

    result = await run_health_checks(session, storage_kind=storage_kind, public_urls=public_urls)
    result["version"] = app.version
    status_code = 503 if result["status"] == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=result)


@app.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
async def startup_event():
    logger.info(
        "Application starting",
        extra={"environment": os.getenv("ENVIRONMENT", "development")},
    )
    # Schema is managed by Alembic; creating tables here is for local runs only
    if os.getenv("DB_AUTO_CREATE", "false").lower() == "true":
        await init_db()


@app.on_event("shutdown")
async def shutdown_event():
    await close_rate_limit_store()
    logger.info("Application shutting down")
