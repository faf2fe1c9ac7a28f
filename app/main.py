import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from app.api.router import api_router
from app.config import settings
from app.core.database import init_db
from app.core.request_context import (
    REQUEST_ID_HEADER,
    RequestIdFilter,
    get_request_id,
    new_request_id,
)


def setup_logging() -> None:
    """Configure application logging."""
    # Format: timestamp - level - logger name - request id - message
    log_format = "%(asctime)s | %(levelname)-7s | %(name)s | %(request_id)s | %(message)s"
    date_format = "%H:%M:%S"

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))
    handler.addFilter(RequestIdFilter())

    # Configure root logger
    logging.basicConfig(
        level=logging.INFO,
        handlers=[handler],
        force=True,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)

    # Quieten uvicorn access logs (we'll log requests ourselves)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Application lifespan: startup and shutdown events."""
    # Startup
    setup_logging()
    logger.info("AP CS Prep API starting up")
    if settings.debug:
        await init_db()
    if not settings.stripe_enabled:
        logger.warning("Stripe is not configured; checkout and cancellation are disabled")
    yield
    # Shutdown
    logger.info("AP CS Prep API shutting down")


app = FastAPI(
    title="AP CS Prep API",
    description="Subscription and billing API for AP Computer Science exam prep",
    version="0.1.0",
    lifespan=lifespan,
)

# Proxy headers middleware - trust X-Forwarded-Proto from reverse proxy
# This ensures redirects use HTTPS when behind TLS-terminating proxy
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["*"])

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[REQUEST_ID_HEADER],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Tag the request with a correlation id and log failures."""
    request_id = new_request_id(request.headers.get(REQUEST_ID_HEADER))

    # Skip OPTIONS (CORS preflight) and health checks
    if request.method == "OPTIONS" or request.url.path == "/health":
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id

    # Only log non-2xx or billing mutations
    path = request.url.path
    if response.status_code >= 400 or any(
        keyword in path for keyword in ["checkout", "cancel", "trial", "webhooks"]
    ):
        logger.info(f"{request.method} {path} -> {response.status_code}")

    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unexpected errors and return a generic 500 without internals."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    request_id = get_request_id()
    headers = {REQUEST_ID_HEADER: request_id} if request_id else None
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
        headers=headers,
    )


# Include API routes
app.include_router(api_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
