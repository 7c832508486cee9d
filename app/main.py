import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from app.api.router import api_router
from app.config import settings
from app.core.database import init_db
from app.core.exceptions import billing_error_handler
from app.services.billing import create_billing_service
from app.services.processor import BillingError


def setup_logging() -> None:
    """Configure application logging."""
    # Format: timestamp - level - logger name - message
    log_format = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
    date_format = "%H:%M:%S"

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format=log_format,
        datefmt=date_format,
        stream=sys.stdout,
        force=True,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: build the billing service, close it on shutdown."""
    setup_logging()
    logger.info("Billing API starting up")
    if settings.debug:
        await init_db()

    if not settings.billing_enabled:
        logger.warning("Cloud billing disabled (CLOUD_REGION unset): reads return empty shapes")
    elif not settings.commerce_enabled:
        logger.warning("COMMERCE_API_KEY unset: processor calls will fail with PRECONDITION")

    app.state.billing = create_billing_service()
    yield
    await app.state.billing.aclose()
    logger.info("Billing API shutting down")


app = FastAPI(
    title="Billing API",
    description="Subscription and usage-billing reconciliation service",
    version="0.1.0",
    lifespan=lifespan,
)

# Trust X-Forwarded-Proto from the TLS-terminating proxy
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["*"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(BillingError, billing_error_handler)  # type: ignore[arg-type]


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log failed HTTP requests and every billing mutation, skipping preflight."""
    if request.method == "OPTIONS" or request.url.path == "/health":
        return await call_next(request)

    response = await call_next(request)

    path = request.url.path
    if response.status_code >= 400 or request.method in ("POST", "DELETE"):
        logger.info(f"{request.method} {path} -> {response.status_code}")

    return response


app.include_router(api_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "billing_enabled": settings.billing_enabled,
        "commerce_configured": settings.commerce_enabled,
    }
