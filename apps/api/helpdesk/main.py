"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from helpdesk.core.config import settings
from helpdesk.core.health import EndpointHealthMonitor
from helpdesk.core.structured_logging import build_log_context, configure_logging
from helpdesk.db.session import engine

configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,
    )
    logger.info("Sentry initialized for error tracking")

# ============================================================================
# Rate Limiting
# ============================================================================

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from helpdesk.core.rate_limit import limiter


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Cancel pending recovery timers
    app.state.health_monitor.shutdown()


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Helpdesk API",
    description="Department ticketing API: bulk ticket mutations with transactional consistency",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
    lifespan=lifespan,
)

app.state.health_monitor = EndpointHealthMonitor()

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware - must be added before routers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,  # Required for cookies
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled error on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=exc,
        extra=build_log_context(route=request.url.path, method=request.method),
    )
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal server error"},
    )


# ============================================================================
# Routers
# ============================================================================

from helpdesk.routers import department_tickets_router, websocket_router

# Department head/staff ticket operations
app.include_router(department_tickets_router)

# WebSocket for real-time events
app.include_router(websocket_router)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health(request: Request):
    """
    Health check endpoint.

    Verifies database connectivity and lists endpoint circuit-breaker state.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    endpoints = request.app.state.health_monitor.snapshot()
    return {
        "status": "ok",
        "env": settings.ENV,
        "version": settings.VERSION,
        "disabled_endpoints": sorted(name for name, state in endpoints.items() if state["disabled"]),
        "endpoints": endpoints,
    }
