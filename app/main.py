"""
Revenue Recovery - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, init_db, AsyncSessionLocal

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "Inbound payment provider events (Stripe)."},
    {
        "name": "Admin Webhooks",
        "description": "Circuit breakers, webhook processing statistics and manual retry.",
    },
    {
        "name": "Admin Dunning",
        "description": "Recovery metrics, dunning lifecycle actions, strategies and payment methods.",
    },
    {"name": "Health", "description": "Liveness and readiness checks."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Idempotent Stripe webhook processing and failed-payment recovery (dunning)."
    ),
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# Safe dev default to support local frontend development without opening CORS in production.
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "X-Admin-API-Key", "X-Correlation-ID"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Create tables, load strategies and start the webhook worker pool"""
    from app.domain.services.strategy_registry import get_strategy_registry
    from app.domain.services.webhook_processor import WebhookProcessor
    from app.workers.worker_pool import WebhookWorkerPool

    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    await init_db()
    logger.info("Database tables initialized")

    strategies = get_strategy_registry()
    async with AsyncSessionLocal() as db:
        await strategies.load(db)

    processor = WebhookProcessor(AsyncSessionLocal, strategies=strategies)
    pool = WebhookWorkerPool(processor.process_event)
    await pool.start()
    app.state.webhook_pool = pool


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    pool = getattr(app.state, "webhook_pool", None)
    if pool is not None:
        await pool.stop()

    from app.core.redis_client import close_redis
    await close_redis()
    # שחרור חיבורי ה-pool
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness check",
    description=(
        "The process is up and answering. Dependencies are not checked, so a "
        "database or Redis outage never triggers a restart."
    ),
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness check",
    description=(
        "Checks the database, Redis and the Celery broker. Returns status=healthy "
        "when all answer, otherwise status=degraded with a 503."
    ),
    responses={
        200: {
            "description": "All dependencies are available",
            "content": {
                "application/json": {
                    "example": {"status": "healthy", "db": "ok", "redis": "ok", "celery": "ok"}
                }
            },
        },
        503: {
            "description": "At least one dependency is unavailable",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "db": "ok",
                        "redis": "error: redis_unavailable",
                        "celery": "ok",
                    }
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
