"""
Review Bot - Main FastAPI Application (webhook gateway)
"""
from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse

from reviewbot.core.config import settings
from reviewbot.core.logging import setup_logging, get_logger
from reviewbot.core.metrics import render_latest
from reviewbot.core.middleware import setup_middleware, setup_exception_handlers
from reviewbot.core.secrets import get_secret_store
from reviewbot.api.routes import router as api_router
from reviewbot.db.database import engine, Base

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "GitHub App webhook intake."},
    {"name": "Admin", "description": "Dead letters, manual requeue and ledger inspection."},
    {"name": "Health", "description": "Liveness, readiness and Prometheus metrics."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Turns GitHub webhook events into durable, idempotent bot tasks.",
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging, rate limit)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Refuse to serve without secrets; initialize database tables"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})

    # SecretUnavailable propagates and aborts startup
    loaded = get_secret_store().load_all()
    logger.info("Secrets loaded", extra_data={"kinds": sorted(k.value for k in loaded)})

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from reviewbot.core.redis_client import close_redis
    await close_redis()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Liveness probe; does not touch dependencies"""
    return {"status": "healthy"}


@app.get("/health/ready", tags=["Health"])
async def readiness_check() -> JSONResponse:
    """Readiness probe: database, Redis, broker and secrets"""
    from reviewbot.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)


@app.get("/metrics", tags=["Health"], include_in_schema=False)
async def metrics_endpoint() -> Response:
    """Prometheus exposition"""
    payload, content_type = render_latest()
    return Response(content=payload, media_type=content_type)
