"""
Courier Hub - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from courier_hub.core.config import settings
from courier_hub.core.logging import setup_logging, get_logger
from courier_hub.core.middleware import setup_middleware, setup_exception_handlers
from courier_hub.api.routes import router as api_router
from courier_hub.core.redis_client import close_redis
from courier_hub.db.database import engine, init_models

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
    {"name": "Dispatch", "description": "Candidate inbox, assignment and activity feed."},
    {"name": "Courier", "description": "Courier dashboard, delivery lifecycle, availability and position."},
    {"name": "Finance", "description": "Manual receipts and payments, balances and operator summary."},
    {"name": "Webhooks", "description": "Delivery requests pushed by the WhatsApp automation."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Delivery dispatch for a courier operator: intake, assignment, tracking and settlement.",
    openapi_tags=_OPENAPI_TAGS,
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
        allow_headers=["Content-Type", "X-Correlation-ID", "X-Actor-Id"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    await init_models()


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    await close_redis()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get("/health", tags=["Health"], summary="Liveness probe")
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    tags=["Health"],
    summary="Readiness probe",
    responses={503: {"description": "At least one dependency is unavailable"}},
)
async def readiness_check() -> JSONResponse:
    """Database, realtime Redis and Celery broker status"""
    from courier_hub.domain.services.health_service import STATUS_HEALTHY, check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == STATUS_HEALTHY else 503
    return JSONResponse(content=result, status_code=status_code)
