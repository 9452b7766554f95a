"""
Main FastAPI application entry point.
"""
from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from prometheus_fastapi_instrumentator import Instrumentator

from examdesk.api.analytics import router as analytics_router
from examdesk.api.auth import router as auth_router
from examdesk.api.courses import router as courses_router
from examdesk.api.exams import router as exams_router
from examdesk.api.materials import router as materials_router
from examdesk.api.proctoring import router as proctoring_router
from examdesk.api.questions import router as questions_router
from examdesk.api.realtime import router as realtime_router
from examdesk.api.scoring import router as scoring_router
from examdesk.api.users import router as users_router
from examdesk.clients.essay_scorer import EssayScorerClient
from examdesk.clients.material_generator import MaterialGeneratorClient
from examdesk.clients.proctoring import ProctoringClient
from examdesk.clients.storage import ObjectStorage
from examdesk.core.config import Settings, get_settings
from examdesk.core.database import build_engine, build_session_factory, close_db, init_db
from examdesk.core.errors import register_exception_handlers
from examdesk.core.logging_config import configure_logging
from examdesk.core.rate_limit import build_rate_limiter
from examdesk.core.realtime import RealtimeHub
from examdesk.middleware.logging import LoggingMiddleware
from examdesk.middleware.rate_limit import RateLimitMiddleware
from examdesk.services.scoring import ScoringQueue

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    """
    state = app.state
    logger.info("Starting %s %s (%s)", state.settings.APP_NAME, state.settings.APP_VERSION,
                state.settings.ENVIRONMENT)

    await init_db(state.engine)
    logger.info("Database initialized")

    resumed = await state.scoring.resume()
    if resumed:
        logger.info("Resumed %d unfinished scoring jobs", resumed)

    yield

    logger.info("Shutting down %s...", state.settings.APP_NAME)
    await state.scoring.close()
    await state.hub.close()
    await state.rate_limiter.close()
    await state.auth_rate_limiter.close()
    for client in (state.generator, state.scorer, state.proctoring):
        await client.close()
    await state.storage.close()
    if state.owns_engine:
        await close_db(state.engine)
    logger.info("Shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    *,
    engine: Optional[AsyncEngine] = None,
    generator: Optional[MaterialGeneratorClient] = None,
    scorer: Optional[EssayScorerClient] = None,
    proctoring: Optional[ProctoringClient] = None,
    storage: Optional[ObjectStorage] = None,
) -> FastAPI:
    """Build the application; every long-lived resource hangs off ``app.state``."""
    settings = settings or get_settings()
    configure_logging(settings)

    if settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
            ],
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        )

    app = FastAPI(
        title=settings.APP_NAME,
        description=settings.APP_DESCRIPTION,
        version=settings.APP_VERSION,
        docs_url=None if settings.is_production() else "/docs",
        redoc_url=None if settings.is_production() else "/redoc",
        lifespan=lifespan,
    )

    state = app.state
    state.settings = settings
    state.owns_engine = engine is None
    state.engine = engine or build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
    state.session_factory = build_session_factory(state.engine)
    state.hub = RealtimeHub()
    state.generator = generator or MaterialGeneratorClient(
        settings.MATERIAL_GENERATOR_URL, timeout=settings.EXTERNAL_TIMEOUT_SECONDS,
        template_ttl=settings.TEMPLATE_CACHE_TTL,
    )
    state.scorer = scorer or EssayScorerClient(settings.ESSAY_SCORER_URL, timeout=settings.EXTERNAL_TIMEOUT_SECONDS)
    state.proctoring = proctoring or ProctoringClient(
        settings.PROCTORING_SERVICE_URL, timeout=settings.EXTERNAL_TIMEOUT_SECONDS,
    )
    state.storage = storage or ObjectStorage(settings)

    enqueue = None
    if settings.SCORING_BACKEND == "rq":
        from examdesk.jobs.queue import enqueue_scoring
        enqueue = enqueue_scoring
    state.scoring = ScoringQueue(state.session_factory, state.scorer, settings, enqueue=enqueue)

    state.rate_limiter = build_rate_limiter(
        settings.RATE_LIMIT_BACKEND, settings.REDIS_URL, settings.RATE_LIMIT_MAX, settings.RATE_LIMIT_WINDOW_SECONDS,
    )
    state.auth_rate_limiter = build_rate_limiter(
        settings.RATE_LIMIT_BACKEND, settings.REDIS_URL, settings.AUTH_RATE_LIMIT_MAX,
        settings.AUTH_RATE_LIMIT_WINDOW_SECONDS, prefix="auth_rate_limit",
    )

    # Add middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)
    if settings.RATE_LIMIT_ENABLED:
        app.add_middleware(RateLimitMiddleware)

    if settings.PROMETHEUS_ENABLED:
        Instrumentator().instrument(app).expose(app, endpoint="/metrics")

    register_exception_handlers(app, settings)

    prefix = settings.API_PREFIX
    app.include_router(auth_router, prefix=f"{prefix}/auth", tags=["auth"])
    app.include_router(users_router, prefix=f"{prefix}/users", tags=["users"])
    app.include_router(materials_router, prefix=f"{prefix}/materials", tags=["materials"])
    app.include_router(courses_router, prefix=f"{prefix}/courses", tags=["courses"])
    app.include_router(exams_router, prefix=f"{prefix}/exams", tags=["exams"])
    app.include_router(questions_router, prefix=f"{prefix}/questions", tags=["questions"])
    app.include_router(proctoring_router, prefix=f"{prefix}/proctoring", tags=["proctoring"])
    app.include_router(scoring_router, prefix=f"{prefix}/scoring", tags=["scoring"])
    app.include_router(analytics_router, prefix=f"{prefix}/analytics", tags=["analytics"])
    app.include_router(realtime_router, tags=["realtime"])

    @app.get("/", tags=["Root"])
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
        }

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Basic health check endpoint."""
        return {"status": "healthy", "service": settings.APP_NAME, "version": settings.APP_VERSION}

    @app.get("/health/ready", tags=["Health"])
    async def readiness_check(request: Request):
        """Readiness probe: the database must answer."""
        try:
            async with request.app.state.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"Readiness check failed: {e}")
            return JSONResponse(status_code=503, content={"status": "not_ready", "checks": {"database": "error"}})
        return {"status": "ready", "checks": {"database": "ok"}}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "examdesk.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        workers=settings.WORKERS if not settings.RELOAD else 1,
    )
