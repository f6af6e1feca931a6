from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api import ai, auth, changelog, lessons, levels, modules, overrides, progress, teacher_students
from core.config import settings
from core.database import engine, Base
from core.logging import configure_logging, get_logger
from core.middleware import (
    RequestLoggingMiddleware,
    SlowRequestMiddleware,
    limiter,
    rate_limit_exceeded_handler,
)
from core.responses import envelope
from core.errors import register_error_handlers
from engines.ai import AIDispatcher

# Initialize logging before anything else
configure_logging(
    level=settings.LOG_LEVEL,
    json_logs=settings.LOG_JSON,
    log_sql=settings.LOG_SQL,
)

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("startup", message="VentyLab API starting up")

    # Database initialization
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        log.info("database_connected", message="Database tables initialized")
    except Exception as e:
        log.warning("database_unavailable", error=str(e), message="App starting without database")

    app.state.ai_dispatcher = AIDispatcher.from_settings(settings)
    log.info(
        "ai_dispatcher_ready",
        providers=app.state.ai_dispatcher.available_providers(),
        default_provider=app.state.ai_dispatcher.current_provider,
    )

    yield

    # Shutdown
    log.info("shutdown", message="VentyLab API shutting down")
    try:
        await engine.dispose()
        log.debug("database_disposed", message="Database connections closed")
    except Exception as e:
        log.warning("database_dispose_failed", error=str(e))


app = FastAPI(
    title="VentyLab API",
    description="Mechanical ventilation e-learning: curriculum, learner progress, unlock rules, per-student overrides and AI feedback",
    version="0.1.0",
    lifespan=lifespan,
)

# Register structured error handlers
register_error_handlers(app)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# Middleware (order matters: last added = first executed)
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(SlowRequestMiddleware, slow_threshold_ms=1000)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(levels.router, prefix="/api/levels", tags=["levels"])
app.include_router(modules.router, prefix="/api/modules", tags=["modules"])
app.include_router(lessons.router, prefix="/api/lessons", tags=["lessons"])
app.include_router(progress.router, prefix="/api/progress", tags=["progress"])
app.include_router(changelog.router, prefix="/api/changelog", tags=["changelog"])
app.include_router(overrides.router, prefix="/api/overrides", tags=["overrides"])
app.include_router(teacher_students.router, prefix="/api/teacher-students", tags=["teacher-students"])
app.include_router(ai.router, prefix="/api/ai", tags=["ai"])


@app.get("/health")
@limiter.exempt
async def health_check():
    return envelope({"status": "healthy", "version": "0.1.0"})


if __name__ == "__main__":
    import uvicorn

    log.info("server_config", host=settings.BACKEND_HOST, port=settings.BACKEND_PORT, debug=settings.APP_DEBUG)
    uvicorn.run(
        "main:app",
        host=settings.BACKEND_HOST,
        port=settings.BACKEND_PORT,
        reload=settings.APP_DEBUG,
        log_config=None,  # Disable uvicorn's default logging, we handle it
    )
