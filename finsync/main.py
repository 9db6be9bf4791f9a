"""
FastAPI application factory
"""
import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from finsync.config import get_settings
from finsync.infrastructure.db.session import check_db_connection
from finsync.api.v1 import sync
from finsync.application.scheduler import start_scheduler, shutdown_scheduler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ErrorLoggingMiddleware(BaseHTTPMiddleware):
    """Catches ALL exceptions including sync routes"""

    async def dispatch(self, request, call_next):
        try:
            response = await call_next(request)
            return response
        except Exception as exc:
            tb_str = traceback.format_exc()
            logger.error("\n%s\nERROR on %s %s\n%s%s", "=" * 60, request.method, request.url.path, tb_str, "=" * 60)
            return Response(content=f"Internal Server Error: {exc}", status_code=500)


def create_app() -> FastAPI:
    """
    Application factory - создаёт и настраивает FastAPI приложение

    Returns:
        Настроенный FastAPI app
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.SCHEDULER_ENABLED:
            start_scheduler(settings.SYNC_INTERVAL_MINUTES)
        yield
        shutdown_scheduler()

    app = FastAPI(
        title="FinSync",
        debug=settings.DEBUG,
        lifespan=lifespan,
    )

    app.add_middleware(ErrorLoggingMiddleware)

    # Routers
    app.include_router(sync.router)

    # Health checks
    @app.get("/health", response_class=PlainTextResponse, tags=["system"])
    def health():
        """Health check endpoint"""
        return "ok"

    @app.get("/ready", response_class=PlainTextResponse, tags=["system"])
    def ready():
        """Readiness check endpoint (проверяет доступность БД)"""
        check_db_connection()
        return "ok"

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "finsync.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
