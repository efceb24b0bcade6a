"""
FastAPI application factory

Only the process shell lives here: health checks and the DB pool lifecycle.
Goal routes are mounted by the host application.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from gymgoals.config import get_settings
from gymgoals.infrastructure.db.session import check_db_connection, dispose_engine

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Пул соединений живёт столько же, сколько процесс"""
    yield
    dispose_engine()
    logger.info("Database engine disposed")


def create_app() -> FastAPI:
    """
    Application factory - создаёт и настраивает FastAPI приложение

    Returns:
        Настроенный FastAPI app
    """
    settings = get_settings()

    app = FastAPI(
        title="Gym Goals",
        debug=settings.DEBUG,
        lifespan=lifespan,
    )

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


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "gymgoals.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
