"""paygate FastAPI application."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request

from .domains.payments.api.routers import router as payment_router
from .domains.payments.application.bootstrap import build_orchestrator
from .domains.payments.application.orchestrator import PaymentOrchestrator
from .domains.payments.infrastructure.repositories import SqlAlchemyPaymentIntentRepository
from .infrastructure.config.settings import PaymentSettings, get_settings
from .infrastructure.logging.structured_logger import bind_correlation_id, configure_logging
from .infrastructure.persistence.database import DatabaseManager

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[PaymentSettings] = None,
    orchestrator: Optional[PaymentOrchestrator] = None,
) -> FastAPI:
    """Application factory.

    A prebuilt ``orchestrator`` is used as is; otherwise one is wired from
    ``settings`` at startup, backed by SQLAlchemy when ``database_url`` is set.
    """
    settings = settings or get_settings()
    configure_logging(settings.logging)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Starting paygate", app_name=settings.app_name)

        db_manager = None
        if orchestrator is None:
            repository = None
            if settings.database_url:
                db_manager = DatabaseManager(settings.database_url)
                await db_manager.create_tables()
                repository = SqlAlchemyPaymentIntentRepository(db_manager.session_factory)
            app.state.orchestrator = build_orchestrator(settings, repository=repository)

        logger.info("Application startup complete", gateways=app.state.orchestrator.registry.list_enabled())

        yield

        logger.info("Shutting down paygate")
        await app.state.orchestrator.registry.aclose()
        if db_manager:
            await db_manager.close()

    app = FastAPI(
        title="paygate",
        description="Gateway-agnostic payment orchestration",
        version="0.1.0",
        lifespan=lifespan,
    )
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        correlation_id = request.headers.get("x-request-id") or str(uuid4())
        bind_correlation_id(correlation_id, path=request.url.path)
        response = await call_next(request)
        response.headers["x-request-id"] = correlation_id
        return response

    app.include_router(payment_router)

    @app.get("/health")
    async def health_check(request: Request) -> dict:
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": settings.app_name,
            "gateways": request.app.state.orchestrator.registry.list_enabled(),
        }

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "paygate.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        log_config=None,
    )
