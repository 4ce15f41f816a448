"""
FastAPI application factory for the billing core.

Run with:
    uvicorn billing_core.main:create_app --factory
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from .api.middleware import LoggingMiddleware, RequestIDMiddleware
from .api.router import router as api_router
from .container import BillingContainer
from .core.config import Config, get_config
from .core.exceptions import AppException, ProviderError
from .core.logging_config import get_logger, setup_logging
from .db.session import create_engine_from_config, create_session_factory, init_models
from .integrations.payment_providers.registry import ProviderRegistry
from .subscriptions.notifications import UsageTracker

logger = get_logger(__name__)


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ProviderError)
    async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
        logger.error(f"Provider error on {request.url.path}: {exc}")
        return JSONResponse(status_code=int(exc.status_code), content=exc.to_public_dict())

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=int(exc.status_code), content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": {"code": "INTERNAL_ERROR", "message": "Internal server error", "details": {}},
            },
        )


def create_app(
    config: Optional[Config] = None,
    session_factory: Optional[async_sessionmaker] = None,
    registry: Optional[ProviderRegistry] = None,
    tracker: Optional[UsageTracker] = None,
    start_background: bool = True,
) -> FastAPI:
    """
    Build the application.

    Args:
        config: Configuration, defaults to the cached environment config
        session_factory: Session factory to use instead of one built from ``config.database``
        registry: Provider registry (tests register fake providers here)
        tracker: Usage tracker receiving fire-and-forget notifications
        start_background: Start the expiry sweeper and resume unfinished deliveries
    """
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(config.logging)

        engine: Optional[AsyncEngine] = None
        factory = session_factory
        if factory is None:
            engine = create_engine_from_config(config.database)
            factory = create_session_factory(engine)
            if config.database.create_tables:
                await init_models(engine)

        if config.is_production() and not config.security.encryption_key:
            logger.warning("SECURITY_ENCRYPTION_KEY is not set; store receipts are kept as plaintext")

        container = BillingContainer.build(config, factory, registry, tracker)
        app.state.billing = container
        if start_background:
            await container.start()
        logger.info(f"{config.app_name} started in {config.environment.value} environment")

        yield

        await container.shutdown()
        if engine is not None:
            await engine.dispose()
        logger.info(f"{config.app_name} stopped")

    app = FastAPI(
        title=config.app_name,
        debug=config.debug,
        lifespan=lifespan,
    )
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    _register_exception_handlers(app)
    app.include_router(api_router, prefix="/api")
    return app
