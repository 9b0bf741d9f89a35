import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from experttalk.api.v1.api import api_router
from experttalk.core import database
from experttalk.core.config import settings
from experttalk.core.database import check_db_connection, create_session_factory, init_db
from experttalk.core.exceptions import ExpertTalkError
from experttalk.core.logging import setup_logging
from experttalk.core.websocket import ChatGateway
from experttalk.services.billing_service import BillingService, Clock, utcnow
from experttalk.services.presence_service import PresenceService
from experttalk.services.session_service import ChatSessionService
from experttalk.websockets.connection_manager import ConnectionManager

logger = logging.getLogger(__name__)


def create_app(
    engine: Optional[AsyncEngine] = None,
    clock: Clock = utcnow,
    enable_expiry_sweep: bool = settings.EXPIRY_SWEEP_ENABLED,
) -> FastAPI:
    engine = engine or database.engine
    session_factory = create_session_factory(engine)
    connection_manager = ConnectionManager(queue_size=settings.WEBSOCKET_SEND_QUEUE_SIZE)
    gateway = ChatGateway(connection_manager, session_factory, clock=clock)
    presence = PresenceService(session_factory)
    session_service = ChatSessionService(session_factory, gateway, presence, clock=clock)
    billing_service = BillingService(
        session_service,
        interval_seconds=settings.EXPIRY_SWEEP_INTERVAL_SECONDS,
        grace_seconds=settings.EXPIRY_GRACE_SECONDS,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
        logger.info("Starting up...")

        await init_db(engine)

        monitor = None
        if enable_expiry_sweep:
            monitor = asyncio.create_task(billing_service.start_monitoring())

        yield

        logger.info("Shutting down...")
        if monitor is not None:
            monitor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await monitor
        await connection_manager.disconnect_all()
        await engine.dispose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.connection_manager = connection_manager
    app.state.gateway = gateway
    app.state.presence = presence
    app.state.session_service = session_service
    app.state.billing_service = billing_service

    if settings.BACKEND_CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_middleware(GZipMiddleware, minimum_size=1000)

    app.include_router(api_router, prefix=settings.API_V1_STR)

    @app.get("/health")
    async def health_check():
        db_ok = await check_db_connection(engine)
        return {
            "status": "ok" if db_ok else "degraded",
            "database": db_ok,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.exception_handler(ExpertTalkError)
    async def expert_talk_exception_handler(request: Request, exc: ExpertTalkError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("experttalk.main:app", host="0.0.0.0", port=8000, reload=True)
