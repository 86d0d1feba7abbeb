"""FastAPI server for the monitoring engine."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..errors import NotFoundError, PersistenceError
from ..services import Services, build_services
from .check_routes import check_router
from .incident_routes import incident_router
from .notification_routes import notification_router
from .status_routes import status_router

logger = logging.getLogger(__name__)


def attach_services(app: FastAPI, services: Services) -> None:
    """Expose every service on app.state for the route handlers."""
    app.state.services = services
    app.state.checks = services.checks
    app.state.notifications = services.notifications
    app.state.lifecycle = services.lifecycle
    app.state.orchestrator = services.orchestrator
    app.state.scheduler = services.scheduler
    app.state.subscriptions = services.subscriptions


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize stores and start the scheduler on startup."""
    services = build_services()
    attach_services(app, services)

    try:
        await services.scheduler.start()
    except Exception:
        logger.exception("Health scheduler failed to start")

    yield

    await services.close()


async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def _persistence_error(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("Storage error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Storage error"})


def create_app() -> FastAPI:
    app = FastAPI(
        title="pulsewatch",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(NotFoundError, _not_found)
    app.add_exception_handler(PersistenceError, _persistence_error)

    app.include_router(check_router, prefix="/api")
    app.include_router(incident_router, prefix="/api")
    app.include_router(notification_router, prefix="/api")
    app.include_router(status_router, prefix="/api")

    return app


app = create_app()
