"""
FastAPI application entry point for the gateway.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from sandgate import __version__
from sandgate.config import get_settings
from sandgate.dependencies import (
    get_supervisor,
    get_sync_engine,
    reset_dependencies,
)
from sandgate.errors import AuthError, LifecycleError, ProxyError
from sandgate.responses import bad_gateway_response, starting_response, unauthorized_response
from sandgate.routes import proxy_router, router
from sandgate.scheduler import create_scheduler, run_backup_tick

logger = logging.getLogger(__name__)


def _resolve(app: FastAPI, provider):
    return app.dependency_overrides.get(provider, provider)()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = _resolve(app, get_settings)
    settings.validate_for_startup()
    if settings.auth_dev_bypass:
        logger.warning("Authentication is bypassed (AUTH_DEV_BYPASS); do not use in production")

    engine = _resolve(app, get_sync_engine)
    supervisor = _resolve(app, get_supervisor)
    scheduler = None
    if settings.scheduler_enabled:
        scheduler = create_scheduler(
            engine,
            supervisor,
            sync_interval_seconds=settings.sync_interval_seconds,
            health_interval_seconds=settings.health_interval_seconds,
        )
        scheduler.start()
        logger.info("Backup scheduled every %ss", settings.sync_interval_seconds)

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        await supervisor.stop()
        if settings.sync_on_shutdown:
            await run_backup_tick(engine, wait=True)
        await reset_dependencies()


async def _auth_error(request: Request, exc: AuthError):
    logger.info("Rejected %s %s (%s): %s", request.method, request.url.path, exc.kind, exc)
    return unauthorized_response(exc)


async def _lifecycle_error(request: Request, exc: LifecycleError):
    logger.warning("Backend unavailable for %s %s: %s", request.method, request.url.path, exc)
    return starting_response(html="text/html" in request.headers.get("accept", ""))


async def _proxy_error(request: Request, exc: ProxyError):
    logger.warning("Bad gateway for %s %s (%s)", request.method, request.url.path, exc.kind)
    return bad_gateway_response()


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="sandgate", version=__version__, lifespan=lifespan)
    app.add_exception_handler(AuthError, _auth_error)
    app.add_exception_handler(LifecycleError, _lifecycle_error)
    app.add_exception_handler(ProxyError, _proxy_error)
    app.include_router(router, prefix=settings.admin_prefix)
    app.include_router(proxy_router)
    return app


app = create_app()
