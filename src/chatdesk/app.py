"""
Application factory — the FastAPI backend, with the NiceGUI front end mounted
on it when the UI is enabled.
"""
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from chatdesk import __version__
from chatdesk.api.auth_routes import router as auth_router
from chatdesk.api.routes import router as api_router
from chatdesk.config import get_config
from chatdesk.errors import register_exception_handlers
from chatdesk.logging_config import configure_logging
from chatdesk.middleware.rate_limiter import get_limiter, rate_limit_exceeded_handler
from chatdesk.services.database import close_database, init_database
from chatdesk.services.providers.router import close_provider_router

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg = get_config()
    log.info("app_starting", version=__version__, env=cfg.app.env)
    await init_database()
    log.info("app_started", rate_limiting_enabled=cfg.rate_limits.enabled)
    yield
    log.info("app_shutting_down")
    await close_provider_router()
    await close_database()
    log.info("app_stopped")


def create_app(with_ui: Optional[bool] = None) -> FastAPI:
    cfg = get_config()
    configure_logging(cfg.app.log_level, cfg.app.json_logs)

    app = FastAPI(title=cfg.app.name, version=__version__, lifespan=lifespan)

    origins = cfg.app.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        # browsers reject credentials with a wildcard origin
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.state.limiter = get_limiter()
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    app.include_router(auth_router)
    app.include_router(api_router)

    if with_ui is None:
        with_ui = cfg.ui.enabled
    if with_ui:
        from nicegui import ui

        from chatdesk.ui.pages import register_pages

        register_pages()
        ui.run_with(app, title=cfg.ui.title, storage_secret=cfg.ui.storage_secret, dark=cfg.ui.theme == "dark")

    return app
