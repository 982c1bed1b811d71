"""
Entry point for the jobflow automation backend.

This script creates the FastAPI application, includes all API routers and
prepares the database on startup. Run with:

    uvicorn jobflow.main:app --reload

"""

from __future__ import annotations

import logging
from fastapi import FastAPI

from .core.db import engine
from .models import Base
from .scripts.run_migrations import run_migrations_to_head

from .api import api_router
from .core.config import settings, get_app_env
from .core.errors import log_exception


def create_app() -> FastAPI:
    app = FastAPI(title="Jobflow Automations", version="0.1.0")
    # Include API routers
    app.include_router(api_router)

    @app.on_event("startup")
    def _init_db() -> None:
        logger = logging.getLogger("startup")
        env = get_app_env()
        if settings.auto_create_db:
            try:
                Base.metadata.create_all(bind=engine)
            except Exception as exc:
                log_exception(logger, "DB create_all failed", exc=exc)
                if env == "prod":
                    raise
        if settings.auto_run_migrations:
            try:
                run_migrations_to_head()
            except Exception as exc:
                log_exception(logger, "DB migrations failed", exc=exc)
                if env == "prod":
                    raise
        logger.info("Startup complete env=%s", env)

    return app


app = create_app()
