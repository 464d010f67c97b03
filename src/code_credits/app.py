"""
FastAPI application for the credit and subscription engine.

Run:
  code-credits-server
or
  uvicorn code_credits.app:create_app --factory --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from . import __version__
from .api.errors import install_exception_handlers
from .api.middleware import UserIdentityMiddleware
from .api.router import router
from .container import Services, build_services
from .db.mongo import MongoDBManager


logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if isinstance(services.db, MongoDBManager):
            await services.db.ensure_indexes()

        scheduler = services.scheduler() if services.config.SWEEPS_ENABLED else None
        if scheduler is not None:
            scheduler.start()
        logger.info("Credit engine started (sweeps %s)", "on" if scheduler else "off")

        yield

        if scheduler is not None:
            await scheduler.stop()
        logger.info("Credit engine stopped")

    app = FastAPI(title="Code execution credits", version=__version__, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        UserIdentityMiddleware,
        path_prefix="/api",
        user_id_header="X-User-Id",
        skip_paths=("/api/plans", "/api/users/register", "/api/admin", "/api/health"),
    )
    install_exception_handlers(app)
    app.include_router(router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app


def main() -> None:
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run("code_credits.app:create_app", factory=True, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
