from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from ..config import Settings, get_settings
from ..db.base import BaseDBManager
from ..db.mongo import MongoDBManager
from ..errors import LedgerError
from .middleware import TaskChargingMiddleware
from .router import build_services, create_router, ledger_error_handler


logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(
    settings: Optional[Settings] = None, db: Optional[BaseDBManager] = None
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)
    services = build_services(settings, db=db)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if isinstance(services.db, MongoDBManager):
            await services.db.ensure_indexes()

        stop_event = asyncio.Event()
        sweeper_task: Optional[asyncio.Task] = None
        if settings.SWEEPER_ENABLED:
            sweeper_task = asyncio.create_task(
                services.sweeper.run_periodically(settings.SWEEP_INTERVAL_SECONDS, stop_event)
            )
        try:
            yield
        finally:
            stop_event.set()
            if sweeper_task is not None:
                await sweeper_task

    app = FastAPI(title="Credit Ledger", lifespan=lifespan)
    app.state.services = services
    app.include_router(create_router(services))
    app.add_exception_handler(LedgerError, ledger_error_handler)

    if settings.CHARGED_PATH_PREFIX:
        app.add_middleware(
            TaskChargingMiddleware,
            tasks=services.tasks,
            path_prefix=settings.CHARGED_PATH_PREFIX,
            default_cost=settings.DEFAULT_TASK_COST,
        )
        logger.info("Charging tasks under %s", settings.CHARGED_PATH_PREFIX)
    return app
