from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from gatekeeper import __version__
from gatekeeper.config import Settings
from gatekeeper.controllers import v1
from gatekeeper.db import init_db
from gatekeeper.logger import setup_logging
from gatekeeper.services.reset import reset_scheduler

settings = Settings()
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await asyncio.to_thread(init_db, settings)
    if settings.reset_scheduler_autostart:
        await reset_scheduler.start()
    yield
    await reset_scheduler.stop()


app = FastAPI(
    title="Gatekeeper Usage Governance API",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(v1.router)

Instrumentator().instrument(app).expose(app)
