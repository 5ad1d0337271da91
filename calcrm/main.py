import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calcrm.api.v1.endpoints.api import api_router
from calcrm.core import background_tasks
from calcrm.core.config import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    manager = None
    if settings.SWEEPER_ENABLED:
        manager = background_tasks.BackgroundTaskManager()
        background_tasks.background_task_manager = manager
        await manager.start()
    try:
        yield
    finally:
        if manager is not None:
            await manager.stop()
            background_tasks.background_task_manager = None


app = FastAPI(title="Calibration CRM Coordination API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o for o in settings.CORS_ALLOW_ORIGINS.split(",") if o] or ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
def health():
    return {"status": "up"}
