from contextlib import asynccontextmanager

from fastapi import FastAPI

from snapshot_server.config import get_settings
from snapshot_server.core.registry import JobRegistry

from .middleware_logging import register_request_logging
from .error_handlers import register_error_handlers

import uvicorn


# =========================
# ---- Lifespan ----
# =========================
@asynccontextmanager
async def lifespan(app: FastAPI):
    s = get_settings()
    registry = JobRegistry(
        retention_seconds=s.JOB_RETENTION_MINUTES * 60,
        prune_interval_seconds=s.PRUNE_INTERVAL_MINUTES * 60,
    )
    registry.start()
    app.state.registry = registry
    try:
        yield
    finally:
        registry.stop()


# =========================
# ---- App Init ----
# =========================
app = FastAPI(title="LXD Snapshot Server", version="0.1.0", lifespan=lifespan)
register_request_logging(app)
register_error_handlers(app)


from snapshot_server.routers.backup import router as backup_router
app.include_router(backup_router)

from snapshot_server.routers.health import router as health_router
app.include_router(health_router)


def run() -> None:
    s = get_settings()
    uvicorn.run("snapshot_server.main:app", host=s.HOST, port=s.PORT, log_level=s.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
