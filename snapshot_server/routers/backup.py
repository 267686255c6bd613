# snapshot_server/routers/backup.py
from __future__ import annotations
from pathlib import Path
from typing import Optional
import logging

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from snapshot_server.config import Settings, get_settings
from snapshot_server.core.errors import BackupError, BadRequestError, InternalError, NotFoundError
from snapshot_server.core.models import ID_PATTERN, BackupRequest, Job, Lookup, LookupStatus
from snapshot_server.core.registry import JobRegistry
from snapshot_server.middleware_logging import request_id_of
from snapshot_server.services.pipeline import BackupPipeline, launch
from snapshot_server.services.runtime_providers import ContainerRuntime, get_runtime

logger = logging.getLogger("snapshot_server.backup")

router = APIRouter(prefix="/backup", tags=["backup"])


def get_registry(request: Request) -> JobRegistry:
    return request.app.state.registry


def _check_destination(destination: str, settings: Settings) -> None:
    if not settings.BACKUP_ROOT:
        return
    root = Path(settings.BACKUP_ROOT).resolve()
    dest = Path(destination).resolve()
    if dest != root and root not in dest.parents:
        raise BadRequestError(f"destination must be inside {root}")


def _terminal_response(job_id: str, result: Lookup) -> JSONResponse:
    if result.status == LookupStatus.ok:
        return JSONResponse({"status": "ok", "id": job_id}, status_code=200)
    if result.status == LookupStatus.error:
        return JSONResponse({"error": result.error or "unknown error"}, status_code=500)
    if result.status == LookupStatus.processing:
        return JSONResponse({"status": "processing", "id": job_id}, status_code=202)
    raise NotFoundError(f"job {job_id} not found")


# ---------- Accept ----------
@router.post("")
def accept_backup(
    req: BackupRequest,
    request: Request,
    registry: JobRegistry = Depends(get_registry),
    runtime: ContainerRuntime = Depends(get_runtime),
    settings: Settings = Depends(get_settings),
):
    job_id = request_id_of(request)
    if not ID_PATTERN.match(job_id):
        raise BadRequestError("Request-Id must be 1-40 letters, digits or dashes")

    _check_destination(req.destination, settings)

    try:
        source = runtime.get_instance(req.name)
    except BackupError as e:
        raise InternalError(f"container lookup failed: {e.detail}") from e
    if source is None:
        raise NotFoundError(f"container {req.name!r} not found")

    job = Job.from_request(req, job_id, created_at=registry.clock())
    registry.add(job)

    pipeline = BackupPipeline(
        job,
        runtime,
        source,
        start_timeout=settings.START_TIMEOUT,
        stop_timeout=settings.STOP_TIMEOUT,
        run_log_dir=settings.RUN_LOG_DIR,
    )
    try:
        launch(pipeline)
    except RuntimeError as e:
        registry.delete(job.id)
        raise InternalError(f"could not start job: {e}") from e

    logger.info("job=%s accepted source=%s clone=%s", job.id, job.source, job.clone_name)

    grace = settings.ACCEPT_GRACE_SECONDS
    if grace > 0 and registry.wait(job.id, grace):
        result = registry.get(job.id)
        if result.status in (LookupStatus.ok, LookupStatus.error):
            return _terminal_response(job.id, result)

    return JSONResponse(
        {"status": "accepted", **job.to_api()},
        status_code=202,
    )


# ---------- Poll ----------
@router.get("")
def poll_backup(
    registry: JobRegistry = Depends(get_registry),
    request_id: Optional[str] = Header(None, alias="Request-Id"),
):
    if not request_id:
        raise BadRequestError("missing Request-Id header")
    return _terminal_response(request_id, registry.get(request_id))


@router.get("/list")
def list_backups(registry: JobRegistry = Depends(get_registry)):
    return registry.keys()
