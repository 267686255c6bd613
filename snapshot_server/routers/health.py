# snapshot_server/routers/health.py
from fastapi import APIRouter, Depends, Request

from snapshot_server.config import Settings, get_settings

router = APIRouter()


@router.get("/health")
def health_check(request: Request, s: Settings = Depends(get_settings)):
    registry = getattr(request.app.state, "registry", None)
    return {
        "status": "ok",
        "version": request.app.version,
        "jobs": len(registry) if registry is not None else 0,
        # LXD (no secrets)
        "lxd": {
            "url": s.LXD_URL,
            "client_cert": bool(s.LXD_CLIENT_CERT),
        },
        "jobs_config": {
            "retention_minutes": s.JOB_RETENTION_MINUTES,
            "prune_interval_minutes": s.PRUNE_INTERVAL_MINUTES,
            "accept_grace_seconds": s.ACCEPT_GRACE_SECONDS,
            "backup_root": s.BACKUP_ROOT,
        },
    }
