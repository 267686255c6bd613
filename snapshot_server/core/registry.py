# snapshot_server/core/registry.py
from __future__ import annotations
from typing import Callable, Dict, List, Optional
import logging
import threading
import time

from .errors import ConflictError, DuplicateJobError
from .models import Job, Lookup, LookupStatus

logger = logging.getLogger("snapshot_server.registry")

DEFAULT_RETENTION_SECONDS = 120 * 60


class JobRegistry:
    """
    In-memory map of correlation id -> Job.

    Every mutation happens under one lock. A terminal result is handed to the
    first caller of get() and the entry is dropped in the same critical
    section, so later lookups see NOT_FOUND. A background thread evicts jobs
    older than the retention window whether or not they finished.
    """

    def __init__(
        self,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        prune_interval_seconds: float = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.retention_seconds = retention_seconds
        self.prune_interval_seconds = prune_interval_seconds
        self.clock = clock
        self._jobs: Dict[str, Job] = {}
        self._clones: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---------- Mutation ----------
    def add(self, job: Job) -> None:
        with self._lock:
            if job.id in self._jobs:
                raise DuplicateJobError(job.id)
            if job.clone_name in self._clones:
                raise ConflictError(f"clone {job.clone_name} is already in use")
            self._jobs[job.id] = job
            self._clones[job.clone_name] = job.id
        logger.debug("job=%s added clone=%s", job.id, job.clone_name)

    def get(self, job_id: str) -> Lookup:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return Lookup(LookupStatus.not_found)
            result = job.outcome.peek()
            if result.status != LookupStatus.processing:
                self._remove(job)
        if result.status != LookupStatus.processing:
            logger.debug("job=%s consumed status=%s", job_id, result.status.value)
        return result

    def delete(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                self._remove(job)
        if job is not None:
            logger.debug("job=%s deleted", job_id)

    def _remove(self, job: Job) -> None:
        # caller holds the lock
        del self._jobs[job.id]
        self._clones.pop(job.clone_name, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._jobs)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the job is terminal. Does not consume the result."""
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            return False
        return job.outcome.wait(timeout)

    # ---------- Eviction ----------
    def prune(self) -> List[str]:
        now = self.clock()
        with self._lock:
            expired = [
                job for job in self._jobs.values()
                if now - job.created_at > self.retention_seconds
            ]
            for job in expired:
                self._remove(job)

        for job in expired:
            # eviction does not touch the clone; log it so it can be cleaned up by hand
            logger.warning(
                "job=%s evicted age_s=%.0f finished=%s clone=%s",
                job.id, now - job.created_at, job.outcome.is_resolved(), job.clone_name,
            )
        return [job.id for job in expired]

    def _prune_loop(self) -> None:
        while not self._stop.wait(self.prune_interval_seconds):
            try:
                self.prune()
            except Exception:
                logger.exception("prune pass failed")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._prune_loop, name="job-registry-prune", daemon=True
        )
        self._thread.start()
        logger.info(
            "prune thread started retention_s=%.0f interval_s=%.0f",
            self.retention_seconds, self.prune_interval_seconds,
        )

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("prune thread stopped")
