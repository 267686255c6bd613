# snapshot_server/services/pipeline.py
from __future__ import annotations
from io import BytesIO
from typing import Any, Dict, List, Optional
import datetime
import logging
import threading

from snapshot_server.core.errors import BackupError, InternalError
from snapshot_server.core.models import Job, JobState
from snapshot_server.services.runlog import append_run_log
from snapshot_server.services.runtime_providers import CloneOptions, ContainerRuntime
from snapshot_server.steps.collect import collect_paths
from snapshot_server.steps.profiles import build_environment, merge_profiles, strip_volatile
from snapshot_server.steps.retrieve import RetrievalReport, retrieve_files

logger = logging.getLogger("snapshot_server.pipeline")

START_TIMEOUT = 120
STOP_TIMEOUT = 2


class JobLog(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return f"job={self.extra['job']} clone={self.extra['clone']} {msg}", kwargs


class BackupPipeline:
    """
    Drives one job: clone -> start -> exec -> collect -> retrieve -> stop.

    run() is meant to be the whole body of a dedicated thread. Every exit path
    goes through _finalize(), which stops the clone (if one was created) and
    then resolves the job outcome exactly once.
    """

    def __init__(
        self,
        job: Job,
        runtime: ContainerRuntime,
        source: Dict[str, Any],
        start_timeout: int = START_TIMEOUT,
        stop_timeout: int = STOP_TIMEOUT,
        run_log_dir: Optional[str] = None,
    ):
        self.job = job
        self.runtime = runtime
        self.source = source
        self.start_timeout = start_timeout
        self.stop_timeout = stop_timeout
        self.run_log_dir = run_log_dir
        self.log = JobLog(logger, {"job": job.id, "clone": job.clone_name})
        self.clone_created = False
        self.output = b""
        self.paths: List[str] = []
        self.report = RetrievalReport()

    def _enter(self, state: JobState) -> None:
        self.job.state = state
        self.log.debug("state=%s", state.value)

    # ---------- Steps ----------
    def clone_spec(self) -> Dict[str, Any]:
        src = self.source
        return {
            **src,
            "name": self.job.source,
            "profiles": merge_profiles(src.get("profiles") or [], self.job.profiles),
            "ephemeral": self.job.ephemeral,
            "config": strip_volatile(dict(src.get("config") or {})),
        }

    def clone(self) -> None:
        self._enter(JobState.cloning)
        spec = self.clone_spec()
        self.log.debug("profiles=%s ephemeral=%s", spec["profiles"], spec["ephemeral"])
        try:
            self.runtime.clone(spec, self.job.clone_name, CloneOptions(instance_only=True, live=False)).wait()
        except Exception as e:
            raise InternalError(f"clone failed: {e}") from e
        self.clone_created = True
        self.log.debug("clone finished")

    def start(self) -> None:
        self._enter(JobState.starting)
        try:
            self.runtime.set_state(self.job.clone_name, "start", self.start_timeout, False).wait()
        except Exception as e:
            raise InternalError(f"start failed: {e}") from e
        self.log.debug("clone started")

    def execute(self) -> None:
        self._enter(JobState.executing)
        stdout, stderr = BytesIO(), BytesIO()
        env = build_environment(self.job.environment)
        self.log.debug("exec command=%s", self.job.command)
        try:
            op = self.runtime.exec(self.job.clone_name, self.job.command, env, b"", stdout, stderr)
            op.wait()
        except Exception as e:
            raise InternalError(f"exec failed: {e}") from e
        finally:
            if stderr.getvalue():
                self.log.debug("stderr=%r", stderr.getvalue()[:2000])
        self.output = stdout.getvalue()
        self.log.debug("exec finished bufsize=%d", len(self.output))

    def collect(self) -> None:
        self._enter(JobState.collecting)
        self.paths = collect_paths(self.output.decode("utf-8", errors="surrogateescape"), log=self.log)
        self.log.debug("collected=%d", len(self.paths))

    def retrieve(self) -> None:
        self._enter(JobState.retrieving)
        self.report = retrieve_files(
            self.runtime, self.job.clone_name, self.paths, self.job.destination, log=self.log
        )
        self.log.info("copied=%d skipped=%d", len(self.report.copied), len(self.report.skipped))

    def stop(self) -> None:
        self._enter(JobState.stopping)
        try:
            self.runtime.set_state(self.job.clone_name, "stop", self.stop_timeout, True).wait()
        except Exception as e:
            # never overturns the job result
            self.log.error("stopping clone failed: %s", e)
            return
        self.log.debug("clone stopped")

    # ---------- Driver ----------
    def run(self) -> None:
        error: Optional[str] = None
        try:
            self.clone()
            self.start()
            self.execute()
            self.collect()
            self.retrieve()
        except BackupError as e:
            error = e.detail
            self.log.error("%s", error)
        except Exception as e:
            error = f"unexpected error: {e}"
            self.log.exception("pipeline crashed")
        self._finalize(error)

    def _finalize(self, error: Optional[str]) -> None:
        if self.clone_created:
            self.stop()
        self.job.state = JobState.failed if error else JobState.done
        self._journal(error)
        self.job.outcome.resolve(error)
        self.log.info("finished state=%s", self.job.state.value)

    def _journal(self, error: Optional[str]) -> None:
        if not self.run_log_dir:
            return
        entry = {
            "id": self.job.id,
            "source": self.job.source,
            "clone": self.job.clone_name,
            "ok": error is None,
            "error": error,
            "copied": self.report.copied,
            "skipped": self.report.skipped,
            "finished_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }
        try:
            append_run_log(entry, self.run_log_dir)
        except OSError as e:
            self.log.error("run log write failed: %s", e)


def launch(pipeline: BackupPipeline) -> threading.Thread:
    t = threading.Thread(target=pipeline.run, name=f"backup-{pipeline.job.id}", daemon=True)
    t.start()
    return t
