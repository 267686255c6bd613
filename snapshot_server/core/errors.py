# snapshot_server/core/errors.py
from __future__ import annotations


class BackupError(Exception):
    """Base for every error this service raises on purpose."""

    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(BackupError):
    status_code = 404


class BadRequestError(BackupError):
    status_code = 400


class ConflictError(BackupError):
    status_code = 409


class DuplicateJobError(ConflictError):
    def __init__(self, job_id: str):
        super().__init__(f"job {job_id} is already tracked")
        self.job_id = job_id


class InternalError(BackupError):
    status_code = 500


class SkipError(BackupError):
    """A single collected path or file transfer that is logged and skipped."""


# ---------- Remote runtime ----------
class RuntimeAPIError(BackupError):
    """The container runtime rejected a request outright."""

    def __init__(self, detail: str, code: int | None = None):
        super().__init__(detail)
        self.code = code


class OperationError(BackupError):
    """A background operation on the container runtime finished unsuccessfully."""
