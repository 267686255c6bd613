# snapshot_server/core/models.py
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Dict, List, Optional
import re
import secrets
import threading
import time

from pydantic import BaseModel, ConfigDict, Field, field_validator

ID_PATTERN = re.compile(r"^[A-Za-z0-9-]{1,40}$")


def new_job_id() -> str:
    # 8 random bytes, hex encoded
    return secrets.token_hex(8)


# LXD instance names are limited to 63 characters
MAX_INSTANCE_NAME = 63


def clone_name_for(source: str, token: str) -> str:
    suffix = f"-backup-{token}"
    prefix = source[: MAX_INSTANCE_NAME - len(suffix)].rstrip("-")
    return f"{prefix}{suffix}"


class JobState(str, Enum):
    created = "created"
    cloning = "cloning"
    starting = "starting"
    executing = "executing"
    collecting = "collecting"
    retrieving = "retrieving"
    stopping = "stopping"
    done = "done"
    failed = "failed"


class LookupStatus(str, Enum):
    not_found = "not_found"
    processing = "processing"
    ok = "ok"
    error = "error"


@dataclass(frozen=True)
class Lookup:
    status: LookupStatus
    error: Optional[str] = None


class JobOutcome:
    """One-shot result cell: pending until the pipeline resolves it exactly once."""

    def __init__(self):
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._ok: Optional[bool] = None
        self._error: Optional[str] = None

    def resolve(self, error: Optional[str] = None) -> None:
        with self._lock:
            if self._done.is_set():
                raise RuntimeError("job outcome already resolved")
            self._ok = error is None
            self._error = error
            self._done.set()

    def peek(self) -> Lookup:
        with self._lock:
            if not self._done.is_set():
                return Lookup(LookupStatus.processing)
            if self._ok:
                return Lookup(LookupStatus.ok)
            return Lookup(LookupStatus.error, self._error)

    def is_resolved(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)


# ---------- Wire schema ----------
class BackupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    ephemeral: bool = False
    profiles: List[str] = Field(default_factory=list)
    command: List[str] = Field(min_length=1)
    environment: Dict[str, str] = Field(default_factory=dict)
    destination: str

    @field_validator("profiles")
    @classmethod
    def profiles_not_blank(cls, v: List[str]) -> List[str]:
        for p in v:
            if not p.strip():
                raise ValueError(f"invalid profile edit: {p!r}")
        return v

    @field_validator("destination")
    @classmethod
    def destination_is_absolute(cls, v: str) -> str:
        if not PurePosixPath(v).is_absolute():
            raise ValueError("destination must be an absolute path")
        return v


# ---------- Internal record ----------
@dataclass
class Job:
    source: str
    command: List[str]
    destination: str
    id: str = field(default_factory=new_job_id)
    ephemeral: bool = False
    profiles: List[str] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    # random per job, independent of the caller-chosen id
    clone_token: str = field(default_factory=new_job_id)
    state: JobState = JobState.created
    outcome: JobOutcome = field(default_factory=JobOutcome, repr=False, compare=False)

    @property
    def clone_name(self) -> str:
        return clone_name_for(self.source, self.clone_token)

    @classmethod
    def from_request(cls, req: BackupRequest, job_id: str, created_at: float | None = None) -> "Job":
        job = cls(
            source=req.name,
            command=list(req.command),
            destination=req.destination,
            id=job_id,
            ephemeral=req.ephemeral,
            profiles=list(req.profiles),
            environment=dict(req.environment),
        )
        if created_at is not None:
            job.created_at = created_at
        return job

    def to_api(self) -> dict:
        return {
            "id": self.id,
            "name": self.source,
            "clone": self.clone_name,
            "state": self.state.value,
            "created_at": self.created_at,
        }
