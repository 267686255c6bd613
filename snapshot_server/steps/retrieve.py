# snapshot_server/steps/retrieve.py
from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple
import logging
import os
import posixpath
import shutil

from snapshot_server.core.errors import InternalError, SkipError
from snapshot_server.services.runtime_providers import ContainerRuntime, RemoteFileInfo, RemoteStream

logger = logging.getLogger("snapshot_server.pipeline")

CHUNK = 1024 * 1024


@dataclass
class RetrievalReport:
    copied: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def destination_for(destination: str | os.PathLike[str], remote_path: str) -> Path:
    # flat layout: only the basename is kept
    return Path(destination) / posixpath.basename(remote_path)


def _write_exclusive(stream: RemoteStream, dest: Path, mode: int) -> None:
    flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL
    try:
        fd = os.open(str(dest), flags, mode & 0o777)
    except OSError as e:
        raise SkipError(f"cannot create {dest} exclusively: {e}") from e
    try:
        with os.fdopen(fd, "wb") as f:
            shutil.copyfileobj(stream, f, length=CHUNK)
    except OSError as e:
        raise SkipError(f"transfer to {dest} failed: {e}") from e


def _close_all(opened: List[Tuple[str, RemoteStream, RemoteFileInfo]]) -> None:
    for _, stream, _ in opened:
        try:
            stream.close()
        except Exception:
            logger.debug("close failed", exc_info=True)


def retrieve_files(
    runtime: ContainerRuntime,
    instance: str,
    paths: List[str],
    destination: str | os.PathLike[str],
    log: logging.Logger | logging.LoggerAdapter = logger,
) -> RetrievalReport:
    """
    Copy each remote path from `instance` into `destination`.

    Open phase: every path is opened on the instance. If any of them cannot be
    opened or is a directory, nothing is written and InternalError is raised.
    Transfer phase: each file is written with exclusive create; a file that
    cannot be written is logged and skipped.
    """
    report = RetrievalReport()
    if not paths:
        return report

    opened: List[Tuple[str, RemoteStream, RemoteFileInfo]] = []
    failures: List[str] = []
    for path in paths:
        try:
            stream, info = runtime.open_file(instance, path)
        except Exception as e:
            log.error("path=%s open failed: %s", path, e)
            failures.append(path)
            continue
        if info.type == "directory":
            stream.close()
            log.error("path=%s is a directory", path)
            failures.append(path)
            continue
        opened.append((path, stream, info))

    if failures:
        _close_all(opened)
        raise InternalError(f"could not open {len(failures)} of {len(paths)} file(s) on {instance}: {', '.join(failures)}")

    dest_dir = Path(destination)
    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        log.error("destination=%s not usable: %s", dest_dir, e)

    try:
        while opened:
            path, stream, info = opened.pop(0)
            dest = destination_for(dest_dir, path)
            with stream:
                try:
                    _write_exclusive(stream, dest, info.mode)
                except SkipError as e:
                    log.error("path=%s skipped: %s", path, e.detail)
                    report.skipped.append(path)
                    continue
            log.debug("path=%s copied to %s", path, dest)
            report.copied.append(path)
    finally:
        # anything not reached yet
        _close_all(opened)
    return report
