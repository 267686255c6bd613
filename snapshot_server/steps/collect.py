# snapshot_server/steps/collect.py
from __future__ import annotations
from typing import List
import logging

from snapshot_server.core.errors import SkipError

logger = logging.getLogger("snapshot_server.pipeline")


def check_path(line: str) -> str:
    if not line.startswith("/"):
        raise SkipError(f"not an absolute path: {line!r}")
    try:
        line.encode("utf-8")
    except UnicodeEncodeError:
        # undecodable bytes survive as surrogates; the file API only takes UTF-8
        raise SkipError(f"not valid UTF-8: {line!r}") from None
    return line


def collect_paths(output: str, log: logging.Logger | logging.LoggerAdapter = logger) -> List[str]:
    """
    Turn the producer command's stdout into the list of files to fetch.
    Blank lines are dropped; relative paths are logged and skipped.
    """
    paths: List[str] = []
    for lineno, raw in enumerate(output.splitlines(), start=1):
        line = raw.rstrip("\r")
        if not line.strip():
            continue
        try:
            paths.append(check_path(line))
        except SkipError as e:
            log.error("line=%d skipped: %s", lineno, e.detail)
    return paths
