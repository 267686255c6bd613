# snapshot_server/steps/profiles.py
from __future__ import annotations
from typing import Dict, Iterable, List

VOLATILE_PREFIX = "volatile"
VOLATILE_KEEP = {"volatile.base_image"}

DEFAULT_ENVIRONMENT = {"HOME": "/root", "USER": "root"}


def merge_profiles(source: Iterable[str], edits: Iterable[str]) -> List[str]:
    """
    Apply profile edits on top of the source container's profiles, in order:
      "-"       clear everything accumulated so far
      "-name"   remove name
      "name"    add name
    Order of first appearance is kept; a name only appears once.
    """
    merged: Dict[str, None] = dict.fromkeys(source)
    for edit in edits:
        if edit == "-":
            merged.clear()
        elif edit.startswith("-"):
            merged.pop(edit[1:], None)
        else:
            merged.setdefault(edit, None)
    return list(merged)


def strip_volatile(config: Dict[str, str]) -> Dict[str, str]:
    # volatile.* keys are per-instance (MACs, idmaps, ...) and must not follow a copy
    return {
        k: v for k, v in config.items()
        if k in VOLATILE_KEEP or not k.startswith(VOLATILE_PREFIX)
    }


def build_environment(overrides: Dict[str, str] | None) -> Dict[str, str]:
    env = dict(DEFAULT_ENVIRONMENT)
    env.update(overrides or {})
    return env
