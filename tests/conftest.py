"""Pytest configuration: project root on sys.path plus a recording fake of the container runtime."""

import os
import sys
import threading
from io import BytesIO

import pytest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from snapshot_server.core.errors import OperationError, RuntimeAPIError  # noqa: E402
from snapshot_server.services.runtime_providers import RemoteFileInfo  # noqa: E402


class FakeOperation:
    def __init__(self, error=None, on_wait=None):
        self.error = error
        self.on_wait = on_wait

    def wait(self):
        if self.on_wait is not None:
            self.on_wait()
        if self.error:
            raise OperationError(self.error)
        return {}


class FakeStream(BytesIO):
    pass


class FakeRuntime:
    """In-memory container runtime that records every call."""

    def __init__(self, instances=None, files=None, output=b"", fail=None):
        self.instances = instances if instances is not None else {
            "web": {
                "name": "web",
                "architecture": "x86_64",
                "profiles": ["default", "ssh"],
                "ephemeral": False,
                "config": {
                    "volatile.base_image": "abc123",
                    "volatile.eth0.hwaddr": "00:16:3e:00:00:01",
                    "volatile.idmap.current": "[]",
                    "limits.cpu": "2",
                },
                "devices": {},
            }
        }
        self.files = files or {}
        self.directories = set()
        self.open_failures = set()
        self.output = output
        self.stderr = b""
        self.fail = fail or {}
        self.exec_gate = None
        self.calls = []
        self.streams = []
        self.lock = threading.Lock()

    def _record(self, *call):
        with self.lock:
            self.calls.append(call)

    def count(self, name, action=None):
        with self.lock:
            return sum(
                1 for c in self.calls
                if c[0] == name and (action is None or c[2] == action)
            )

    def get_instance(self, name):
        self._record("get_instance", name)
        if "lookup" in self.fail:
            raise RuntimeAPIError(self.fail["lookup"], 500)
        return self.instances.get(name)

    def clone(self, source, dest_name, options):
        self._record("clone", dest_name, source, options)
        return FakeOperation(self.fail.get("clone"))

    def set_state(self, name, action, timeout, force):
        self._record("set_state", name, action, timeout, force)
        return FakeOperation(self.fail.get(action))

    def exec(self, name, argv, env, stdin, stdout, stderr):
        self._record("exec", name, argv, env, stdin)

        def _finish():
            if self.exec_gate is not None:
                self.exec_gate.wait(5)
            stdout.write(self.output)
            stderr.write(self.stderr)

        return FakeOperation(self.fail.get("exec"), on_wait=_finish)

    def open_file(self, name, path):
        self._record("open_file", name, path)
        if path in self.open_failures or (path not in self.files and path not in self.directories):
            raise RuntimeAPIError(f"{path}: not found", 404)
        if path in self.directories:
            info = RemoteFileInfo(type="directory", mode=0o755)
            stream = FakeStream(b"")
        else:
            info = RemoteFileInfo(type="file", mode=0o640)
            stream = FakeStream(self.files[path])
        self.streams.append(stream)
        return stream, info


@pytest.fixture
def runtime():
    return FakeRuntime()
