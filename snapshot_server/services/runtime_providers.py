# snapshot_server/services/runtime_providers.py
from __future__ import annotations
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Protocol, Tuple
from urllib.parse import quote
import logging

import requests

from snapshot_server.config import get_settings
from snapshot_server.core.errors import OperationError, RuntimeAPIError

logger = logging.getLogger("snapshot_server.lxd")


# ---------- Interface ----------
@dataclass(frozen=True)
class CloneOptions:
    # Only the running instance, no snapshots, no memory state.
    instance_only: bool = True
    live: bool = False


@dataclass(frozen=True)
class RemoteFileInfo:
    type: str = "file"
    mode: int = 0o644


class Operation(Protocol):
    def wait(self) -> Any: ...


class RemoteStream(Protocol):
    def read(self, size: int = -1) -> bytes: ...
    def close(self) -> None: ...
    def __enter__(self) -> "RemoteStream": ...
    def __exit__(self, *exc) -> Any: ...


class ContainerRuntime(Protocol):
    def get_instance(self, name: str) -> Optional[Dict[str, Any]]: ...

    def clone(self, source: Dict[str, Any], dest_name: str, options: CloneOptions) -> Operation: ...

    def set_state(self, name: str, action: str, timeout: int, force: bool) -> Operation: ...

    def exec(
        self,
        name: str,
        argv: List[str],
        env: Dict[str, str],
        stdin: bytes,
        stdout: BinaryIO,
        stderr: BinaryIO,
    ) -> Operation: ...

    def open_file(self, name: str, path: str) -> Tuple[RemoteStream, RemoteFileInfo]: ...


# ---------- LXD REST ----------
class LXDOperation:
    """Handle on an async LXD operation; wait() blocks until it finishes."""

    def __init__(self, client: "LXDClient", url: str, on_success: Optional[Callable[[Dict[str, Any]], None]] = None):
        self.client = client
        self.url = url
        self.on_success = on_success

    def wait(self) -> Dict[str, Any]:
        op = self.client._call("GET", f"{self.url}/wait", params={"timeout": -1}, wait=True)
        if not isinstance(op, dict):
            raise OperationError(f"operation {self.url}: malformed response")
        status_code = int(op.get("status_code") or 0)
        if status_code != 200:
            err = op.get("err") or op.get("status") or "unknown error"
            raise OperationError(f"operation {self.url} failed: {err}")
        meta = op.get("metadata") or {}
        if self.on_success is not None:
            self.on_success(meta)
        return meta


class LXDFile:
    def __init__(self, resp: requests.Response):
        self._resp = resp
        self._resp.raw.decode_content = True

    def read(self, size: int = -1) -> bytes:
        return self._resp.raw.read(None if size is None or size < 0 else size)

    def close(self) -> None:
        self._resp.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class LXDClient:
    """
    Minimal LXD REST client over HTTPS with a trusted client certificate.

    Env (via Settings):
      LXD_URL            https endpoint, e.g. https://127.0.0.1:8443
      LXD_CLIENT_CERT    client certificate (PEM)
      LXD_CLIENT_KEY     client key (PEM)
      LXD_VERIFY         CA bundle path, or 0/1
      LXD_HTTP_TIMEOUT   per-request timeout in seconds (not applied to waits)
    """

    def __init__(
        self,
        base_url: str,
        cert: Optional[Tuple[str, str]] = None,
        verify: bool | str = False,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if cert:
            self.session.cert = cert
        self.session.verify = verify

    def _url(self, path: str) -> str:
        return path if path.startswith("http") else f"{self.base_url}{path}"

    def _call(self, method: str, path: str, *, wait: bool = False, **kwargs) -> Any:
        timeout = (self.timeout, None) if wait else self.timeout
        try:
            r = self.session.request(method, self._url(path), timeout=timeout, **kwargs)
        except requests.RequestException as e:
            raise RuntimeAPIError(f"{method} {path}: {e}") from e

        try:
            body = r.json()
        except ValueError:
            raise RuntimeAPIError(f"{method} {path}: non-JSON response ({r.status_code})", r.status_code)
        if not isinstance(body, dict):
            raise RuntimeAPIError(f"{method} {path}: unexpected response ({r.status_code})", r.status_code)

        if body.get("type") == "error" or r.status_code >= 400:
            raise RuntimeAPIError(
                f"{method} {path}: {body.get('error') or r.reason}",
                body.get("error_code") or r.status_code,
            )
        if body.get("type") == "async":
            return body.get("operation")
        return body.get("metadata")

    def _operation(self, method: str, path: str, on_success=None, **kwargs) -> LXDOperation:
        op_url = self._call(method, path, **kwargs)
        if not op_url:
            raise RuntimeAPIError(f"{method} {path}: expected an async operation")
        logger.debug("operation=%s method=%s path=%s", op_url, method, path)
        return LXDOperation(self, op_url, on_success=on_success)

    # ---------- Instances ----------
    def get_instance(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self._call("GET", f"/1.0/instances/{quote(name, safe='')}")
        except RuntimeAPIError as e:
            if e.code == 404:
                return None
            raise

    def clone(self, source: Dict[str, Any], dest_name: str, options: CloneOptions) -> LXDOperation:
        body = {
            "name": dest_name,
            "type": source.get("type") or "container",
            "architecture": source.get("architecture"),
            "config": dict(source.get("config") or {}),
            "devices": dict(source.get("devices") or {}),
            "ephemeral": bool(source.get("ephemeral")),
            "profiles": list(source.get("profiles") or []),
            "description": source.get("description") or "",
            "source": {
                "type": "copy",
                "source": source["name"],
                "instance_only": options.instance_only,
                "live": options.live,
            },
        }
        return self._operation("POST", "/1.0/instances", json=body)

    def set_state(self, name: str, action: str, timeout: int, force: bool) -> LXDOperation:
        body = {"action": action, "timeout": timeout, "force": force, "stateful": False}
        return self._operation("PUT", f"/1.0/instances/{quote(name, safe='')}/state", json=body)

    def exec(
        self,
        name: str,
        argv: List[str],
        env: Dict[str, str],
        stdin: bytes,
        stdout: BinaryIO,
        stderr: BinaryIO,
    ) -> LXDOperation:
        # Without a websocket LXD attaches /dev/null as stdin and records output to log files.
        if stdin:
            raise ValueError("non-empty stdin is not supported")
        body = {
            "command": list(argv),
            "environment": dict(env),
            "interactive": False,
            "wait-for-websocket": False,
            "record-output": True,
            "width": 0,
            "height": 0,
        }

        def _collect(meta: Dict[str, Any]) -> None:
            outputs = meta.get("output") or {}
            for fd, sink in (("1", stdout), ("2", stderr)):
                log_path = outputs.get(fd)
                if log_path:
                    sink.write(self._fetch_raw(log_path))
            rc = meta.get("return")
            if rc not in (None, 0):
                raise OperationError(f"command {argv!r} exited with status {rc}")

        return self._operation(
            "POST", f"/1.0/instances/{quote(name, safe='')}/exec", on_success=_collect, json=body
        )

    def _fetch_raw(self, path: str) -> bytes:
        try:
            r = self.session.get(self._url(path), timeout=self.timeout)
        except requests.RequestException as e:
            raise RuntimeAPIError(f"GET {path}: {e}") from e
        if r.status_code >= 400:
            raise RuntimeAPIError(f"GET {path}: {r.status_code}", r.status_code)
        return r.content

    # ---------- Files ----------
    def open_file(self, name: str, path: str) -> Tuple[LXDFile, RemoteFileInfo]:
        url = self._url(f"/1.0/instances/{quote(name, safe='')}/files")
        try:
            r = self.session.get(url, params={"path": path}, stream=True, timeout=self.timeout)
        except requests.RequestException as e:
            raise RuntimeAPIError(f"GET {path} on {name}: {e}") from e

        if r.status_code >= 400:
            try:
                detail = r.json().get("error") or r.reason
            except ValueError:
                detail = r.reason
            r.close()
            raise RuntimeAPIError(f"GET {path} on {name}: {detail}", r.status_code)

        info = RemoteFileInfo(
            type=r.headers.get("X-LXD-type", "file"),
            mode=int(r.headers.get("X-LXD-mode", "0644"), 8),
        )
        return LXDFile(r), info


# ---------- Factory ----------
@lru_cache(maxsize=1)
def get_runtime() -> ContainerRuntime:
    s = get_settings()
    cert = None
    if s.LXD_CLIENT_CERT and s.LXD_CLIENT_KEY:
        cert = (s.LXD_CLIENT_CERT, s.LXD_CLIENT_KEY)
    logger.info("lxd url=%s client_cert=%s verify=%s", s.LXD_URL, bool(cert), bool(s.LXD_VERIFY))
    return LXDClient(s.LXD_URL, cert=cert, verify=s.LXD_VERIFY, timeout=s.LXD_HTTP_TIMEOUT)
