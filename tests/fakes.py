"""Hand-written fakes for subprocesses, HTTP, service managers and the supervisor."""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import requests

from velociraptor_deployer.errors import ServiceError
from velociraptor_deployer.models import (
    PlatformKind,
    ProcessHandle,
    ReadinessResult,
    ServiceDescriptor,
    ServiceStatus,
    utc_now,
)
from velociraptor_deployer.runner import CommandResult, CommandRunner
from velociraptor_deployer.services.base import ServiceManager
from velociraptor_deployer.supervisor import ProcessSupervisor

DEFAULT_CONFIG = """\
version:
  name: velociraptor
  version: 0.7.1
Client:
  server_urls:
  - https://localhost:8000/
  ca_certificate: |
    -----BEGIN CERTIFICATE-----
    MIIDTDCCAjSgAwIBAgIRAJHfake
    -----END CERTIFICATE-----
  nonce: Xy12abc
API:
  bind_address: 127.0.0.1
  bind_port: 8001
GUI:
  bind_address: 127.0.0.1
  bind_port: 8889 # admin interface
  gw_certificate: |
    -----BEGIN CERTIFICATE-----
    MIIDTDCCAjSgAwIBAgIRAJHgui
    -----END CERTIFICATE-----
Frontend:
  hostname: localhost
  bind_address: 0.0.0.0
  bind_port: 8000
Datastore:
  implementation: FileBaseDataStore
  location: /var/tmp/velociraptor
  filestore_directory: /var/tmp/velociraptor
"""

Handler = Callable[[list[str]], CommandResult | None]


def ok(argv: Sequence[str], stdout: str = "") -> CommandResult:
    return CommandResult(tuple(argv), 0, stdout, "")


def failed(argv: Sequence[str], code: int = 1, stderr: str = "boom") -> CommandResult:
    return CommandResult(tuple(argv), code, "", stderr)


class FakeRunner(CommandRunner):
    """Records argv lists; ``handler`` may return a result, None means success."""

    def __init__(self, handler: Handler | None = None) -> None:
        super().__init__()
        self.handler = handler
        self.calls: list[list[str]] = []
        self.secrets: list[str] = []

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        secrets: Sequence[str] = (),
        cwd: Path | None = None,
    ) -> CommandResult:
        args = [str(item) for item in argv]
        self.calls.append(args)
        self.secrets.extend(secrets)
        if self.handler is not None:
            result = self.handler(args)
            if result is not None:
                return result
        return ok(args)

    def commands_starting_with(self, *prefix: str) -> list[list[str]]:
        return [call for call in self.calls if call[: len(prefix)] == list(prefix)]


def binary_handler(
    *,
    config_text: str = DEFAULT_CONFIG,
    write_config: bool = True,
    show_exit: int = 0,
    user_add_exit: int = 0,
    version_exit: int = 0,
) -> Handler:
    """Emulate the server binary's command-line surface."""

    def handle(argv: list[str]) -> CommandResult | None:
        rest = argv[1:]
        if rest[:2] == ["config", "generate"]:
            if write_config:
                Path(rest[rest.index("--config") + 1]).write_text(config_text, encoding="utf-8")
                return ok(argv)
            return ok(argv, stdout=config_text)
        if rest[:2] == ["config", "show"]:
            return CommandResult(tuple(argv), show_exit, "", "" if show_exit == 0 else "bad config")
        if rest[:2] == ["user", "add"]:
            return CommandResult(tuple(argv), user_add_exit, "", "")
        if rest[:1] == ["version"]:
            banner = "name: velociraptor\nversion: 0.7.1"
            return CommandResult(tuple(argv), version_exit, banner, "")
        return None

    return handle


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        *,
        payload: Any = None,
        body: bytes = b"",
        chunk_size: int = 4,
        raise_during_stream: Exception | None = None,
    ) -> None:
        self.status_code = status_code
        self.headers: dict[str, str] = {}
        self._payload = payload
        self._body = body
        self._chunk_size = chunk_size
        self._raise = raise_during_stream
        self.closed = False

    def json(self) -> Any:
        if self._payload is None:
            return json.loads(self._body.decode("utf-8"))
        return self._payload

    def iter_content(self, chunk_size: int = 1) -> Any:
        for start in range(0, len(self._body), self._chunk_size):
            yield self._body[start : start + self._chunk_size]
            if self._raise is not None:
                raise self._raise

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Returns queued responses (or raises queued exceptions) in order."""

    def __init__(self, *responses: FakeResponse | Exception) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append((url, kwargs))
        if not self.responses:
            raise requests.ConnectionError("no response queued")
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


class FakeServiceManager(ServiceManager):
    """In-memory service registry."""

    platform_kind = PlatformKind.SYSTEMD

    def __init__(self) -> None:
        super().__init__(runner=FakeRunner(), settle_seconds=0.0, sleep=lambda _seconds: None)
        self.services: dict[str, dict[str, Any]] = {}
        self.events: list[tuple[str, str]] = []
        self.fail_start = False

    def install(
        self,
        descriptor: ServiceDescriptor,
        binary_path: Path,
        config_path: Path,
        *,
        auto_start: bool = True,
    ) -> None:
        self.events.append(("install", descriptor.name))
        entry = self.services.setdefault(descriptor.name, {"running": False})
        entry.update(
            descriptor=descriptor,
            command=self.command_line(binary_path, config_path),
            auto_start=auto_start,
        )
        if auto_start:
            self.start(descriptor.name)

    def uninstall(self, name: str) -> None:
        self.events.append(("uninstall", name))
        self.services.pop(name, None)

    def start(self, name: str) -> None:
        self.events.append(("start", name))
        if self.fail_start:
            raise ServiceError(f"cannot start {name}", stage="SERVICE_STARTING")
        self.services[name]["running"] = True

    def stop(self, name: str) -> None:
        self.events.append(("stop", name))
        if name in self.services:
            self.services[name]["running"] = False

    def logs(self, name: str, lines: int = 50) -> str:
        return f"{name} log line\n" * min(lines, 2)

    def _query_status(self, name: str) -> ServiceStatus:
        entry = self.services.get(name)
        if entry is None:
            return ServiceStatus.missing(name)
        start_type = "auto" if entry.get("auto_start") else "manual"
        return ServiceStatus(name, bool(entry["running"]), start_type, True)


class FakeSupervisor(ProcessSupervisor):
    """Supervisor whose readiness answer is scripted and whose processes are fake."""

    def __init__(self, *, ready: bool = True) -> None:
        super().__init__(grace_seconds=0.0, sleep=lambda _seconds: None)
        self.ready = ready
        self.started: list[list[str]] = []
        self.terminated: list[int] = []
        self.readiness_calls: list[tuple[int, float]] = []
        self._next_pid = 4000

    def start(
        self,
        binary_path: Path,
        args: Sequence[str],
        *,
        log_path: Path | None = None,
        pid_file: Path | None = None,
    ) -> ProcessHandle:
        self.started.append([str(binary_path), *args])
        self._next_pid += 1
        if pid_file is not None:
            pid_file.parent.mkdir(parents=True, exist_ok=True)
            pid_file.write_text(f"{self._next_pid}\n", encoding="utf-8")
        return ProcessHandle(pid=self._next_pid, start_time=utc_now(), pid_file=pid_file)

    def terminate(self, handle: ProcessHandle) -> None:
        self.terminated.append(handle.pid)
        if handle.pid_file is not None:
            handle.pid_file.unlink(missing_ok=True)

    def wait_for_readiness(
        self, port: int, timeout_seconds: float, **kwargs: Any
    ) -> ReadinessResult:
        self.readiness_calls.append((port, timeout_seconds))
        url = f"https://{kwargs.get('host', '127.0.0.1')}:{port}/"
        if self.ready:
            return ReadinessResult(True, url, 401, 0.1)
        return ReadinessResult(False, url, None, timeout_seconds)
