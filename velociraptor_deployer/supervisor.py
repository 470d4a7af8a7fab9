"""Direct process launch, termination and readiness polling."""

from __future__ import annotations

import ctypes
import os
import signal
import socket
import subprocess  # nosec B404
import threading
import time
import warnings
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import requests
from urllib3.exceptions import InsecureRequestWarning

from velociraptor_deployer.errors import ServiceError
from velociraptor_deployer.logging_utils import get_logger
from velociraptor_deployer.models import ProcessHandle, ReadinessResult, utc_now
from velociraptor_deployer.transport import HttpSession, build_session

LOGGER = get_logger("supervisor")

READY_STATUS_CODES = frozenset({200, 302, 401})
POLL_INTERVAL_SECONDS = 1.0
START_GRACE_SECONDS = 3.0
STOP_GRACE_SECONDS = 10.0

_PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
_STILL_ACTIVE = 259


class ProcessSupervisor:
    """Launch the server as a plain child process and watch it come up."""

    def __init__(
        self,
        *,
        grace_seconds: float = START_GRACE_SECONDS,
        stop_grace_seconds: float = STOP_GRACE_SECONDS,
        poll_interval_seconds: float = POLL_INTERVAL_SECONDS,
        session: HttpSession | None = None,
        sleep: Callable[[float], None] = time.sleep,
        popen: Callable[..., subprocess.Popen[bytes]] = subprocess.Popen,
    ) -> None:
        self.grace_seconds = grace_seconds
        self.stop_grace_seconds = stop_grace_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._session = session
        self._sleep = sleep
        self._popen = popen

    def start(
        self,
        binary_path: Path,
        args: Sequence[str],
        *,
        log_path: Path | None = None,
        pid_file: Path | None = None,
    ) -> ProcessHandle:
        """Spawn ``binary_path args`` and confirm it survives the grace period."""
        argv = [str(binary_path), *[str(item) for item in args]]
        log_handle: Any = subprocess.DEVNULL
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_handle = log_path.open("ab")
        try:
            process = self._popen(  # nosec B603
                argv,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                start_new_session=os.name != "nt",
            )
        except OSError as exc:
            raise ServiceError(
                f"Could not launch {binary_path}: {exc}", stage="SERVICE_STARTING"
            ) from exc
        finally:
            if log_path is not None:
                log_handle.close()

        handle = ProcessHandle(
            pid=process.pid,
            start_time=utc_now(),
            pid_file=pid_file,
            log_path=log_path,
            process=process,
        )
        try:
            if pid_file is not None:
                pid_file.parent.mkdir(parents=True, exist_ok=True)
                pid_file.write_text(f"{process.pid}\n", encoding="utf-8")
            LOGGER.info("Process started", extra={"pid": process.pid, "binary": str(binary_path)})
            self._sleep(self.grace_seconds)
        except BaseException:
            LOGGER.error("Start interrupted; terminating process", extra={"pid": process.pid})
            self._discard(handle)
            raise

        if not self.is_alive(handle):
            _remove_pid_file(handle)
            raise ServiceError(
                f"Process {handle.pid} exited with code {handle.exit_code} during startup."
                + _log_tail(log_path),
                stage="SERVICE_STARTING",
            )
        return handle

    @staticmethod
    def is_alive(handle: ProcessHandle) -> bool:
        """Return whether the process is still running, recording its exit code if not."""
        if handle.process is not None:
            code = handle.process.poll()
            if code is not None:
                handle.exit_code = code
                return False
            return True
        return pid_alive(handle.pid)

    def terminate(self, handle: ProcessHandle) -> None:
        """Stop the process, escalating to a kill after the stop grace period."""
        try:
            if handle.process is not None:
                process = handle.process
                if process.poll() is None:
                    process.terminate()
                    try:
                        process.wait(timeout=self.stop_grace_seconds)
                    except subprocess.TimeoutExpired:
                        LOGGER.warning(
                            "Process ignored terminate; killing", extra={"pid": handle.pid}
                        )
                        process.kill()
                        process.wait(timeout=self.stop_grace_seconds)
                handle.exit_code = process.returncode
            elif self.is_alive(handle):
                os.kill(handle.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        finally:
            _remove_pid_file(handle)
        LOGGER.info("Process terminated", extra={"pid": handle.pid, "exit_code": handle.exit_code})

    def _discard(self, handle: ProcessHandle) -> None:
        """Terminate a process whose start did not complete; the pid file may be unusable."""
        try:
            self.terminate(handle)
        except OSError as exc:
            LOGGER.warning(
                "Cleanup after failed start incomplete",
                extra={"pid": handle.pid, "error": str(exc)},
            )

    @staticmethod
    def handle_from_pid_file(pid_file: Path) -> ProcessHandle | None:
        """Rebuild a handle from a pid file left by an earlier launch."""
        try:
            pid = int(pid_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None
        return ProcessHandle(pid=pid, start_time=utc_now(), pid_file=pid_file)

    def wait_for_readiness(
        self,
        port: int,
        timeout_seconds: float,
        *,
        host: str = "127.0.0.1",
        scheme: str = "https",
        cancel_event: threading.Event | None = None,
    ) -> ReadinessResult:
        """Poll ``host:port`` until it answers HTTP 200, 302 or 401.

        TCP connect is tried once per poll interval; each successful connect
        is followed by one HTTP probe that accepts self-signed certificates.
        Returns ``ready=False`` once ``timeout_seconds`` has elapsed or
        ``cancel_event`` is set, never raising for a slow service.
        """
        url = f"{scheme}://{host}:{port}/"
        started = time.monotonic()
        deadline = started + max(timeout_seconds, 0.0)
        last_status: int | None = None
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            if tcp_connectable(host, port, min(POLL_INTERVAL_SECONDS, remaining)):
                remaining = deadline - time.monotonic()
                if remaining > 0:
                    last_status = self._probe(url, min(5.0, remaining))
                    if last_status in READY_STATUS_CODES:
                        elapsed = time.monotonic() - started
                        LOGGER.info("Service ready", extra={"url": url, "status_code": last_status})
                        return ReadinessResult(True, url, last_status, elapsed)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            pause = min(self.poll_interval_seconds, remaining)
            if cancel_event is not None:
                if cancel_event.wait(pause):
                    LOGGER.warning("Readiness poll cancelled", extra={"url": url})
                    break
            else:
                time.sleep(pause)
        elapsed = time.monotonic() - started
        LOGGER.warning(
            "Service not ready before deadline", extra={"url": url, "timeout": timeout_seconds}
        )
        return ReadinessResult(False, url, last_status, elapsed)

    def _probe(self, url: str, timeout: float) -> int | None:
        if self._session is None:
            self._session = build_session()
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", InsecureRequestWarning)
                response = self._session.get(
                    url,
                    timeout=timeout,
                    verify=False,  # nosec B501
                    allow_redirects=False,
                )
        except requests.RequestException as exc:
            LOGGER.debug("Readiness probe failed", extra={"url": url, "error": str(exc)})
            return None
        try:
            return int(response.status_code)
        finally:
            response.close()


def pid_alive(pid: int) -> bool:
    """Return whether a process with ``pid`` exists, without signalling it."""
    if pid <= 0:
        return False
    if os.name == "nt":
        kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
        process = kernel32.OpenProcess(_PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
        if not process:
            return False
        try:
            exit_code = ctypes.c_ulong()
            if not kernel32.GetExitCodeProcess(process, ctypes.byref(exit_code)):
                return False
            return exit_code.value == _STILL_ACTIVE
        finally:
            kernel32.CloseHandle(process)
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def tcp_connectable(host: str, port: int, timeout: float) -> bool:
    """Return whether a TCP connection to ``host:port`` succeeds within ``timeout``."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def _remove_pid_file(handle: ProcessHandle) -> None:
    if handle.pid_file is not None:
        handle.pid_file.unlink(missing_ok=True)


def _log_tail(log_path: Path | None, lines: int = 10) -> str:
    if log_path is None or not log_path.exists():
        return ""
    content = log_path.read_text(encoding="utf-8", errors="replace").splitlines()
    tail = "\n".join(content[-lines:]).strip()
    return f"\n{tail}" if tail else ""
