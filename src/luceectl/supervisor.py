"""Start, stop and observe server processes and containers.

The supervisor owns liveness: an instance counts as running only when its
process (or container) is alive *and* its HTTP port accepts connections.
State transitions are persisted through the instance registry::

    CREATED -> STARTING -> RUNNING -> STOPPING -> STOPPED
               STARTING -> FAILED

A pid is recorded only once the server answers on its port, and a start that
fails or is interrupted terminates the child before returning.
"""
from __future__ import annotations

import logging
import os
import signal
import socket
import subprocess
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from .providers import DockerClient, RunnableInstance, capabilities_for, shutdown_command
from .providers.runtime import RuntimeCommandError, RuntimeValidationError
from .settings import SupervisorConfig
from .state.registry import InstanceRecord, InstanceRegistry, InstanceState, StateRegistryError

LOGGER = logging.getLogger(__name__)

STARTABLE_CONTAINER_STATES = {"created", "running", "restarting"}


class ProcessStartTimeoutError(RuntimeError):
    """Raised when a server does not come up within the start timeout."""


class ProcessStopTimeoutError(RuntimeError):
    """Raised when a server survives every stop attempt."""


@dataclass(frozen=True)
class InstanceStatus:
    """Observed status of one instance."""

    name: str
    state: InstanceState
    running: bool
    pid: int | None = None
    container_id: str | None = None
    http_port: int | None = None
    detail: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "state": self.state.value,
            "running": self.running,
            "pid": self.pid,
            "container_id": self.container_id,
            "http_port": self.http_port,
            "detail": self.detail,
        }


@dataclass
class StopSummary:
    """Outcome of stopping several instances."""

    stopped: list[str] = field(default_factory=list)
    already_stopped: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Return True when no instance failed to stop."""
        return not self.failures

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "stopped": list(self.stopped),
            "already_stopped": list(self.already_stopped),
            "removed": list(self.removed),
            "failures": dict(self.failures),
        }


@dataclass
class PruneSummary:
    """Outcome of pruning instances."""

    pruned: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"pruned": list(self.pruned), "skipped": list(self.skipped)}


def port_accepting(host: str, port: int, timeout: float = 0.5) -> bool:
    """Return True when a TCP connection to *host*:*port* succeeds."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def pid_alive(pid: int) -> bool:
    """Return True when *pid* refers to a live (non-zombie) process."""
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        reaped = 0
    if reaped == pid:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def send_shutdown(
    port: int,
    payload: bytes,
    *,
    host: str = "127.0.0.1",
    timeout: float = 2.0,
) -> bool:
    """Write *payload* to a shutdown listener; return False when nothing listens."""
    try:
        with socket.create_connection((host, port), timeout=timeout) as sock:
            sock.sendall(payload)
    except OSError as exc:
        LOGGER.debug("Shutdown port %s did not accept the command: %s", port, exc)
        return False
    return True


class ProcessSupervisor:
    """Drive instance processes through their lifecycle states."""

    def __init__(
        self,
        registry: InstanceRegistry,
        config: SupervisorConfig | None = None,
        *,
        docker: DockerClient | None = None,
        probe: Callable[[str, int], bool] = port_accepting,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Wire the supervisor to the registry and its timing knobs."""
        self.registry = registry
        self.config = config or SupervisorConfig()
        self.docker = docker or DockerClient()
        self._probe = probe
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------
    def start(self, record: InstanceRecord, runnable: RunnableInstance) -> InstanceRecord:
        """Launch *runnable* and return the record once the server answers."""
        record = self.registry.update(
            record.name, state=InstanceState.STARTING, pid=None, log_file=runnable.log_file
        )
        if runnable.container_name:
            return self._start_container(record, runnable)

        runnable.log_file.parent.mkdir(parents=True, exist_ok=True)
        with runnable.log_file.open("ab") as log:
            try:
                process = subprocess.Popen(  # noqa: S603
                    list(runnable.command),
                    cwd=str(runnable.cwd),
                    env=runnable.env or None,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except FileNotFoundError as exc:
                self.registry.update(record.name, state=InstanceState.FAILED)
                raise RuntimeValidationError(
                    f"{runnable.command[0]} not found: {exc}. Check the runtime installation."
                ) from exc

        # Any interruption before readiness must not leave the child behind.
        try:
            self._wait_until_ready(
                record,
                alive=lambda: process.poll() is None,
                exit_detail=lambda: f"exit code {process.returncode}",
            )
        except BaseException:
            self._terminate_child(process)
            self.registry.update(record.name, state=InstanceState.FAILED, pid=None)
            raise

        LOGGER.info("Instance %s running with pid %s.", record.name, process.pid)
        return self.registry.update(record.name, state=InstanceState.RUNNING, pid=process.pid)

    def _start_container(
        self, record: InstanceRecord, runnable: RunnableInstance
    ) -> InstanceRecord:
        name = runnable.container_name or record.name
        # `docker run --detach` may create the container before it is interrupted.
        try:
            container_id = self.docker.run(list(runnable.command))
            self._wait_until_ready(
                record,
                alive=lambda: self.docker.container_state(name) in STARTABLE_CONTAINER_STATES,
                exit_detail=lambda: f"container state {self.docker.container_state(name)}",
            )
        except BaseException:
            self._discard_container(name)
            self.registry.update(record.name, state=InstanceState.FAILED, container_id=None)
            raise

        LOGGER.info("Instance %s running in container %s.", record.name, name)
        return self.registry.update(
            record.name, state=InstanceState.RUNNING, container_id=container_id or name
        )

    def _discard_container(self, name: str) -> None:
        try:
            self.docker.remove(name)
        except (RuntimeCommandError, RuntimeValidationError) as exc:
            LOGGER.warning(
                "Could not remove container %s after a failed start: %s. "
                "Remove it with 'docker rm --force %s'.",
                name,
                exc,
                name,
            )

    def _wait_until_ready(
        self,
        record: InstanceRecord,
        *,
        alive: Callable[[], bool],
        exit_detail: Callable[[], str],
    ) -> None:
        deadline = self._clock() + self.config.start_timeout
        port = record.ports.http
        while True:
            if not alive():
                raise ProcessStartTimeoutError(
                    f"Instance '{record.name}' exited during startup ({exit_detail()}). "
                    f"See {record.log_file} for details."
                )
            if self._probe(record.host, port):
                return
            if self._clock() >= deadline:
                raise ProcessStartTimeoutError(
                    f"Instance '{record.name}' did not accept connections on port {port} "
                    f"within {self.config.start_timeout:g}s. See {record.log_file} for details."
                )
            self._sleep(self.config.poll_interval)

    def _terminate_child(self, process: subprocess.Popen[bytes]) -> None:
        if process.poll() is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            process.wait(timeout=self.config.stop_timeout)
        except subprocess.TimeoutExpired:
            os.killpg(process.pid, signal.SIGKILL)
            process.wait()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def status(self, record: InstanceRecord) -> InstanceStatus:
        """Observe whether *record* is actually running."""
        if record.container_id:
            state = self.docker.container_state(record.container_id)
            running = state == "running"
            return InstanceStatus(
                name=record.name,
                state=record.state,
                running=running,
                container_id=record.container_id,
                http_port=record.ports.http,
                detail=f"container {state or 'missing'}",
            )

        if record.pid is None:
            return InstanceStatus(
                name=record.name,
                state=record.state,
                running=False,
                http_port=record.ports.http,
                detail="no process recorded",
            )

        alive = pid_alive(record.pid)
        bound = alive and self._probe(record.host, record.ports.http)
        if bound:
            detail = f"pid {record.pid} serving on port {record.ports.http}"
        elif alive:
            detail = f"pid {record.pid} alive but port {record.ports.http} not accepting"
        else:
            detail = f"pid {record.pid} not running (stale record)"
        return InstanceStatus(
            name=record.name,
            state=record.state,
            running=bound,
            pid=record.pid,
            http_port=record.ports.http,
            detail=detail,
        )

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------
    def stop(self, record: InstanceRecord) -> InstanceRecord:
        """Stop *record*, escalating from a graceful request to SIGKILL."""
        if record.container_id:
            return self._stop_container(record)
        if record.pid is None or not pid_alive(record.pid):
            return self.registry.update(record.name, state=InstanceState.STOPPED, pid=None)

        pid = record.pid
        self.registry.update(record.name, state=InstanceState.STOPPING)
        requested = False
        if capabilities_for(record.runtime_type).supports_shutdown_port:
            payload = shutdown_command(record.runtime_type, record.directory)
            if payload is not None:
                requested = send_shutdown(record.ports.shutdown, payload)
        if not requested:
            self._signal_group(pid, signal.SIGTERM)

        if not self._wait_for_exit(pid, self.config.stop_timeout):
            LOGGER.warning("Instance %s ignored the stop request; sending SIGKILL.", record.name)
            self._signal_group(pid, signal.SIGKILL)
            if not self._wait_for_exit(pid, self.config.stop_timeout):
                raise ProcessStopTimeoutError(
                    f"Instance '{record.name}' (pid {pid}) is still running after SIGKILL. "
                    f"Inspect it with 'ps -p {pid}'."
                )
        return self.registry.update(record.name, state=InstanceState.STOPPED, pid=None)

    def _stop_container(self, record: InstanceRecord) -> InstanceRecord:
        container = record.container_id or ""
        if self.docker.container_state(container) == "running":
            self.registry.update(record.name, state=InstanceState.STOPPING)
            self.docker.stop(container, timeout=self.config.stop_timeout)
        return self.registry.update(record.name, state=InstanceState.STOPPED)

    def _signal_group(self, pid: int, sig: signal.Signals) -> None:
        try:
            os.killpg(os.getpgid(pid), sig)
        except ProcessLookupError:
            return
        except PermissionError:
            os.kill(pid, sig)

    def _wait_for_exit(self, pid: int, timeout: float) -> bool:
        deadline = self._clock() + timeout
        while pid_alive(pid):
            if self._clock() >= deadline:
                return False
            self._sleep(self.config.poll_interval)
        return True

    def stop_all(self, records: Iterable[InstanceRecord]) -> StopSummary:
        """Stop every record, collecting failures instead of aborting.

        Sandbox instances are removed from the registry once stopped.
        """
        summary = StopSummary()
        for record in records:
            try:
                running = self.status(record).running or record.state is InstanceState.STARTING
                self.stop(record)
                if record.sandbox:
                    self._discard_sandbox(record)
                    summary.removed.append(record.name)
                if not running:
                    summary.already_stopped.append(record.name)
                    continue
            except (
                ProcessStopTimeoutError,
                RuntimeCommandError,
                RuntimeValidationError,
                StateRegistryError,
                OSError,
            ) as exc:
                summary.failures[record.name] = str(exc)
                continue
            summary.stopped.append(record.name)
        return summary

    def _discard_sandbox(self, record: InstanceRecord) -> None:
        if record.container_id:
            self.docker.remove(record.container_id)
        self.registry.remove(record.name)

    def restart(self, record: InstanceRecord, runnable: RunnableInstance) -> InstanceRecord:
        """Stop *record* and start it again with *runnable*."""
        self.stop(record)
        return self.start(self.registry.require(record.name), runnable)

    # ------------------------------------------------------------------
    # Prune
    # ------------------------------------------------------------------
    def prune(self, records: Iterable[InstanceRecord]) -> PruneSummary:
        """Remove instance directories that are not running; running ones are skipped."""
        summary = PruneSummary()
        for record in records:
            if self.status(record).running:
                summary.skipped.append(record.name)
                continue
            if record.container_id:
                self.docker.remove(record.container_id)
            self.registry.remove(record.name)
            summary.pruned.append(record.name)
        return summary


__all__ = [
    "InstanceStatus",
    "ProcessStartTimeoutError",
    "ProcessStopTimeoutError",
    "ProcessSupervisor",
    "PruneSummary",
    "StopSummary",
    "pid_alive",
    "port_accepting",
    "send_shutdown",
]
