"""Advisory file locks serialising concurrent luceectl invocations.

Each CLI invocation is a separate process, so mutating commands coordinate via
``fcntl.flock`` on files beneath the run directory. A global
``luceectl.lock`` guards registry-wide changes and ``<name>.lock`` guards a
single instance. Lock files persist after release and record the holder's pid
for diagnostics. These locks are cooperative; they do not stop other tools
from touching the registry.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "luceectl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when an advisory lock cannot be acquired in time."""


@dataclass(slots=True)
class LockHandle:
    """A held advisory lock."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of locks acquired together (global first)."""

    handles: list[LockHandle] = field(default_factory=list)

    @property
    def wait_ms(self) -> int:
        """Return the cumulative wait across all locks in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class AdvisoryLocks:
    """Acquire global and per-instance advisory locks under *run_dir*."""

    def __init__(self, run_dir: Path, default_timeout: float = 30.0) -> None:
        """Record the lock directory and default acquisition timeout."""
        self.run_dir = Path(run_dir).expanduser()
        self.default_timeout = float(default_timeout)

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for an instance *name*."""
        safe = name.replace("/", "-").strip() or "_"
        return self.run_dir / f"{safe}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the registry-wide lock."""
        with self._acquire(self.run_dir / GLOBAL_LOCK_NAME, timeout) as handle:
            yield handle

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single instance."""
        with self._acquire(self.lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by each instance lock in sorted order."""
        bundle = LockBundle()
        with ExitStack() as stack:
            bundle.handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for name in sorted(set(names)):
                bundle.handles.append(
                    stack.enter_context(self.instance_lock(name, timeout=timeout))
                )
            yield bundle

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else float(timeout)
        path.parent.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()
        handle = path.open("a+", encoding="utf-8")
        try:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}. "
                            "Another luceectl command may be running."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            handle.seek(0)
            handle.truncate()
            handle.write(
                json.dumps(
                    {
                        "pid": os.getpid(),
                        "path": str(path),
                        "acquired_at": datetime.now(UTC).isoformat(),
                    }
                )
            )
            handle.flush()
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


__all__ = ["AdvisoryLocks", "LockBundle", "LockHandle", "LockTimeoutError"]
