"""Advisory file locks serialising mutations per instance.

Locks live under the runtime directory (``~/.padctl/run`` by default). The
global ``padctl.lock`` is acquired first whenever a command mutates one or
more instances, followed by per-instance locks in sorted order so concurrent
commands never deadlock. Lock files are left in place after release and
carry JSON metadata (pid, path, acquisition time) for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "padctl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(TimeoutError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """Information about a held lock."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Return the total time spent waiting for every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


@dataclass(slots=True)
class LockManager:
    """Hand out global and per-instance advisory locks."""

    runtime_dir: Path
    default_timeout: float = 30.0

    def __post_init__(self) -> None:
        """Normalise the runtime directory."""
        self.runtime_dir = Path(self.runtime_dir).expanduser()

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for instance *name*."""
        return self.runtime_dir / f"{name}.lock"

    def discard(self, name: str) -> None:
        """Remove the lock file of instance *name* once its record is gone.

        Call it while holding the instance lock. padctl verbs also hold the
        global lock, so nobody else can be waiting on the removed file.
        """
        self.lock_path(name).unlink(missing_ok=True)

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the process-wide padctl lock."""
        with self._acquire(self.runtime_dir / GLOBAL_LOCK_NAME, timeout) as handle:
            yield handle

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for instance *name*."""
        with self._acquire(self.lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        include_global: bool = True,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock then every instance lock in sorted order."""
        handles: list[LockHandle] = []
        with ExitStack() as stack:
            if include_global:
                handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.instance_lock(name, timeout=timeout)))
            yield LockBundle(handles=handles)

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}"
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(UTC).isoformat(),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
