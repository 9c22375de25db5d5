"""Advisory file locks guarding mutations of the site stores.

Locks are ``fcntl.flock`` locks on files under ``<runtime_dir>/locks``. A
global lock (``vhostctl.lock``) serialises multi-site mutations and each site
has its own ``<domain>.lock``. Acquisition polls with a bounded wait and raises
:class:`LockTimeoutError` (reported to operators as *busy*) instead of hanging.
Lock files are left behind after release; their JSON payload names the last
holder, which helps when diagnosing a busy site.
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

from .errors import VhostctlError
from .exit_codes import ExitCode

GLOBAL_LOCK_NAME = "vhostctl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(VhostctlError):
    """Raised when a lock cannot be acquired before the timeout expires."""

    exit_code = ExitCode.BUSY

    def __init__(self, path: Path, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout:g}s waiting for lock {path}; another vhostctl "
            "operation is in progress. Retry shortly."
        )
        self.path = path
        self.timeout = timeout


@dataclass(slots=True)
class LockHandle:
    """A held lock."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of locks acquired together."""

    handles: tuple[LockHandle, ...]

    @property
    def wait_ms(self) -> int:
        """Total time spent waiting for every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Create and acquire vhostctl lock files."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        self.root = runtime_dir / "locks"
        self.default_timeout = default_timeout

    def lock_path(self, domain: str) -> Path:
        """Return the lock file path for *domain*."""
        return self.root / f"{domain}.lock"

    @contextmanager
    def site_lock(self, domain: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the per-site lock for *domain*."""
        with self._acquire(self.lock_path(domain), timeout) as handle:
            yield handle

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global lock."""
        with self._acquire(self.root / GLOBAL_LOCK_NAME, timeout) as handle:
            yield handle

    @contextmanager
    def mutate_sites(
        self,
        domains: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by per-site locks in sorted order."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for domain in sorted(set(domains)):
                handles.append(stack.enter_context(self.site_lock(domain, timeout=timeout)))
            yield LockBundle(tuple(handles))

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        try:
            started = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(path, limit) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            self._write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @staticmethod
    def _write_metadata(fd: int, path: Path) -> None:
        payload = json.dumps(
            {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": datetime.now(UTC).isoformat(),
            }
        ).encode("utf-8")
        os.ftruncate(fd, 0)
        os.pwrite(fd, payload, 0)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
