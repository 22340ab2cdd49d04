"""Advisory file locks guarding vhost mutations and node-wide actions.

Locks are ``fcntl.flock`` locks on small JSON files under the runtime
directory. The files persist after release so operators can see which process
last held them. Layout::

    <runtime_dir>/vhostctl.lock           global mutation lock
    <runtime_dir>/vhosts/<vhost>.lock     one per vhost
    <runtime_dir>/nodes/<node>.lock       one per node (service reloads)

Acquisition order is always global, then vhosts (sorted), then nodes, which
keeps concurrent batch workers from deadlocking each other.
"""
from __future__ import annotations

import fcntl
import json
import os
import re
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from pathlib import Path

GLOBAL_LOCK_NAME = "vhostctl"
_POLL_INTERVAL = 0.05
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock and the time spent waiting for it."""

    path: Path
    wait_ms: int
    _fd: int = field(repr=False, default=-1)


@dataclass(slots=True)
class LockBundle:
    """Several locks acquired together."""

    handles: list[LockHandle] = field(default_factory=list)

    @property
    def wait_ms(self) -> int:
        """Return the cumulative wait across all locks in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Create and acquire advisory locks below *run_dir*."""

    def __init__(self, run_dir: Path, *, default_timeout: float = 30.0) -> None:
        """Remember the lock directory and the default acquisition timeout."""
        self.run_dir = Path(run_dir)
        self.default_timeout = default_timeout

    # ------------------------------------------------------------------
    # Single locks
    # ------------------------------------------------------------------
    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the process-wide mutation lock."""
        with self._acquire(self.run_dir / f"{GLOBAL_LOCK_NAME}.lock", timeout) as handle:
            yield handle

    @contextmanager
    def vhost_lock(self, vhost: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Serialise operations touching one vhost's remote tree."""
        path = self.run_dir / "vhosts" / f"{_safe_name(vhost)}.lock"
        with self._acquire(path, timeout) as handle:
            yield handle

    @contextmanager
    def node_lock(self, node: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Serialise node-wide actions such as service reloads."""
        path = self.run_dir / "nodes" / f"{_safe_name(node)}.lock"
        with self._acquire(path, timeout) as handle:
            yield handle

    # ------------------------------------------------------------------
    # Bundles
    # ------------------------------------------------------------------
    @contextmanager
    def mutate_vhosts(
        self,
        vhosts: Iterable[str],
        *,
        timeout: float | None = None,
        include_global: bool = True,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock (optionally) followed by per-vhost locks."""
        bundle = LockBundle()
        with ExitStack() as stack:
            if include_global:
                bundle.handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for vhost in sorted(set(vhosts)):
                bundle.handles.append(
                    stack.enter_context(self.vhost_lock(vhost, timeout=timeout))
                )
            yield bundle

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms, _fd=fd)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = json.dumps({"pid": os.getpid(), "path": str(path)}).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, payload)


def _safe_name(name: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", name.strip())
    if not cleaned or cleaned in {".", ".."}:
        raise ValueError(f"Cannot derive a lock name from {name!r}.")
    return cleaned


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
