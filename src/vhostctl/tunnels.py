"""SSH tunnel management with deterministic local ports.

Each (node, service) pair maps to one local port (see :mod:`vhostctl.ports`).
The :class:`TunnelManager` starts, reuses and stops background ``ssh -N -L``
forwards for those ports. Lifecycle per pair::

    absent -> pending -> active -> closing -> absent

All bookkeeping lives in a :class:`TunnelRegistry` that is handed to the
manager explicitly. The registry is the only mutable structure shared between
threads; a caller must *claim* a port in it before spawning anything, which is
what stops two threads from binding the same port.
"""
from __future__ import annotations

import logging
import os
import re
import signal
import socket
import subprocess
import threading
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing import Any, Protocol

from .errors import PreconditionError, TransportError
from .ports import PortPlan
from .remote.executor import Transport
from .remote.target import RemoteTarget
from .state import StateRegistry

_log = logging.getLogger(__name__)

PENDING = "pending"
ACTIVE = "active"
CLOSING = "closing"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")

TunnelKey = tuple[str, int]


class ProcessHandle(Protocol):
    """The subset of :class:`subprocess.Popen` the manager relies on."""

    pid: int

    def poll(self) -> int | None:
        """Return the exit code, or None while running."""
        ...

    def terminate(self) -> None:
        """Ask the process to exit."""
        ...

    def kill(self) -> None:
        """Force the process to exit."""
        ...

    def wait(self, timeout: float | None = None) -> int:
        """Wait for the process to exit."""
        ...


class Spawner(Protocol):
    """Starts background processes (normally :class:`ProcessRunner`)."""

    def spawn(self, argv: list[str], *, log_path: Path | None = None) -> ProcessHandle:
        """Start *argv*, sending its stderr to *log_path*, and return its handle."""
        ...


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(slots=True)
class TunnelDescriptor:
    """One forward from ``bind_address:local_port`` to ``remote_host:remote_port``."""

    node: str
    service: str
    local_port: int
    remote_host: str
    remote_port: int
    scheme: str = "tcp"
    bind_address: str = "127.0.0.1"
    pid: int | None = None
    control_path: Path | None = None
    state: str = PENDING
    created_at: str = field(default_factory=_now_iso)
    detached: bool = False
    process: ProcessHandle | None = field(default=None, repr=False, compare=False)

    @property
    def key(self) -> TunnelKey:
        """Return the registry key ``(node, local_port)``."""
        return (self.node, self.local_port)

    @property
    def endpoint(self) -> str:
        """Return the local URL for this tunnel."""
        return f"{self.scheme}://localhost:{self.local_port}"

    def to_dict(self) -> dict[str, object]:
        """Return a YAML-serialisable representation."""
        return {
            "node": self.node,
            "service": self.service,
            "local_port": self.local_port,
            "remote_host": self.remote_host,
            "remote_port": self.remote_port,
            "scheme": self.scheme,
            "bind_address": self.bind_address,
            "pid": self.pid,
            "control_path": str(self.control_path) if self.control_path else None,
            "state": self.state,
            "created_at": self.created_at,
            "detached": self.detached,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TunnelDescriptor:
        """Rebuild a descriptor persisted by :meth:`to_dict`."""
        control = data.get("control_path")
        pid = data.get("pid")
        return cls(
            node=str(data["node"]),
            service=str(data["service"]),
            local_port=int(data["local_port"]),
            remote_host=str(data.get("remote_host", "127.0.0.1")),
            remote_port=int(data["remote_port"]),
            scheme=str(data.get("scheme", "tcp")),
            bind_address=str(data.get("bind_address", "127.0.0.1")),
            pid=int(pid) if pid is not None else None,
            control_path=Path(control) if control else None,
            state=str(data.get("state", ACTIVE)),
            created_at=str(data.get("created_at", "")),
            detached=bool(data.get("detached", True)),
        )


def process_alive(descriptor: TunnelDescriptor) -> bool:
    """Return True while the process backing *descriptor* is running."""
    if descriptor.process is not None:
        return descriptor.process.poll() is None
    if descriptor.pid is None:
        return False
    try:
        os.kill(descriptor.pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    # Guard against PID reuse when /proc is available.
    cmdline = Path(f"/proc/{descriptor.pid}/cmdline")
    if descriptor.control_path is not None and cmdline.exists():
        with suppress(OSError):
            return str(descriptor.control_path) in cmdline.read_bytes().decode(errors="replace")
    return True


def port_accepting(host: str, port: int, timeout: float = 1.0) -> bool:
    """Return True when something accepts TCP connections on *host*:*port*."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class TunnelRegistry:
    """Synchronised registry of tunnels keyed by ``(node, local_port)``.

    When *state* is given, active tunnels are mirrored into ``tunnels.yml`` so
    later invocations can find, list and close them. Entries whose process has
    died are pruned whenever the registry is enumerated.
    """

    def __init__(
        self,
        state: StateRegistry | None = None,
        *,
        is_alive: Callable[[TunnelDescriptor], bool] = process_alive,
    ) -> None:
        """Create an empty registry, optionally backed by *state*."""
        self._state = state
        self._is_alive = is_alive
        self._entries: dict[TunnelKey, TunnelDescriptor] = {}
        self._cond = threading.Condition()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def is_alive(self, descriptor: TunnelDescriptor) -> bool:
        """Return True while *descriptor*'s process is running."""
        return self._is_alive(descriptor)

    def get(self, key: TunnelKey) -> TunnelDescriptor | None:
        """Return the entry registered under *key*."""
        with self._cond:
            self._sync()
            return self._entries.get(key)

    def entries(self, node: str | None = None, *, prune: bool = True) -> list[TunnelDescriptor]:
        """Return registered tunnels, dropping dead ones when *prune* is set."""
        with self._cond:
            self._sync()
            if prune and self._prune():
                self._persist()
            values = [
                entry
                for entry in self._entries.values()
                if node is None or entry.node == node
            ]
        return sorted(values, key=lambda entry: (entry.node, entry.local_port))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def claim(self, candidate: TunnelDescriptor) -> tuple[TunnelDescriptor, bool]:
        """Atomically claim *candidate*'s key.

        Returns ``(entry, True)`` when the caller now owns a fresh ``pending``
        entry and must either :meth:`activate` or :meth:`release` it. Returns
        ``(existing, False)`` when a pending or live entry already holds the
        key.
        """
        with self._cond:
            self._sync()
            existing = self._entries.get(candidate.key)
            if existing is not None:
                if existing.state == PENDING or self._is_alive(existing):
                    return existing, False
                _log.info("Pruning dead tunnel %s:%d", existing.node, existing.local_port)
                del self._entries[candidate.key]

            for other in self._entries.values():
                if (
                    other.local_port == candidate.local_port
                    and other.node != candidate.node
                    and (other.state == PENDING or self._is_alive(other))
                ):
                    raise PreconditionError(
                        f"Local port {candidate.local_port} is already forwarded for "
                        f"{other.service} on {other.node}."
                    )

            candidate.state = PENDING
            self._entries[candidate.key] = candidate
            return candidate, True

    def activate(self, descriptor: TunnelDescriptor) -> None:
        """Mark a claimed entry as active and wake waiters."""
        with self._cond:
            descriptor.state = ACTIVE
            self._entries[descriptor.key] = descriptor
            self._persist()
            self._cond.notify_all()

    def mark_closing(self, key: TunnelKey) -> TunnelDescriptor | None:
        """Flag *key* as closing; return the entry if one existed."""
        with self._cond:
            entry = self._entries.get(key)
            if entry is not None:
                entry.state = CLOSING
            return entry

    def release(self, key: TunnelKey) -> None:
        """Forget *key* and wake waiters; unknown keys are ignored."""
        with self._cond:
            if self._entries.pop(key, None) is not None:
                self._persist()
            self._cond.notify_all()

    def wait_while_pending(self, key: TunnelKey, timeout: float) -> TunnelDescriptor | None:
        """Block until *key* leaves the pending state or *timeout* expires."""
        def settled() -> bool:
            entry = self._entries.get(key)
            return entry is None or entry.state != PENDING

        with self._cond:
            self._cond.wait_for(settled, timeout=timeout)
            return self._entries.get(key)

    # ------------------------------------------------------------------
    # Persistence helpers (caller holds the condition lock)
    # ------------------------------------------------------------------
    def _sync(self) -> None:
        if self._state is None:
            return
        for raw in self._state.read_tunnels():
            try:
                descriptor = TunnelDescriptor.from_dict(raw)
            except (KeyError, TypeError, ValueError):
                _log.warning("Ignoring malformed tunnel entry: %r", raw)
                continue
            if descriptor.key in self._entries:
                continue
            if descriptor.state == ACTIVE and self._is_alive(descriptor):
                self._entries[descriptor.key] = descriptor

    def _prune(self) -> bool:
        dead = [
            key
            for key, entry in self._entries.items()
            if entry.state != PENDING and not self._is_alive(entry)
        ]
        for key in dead:
            _log.info("Pruning dead tunnel %s:%d", *key)
            del self._entries[key]
        return bool(dead)

    def _persist(self) -> None:
        if self._state is None:
            return
        self._state.write_tunnels(
            entry.to_dict() for entry in self._entries.values() if entry.state == ACTIVE
        )


class TunnelManager:
    """Create, reuse and close SSH forwards."""

    def __init__(
        self,
        spawner: Spawner,
        transport: Transport,
        registry: TunnelRegistry,
        plan: PortPlan,
        *,
        control_dir: Path,
        bind_address: str = "127.0.0.1",
        ready_timeout: float = 10.0,
        grace_period: float = 1.0,
        poll_interval: float = 0.1,
        port_probe: Callable[[str, int], bool] = port_accepting,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Wire the manager to its collaborators."""
        self.spawner = spawner
        self.transport = transport
        self.registry = registry
        self.plan = plan
        self.control_dir = Path(control_dir)
        self.bind_address = bind_address
        self.ready_timeout = ready_timeout
        self.grace_period = grace_period
        self.poll_interval = poll_interval
        self._port_probe = port_probe
        self._clock = clock
        self._sleep = sleep
        self._owned: set[TunnelKey] = set()
        self._owned_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Context manager protocol
    # ------------------------------------------------------------------
    def __enter__(self) -> TunnelManager:
        """Enter a scope whose non-detached tunnels close on exit."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close every non-detached tunnel this manager started."""
        self.close_all()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def local_port(self, target: RemoteTarget, service: str) -> int:
        """Return the deterministic port for *service* on *target*."""
        return self.plan.local_port(target.name, service)

    def create(
        self,
        target: RemoteTarget,
        service: str,
        local_port: int | None = None,
        remote_host: str = "127.0.0.1",
        remote_port: int | None = None,
        *,
        detach: bool = False,
    ) -> TunnelDescriptor:
        """Start a forward for *service*, or return the live one already there."""
        port = local_port if local_port is not None else self.local_port(target, service)
        candidate = TunnelDescriptor(
            node=target.name,
            service=service,
            local_port=port,
            remote_host=remote_host,
            remote_port=self.plan.remote_port(service, remote_port),
            scheme=self.plan.scheme(service),
            bind_address=self.bind_address,
            detached=detach,
        )

        for _ in range(2):
            descriptor, claimed = self.registry.claim(candidate)
            if claimed:
                break
            if descriptor.service != service:
                raise PreconditionError(
                    f"Local port {port} on {target.name} already forwards "
                    f"'{descriptor.service}', not '{service}'."
                )
            if descriptor.state == PENDING:
                waited = self.registry.wait_while_pending(
                    descriptor.key, self.ready_timeout + self.grace_period
                )
                if waited is None:
                    continue
                descriptor = waited
            if descriptor.state == ACTIVE and self.registry.is_alive(descriptor):
                _log.debug("Reusing tunnel %s:%d", target.name, port)
                return descriptor
            raise TransportError(
                f"Tunnel {target.name}:{port} did not become ready.", target=target.name
            )
        else:  # pragma: no cover - only reached when two creators race twice
            raise TransportError(
                f"Could not claim local port {port} for {target.name}.", target=target.name
            )

        process: ProcessHandle | None = None
        try:
            if self._port_probe(self.bind_address, port):
                raise PreconditionError(
                    f"Local port {port} is already in use by another process."
                )
            self.control_dir.mkdir(parents=True, exist_ok=True)
            descriptor.control_path = self.control_dir / f"{_safe(target.name)}-{port}.sock"
            argv = self.transport.forward_command(
                target,
                bind_address=self.bind_address,
                local_port=port,
                remote_host=descriptor.remote_host,
                remote_port=descriptor.remote_port,
                control_path=descriptor.control_path,
            )
            process = self.spawner.spawn(argv, log_path=_log_path(descriptor))
            descriptor.process = process
            descriptor.pid = process.pid
            self._wait_ready(target, descriptor, process)
        except BaseException:
            if process is not None:
                _terminate_process(process, self.grace_period)
            self._remove_control_socket(descriptor)
            self.registry.release(descriptor.key)
            raise

        self.registry.activate(descriptor)
        if not detach:
            with self._owned_lock:
                self._owned.add(descriptor.key)
        _log.info(
            "Tunnel %s %s -> %s:%d active on port %d (pid %s)",
            target.name,
            service,
            descriptor.remote_host,
            descriptor.remote_port,
            port,
            descriptor.pid,
        )
        return descriptor

    def check(
        self,
        target: RemoteTarget,
        local_port: int | None = None,
        *,
        service: str | None = None,
    ) -> bool:
        """Return True when a registered, live tunnel accepts connections."""
        if local_port is None and service is not None:
            local_port = self.local_port(target, service)
        candidates = [
            entry
            for entry in self.registry.entries(target.name, prune=False)
            if local_port is None or entry.local_port == local_port
        ]
        return any(
            entry.state == ACTIVE
            and self.registry.is_alive(entry)
            and self._port_probe(entry.bind_address, entry.local_port)
            for entry in candidates
        )

    def ensure(
        self,
        target: RemoteTarget,
        service: str,
        remote_port: int | None = None,
        *,
        remote_host: str = "127.0.0.1",
        detach: bool = False,
    ) -> TunnelDescriptor:
        """Return a live tunnel for *service*, creating one only when absent."""
        port = self.local_port(target, service)
        key = (target.name, port)
        if self.check(target, port):
            entry = self.registry.get(key)
            if entry is not None:
                return entry

        entry = self.registry.get(key)
        if entry is not None:
            if entry.state == PENDING:
                self.registry.wait_while_pending(key, self.ready_timeout + self.grace_period)
            elif entry.state == ACTIVE and self.registry.is_alive(entry):
                if self._wait_for_port(entry, self.grace_period):
                    return entry
                _log.warning(
                    "Tunnel %s:%d is alive but not accepting connections; restarting",
                    target.name,
                    port,
                )
                self.close(target, port)

        return self.create(
            target,
            service,
            remote_host=remote_host,
            remote_port=remote_port,
            detach=detach,
        )

    def close(self, target: RemoteTarget, local_port: int | None = None) -> list[TunnelDescriptor]:
        """Stop one tunnel of *target*, or all of them when *local_port* is None."""
        closed: list[TunnelDescriptor] = []
        for entry in self.registry.entries(target.name, prune=False):
            if local_port is not None and entry.local_port != local_port:
                continue
            if entry.state == PENDING:
                continue
            if self.registry.mark_closing(entry.key) is None:
                continue
            self._stop(entry)
            self.registry.release(entry.key)
            with self._owned_lock:
                self._owned.discard(entry.key)
            closed.append(entry)
            _log.info("Closed tunnel %s:%d (%s)", entry.node, entry.local_port, entry.service)
        return closed

    def endpoint(self, target: RemoteTarget, service: str) -> str:
        """Return the local URL for *service*; the tunnel must already be active."""
        port = self.local_port(target, service)
        if not self.check(target, port):
            raise PreconditionError(
                f"No active tunnel for '{service}' on {target.name} (port {port}); "
                "run ensure first."
            )
        return f"{self.plan.scheme(service)}://localhost:{port}"

    def list_active(self) -> list[TunnelDescriptor]:
        """Return live tunnels, pruning entries whose process has died."""
        return [entry for entry in self.registry.entries(prune=True) if entry.state == ACTIVE]

    def close_all(self) -> list[TunnelDescriptor]:
        """Close every non-detached tunnel created through this manager."""
        with self._owned_lock:
            owned = sorted(self._owned)
        closed: list[TunnelDescriptor] = []
        for node, port in owned:
            entry = self.registry.get((node, port))
            if entry is None:
                with self._owned_lock:
                    self._owned.discard((node, port))
                continue
            if self.registry.mark_closing(entry.key) is None:
                continue
            self._stop(entry)
            self.registry.release(entry.key)
            with self._owned_lock:
                self._owned.discard(entry.key)
            closed.append(entry)
        return closed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _wait_ready(
        self,
        target: RemoteTarget,
        descriptor: TunnelDescriptor,
        process: ProcessHandle,
    ) -> None:
        deadline = self._clock() + self.ready_timeout
        while True:
            code = process.poll()
            if code is not None:
                raise TransportError(
                    f"SSH forward to {target.name} exited with code {code} before "
                    f"port {descriptor.local_port} became ready.",
                    target=target.name,
                    stderr=_read_log(descriptor),
                )
            if self._port_probe(self.bind_address, descriptor.local_port):
                return
            if self._clock() >= deadline:
                raise TransportError(
                    f"Timed out after {self.ready_timeout:.0f}s waiting for tunnel "
                    f"{target.name}:{descriptor.local_port}.",
                    target=target.name,
                )
            self._sleep(self.poll_interval)

    def _wait_for_port(self, descriptor: TunnelDescriptor, timeout: float) -> bool:
        deadline = self._clock() + timeout
        while True:
            if self._port_probe(descriptor.bind_address, descriptor.local_port):
                return True
            if self._clock() >= deadline:
                return False
            self._sleep(self.poll_interval)

    def _stop(self, descriptor: TunnelDescriptor) -> None:
        if descriptor.process is not None:
            _terminate_process(descriptor.process, self.grace_period)
        elif descriptor.pid is not None and self.registry.is_alive(descriptor):
            _terminate_pid(descriptor.pid, self.grace_period)
        self._remove_control_socket(descriptor)

    @staticmethod
    def _remove_control_socket(descriptor: TunnelDescriptor) -> None:
        if descriptor.control_path is not None:
            descriptor.control_path.unlink(missing_ok=True)
            _log_path(descriptor).unlink(missing_ok=True)


def _terminate_process(process: ProcessHandle, grace: float) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait(timeout=grace)


def _terminate_pid(pid: int, grace: float) -> None:
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    deadline = time.monotonic() + grace
    while time.monotonic() < deadline:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return
        time.sleep(0.05)
    with suppress(ProcessLookupError):
        os.kill(pid, signal.SIGKILL)


def _log_path(descriptor: TunnelDescriptor) -> Path:
    if descriptor.control_path is None:
        raise ValueError("Tunnel has no control path yet.")
    return descriptor.control_path.with_suffix(".log")


def _read_log(descriptor: TunnelDescriptor) -> str:
    if descriptor.control_path is None:
        return ""
    with suppress(OSError):
        return _log_path(descriptor).read_text(encoding="utf-8", errors="replace").strip()
    return ""
    with suppress(OSError, ValueError):
        data = stream.read()
        return data.decode(errors="replace").strip() if isinstance(data, bytes) else str(data)
    return ""


def _safe(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name) or "node"


__all__ = [
    "ACTIVE",
    "CLOSING",
    "PENDING",
    "ProcessHandle",
    "Spawner",
    "TunnelDescriptor",
    "TunnelManager",
    "TunnelRegistry",
    "port_accepting",
    "process_alive",
]
