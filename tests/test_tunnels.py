"""Tests for the SSH tunnel manager."""
from __future__ import annotations

import threading
from pathlib import Path

import pytest

from vhostctl.errors import PreconditionError, TransportError
from vhostctl.ports import PortPlan
from vhostctl.remote import RemoteTarget, SshTransport
from vhostctl.state import StateRegistry
from vhostctl.tunnels import ACTIVE, TunnelDescriptor, TunnelManager, TunnelRegistry


class FakeProcess:
    """Stand-in for a running ``ssh -N`` process."""

    _next_pid = 40000

    def __init__(self, exit_code: int | None = None) -> None:
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.exit_code = exit_code
        self.terminated = False

    def poll(self) -> int | None:
        return self.exit_code

    def terminate(self) -> None:
        self.terminated = True
        self.exit_code = -15

    def kill(self) -> None:
        self.exit_code = -9

    def wait(self, timeout: float | None = None) -> int:
        return self.exit_code if self.exit_code is not None else 0


class FakeSpawner:
    """Record spawned argv lists and open the forwarded port."""

    def __init__(
        self,
        listening: set[int],
        *,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        self.listening = listening
        self.exit_code = exit_code
        self.stderr = stderr
        self.calls: list[list[str]] = []
        self.log_paths: list[Path | None] = []
        self.processes: list[FakeProcess] = []
        self._lock = threading.Lock()

    def spawn(self, argv: list[str], *, log_path: Path | None = None) -> FakeProcess:
        with self._lock:
            self.calls.append(argv)
            self.log_paths.append(log_path)
            if log_path is not None and self.stderr:
                log_path.write_text(self.stderr, encoding="utf-8")
            process = FakeProcess(self.exit_code)
            self.processes.append(process)
            if self.exit_code is None:
                forward = argv[argv.index("-L") + 1]
                self.listening.add(int(forward.split(":")[1]))
            return process


TARGET = RemoteTarget(name="alpha", hostname="alpha.example.net")
PLAN = PortPlan()
MYSQL_PORT = PLAN.local_port("alpha", "mysql")


def _alive(descriptor: TunnelDescriptor) -> bool:
    return descriptor.process is not None and descriptor.process.poll() is None


def _manager(
    tmp_path: Path,
    *,
    spawner: FakeSpawner | None = None,
    listening: set[int] | None = None,
    state: StateRegistry | None = None,
) -> tuple[TunnelManager, FakeSpawner, set[int]]:
    ports = listening if listening is not None else set()
    spawner = spawner or FakeSpawner(ports)
    registry = TunnelRegistry(state, is_alive=_alive)
    manager = TunnelManager(
        spawner,
        SshTransport(),
        registry,
        PLAN,
        control_dir=tmp_path / "tunnels",
        ready_timeout=0.5,
        grace_period=0.1,
        poll_interval=0.01,
        port_probe=lambda _host, port: port in spawner.listening,
        sleep=lambda _seconds: None,
    )
    return manager, spawner, spawner.listening


def test_create_spawns_forward_on_deterministic_port(tmp_path: Path) -> None:
    """A new tunnel binds the mapped port and is registered active."""
    manager, spawner, _ = _manager(tmp_path)

    descriptor = manager.create(TARGET, "mysql")

    assert descriptor.local_port == MYSQL_PORT
    assert descriptor.remote_port == 3306
    assert descriptor.state == ACTIVE
    assert descriptor.endpoint == f"mysql://localhost:{MYSQL_PORT}"
    assert len(spawner.calls) == 1
    assert f"127.0.0.1:{MYSQL_PORT}:127.0.0.1:3306" in spawner.calls[0]


def test_create_is_idempotent_for_live_tunnels(tmp_path: Path) -> None:
    """Creating the same tunnel twice reuses the first process."""
    manager, spawner, _ = _manager(tmp_path)

    first = manager.create(TARGET, "mysql")
    second = manager.create(TARGET, "mysql")

    assert second is first
    assert len(spawner.calls) == 1


def test_ensure_twice_spawns_once(tmp_path: Path) -> None:
    """``ensure`` only creates when no healthy tunnel exists."""
    manager, spawner, _ = _manager(tmp_path)

    manager.ensure(TARGET, "mysql")
    manager.ensure(TARGET, "mysql")

    assert len(spawner.calls) == 1
    assert manager.check(TARGET, service="mysql") is True


def test_concurrent_ensure_spawns_once(tmp_path: Path) -> None:
    """Threads racing on the same key share one forward."""
    manager, spawner, _ = _manager(tmp_path)
    results: list[TunnelDescriptor] = []
    errors: list[BaseException] = []

    def worker() -> None:
        try:
            results.append(manager.ensure(TARGET, "redis"))
        except BaseException as exc:  # pragma: no cover - surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(spawner.calls) == 1
    assert len({entry.pid for entry in results}) == 1


def test_failed_spawn_releases_the_claim(tmp_path: Path) -> None:
    """A forward that dies during startup leaves no registry entry."""
    spawner = FakeSpawner(set(), exit_code=255)
    manager, _, _ = _manager(tmp_path, spawner=spawner)

    with pytest.raises(TransportError, match="exited with code 255"):
        manager.create(TARGET, "mysql")

    assert manager.list_active() == []
    assert not list((tmp_path / "tunnels").glob("*.sock"))


def test_forward_stderr_goes_to_a_tunnel_log(tmp_path: Path) -> None:
    """ssh stderr lands in a file beside the control socket, not a pipe."""
    manager, spawner, _ = _manager(tmp_path)

    descriptor = manager.create(TARGET, "mysql")

    assert descriptor.control_path is not None
    assert spawner.log_paths == [descriptor.control_path.with_suffix(".log")]
    assert spawner.log_paths[0].parent == tmp_path / "tunnels"


def test_failed_spawn_reports_the_tunnel_log(tmp_path: Path) -> None:
    """The logged ssh error is surfaced and the log is cleaned up."""
    spawner = FakeSpawner(
        set(), exit_code=255, stderr="bind [127.0.0.1]:17516: Address already in use\n"
    )
    manager, _, _ = _manager(tmp_path, spawner=spawner)

    with pytest.raises(TransportError) as excinfo:
        manager.create(TARGET, "mysql")

    assert excinfo.value.stderr == "bind [127.0.0.1]:17516: Address already in use"
    assert not list((tmp_path / "tunnels").glob("*.log"))


def test_port_in_use_by_stranger_is_a_precondition(tmp_path: Path) -> None:
    """A port already bound outside the registry is never reused."""
    manager, spawner, listening = _manager(tmp_path)
    listening.add(MYSQL_PORT)

    with pytest.raises(PreconditionError, match="already in use"):
        manager.create(TARGET, "mysql")

    assert spawner.calls == []


def test_claim_conflict_across_nodes_is_reported(tmp_path: Path) -> None:
    """Two nodes cannot forward the same local port."""
    manager, _, _ = _manager(tmp_path)
    beta = RemoteTarget(name="beta", hostname="beta.example.net")
    manager.create(TARGET, "mysql")

    with pytest.raises(PreconditionError, match="already forwarded"):
        manager.create(beta, "mysql", local_port=MYSQL_PORT)


def test_close_without_tunnels_returns_empty_list(tmp_path: Path) -> None:
    """Closing when nothing is open is a no-op."""
    manager, _, _ = _manager(tmp_path)

    assert manager.close(TARGET) == []


def test_close_stops_process_and_forgets_entry(tmp_path: Path) -> None:
    """Closing terminates the process and frees the port."""
    manager, spawner, _ = _manager(tmp_path)
    manager.create(TARGET, "mysql")

    closed = manager.close(TARGET, MYSQL_PORT)

    assert [entry.local_port for entry in closed] == [MYSQL_PORT]
    assert spawner.processes[0].terminated is True
    assert manager.list_active() == []


def test_endpoint_requires_active_tunnel(tmp_path: Path) -> None:
    """``endpoint`` never creates a tunnel implicitly."""
    manager, spawner, _ = _manager(tmp_path)

    with pytest.raises(PreconditionError, match="run ensure first"):
        manager.endpoint(TARGET, "mysql")

    manager.ensure(TARGET, "mysql")
    assert manager.endpoint(TARGET, "mysql") == f"mysql://localhost:{MYSQL_PORT}"
    assert len(spawner.calls) == 1


def test_list_prunes_dead_processes(tmp_path: Path) -> None:
    """Tunnels whose process exited disappear from listings."""
    manager, spawner, _ = _manager(tmp_path)
    manager.create(TARGET, "mysql")
    manager.create(TARGET, "redis")

    spawner.processes[0].exit_code = 1

    assert [entry.service for entry in manager.list_active()] == ["redis"]


def test_context_exit_closes_only_owned_tunnels(tmp_path: Path) -> None:
    """Detached tunnels survive the manager's scope."""
    manager, spawner, _ = _manager(tmp_path)

    with manager:
        manager.create(TARGET, "mysql")
        manager.create(TARGET, "redis", detach=True)

    assert spawner.processes[0].terminated is True
    assert spawner.processes[1].terminated is False
    assert [entry.service for entry in manager.list_active()] == ["redis"]


def test_active_tunnels_are_persisted(tmp_path: Path) -> None:
    """Registry state mirrors active tunnels into ``tunnels.yml``."""
    state = StateRegistry(tmp_path / "registry")
    manager, _, _ = _manager(tmp_path, state=state)

    manager.create(TARGET, "mysql", detach=True)

    persisted = state.read_tunnels()
    assert len(persisted) == 1
    assert persisted[0]["local_port"] == MYSQL_PORT
    assert persisted[0]["state"] == ACTIVE

    manager.close(TARGET)
    assert state.read_tunnels() == []
