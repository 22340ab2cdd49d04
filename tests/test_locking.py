"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from vhostctl.locking import LockManager, LockTimeoutError


def test_vhost_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "vhosts" / "example.com.lock"
    with manager.vhost_lock("example.com") as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.vhost_lock("example.com", timeout=0.2):
        pass


def test_vhost_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.vhost_lock("example.com"):
        with pytest.raises(LockTimeoutError):
            with manager.vhost_lock("example.com", timeout=0.1):
                pass


def test_node_lock_is_independent_of_vhost_locks(tmp_path: Path) -> None:
    """Node locks live in their own directory and do not block vhost locks."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.node_lock("alpha"):
        with manager.vhost_lock("alpha", timeout=0.1):
            assert (tmp_path / "run" / "nodes" / "alpha.lock").exists()
            assert (tmp_path / "run" / "vhosts" / "alpha.lock").exists()


def test_mutate_vhosts_acquires_global_then_vhosts(tmp_path: Path) -> None:
    """Lock bundles acquire global first followed by per-vhost locks."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_vhosts(["b.example", "a.example", "a.example"]) as bundle:
        assert bundle.wait_ms >= 0
        assert [handle.path.name for handle in bundle.handles] == [
            "vhostctl.lock",
            "a.example.lock",
            "b.example.lock",
        ]


def test_mutate_vhosts_without_global(tmp_path: Path) -> None:
    """The global lock is optional so the registry writer can take it separately."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_vhosts(["a.example"], include_global=False) as bundle:
        assert [handle.path.name for handle in bundle.handles] == ["a.example.lock"]
        with manager.global_lock(timeout=0.1):
            pass


def test_unsafe_names_are_sanitised(tmp_path: Path) -> None:
    """Path separators never escape the lock directory."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.vhost_lock("../etc/passwd") as handle:
        assert handle.path.parent == tmp_path / "run" / "vhosts"

    with pytest.raises(ValueError):
        with manager.vhost_lock(".."):
            pass
