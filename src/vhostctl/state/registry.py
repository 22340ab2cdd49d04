"""Helpers for interacting with the vhostctl state registry.

The registry directory (``/var/lib/vhostctl/registry`` by default) stores YAML
artifacts:

``nodes.yml``
    SSH coordinates for each node (consumed by :mod:`vhostctl.inventory`).
``vhosts.yml``
    One record per vhost: declared paths, ownership and migration state.
``tunnels.yml``
    Background SSH forwards started by this host, so that ``tunnel list`` and
    ``tunnel close`` work across invocations.

Writes are atomic (temporary file + ``os.replace``) so a crashed command never
leaves a truncated registry behind.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

NODES_FILE = "nodes.yml"
VHOSTS_FILE = "vhosts.yml"
TUNNELS_FILE = "tunnels.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(_plain(payload), handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Convenience wrappers -------------------------------------------------
    def read_nodes(self) -> list[dict[str, Any]]:
        """Return node entries from ``nodes.yml`` (empty list if missing)."""
        return _entries(self.read(NODES_FILE, default={"nodes": []}), "nodes")

    def read_vhosts(self) -> list[dict[str, Any]]:
        """Return vhost entries from ``vhosts.yml`` (empty list if missing)."""
        return _entries(self.read(VHOSTS_FILE, default={"vhosts": []}), "vhosts")

    def read_tunnels(self) -> list[dict[str, Any]]:
        """Return tunnel entries from ``tunnels.yml`` (empty list if missing)."""
        return _entries(self.read(TUNNELS_FILE, default={"tunnels": []}), "tunnels")

    def write_nodes(self, nodes: Iterable[Mapping[str, object]]) -> None:
        """Persist node entries to ``nodes.yml``."""
        self.write(NODES_FILE, {"nodes": [dict(entry) for entry in nodes]})

    def write_vhosts(self, vhosts: Iterable[Mapping[str, object]]) -> None:
        """Persist vhost entries to ``vhosts.yml``."""
        self.write(VHOSTS_FILE, {"vhosts": [dict(entry) for entry in vhosts]})

    def write_tunnels(self, tunnels: Iterable[Mapping[str, object]]) -> None:
        """Persist tunnel entries to ``tunnels.yml``."""
        self.write(TUNNELS_FILE, {"tunnels": [dict(entry) for entry in tunnels]})

    # Node helpers -----------------------------------------------------
    def get_node(self, name: str) -> dict[str, Any] | None:
        """Return the node mapping for *name* if registered."""
        for entry in self.read_nodes():
            if entry.get("name") == name:
                return entry
        return None

    # VHost helpers ----------------------------------------------------
    def get_vhost(self, name: str) -> dict[str, Any] | None:
        """Return the vhost mapping for *name* if registered."""
        for entry in self.read_vhosts():
            if entry.get("name") == name:
                return entry
        return None

    def update_vhost(self, name: str, updates: Mapping[str, object]) -> dict[str, Any]:
        """Apply *updates* to the registered vhost named *name*."""
        vhosts = self.read_vhosts()
        merged: dict[str, Any] | None = None
        for index, entry in enumerate(vhosts):
            if entry.get("name") == name:
                merged = dict(entry)
                merged.update(updates)
                vhosts[index] = merged
                break
        if merged is None:
            raise StateRegistryError(f"VHost '{name}' not found in registry")
        self.write_vhosts(vhosts)
        return deepcopy(merged)


def _entries(raw: object, key: str) -> list[dict[str, Any]]:
    if not isinstance(raw, Mapping):
        return []
    values = raw.get(key, [])
    if not isinstance(values, list):
        raise StateRegistryError(f"Registry key '{key}' must contain a list.")
    return [dict(entry) for entry in values if isinstance(entry, Mapping)]


def _plain(value: object) -> object:
    """Convert tuples, paths and nested mappings into YAML-safe builtins."""
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    if isinstance(value, Path):
        return str(value)
    return value


__all__ = [
    "NODES_FILE",
    "StateRegistry",
    "StateRegistryError",
    "TUNNELS_FILE",
    "VHOSTS_FILE",
]
