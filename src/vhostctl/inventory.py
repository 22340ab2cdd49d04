"""Resolve logical node names to :class:`RemoteTarget` objects.

Nodes are registered in ``nodes.yml``::

    nodes:
      - name: alpha
        hostname: alpha.example.net
        ssh_user: admin
        ssh_port: 22
        identity_file: ~/.ssh/fleet_ed25519
        elevation: sudo

Resolution happens once, at the edge (CLI or batch driver); the core only ever
sees resolved targets. An unknown node is an error; there is no default host.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .errors import PreconditionError
from .remote.target import RemoteTarget
from .state import StateRegistry


@dataclass(frozen=True)
class NodeInventory:
    """Look up node coordinates in the state registry."""

    registry: StateRegistry

    def names(self) -> list[str]:
        """Return registered node names in order."""
        return [str(entry.get("name")) for entry in self.registry.read_nodes() if entry.get("name")]

    def resolve(self, name: str) -> RemoteTarget:
        """Return the :class:`RemoteTarget` registered as *name*."""
        normalized = name.strip()
        if not normalized:
            raise PreconditionError("Node name must be a non-empty string.")
        entry = self.registry.get_node(normalized)
        if entry is None:
            raise PreconditionError(f"Node '{normalized}' is not registered in nodes.yml.")
        return target_from_mapping(entry)


def target_from_mapping(entry: Mapping[str, object]) -> RemoteTarget:
    """Build a :class:`RemoteTarget` from a registry mapping."""
    name = str(entry.get("name") or "").strip()
    hostname = str(entry.get("hostname") or entry.get("host") or "").strip()
    identity = entry.get("identity_file")
    port_value = entry.get("ssh_port", 22)
    try:
        port = int(str(port_value))
    except ValueError as exc:
        raise PreconditionError(f"Node '{name}' has a non-numeric ssh_port {port_value!r}.") from exc
    try:
        return RemoteTarget(
            name=name,
            hostname=hostname,
            ssh_user=str(entry.get("ssh_user") or "root"),
            ssh_port=port,
            identity_file=Path(str(identity)).expanduser() if identity else None,
            elevation=str(entry.get("elevation") or "sudo"),
        )
    except ValueError as exc:
        raise PreconditionError(str(exc)) from exc


__all__ = ["NodeInventory", "target_from_mapping"]
