"""Deterministic local port mapping for tunnels.

``local_port(node, service)`` is a pure function: the same pair maps to the
same port in every process, so no coordination service or shared registry is
needed to find an existing forward again.
"""
from __future__ import annotations

import hashlib
from collections.abc import Mapping
from dataclasses import dataclass, field

from .config import TunnelServiceConfig, TunnelsConfig
from .errors import PreconditionError

DEFAULT_BASE_PORT = 10000
DEFAULT_PORT_RANGE = 10000

SERVICE_DEFAULTS: dict[str, TunnelServiceConfig] = {
    "mysql": TunnelServiceConfig(port=3306, scheme="mysql"),
    "mariadb": TunnelServiceConfig(port=3306, scheme="mysql"),
    "db": TunnelServiceConfig(port=3306, scheme="mysql"),
    "postgres": TunnelServiceConfig(port=5432, scheme="postgresql"),
    "redis": TunnelServiceConfig(port=6379, scheme="redis"),
    "powerdns": TunnelServiceConfig(port=8081, scheme="http"),
    "pdns": TunnelServiceConfig(port=8081, scheme="http"),
    "api": TunnelServiceConfig(port=8080, scheme="http"),
}


def _normalize(value: str, label: str) -> str:
    normalized = value.strip().lower()
    if not normalized:
        raise PreconditionError(f"{label} must be a non-empty string.")
    return normalized


def local_port(
    node: str,
    service: str,
    *,
    base_port: int = DEFAULT_BASE_PORT,
    port_range: int = DEFAULT_PORT_RANGE,
) -> int:
    """Return the local port for *service* on *node*.

    ``base_port + int(md5(node + service)[:8], 16) % port_range``; names are
    case-folded so ``Alpha``/``alpha`` share a port.
    """
    key = _normalize(node, "Node name") + _normalize(service, "Service name")
    digest = hashlib.md5(key.encode("utf-8"), usedforsecurity=False).hexdigest()
    return base_port + int(digest[:8], 16) % port_range


@dataclass(frozen=True)
class PortPlan:
    """Port mapping and service catalogue bound to the tunnel configuration."""

    base_port: int = DEFAULT_BASE_PORT
    port_range: int = DEFAULT_PORT_RANGE
    services: Mapping[str, TunnelServiceConfig] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: TunnelsConfig) -> PortPlan:
        """Build a plan from the ``tunnels`` configuration section."""
        return cls(
            base_port=config.base_port,
            port_range=config.port_range,
            services=dict(config.services),
        )

    def local_port(self, node: str, service: str) -> int:
        """Return the deterministic local port for (*node*, *service*)."""
        return local_port(node, service, base_port=self.base_port, port_range=self.port_range)

    def service(self, name: str) -> TunnelServiceConfig | None:
        """Return the configured or built-in definition of service *name*."""
        normalized = _normalize(name, "Service name")
        return self.services.get(normalized) or SERVICE_DEFAULTS.get(normalized)

    def remote_port(self, service: str, override: int | None = None) -> int:
        """Return the remote port for *service*, honouring *override*."""
        if override is not None:
            if not 1 <= override <= 65535:
                raise PreconditionError(f"Remote port {override} is out of range.")
            return override
        definition = self.service(service)
        if definition is None:
            raise PreconditionError(
                f"Unknown service '{service}'; pass an explicit remote port."
            )
        return definition.port

    def scheme(self, service: str) -> str:
        """Return the URL scheme used for *service* endpoints."""
        definition = self.service(service)
        return definition.scheme if definition is not None else "tcp"


__all__ = ["DEFAULT_BASE_PORT", "DEFAULT_PORT_RANGE", "PortPlan", "SERVICE_DEFAULTS", "local_port"]
