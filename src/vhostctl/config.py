"""Configuration loader for vhostctl.

Configuration values are read from multiple sources, later sources winning:

1. Built-in defaults.
2. ``/etc/vhostctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``VHOSTCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export VHOSTCTL_SSH__CONNECT_TIMEOUT=5
    export VHOSTCTL_TUNNELS__BASE_PORT=20000

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "VHOSTCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SshConfig:
    """Remote shell transport settings."""

    binary: str = "ssh"
    connect_timeout: int = 10
    execution_timeout: float = 300.0
    migration_timeout: float = 1800.0
    strict_host_key_checking: str = "accept-new"
    control_dir: Path | None = None
    retries: int = 0
    retry_backoff: float = 2.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "binary": self.binary,
            "connect_timeout": self.connect_timeout,
            "execution_timeout": self.execution_timeout,
            "migration_timeout": self.migration_timeout,
            "strict_host_key_checking": self.strict_host_key_checking,
            "control_dir": str(self.control_dir) if self.control_dir else None,
            "retries": self.retries,
            "retry_backoff": self.retry_backoff,
        }


@dataclass(frozen=True)
class TunnelServiceConfig:
    """Remote port and URL scheme for a named tunnel service."""

    port: int
    scheme: str = "tcp"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"port": self.port, "scheme": self.scheme}


@dataclass(frozen=True)
class TunnelsConfig:
    """Deterministic port mapping and forward lifecycle settings."""

    base_port: int = 10000
    port_range: int = 10000
    bind_address: str = "127.0.0.1"
    ready_timeout: float = 10.0
    grace_period: float = 1.0
    services: Mapping[str, TunnelServiceConfig] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "base_port": self.base_port,
            "port_range": self.port_range,
            "bind_address": self.bind_address,
            "ready_timeout": self.ready_timeout,
            "grace_period": self.grace_period,
            "services": {name: svc.to_dict() for name, svc in sorted(self.services.items())},
        }


@dataclass(frozen=True)
class MigrationConfig:
    """Layout migration defaults."""

    archive_dir: str = ".archive"
    space_factor: float = 1.2
    web_group: str = "www-data"
    max_workers: int = 4
    reload_units: tuple[str, ...] = ("nginx",)
    reload_php_fpm: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "archive_dir": self.archive_dir,
            "space_factor": self.space_factor,
            "web_group": self.web_group,
            "max_workers": self.max_workers,
            "reload_units": list(self.reload_units),
            "reload_php_fpm": self.reload_php_fpm,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for vhostctl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    ssh: SshConfig
    tunnels: TunnelsConfig
    migration: MigrationConfig

    @property
    def control_dir(self) -> Path:
        """Return the directory holding SSH control sockets for tunnels."""
        return self.ssh.control_dir or self.runtime_dir / "tunnels"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "ssh": self.ssh.to_dict(),
            "tunnels": self.tunnels.to_dict(),
            "migration": self.migration.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/vhostctl/config.yml",
    "state_dir": "/var/lib/vhostctl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/vhostctl",
    "runtime_dir": "/run/vhostctl",
    "templates_dir": "/etc/vhostctl/templates",
    "lock_timeout": 30.0,
    "ssh": {
        "binary": "ssh",
        "connect_timeout": 10,
        "execution_timeout": 300.0,
        "migration_timeout": 1800.0,
        "strict_host_key_checking": "accept-new",
        "control_dir": None,
        "retries": 0,
        "retry_backoff": 2.0,
    },
    "tunnels": {
        "base_port": 10000,
        "port_range": 10000,
        "bind_address": "127.0.0.1",
        "ready_timeout": 10.0,
        "grace_period": 1.0,
        "services": {},
    },
    "migration": {
        "archive_dir": ".archive",
        "space_factor": 1.2,
        "web_group": "www-data",
        "max_workers": 4,
        "reload_units": ["nginx"],
        "reload_php_fpm": True,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SSH_KEYS = set(cast(Mapping[str, object], DEFAULTS["ssh"]).keys())
ALLOWED_TUNNEL_KEYS = set(cast(Mapping[str, object], DEFAULTS["tunnels"]).keys())
ALLOWED_MIGRATION_KEYS = set(cast(Mapping[str, object], DEFAULTS["migration"]).keys())
ALLOWED_HOST_KEY_POLICIES = {"yes", "no", "accept-new"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in (
        ("ssh", ALLOWED_SSH_KEYS),
        ("tunnels", ALLOWED_TUNNEL_KEYS),
        ("migration", ALLOWED_MIGRATION_KEYS),
    ):
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    ssh_map = _as_dict(raw.get("ssh"), "ssh")
    policy = ssh_map.get("strict_host_key_checking")
    if policy is not None and str(policy) not in ALLOWED_HOST_KEY_POLICIES:
        allowed_policies = ", ".join(sorted(ALLOWED_HOST_KEY_POLICIES))
        raise ConfigError(
            f"Unsupported ssh.strict_host_key_checking '{policy}'. Allowed: {allowed_policies}."
        )

    tunnels_map = _as_dict(raw.get("tunnels"), "tunnels")
    services = _as_dict(tunnels_map.get("services"), "tunnels.services")
    for name, entry in services.items():
        if isinstance(entry, Mapping):
            entry_map = _as_dict(entry, f"tunnels.services.{name}")
            unknown = set(entry_map.keys()) - {"port", "scheme"}
            if unknown:
                joined = ", ".join(sorted(unknown))
                raise ConfigError(f"Unknown keys for tunnels.services.{name}: {joined}.")
        elif isinstance(entry, bool) or not isinstance(entry, (int, str)):
            raise ConfigError(
                f"tunnels.services.{name} must be a port number or a mapping with 'port'."
            )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        ssh=_build_ssh_config(_as_dict(raw.get("ssh"), "ssh")),
        tunnels=_build_tunnels_config(_as_dict(raw.get("tunnels"), "tunnels")),
        migration=_build_migration_config(_as_dict(raw.get("migration"), "migration")),
    )


def _build_ssh_config(mapping: Mapping[str, object]) -> SshConfig:
    defaults = SshConfig()
    control_value = mapping.get("control_dir")
    retries = _expect_int(mapping.get("retries"), "ssh.retries", default=defaults.retries)
    if retries < 0:
        raise ConfigError("ssh.retries must be non-negative.")
    connect_timeout = _expect_int(
        mapping.get("connect_timeout"), "ssh.connect_timeout", default=defaults.connect_timeout
    )
    if connect_timeout <= 0:
        raise ConfigError("ssh.connect_timeout must be greater than zero.")
    return SshConfig(
        binary=str(mapping.get("binary") or defaults.binary),
        connect_timeout=connect_timeout,
        execution_timeout=_expect_positive_float(
            mapping.get("execution_timeout"),
            "ssh.execution_timeout",
            default=defaults.execution_timeout,
        ),
        migration_timeout=_expect_positive_float(
            mapping.get("migration_timeout"),
            "ssh.migration_timeout",
            default=defaults.migration_timeout,
        ),
        strict_host_key_checking=str(
            mapping.get("strict_host_key_checking") or defaults.strict_host_key_checking
        ),
        control_dir=_to_path(control_value) if control_value else None,
        retries=retries,
        retry_backoff=_expect_positive_float(
            mapping.get("retry_backoff"), "ssh.retry_backoff", default=defaults.retry_backoff
        ),
    )


def _build_tunnels_config(mapping: Mapping[str, object]) -> TunnelsConfig:
    defaults = TunnelsConfig()
    base_port = _expect_int(mapping.get("base_port"), "tunnels.base_port", default=defaults.base_port)
    port_range = _expect_int(
        mapping.get("port_range"), "tunnels.port_range", default=defaults.port_range
    )
    if not 1024 <= base_port <= 65535:
        raise ConfigError("tunnels.base_port must be between 1024 and 65535.")
    if port_range <= 0:
        raise ConfigError("tunnels.port_range must be greater than zero.")
    if base_port + port_range - 1 > 65535:
        raise ConfigError("tunnels.base_port + tunnels.port_range exceeds the TCP port space.")

    services: dict[str, TunnelServiceConfig] = {}
    for name, entry in _as_dict(mapping.get("services"), "tunnels.services").items():
        label = f"tunnels.services.{name}"
        if isinstance(entry, Mapping):
            entry_map = _as_dict(entry, label)
            port = _expect_int(entry_map.get("port"), f"{label}.port", default=0)
            scheme = str(entry_map.get("scheme") or "tcp")
        else:
            port = _expect_int(entry, label, default=0)
            scheme = "tcp"
        if not 1 <= port <= 65535:
            raise ConfigError(f"{label} requires a port between 1 and 65535.")
        services[name.strip().lower()] = TunnelServiceConfig(port=port, scheme=scheme)

    return TunnelsConfig(
        base_port=base_port,
        port_range=port_range,
        bind_address=str(mapping.get("bind_address") or defaults.bind_address),
        ready_timeout=_expect_positive_float(
            mapping.get("ready_timeout"), "tunnels.ready_timeout", default=defaults.ready_timeout
        ),
        grace_period=_expect_positive_float(
            mapping.get("grace_period"), "tunnels.grace_period", default=defaults.grace_period
        ),
        services=services,
    )


def _build_migration_config(mapping: Mapping[str, object]) -> MigrationConfig:
    defaults = MigrationConfig()
    archive_dir = str(mapping.get("archive_dir") or defaults.archive_dir).strip("/")
    if not archive_dir or "/" in archive_dir or archive_dir in {".", ".."}:
        raise ConfigError("migration.archive_dir must be a single relative directory name.")

    space_factor = _expect_positive_float(
        mapping.get("space_factor"), "migration.space_factor", default=defaults.space_factor
    )
    if space_factor < 1.0:
        raise ConfigError("migration.space_factor must be at least 1.0.")

    max_workers = _expect_int(
        mapping.get("max_workers"), "migration.max_workers", default=defaults.max_workers
    )
    if max_workers <= 0:
        raise ConfigError("migration.max_workers must be greater than zero.")

    units_raw = mapping.get("reload_units")
    if units_raw is None:
        reload_units = defaults.reload_units
    else:
        reload_units = tuple(
            str(unit).strip()
            for unit in _as_sequence(units_raw, "migration.reload_units")
            if str(unit).strip()
        )

    php_fpm = mapping.get("reload_php_fpm", defaults.reload_php_fpm)
    if not isinstance(php_fpm, bool):
        raise ConfigError("migration.reload_php_fpm must be a boolean.")

    return MigrationConfig(
        archive_dir=archive_dir,
        space_factor=space_factor,
        web_group=str(mapping.get("web_group") or defaults.web_group),
        max_workers=max_workers,
        reload_units=reload_units,
        reload_php_fpm=php_fpm,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "MigrationConfig",
    "SshConfig",
    "TunnelServiceConfig",
    "TunnelsConfig",
    "load_config",
]
