"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from vhostctl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "absent.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.registry_dir == Path("/var/lib/vhostctl/registry")
    assert config.templates_dir == Path("/etc/vhostctl/templates")
    assert config.control_dir == Path("/run/vhostctl/tunnels")
    assert config.ssh.connect_timeout == 10
    assert config.ssh.strict_host_key_checking == "accept-new"
    assert config.tunnels.base_port == 10000
    assert config.tunnels.port_range == 10000
    assert config.migration.archive_dir == ".archive"
    assert config.migration.space_factor == 1.2
    assert config.migration.reload_units == ("nginx",)


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "vhostctl.yml"
    cfg.write_text(
        "state_dir: {state}\n"
        "ssh:\n"
        "  connect_timeout: 4\n"
        "  retries: 2\n"
        "tunnels:\n"
        "  base_port: 20000\n"
        "  services:\n"
        "    solr: 8983\n"
        "    grafana:\n"
        "      port: 3000\n"
        "      scheme: http\n"
        "migration:\n"
        "  web_group: nginx\n"
        "  reload_units: [nginx, apache2]\n".format(state=tmp_path / "state")
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.registry_dir == tmp_path / "state" / "registry"
    assert config.ssh.connect_timeout == 4
    assert config.ssh.retries == 2
    assert config.tunnels.base_port == 20000
    assert config.tunnels.services["solr"].port == 8983
    assert config.tunnels.services["solr"].scheme == "tcp"
    assert config.tunnels.services["grafana"].scheme == "http"
    assert config.migration.web_group == "nginx"
    assert config.migration.reload_units == ("nginx", "apache2")


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("ssh:\n  connect_timeout: 4\n")
    env = {
        "VHOSTCTL_SSH__CONNECT_TIMEOUT": "7",
        "VHOSTCTL_MIGRATION__RELOAD_PHP_FPM": "false",
        "VHOSTCTL_LOCK_TIMEOUT": "45",
        "VHOSTCTL_RUNTIME_DIR": str(tmp_path / "run"),
    }

    config = load_config(config_file=cfg, env=env)

    assert config.ssh.connect_timeout == 7
    assert config.migration.reload_php_fpm is False
    assert config.lock_timeout == 45.0
    assert config.control_dir == tmp_path / "run" / "tunnels"


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """Environment variable selects an alternate config file."""
    cfg = tmp_path / "override.yml"
    cfg.write_text("migration:\n  archive_dir: .snapshots\n")

    config = load_config(env={"VHOSTCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.migration.archive_dir == ".snapshots"


def test_overrides_win_over_environment(tmp_path: Path) -> None:
    """Programmatic overrides are applied last."""
    config = load_config(
        config_file=tmp_path / "absent.yml",
        env={"VHOSTCTL_LOCK_TIMEOUT": "45"},
        overrides={"lock_timeout": 3},
    )

    assert config.lock_timeout == 3.0


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A config file that is not a mapping raises a ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_nested_keys_raise(tmp_path: Path) -> None:
    """Extra section keys produce ConfigError for clarity."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("migration:\n  archive_dir: .archive\n  extra: true\n")

    with pytest.raises(ConfigError, match="Unknown migration configuration keys"):
        load_config(config_file=cfg, env={})


def test_invalid_host_key_policy_raises(tmp_path: Path) -> None:
    """Only OpenSSH's known StrictHostKeyChecking values are accepted."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("ssh:\n  strict_host_key_checking: sometimes\n")

    with pytest.raises(ConfigError, match="strict_host_key_checking"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("tunnels:\n  base_port: 80\n", "base_port"),
        ("tunnels:\n  base_port: 60000\n  port_range: 10000\n", "TCP port space"),
        ("migration:\n  archive_dir: a/b\n", "archive_dir"),
        ("migration:\n  space_factor: 0.5\n", "space_factor"),
        ("migration:\n  reload_php_fpm: maybe\n", "reload_php_fpm"),
        ("ssh:\n  retries: -1\n", "retries"),
    ],
)
def test_out_of_range_values_raise(tmp_path: Path, body: str, message: str) -> None:
    """Values outside their valid range are rejected."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(body)

    with pytest.raises(ConfigError, match=message):
        load_config(config_file=cfg, env={})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """``to_dict`` returns plain values for every section."""
    config = load_config(config_file=tmp_path / "absent.yml", env={})

    data = config.to_dict()

    assert data["registry_dir"] == "/var/lib/vhostctl/registry"
    assert isinstance(data["ssh"], dict)
    assert isinstance(data["tunnels"], dict)
    assert data["migration"]["archive_dir"] == ".archive"  # type: ignore[index]
