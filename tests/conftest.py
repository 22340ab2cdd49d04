"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import grp
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from vhostctl.cli import RuntimeContext, build_runtime
from vhostctl.config import AppConfig, load_config
from vhostctl.remote import RemoteTarget

HAVE_SHELL = shutil.which("bash") is not None and shutil.which("tar") is not None


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs and shell tests without bash."""
    if not HAVE_SHELL:
        no_shell = pytest.mark.skip(reason="bash and GNU tar are required to run scripts locally.")
        for item in items:
            if "local_shell" in item.keywords:
                item.add_marker(no_shell)
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@dataclass(frozen=True)
class LocalShellTransport:
    """Run "remote" commands in a local bash so scripts act on a temp tree."""

    def command(self, target: RemoteTarget, remote_command: str) -> list[str]:
        return ["bash", "-c", remote_command]

    def forward_command(
        self,
        target: RemoteTarget,
        *,
        bind_address: str,
        local_port: int,
        remote_host: str,
        remote_port: int,
        control_path: Path,
    ) -> list[str]:
        return ["sleep", "30"]


@dataclass
class Fleet:
    """A local node plus legacy vhost trees under ``tmp_path``."""

    root: Path
    config: AppConfig
    runtime: RuntimeContext
    vhosts: dict[str, Path] = field(default_factory=dict)

    def add_legacy_vhost(self, name: str, *, status: str = "validated") -> Path:
        """Create a legacy-layout tree for *name* and register it."""
        upath = self.root / "srv" / name
        (upath / "web" / "css").mkdir(parents=True)
        (upath / "web" / "index.php").write_text("<?php echo 'hi';\n", encoding="utf-8")
        (upath / "web" / "css" / "site.css").write_text("body {}\n", encoding="utf-8")
        (upath / "var" / "log").mkdir(parents=True)
        (upath / "var" / "log" / "access.log").write_text("GET /\n", encoding="utf-8")
        (upath / "var" / "run").mkdir(parents=True)
        (upath / "private").mkdir()
        (upath / "private" / "notes.txt").write_text("keep\n", encoding="utf-8")
        self.vhosts[name] = upath

        registry = self.runtime.registry
        entries = registry.read_vhosts()
        entries.append(
            {
                "name": name,
                "node": "local",
                "upath": str(upath),
                "uid": os.getuid(),
                "gid": os.getgid(),
                "migration_status": status,
            }
        )
        registry.write_vhosts(entries)
        return upath


def make_config(tmp_path: Path, **migration: object) -> AppConfig:
    """Return a config rooted in *tmp_path* that never touches system paths."""
    settings: dict[str, object] = {
        "web_group": grp.getgrgid(os.getgid()).gr_name,
        "reload_units": [],
        "reload_php_fpm": False,
        "max_workers": 2,
    }
    settings.update(migration)
    return load_config(
        config_file=tmp_path / "config.yml",
        env={},
        overrides={
            "state_dir": str(tmp_path / "state"),
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "templates_dir": str(tmp_path / "templates"),
            "lock_timeout": 2.0,
            "ssh": {"execution_timeout": 60, "migration_timeout": 120},
            "migration": settings,
        },
    )


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration confined to the test's temporary directory."""
    return make_config(tmp_path)


@pytest.fixture
def fleet(tmp_path: Path, app_config: AppConfig) -> Fleet:
    """A runtime whose single node ``local`` is this machine."""
    runtime = build_runtime(app_config, transport=LocalShellTransport())
    runtime.registry.write_nodes(
        [{"name": "local", "hostname": "localhost", "elevation": "none"}]
    )
    return Fleet(root=tmp_path, config=app_config, runtime=runtime)
