"""Tests for the remote script catalogue."""
from __future__ import annotations

from pathlib import Path

import pytest

from vhostctl.config import MigrationConfig
from vhostctl.scripts import SCRIPTS, ScriptError, ScriptLibrary
from vhostctl.templates import TemplateEngine


@pytest.fixture
def library() -> ScriptLibrary:
    """Library rendering the packaged assets with default settings."""
    return ScriptLibrary(TemplateEngine.with_overrides(None), MigrationConfig())


def test_every_catalogued_script_renders(library: ScriptLibrary) -> None:
    """Each asset renders to a bash script carrying its name and version."""
    for name, asset in SCRIPTS.items():
        args = ["x"] * (len(asset.args) - 1 if asset.variadic else len(asset.args))
        rendered = library.render(name, args)
        assert rendered.body.startswith("#!/bin/bash\n"), name
        assert f"{name} v{asset.version}" in rendered.body
        assert "set -euo pipefail" in rendered.body


def test_caller_data_is_never_templated(library: ScriptLibrary) -> None:
    """Arguments travel separately; the body only sees ``$1..$n``."""
    rendered = library.render("preflight", ["/srv/evil'; rm -rf /", 1.2])

    assert "rm -rf /" not in rendered.body
    assert rendered.args == ("/srv/evil'; rm -rf /", "1.2")


def test_archive_dir_follows_configuration() -> None:
    """The archive directory name comes from configuration."""
    library = ScriptLibrary(
        TemplateEngine.with_overrides(None), MigrationConfig(archive_dir=".snapshots")
    )

    body = library.render("backup", ["/srv/a", "20250101-000000"]).body

    assert 'archive_root="$upath/.snapshots"' in body


def test_argument_count_is_validated(library: ScriptLibrary) -> None:
    """Fixed-arity scripts reject missing or extra arguments."""
    with pytest.raises(ScriptError, match="expects arguments"):
        library.render("verify", ["/srv/a"])
    with pytest.raises(ScriptError):
        library.render("verify", ["/srv/a", "/srv/a/web", "extra"])


def test_variadic_scripts_accept_extra_arguments(library: ScriptLibrary) -> None:
    """``service_reload`` takes a flag followed by any number of units."""
    assert library.render("service_reload", ["false"]).args == ("false",)
    assert library.render("service_reload", ["true", "nginx", "apache2"]).args == (
        "true",
        "nginx",
        "apache2",
    )
    with pytest.raises(ScriptError):
        library.render("service_reload", [])


def test_unknown_script_raises(library: ScriptLibrary) -> None:
    """Names outside the catalogue are rejected."""
    with pytest.raises(ScriptError, match="Unknown script"):
        library.asset("format_disk")


def test_export_writes_executable(library: ScriptLibrary, tmp_path: Path) -> None:
    """Scripts can be exported for inspection with mode 0755."""
    destination = tmp_path / "rollback.sh"

    assert library.export("rollback", destination) is True
    assert destination.stat().st_mode & 0o777 == 0o755
    assert library.export("rollback", destination) is False
