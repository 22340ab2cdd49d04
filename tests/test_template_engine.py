"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from vhostctl.templates import TemplateEngine, TemplateError

CONTEXT = {"script_name": "verify", "script_version": 1, "archive_dir": ".archive"}


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in script assets render with strict variables."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("scripts/backup.sh.j2", CONTEXT)

    assert output.startswith("#!/bin/bash\n")
    assert "backup v1" in output
    assert 'archive_root="$upath/.archive"' in output
    assert "{{" not in output


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "bin" / "verify.sh"

    changed = engine.render_to_path("scripts/verify.sh.j2", destination, CONTEXT, mode=0o755)

    assert changed is True
    assert oct(destination.stat().st_mode & 0o777) == "0o755"

    # Second render with same content should be a no-op.
    assert engine.render_to_path("scripts/verify.sh.j2", destination, CONTEXT) is False


def test_override_directory_takes_precedence(tmp_path: Path) -> None:
    """Templates in the override directory shadow the packaged ones."""
    override = tmp_path / "templates" / "scripts"
    override.mkdir(parents=True)
    (override / "verify.sh.j2").write_text("#!/bin/bash\necho custom {{ script_version }}\n")

    engine = TemplateEngine.with_overrides(tmp_path / "templates")

    assert engine.render_to_string("scripts/verify.sh.j2", CONTEXT) == (
        "#!/bin/bash\necho custom 1\n"
    )
    # Templates absent from the override directory still come from the package.
    assert "preflight v1" in engine.render_to_string("scripts/preflight.sh.j2", CONTEXT)


def test_missing_variable_raises_template_error() -> None:
    """StrictUndefined turns a missing context value into TemplateError."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateError):
        engine.render_to_string("scripts/backup.sh.j2", {"script_version": 1})


def test_missing_template_raises_template_error() -> None:
    """Unknown template names raise TemplateError."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateError, match="not found"):
        engine.render_to_string("scripts/nope.sh.j2", CONTEXT)
