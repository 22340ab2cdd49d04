"""Catalogue of the remote scripts vhostctl runs.

Every script is a named, versioned asset under ``assets/scripts``. The catalogue
records the positional arguments each one expects and the idempotency contract
it honours, so call sites never assemble shell text themselves. Templates only
receive configuration constants; everything that comes from a vhost record is
passed as ``$1..$n`` at execution time.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from .config import MigrationConfig
from .templates import TemplateEngine


class ScriptError(RuntimeError):
    """Raised when a script is unknown or invoked with the wrong arguments."""


@dataclass(frozen=True, slots=True)
class ScriptAsset:
    """A remote script and its calling convention."""

    name: str
    version: int
    args: tuple[str, ...]
    idempotency: str
    privileged: bool = True
    variadic: bool = False

    @property
    def template(self) -> str:
        """Return the template path relative to the assets directory."""
        return f"scripts/{self.name}.sh.j2"


SCRIPTS: dict[str, ScriptAsset] = {
    asset.name: asset
    for asset in (
        ScriptAsset(
            "preflight",
            1,
            ("UPATH", "SPACE_FACTOR"),
            "Read-only; reports tree size and free space.",
        ),
        ScriptAsset(
            "backup",
            1,
            ("UPATH", "STAMP"),
            "Never overwrites an archive; a failed run leaves no partial file.",
        ),
        ScriptAsset(
            "structural_move",
            1,
            ("UPATH", "WPATH"),
            "Skips entries already in place; a re-run completes a partial move.",
        ),
        ScriptAsset(
            "permissions",
            1,
            ("UPATH", "WPATH", "UID", "GID", "WEB_GROUP"),
            "Re-asserts ownership and modes; repeated runs converge.",
        ),
        ScriptAsset(
            "service_reload",
            1,
            ("INCLUDE_PHP_FPM", "UNITS"),
            "Reload only; inactive units are skipped.",
            variadic=True,
        ),
        ScriptAsset(
            "verify",
            1,
            ("UPATH", "WPATH"),
            "Read-only.",
        ),
        ScriptAsset(
            "rollback",
            1,
            ("UPATH", "ARCHIVE"),
            "Restores the same tree each time; archives are never modified.",
        ),
        ScriptAsset(
            "list_archives",
            1,
            ("UPATH",),
            "Read-only.",
        ),
        ScriptAsset(
            "validate",
            1,
            ("UPATH", "WPATH", "UID", "GID"),
            "Read-only.",
        ),
        ScriptAsset(
            "permissions_fix",
            1,
            ("UPATH", "WPATH", "MPATH", "UID", "WEB_GROUP", "WEB_ONLY"),
            "Re-asserts ownership and modes; repeated runs converge.",
        ),
    )
}


@dataclass(frozen=True, slots=True)
class RenderedScript:
    """A script body ready for the executor together with its arguments."""

    asset: ScriptAsset
    body: str
    args: tuple[str, ...]


class ScriptLibrary:
    """Render script assets with the active configuration."""

    def __init__(self, templates: TemplateEngine, migration: MigrationConfig) -> None:
        """Bind the library to a template engine and migration settings."""
        self.templates = templates
        self.migration = migration

    def asset(self, name: str) -> ScriptAsset:
        """Return the catalogue entry for *name*."""
        try:
            return SCRIPTS[name]
        except KeyError as exc:
            raise ScriptError(f"Unknown script '{name}'.") from exc

    def render(self, name: str, args: Sequence[object] = ()) -> RenderedScript:
        """Render *name* and validate *args* against its declaration."""
        asset = self.asset(name)
        values = tuple(str(arg) for arg in args)
        required = len(asset.args) - 1 if asset.variadic else len(asset.args)
        if len(values) < required or (not asset.variadic and len(values) != required):
            expected = ", ".join(asset.args)
            raise ScriptError(
                f"Script '{name}' expects arguments ({expected}); got {len(values)}."
            )
        body = self.templates.render_to_string(asset.template, self._context(asset))
        return RenderedScript(asset=asset, body=body, args=values)

    def export(self, name: str, destination: Path) -> bool:
        """Write the rendered script *name* to *destination* (mode 0755)."""
        asset = self.asset(name)
        return self.templates.render_to_path(
            asset.template,
            destination,
            self._context(asset),
            mode=0o755,
        )

    def _context(self, asset: ScriptAsset) -> Mapping[str, object]:
        return {
            "script_name": asset.name,
            "script_version": asset.version,
            "archive_dir": self.migration.archive_dir,
        }


__all__ = ["RenderedScript", "SCRIPTS", "ScriptAsset", "ScriptError", "ScriptLibrary"]
