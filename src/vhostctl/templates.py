"""Jinja2 template rendering for vhostctl assets.

Built-in templates ship inside the package under ``assets/``. Operators may
shadow any of them by placing a file with the same relative path below the
configured ``templates_dir``.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateNotFound,
    UndefinedError,
)

BUILTIN_TEMPLATE_DIR = Path(__file__).resolve().parent / "assets"


class TemplateError(RuntimeError):
    """Raised when a template is missing or fails to render."""


@dataclass(frozen=True)
class TemplateEngine:
    """Render templates from the override directory or the packaged assets."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine that prefers templates from *override_dir*."""
        search: list[FileSystemLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            search.append(FileSystemLoader(str(override_dir)))
        search.append(FileSystemLoader(str(BUILTIN_TEMPLATE_DIR)))
        environment = Environment(
            loader=ChoiceLoader(search),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )
        return cls(environment=environment)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        try:
            template = self.environment.get_template(name)
            return template.render(**context)
        except TemplateNotFound as exc:
            raise TemplateError(f"Template '{name}' not found.") from exc
        except UndefinedError as exc:
            raise TemplateError(f"Template '{name}' failed to render: {exc}") from exc

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return False when unchanged."""
        content = self.render_to_string(name, context)
        if destination.exists() and destination.read_text(encoding="utf-8") == content:
            return False
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=".render.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, destination)
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


__all__ = ["BUILTIN_TEMPLATE_DIR", "TemplateEngine", "TemplateError"]
