"""Standalone ownership and mode repair for live vhosts."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from ..errors import PreconditionError, RemoteFailure
from .base import VHostOperation
from .models import MigrationRecord

_log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PermissionFix:
    """Outcome of fixing one vhost."""

    vhost: str
    node: str
    ok: bool
    fixed: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    error: str | None = None
    command: str | None = None


class PermissionFixer(VHostOperation):
    """Reapply the ownership policy without touching migration status."""

    def fix_permissions(
        self,
        vhost: str,
        *,
        web_only: bool = False,
        dry_run: bool = False,
    ) -> PermissionFix:
        """Fix ownership and modes of *vhost*."""
        record = self.store.get(vhost)
        with self._vhost_guard(vhost):
            return self._fix(record, web_only=web_only, dry_run=dry_run)

    def fix_node(
        self,
        node: str,
        *,
        web_only: bool = False,
        dry_run: bool = False,
    ) -> list[PermissionFix]:
        """Fix every vhost registered on *node*, continuing past failures."""
        records = self.store.records(node=node)
        if not records:
            raise PreconditionError(f"No vhosts are registered on node '{node}'.")
        results: list[PermissionFix] = []
        for record in records:
            try:
                with self._vhost_guard(record.vhost):
                    results.append(self._fix(record, web_only=web_only, dry_run=dry_run))
            except (PreconditionError, RemoteFailure) as exc:
                _log.warning("Permission fix for %s failed: %s", record.vhost, exc)
                results.append(
                    PermissionFix(vhost=record.vhost, node=node, ok=False, error=str(exc))
                )
        return results

    def _fix(self, record: MigrationRecord, *, web_only: bool, dry_run: bool) -> PermissionFix:
        target = self.resolve_target(record.node)
        layout = record.layout
        args = [
            layout.upath,
            layout.wpath,
            layout.mpath or "",
            layout.uid,
            layout.web_group or self.config.web_group,
            "true" if web_only else "false",
        ]
        result = self._run(target, "permissions_fix", args, dry_run=dry_run)
        if dry_run:
            return PermissionFix(
                vhost=record.vhost, node=record.node, ok=True, command=result.stdout
            )
        result.raise_for_status()
        _log.info("Fixed permissions of %s on %s", record.vhost, record.node)
        return PermissionFix(
            vhost=record.vhost,
            node=record.node,
            ok=True,
            fixed=tuple(result.markers("FIXED")),
            warnings=tuple(result.markers("WARNING")),
        )


__all__ = ["PermissionFix", "PermissionFixer"]
