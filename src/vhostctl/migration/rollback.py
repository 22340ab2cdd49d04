"""Restore a vhost from a pre-migration archive.

Rollback is the inverse of the structural part of a migration: the chosen
archive is verified, unpacked into a staging directory inside the archive
root and then swapped in for everything else under the vhost root. Entries
that only exist because of the migration are removed; the archive wins.
Archives themselves are never deleted.
"""
from __future__ import annotations

import logging
import posixpath
from datetime import UTC, datetime

from ..errors import PreconditionError
from ..remote.target import RemoteTarget
from .base import VHostOperation
from .models import (
    ARCHIVE_PREFIX,
    ARCHIVE_STAMP_FORMAT,
    ARCHIVE_SUFFIX,
    MigrationRecord,
    MigrationStatus,
    RollbackOutcome,
    RollbackPoint,
    check_transition,
    now_iso,
)

_log = logging.getLogger(__name__)

ROLLBACK_SOURCES = (MigrationStatus.MIGRATED, MigrationStatus.FAILED)


class RollbackEngine(VHostOperation):
    """List and restore pre-migration archives."""

    def list_rollback_points(self, vhost: str) -> list[RollbackPoint]:
        """Return the archives available for *vhost*, newest first."""
        record = self.store.get(vhost)
        target = self.resolve_target(record.node)
        return self._rollback_points(record, target)

    def rollback(self, vhost: str, archive_path: str | None = None) -> RollbackOutcome:
        """Restore *vhost* from *archive_path* (default: the newest archive)."""
        with self._vhost_guard(vhost):
            record = self.store.get(vhost)
            if not record.rollback_available:
                raise PreconditionError(
                    f"Rollback is not available for {vhost}; no backup was taken."
                )
            if record.status not in ROLLBACK_SOURCES:
                raise PreconditionError(
                    f"VHost {vhost} is '{record.status.value}'; rollback requires "
                    "'migrated' or 'failed'."
                )
            check_transition(record.status, MigrationStatus.VALIDATED, "rollback")
            target = self.resolve_target(record.node)

            if archive_path is None:
                points = self._rollback_points(record, target)
                if not points:
                    raise PreconditionError(f"No pre-migration archives found for {vhost}.")
                archive = points[0].path
            else:
                archive = self._checked_archive(record, archive_path)

            _log.info("Rolling back %s from %s", vhost, archive)
            result = self._run(
                target, "rollback", [record.layout.upath, archive]
            ).raise_for_status()
            warnings = list(result.markers("WARNING"))

            reload = self._reload_services(record, target)
            if reload.success:
                warnings.extend(reload.markers("WARNING"))
            else:
                detail = reload.stderr.strip() or f"exit code {reload.exit_code}"
                warnings.append(f"Service reload after rollback failed: {detail}")
                _log.warning("Service reload after rollback of %s failed: %s", vhost, detail)

            finished = now_iso()
            record.transition(MigrationStatus.VALIDATED, "rollback")
            record.migrated_at = None
            record.history.append({"action": "rollback", "archive": archive, "at": finished})
            self.store.save(record)
            _log.info("Rollback of %s completed", vhost)
            return RollbackOutcome(
                vhost=vhost,
                archive=archive,
                status=record.status,
                restored=tuple(result.markers("RESTORED")),
                removed=tuple(result.markers("REMOVED")),
                warnings=tuple(warnings),
            )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _rollback_points(
        self, record: MigrationRecord, target: RemoteTarget
    ) -> list[RollbackPoint]:
        result = self._run(target, "list_archives", [record.layout.upath]).raise_for_status()
        points: list[RollbackPoint] = []
        for line in result.stdout.splitlines():
            parts = line.strip().split(" ", 2)
            if len(parts) != 3:
                continue
            mtime, size, path = parts
            try:
                size_value = int(size)
                mtime_value = float(mtime)
            except ValueError:
                _log.debug("Ignoring unparsable archive line %r", line)
                continue
            filename = posixpath.basename(path)
            points.append(
                RollbackPoint(
                    filename=filename,
                    path=path,
                    created_at=_created_at(filename, mtime_value),
                    size=size_value,
                )
            )
        points.sort(key=lambda point: point.created_at, reverse=True)
        return points

    def _checked_archive(self, record: MigrationRecord, archive_path: str) -> str:
        root = self._archive_root(record)
        normalized = posixpath.normpath(archive_path)
        if not normalized.startswith("/"):
            normalized = posixpath.normpath(posixpath.join(root, normalized))
        filename = posixpath.basename(normalized)
        if posixpath.dirname(normalized) != root:
            raise PreconditionError(f"Archive {archive_path} is not inside {root}.")
        if not (filename.startswith(ARCHIVE_PREFIX) and filename.endswith(ARCHIVE_SUFFIX)):
            raise PreconditionError(
                f"Archive {filename} is not a pre-migration archive "
                f"({ARCHIVE_PREFIX}<stamp>{ARCHIVE_SUFFIX})."
            )
        return normalized


def _created_at(filename: str, mtime: float) -> str:
    stamp = filename[len(ARCHIVE_PREFIX) : -len(ARCHIVE_SUFFIX)]
    try:
        moment = datetime.strptime(stamp, ARCHIVE_STAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        moment = datetime.fromtimestamp(mtime, tz=UTC)
    return moment.isoformat(timespec="seconds").replace("+00:00", "Z")


__all__ = ["ROLLBACK_SOURCES", "RollbackEngine"]
