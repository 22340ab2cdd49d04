"""Migration engine: move a vhost from the legacy layout to ``web/app/public``.

The pipeline is fixed and strictly sequential::

    preflight -> backup -> structural_move -> permissions -> service_reload -> verify

Preflight is read-only; when it fails the record is left untouched. From the
moment preflight passes the record is ``migrating`` and every step outcome is
persisted before the next step starts, so the stored log always says how far a
migration got. A failing step marks the record ``failed`` and raises
:class:`~vhostctl.errors.PartialMigrationFailure`; nothing is undone inline.
Rollback is a separate, explicit operation (see :mod:`.rollback`).
"""
from __future__ import annotations

import concurrent.futures
import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from ..config import MigrationConfig
from ..errors import (
    PartialMigrationFailure,
    PreconditionError,
    RemoteFailure,
    TransportError,
    VhostctlError,
)
from ..locking import LockManager
from ..remote.executor import ScriptExecutor
from ..remote.target import RemoteTarget
from ..scripts import ScriptLibrary
from .base import TargetResolver, VHostOperation
from .models import (
    ARCHIVE_PREFIX,
    ARCHIVE_STAMP_FORMAT,
    ARCHIVE_SUFFIX,
    STEP_BACKUP,
    STEP_PERMISSIONS,
    STEP_PREFLIGHT,
    STEP_SERVICE_RELOAD,
    STEP_STRUCTURAL_MOVE,
    STEP_VERIFY,
    BatchRow,
    MigrationLog,
    MigrationOutcome,
    MigrationRecord,
    MigrationStatus,
    now_iso,
)
from .store import MigrationStore

_log = logging.getLogger(__name__)

MIGRATABLE = (MigrationStatus.DISCOVERED, MigrationStatus.VALIDATED)
REQUIRED_CHECKS = ("app_public", "entry_point")
OPTIONAL_CHECKS = ("log", "run")

EXPECTED_TREE = (
    "{archive_dir}/",
    "web/",
    "web/app/",
    "web/app/public/",
    "web/log/",
    "web/run/",
)


class MigrationEngine(VHostOperation):
    """Run layout migrations for vhosts recorded in a :class:`MigrationStore`."""

    def __init__(
        self,
        executor: ScriptExecutor,
        scripts: ScriptLibrary,
        store: MigrationStore,
        locks: LockManager,
        resolve_target: TargetResolver,
        *,
        config: MigrationConfig | None = None,
        timeout: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Wire the engine to its collaborators."""
        super().__init__(
            executor,
            scripts,
            store,
            locks,
            resolve_target,
            config=config,
            timeout=timeout,
        )
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    # ------------------------------------------------------------------
    # Single vhost
    # ------------------------------------------------------------------
    def migrate(self, vhost: str, *, skip_backup: bool = False) -> MigrationOutcome:
        """Migrate *vhost* and return the final log.

        Raises :class:`PreconditionError` (nothing changed),
        :class:`TransportError` (preflight could not reach the node; nothing
        changed) or :class:`PartialMigrationFailure` (record is ``failed``).
        """
        with self._vhost_guard(vhost):
            record = self.store.get(vhost)
            target = self.resolve_target(record.node)
            log = MigrationLog()

            self._preflight(record, target, log)

            record.transition(MigrationStatus.MIGRATING, "migrate")
            record.migration_log = log
            record.backup_archive_path = None
            record.rollback_available = False
            log.complete(STEP_PREFLIGHT)
            self.store.save(record)
            _log.info("Migration of %s on %s started", vhost, record.node)

            steps: tuple[tuple[str, Callable[[], None]], ...] = (
                (STEP_BACKUP, lambda: self._backup(record, target, log, skip=skip_backup)),
                (STEP_STRUCTURAL_MOVE, lambda: self._structural_move(record, target, log)),
                (STEP_PERMISSIONS, lambda: self._permissions(record, target, log)),
                (STEP_SERVICE_RELOAD, lambda: self._service_reload(record, target, log)),
                (STEP_VERIFY, lambda: self._verify(record, target, log)),
            )
            for name, step in steps:
                self._run_step(record, log, name, step)

            finished = now_iso()
            log.status = MigrationStatus.MIGRATED.value
            log.completed_at = finished
            record.transition(MigrationStatus.MIGRATED, "migrate")
            record.migrated_at = finished
            record.rollback_available = not skip_backup
            record.history.append(
                {"action": "migrate", "at": finished, "archive": log.backup_archive}
            )
            self.store.save(record)
            _log.info("Migration of %s completed", vhost)
            return MigrationOutcome(vhost=vhost, status=record.status, log=log)

    def plan(self, vhost: str, *, skip_backup: bool = False) -> MigrationOutcome:
        """Describe what :meth:`migrate` would do without contacting the node."""
        record = self.store.get(vhost)
        if record.status not in MIGRATABLE:
            raise PreconditionError(_status_message(record))
        target = self.resolve_target(record.node)
        layout = record.layout
        stamp = self._clock().strftime(ARCHIVE_STAMP_FORMAT)

        invocations: list[tuple[str, Sequence[object]]] = [
            (STEP_PREFLIGHT, [layout.upath, self.config.space_factor]),
        ]
        if not skip_backup:
            invocations.append((STEP_BACKUP, [layout.upath, stamp]))
        invocations.extend(
            [
                (STEP_STRUCTURAL_MOVE, [layout.upath, layout.wpath]),
                (STEP_PERMISSIONS, self._permission_args(record)),
                (STEP_SERVICE_RELOAD, self._reload_args()),
                (STEP_VERIFY, [layout.upath, layout.wpath]),
            ]
        )

        steps: list[dict[str, object]] = []
        for name, args in invocations:
            rendered = self.scripts.render(name, args)
            preview = self.executor.execute_script(
                target,
                rendered.body,
                rendered.args,
                as_privileged=rendered.asset.privileged,
                dry_run=True,
            )
            steps.append(
                {
                    "step": name,
                    "script": f"{rendered.asset.name} v{rendered.asset.version}",
                    "args": list(rendered.args),
                    "command": preview.stdout,
                }
            )

        log = MigrationLog(status="planned")
        if skip_backup:
            log.skipped_backup = True
            log.warnings.append("Backup would be skipped; rollback would be unavailable.")
        else:
            log.backup_archive = self._archive_path(record, stamp)
        plan: dict[str, object] = {
            "vhost": vhost,
            "node": record.node,
            "status": record.status.value,
            "upath": layout.upath,
            "wpath": layout.wpath,
            "steps": steps,
            "expected_tree": [
                entry.format(archive_dir=self.config.archive_dir) for entry in EXPECTED_TREE
            ],
        }
        return MigrationOutcome(
            vhost=vhost, status=record.status, log=log, dry_run=True, plan=plan
        )

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------
    def migrate_all_validated(
        self,
        *,
        skip_backup: bool = False,
        node: str | None = None,
        max_workers: int | None = None,
    ) -> list[BatchRow]:
        """Migrate every ``validated`` vhost, continuing past failures."""
        records = self.store.records(status=MigrationStatus.VALIDATED, node=node)
        if not records:
            return []

        workers = max(1, max_workers or self.config.max_workers)
        if workers == 1:
            return [self._batch_one(record, skip_backup) for record in records]

        rows: list[BatchRow | None] = [None] * len(records)
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as pool:
            future_to_index: dict[concurrent.futures.Future[BatchRow], int] = {}
            for index, record in enumerate(records):
                future = pool.submit(self._batch_one, record, skip_backup)
                future_to_index[future] = index

            for future in concurrent.futures.as_completed(future_to_index):
                rows[future_to_index[future]] = future.result()

        return [row for row in rows if row is not None]

    def _batch_one(self, record: MigrationRecord, skip_backup: bool) -> BatchRow:
        try:
            outcome = self.migrate(record.vhost, skip_backup=skip_backup)
        except PartialMigrationFailure as exc:
            return BatchRow(
                vhost=record.vhost,
                node=record.node,
                status=MigrationStatus.FAILED.value,
                steps=len(exc.steps_completed),
                error=str(exc),
            )
        except TransportError as exc:
            return BatchRow(record.vhost, record.node, "unreachable", 0, str(exc))
        except VhostctlError as exc:
            return BatchRow(record.vhost, record.node, "skipped", 0, str(exc))
        return BatchRow(
            vhost=record.vhost,
            node=record.node,
            status=outcome.status.value,
            steps=len(outcome.log.steps_completed),
        )

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------
    def _run_step(
        self,
        record: MigrationRecord,
        log: MigrationLog,
        name: str,
        step: Callable[[], None],
    ) -> None:
        try:
            step()
        except BaseException as exc:
            message = str(exc) or type(exc).__name__
            log.fail(name, message)
            log.completed_at = now_iso()
            record.transition(MigrationStatus.FAILED, "migrate")
            record.history.append(
                {"action": "migrate", "at": log.completed_at, "failed_step": name}
            )
            self.store.save(record)
            _log.error("Migration of %s failed at %s: %s", record.vhost, name, message)
            if not isinstance(exc, Exception):
                raise
            raise PartialMigrationFailure(
                f"Migration of {record.vhost} failed at step '{name}': {message}",
                vhost=record.vhost,
                failed_step=name,
                log=log.to_dict(),
                record=record.to_updates(),
            ) from exc
        if name != STEP_BACKUP or not log.skipped_backup:
            log.complete(name)
        self.store.save(record)

    def _preflight(self, record: MigrationRecord, target: RemoteTarget, log: MigrationLog) -> None:
        if record.status not in MIGRATABLE:
            raise PreconditionError(_status_message(record))
        result = self._run(target, STEP_PREFLIGHT, [record.layout.upath, self.config.space_factor])
        if not result.success:
            detail = result.stderr.strip() or f"exit code {result.exit_code}"
            raise PreconditionError(f"Pre-flight failed for {record.vhost}: {detail}")
        log.warnings.extend(result.markers("WARNING"))

    def _backup(
        self,
        record: MigrationRecord,
        target: RemoteTarget,
        log: MigrationLog,
        *,
        skip: bool,
    ) -> None:
        if skip:
            log.skipped_backup = True
            log.warnings.append("Backup skipped by operator request; rollback is unavailable.")
            record.rollback_available = False
            return
        stamp = self._clock().strftime(ARCHIVE_STAMP_FORMAT)
        result = self._run(target, STEP_BACKUP, [record.layout.upath, stamp]).raise_for_status()
        archive = result.marker("ARCHIVE_PATH")
        size = result.marker("ARCHIVE_SIZE") or "0"
        if not archive:
            raise RemoteFailure("Backup did not report an archive path.", result=result)
        if not size.isdigit() or int(size) <= 0:
            raise RemoteFailure(f"Backup archive {archive} is empty.", result=result)
        log.backup_archive = archive
        log.warnings.extend(result.markers("WARNING"))
        record.backup_archive_path = archive
        record.rollback_available = True

    def _structural_move(
        self, record: MigrationRecord, target: RemoteTarget, log: MigrationLog
    ) -> None:
        layout = record.layout
        result = self._run(target, STEP_STRUCTURAL_MOVE, [layout.upath, layout.wpath])
        result.raise_for_status()
        log.structural_changes.extend(result.markers("CHANGE"))
        log.warnings.extend(result.markers("WARNING"))

    def _permissions(
        self, record: MigrationRecord, target: RemoteTarget, log: MigrationLog
    ) -> None:
        result = self._run(target, STEP_PERMISSIONS, self._permission_args(record))
        result.raise_for_status()
        log.warnings.extend(result.markers("WARNING"))

    def _service_reload(
        self, record: MigrationRecord, target: RemoteTarget, log: MigrationLog
    ) -> None:
        result = self._reload_services(record, target).raise_for_status()
        log.structural_changes.extend(
            f"reloaded {unit}" for unit in result.markers("RELOADED") if unit != "none"
        )
        log.warnings.extend(result.markers("WARNING"))

    def _verify(self, record: MigrationRecord, target: RemoteTarget, log: MigrationLog) -> None:
        layout = record.layout
        result = self._run(target, STEP_VERIFY, [layout.upath, layout.wpath])
        checks: dict[str, str] = {}
        for entry in result.markers("CHECK"):
            name, _, status = entry.partition(":")
            checks[name] = status
        entry_point = result.marker("ENTRY_POINT")
        if entry_point:
            checks["entry_point_file"] = entry_point
        log.verification = checks

        for name in OPTIONAL_CHECKS:
            if checks.get(name) != "ok":
                log.warnings.append(f"Optional directory web/{name} is missing.")
        missing = [name for name in REQUIRED_CHECKS if checks.get(name) != "ok"]
        if missing or not result.success:
            detail = ", ".join(missing) if missing else result.stderr.strip()
            raise RemoteFailure(f"Verification failed: {detail or 'unknown error'}", result=result)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _permission_args(self, record: MigrationRecord) -> list[object]:
        layout = record.layout
        return [
            layout.upath,
            layout.wpath,
            layout.uid,
            layout.gid,
            layout.web_group or self.config.web_group,
        ]

    def _archive_path(self, record: MigrationRecord, stamp: str) -> str:
        return f"{self._archive_root(record)}/{ARCHIVE_PREFIX}{stamp}{ARCHIVE_SUFFIX}"


def _status_message(record: MigrationRecord) -> str:
    allowed = ", ".join(status.value for status in MIGRATABLE)
    return (
        f"VHost {record.vhost} is '{record.status.value}'; migration requires one of: {allowed}."
    )


__all__ = ["EXPECTED_TREE", "MIGRATABLE", "MigrationEngine"]
