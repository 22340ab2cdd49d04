"""Data model for vhost layout migrations."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ..errors import PreconditionError, StateTransitionError

STEP_PREFLIGHT = "preflight"
STEP_BACKUP = "backup"
STEP_STRUCTURAL_MOVE = "structural_move"
STEP_PERMISSIONS = "permissions"
STEP_SERVICE_RELOAD = "service_reload"
STEP_VERIFY = "verify"

PIPELINE_STEPS = (
    STEP_PREFLIGHT,
    STEP_BACKUP,
    STEP_STRUCTURAL_MOVE,
    STEP_PERMISSIONS,
    STEP_SERVICE_RELOAD,
    STEP_VERIFY,
)

ARCHIVE_PREFIX = "pre-migration-"
ARCHIVE_SUFFIX = ".tar.gz"
ARCHIVE_STAMP_FORMAT = "%Y%m%d-%H%M%S"


def now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with a ``Z`` suffix."""
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


class MigrationStatus(str, Enum):
    """Lifecycle of a vhost with respect to the layout migration."""

    DISCOVERED = "discovered"
    VALIDATED = "validated"
    MIGRATING = "migrating"
    MIGRATED = "migrated"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: object) -> MigrationStatus:
        """Return the status named by *value*."""
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise PreconditionError(f"Unknown migration status {value!r}.") from exc


# Which operation may move a record from one status to another.
TRANSITIONS: dict[tuple[MigrationStatus, MigrationStatus], frozenset[str]] = {
    (MigrationStatus.DISCOVERED, MigrationStatus.VALIDATED): frozenset({"validate"}),
    (MigrationStatus.DISCOVERED, MigrationStatus.MIGRATING): frozenset({"migrate"}),
    (MigrationStatus.VALIDATED, MigrationStatus.VALIDATED): frozenset({"validate"}),
    (MigrationStatus.VALIDATED, MigrationStatus.MIGRATING): frozenset({"migrate"}),
    (MigrationStatus.MIGRATING, MigrationStatus.MIGRATED): frozenset({"migrate"}),
    (MigrationStatus.MIGRATING, MigrationStatus.FAILED): frozenset({"migrate"}),
    (MigrationStatus.MIGRATED, MigrationStatus.VALIDATED): frozenset({"rollback"}),
    (MigrationStatus.FAILED, MigrationStatus.VALIDATED): frozenset({"rollback", "validate"}),
}


def check_transition(current: MigrationStatus, new: MigrationStatus, operation: str) -> None:
    """Raise :class:`StateTransitionError` unless *operation* may move *current* to *new*."""
    allowed = TRANSITIONS.get((current, new), frozenset())
    if operation not in allowed:
        raise StateTransitionError(
            f"Cannot move from '{current.value}' to '{new.value}' via {operation}."
        )


@dataclass(frozen=True, slots=True)
class VHostLayout:
    """Declared path variables and ownership of a vhost."""

    vhost: str
    node: str
    upath: str
    wpath: str
    uid: int
    gid: int
    web_group: str | None = None
    mpath: str | None = None


@dataclass(slots=True)
class MigrationLog:
    """Running account of a migration attempt."""

    started_at: str = field(default_factory=now_iso)
    status: str = MigrationStatus.MIGRATING.value
    steps_completed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    backup_archive: str | None = None
    skipped_backup: bool = False
    structural_changes: list[str] = field(default_factory=list)
    verification: dict[str, str] = field(default_factory=dict)
    failed_step: str | None = None
    completed_at: str | None = None

    def complete(self, step: str) -> None:
        """Record that *step* finished."""
        self.steps_completed.append(step)

    def fail(self, step: str, message: str) -> None:
        """Record that *step* failed with *message*."""
        self.failed_step = step
        self.errors.append(f"{step}: {message}")
        self.status = MigrationStatus.FAILED.value

    def to_dict(self) -> dict[str, object]:
        """Return a YAML-serialisable representation."""
        return {
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "status": self.status,
            "steps_completed": list(self.steps_completed),
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "backup_archive": self.backup_archive,
            "skipped_backup": self.skipped_backup,
            "structural_changes": list(self.structural_changes),
            "verification": dict(self.verification),
            "failed_step": self.failed_step,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MigrationLog:
        """Rebuild a log persisted by :meth:`to_dict`."""
        return cls(
            started_at=str(data.get("started_at") or now_iso()),
            status=str(data.get("status") or MigrationStatus.MIGRATING.value),
            steps_completed=[str(item) for item in data.get("steps_completed") or []],
            warnings=[str(item) for item in data.get("warnings") or []],
            errors=[str(item) for item in data.get("errors") or []],
            backup_archive=data.get("backup_archive"),
            skipped_backup=bool(data.get("skipped_backup", False)),
            structural_changes=[str(item) for item in data.get("structural_changes") or []],
            verification={str(k): str(v) for k, v in (data.get("verification") or {}).items()},
            failed_step=data.get("failed_step"),
            completed_at=data.get("completed_at"),
        )


@dataclass(slots=True)
class MigrationRecord:
    """A vhost's migration state as kept in ``vhosts.yml``."""

    layout: VHostLayout
    status: MigrationStatus = MigrationStatus.DISCOVERED
    backup_archive_path: str | None = None
    rollback_available: bool = False
    migrated_at: str | None = None
    migration_log: MigrationLog | None = None
    history: list[dict[str, object]] = field(default_factory=list)
    validation: dict[str, object] | None = None

    @property
    def vhost(self) -> str:
        """Return the vhost name."""
        return self.layout.vhost

    @property
    def node(self) -> str:
        """Return the owning node name."""
        return self.layout.node

    def transition(self, new: MigrationStatus, operation: str) -> None:
        """Move to *new* when *operation* allows it."""
        check_transition(self.status, new, operation)
        self.status = new

    def to_updates(self) -> dict[str, object]:
        """Return the registry fields owned by the migration subsystem."""
        return {
            "migration_status": self.status.value,
            "backup_archive_path": self.backup_archive_path,
            "rollback_available": self.rollback_available,
            "migrated_at": self.migrated_at,
            "migration_log": self.migration_log.to_dict() if self.migration_log else None,
            "migration_history": list(self.history),
            "validation": self.validation,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> MigrationRecord:
        """Build a record from a ``vhosts.yml`` entry."""
        name = str(data.get("name") or "").strip()
        if not name:
            raise PreconditionError("VHost entry is missing a name.")
        node = str(data.get("node") or "").strip()
        upath = str(data.get("upath") or "").rstrip("/")
        if not node or not upath:
            raise PreconditionError(f"VHost '{name}' must declare both node and upath.")
        if not upath.startswith("/"):
            raise PreconditionError(f"VHost '{name}' has a non-absolute upath '{upath}'.")
        try:
            uid = int(data["uid"])
            gid = int(data.get("gid", uid))
        except (KeyError, TypeError, ValueError) as exc:
            raise PreconditionError(f"VHost '{name}' must declare numeric uid/gid.") from exc

        layout = VHostLayout(
            vhost=name,
            node=node,
            upath=upath,
            wpath=str(data.get("wpath") or f"{upath}/web").rstrip("/"),
            uid=uid,
            gid=gid,
            web_group=data.get("web_group"),
            mpath=data.get("mpath"),
        )
        raw_log = data.get("migration_log")
        return cls(
            layout=layout,
            status=MigrationStatus.parse(data.get("migration_status") or "discovered"),
            backup_archive_path=data.get("backup_archive_path"),
            rollback_available=bool(data.get("rollback_available", False)),
            migrated_at=data.get("migrated_at"),
            migration_log=MigrationLog.from_dict(raw_log) if isinstance(raw_log, Mapping) else None,
            history=[dict(item) for item in data.get("migration_history") or []],
            validation=dict(data["validation"]) if isinstance(data.get("validation"), Mapping) else None,
        )


@dataclass(frozen=True, slots=True)
class RollbackPoint:
    """A pre-migration archive available for rollback."""

    filename: str
    path: str
    created_at: str
    size: int

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "filename": self.filename,
            "path": self.path,
            "created_at": self.created_at,
            "size": self.size,
        }


@dataclass(frozen=True, slots=True)
class MigrationOutcome:
    """Result of a successful migration (or a dry-run plan)."""

    vhost: str
    status: MigrationStatus
    log: MigrationLog
    dry_run: bool = False
    plan: dict[str, object] | None = None


@dataclass(frozen=True, slots=True)
class RollbackOutcome:
    """Result of a rollback."""

    vhost: str
    archive: str
    status: MigrationStatus
    restored: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class BatchRow:
    """One summary row of a batch migration."""

    vhost: str
    node: str
    status: str
    steps: int
    error: str | None = None


__all__ = [
    "ARCHIVE_PREFIX",
    "ARCHIVE_STAMP_FORMAT",
    "ARCHIVE_SUFFIX",
    "BatchRow",
    "MigrationLog",
    "MigrationOutcome",
    "MigrationRecord",
    "MigrationStatus",
    "PIPELINE_STEPS",
    "RollbackOutcome",
    "RollbackPoint",
    "STEP_BACKUP",
    "STEP_PERMISSIONS",
    "STEP_PREFLIGHT",
    "STEP_SERVICE_RELOAD",
    "STEP_STRUCTURAL_MOVE",
    "STEP_VERIFY",
    "TRANSITIONS",
    "VHostLayout",
    "check_transition",
    "now_iso",
]
