"""End-to-end runs of the remote scripts against trees under ``tmp_path``.

The ``local`` node's transport is a plain local bash, so every script executes
for real and the assertions look at the resulting files.
"""
from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

import pytest

from vhostctl.errors import PreconditionError
from vhostctl.migration import (
    MigrationEngine,
    MigrationStatus,
    PermissionFixer,
    RollbackEngine,
    Validator,
    VHostOperation,
)
from vhostctl.migration.validation import FAILED

if TYPE_CHECKING:  # pragma: no cover - typing only
    from conftest import Fleet

pytestmark = [pytest.mark.local_shell, pytest.mark.mutation_timeout]

OperationT = TypeVar("OperationT", bound=VHostOperation)


def _build(cls: type[OperationT], fleet: Fleet) -> OperationT:
    runtime = fleet.runtime
    return cls(
        runtime.executor,
        runtime.scripts,
        runtime.store,
        runtime.locks,
        runtime.inventory.resolve,
        config=runtime.config.migration,
    )


def _archives(upath: Path) -> list[Path]:
    return sorted((upath / ".archive").glob("pre-migration-*.tar.gz"))


def test_migrate_moves_legacy_tree(fleet: Fleet) -> None:
    """The web root ends up under web/app/public with log and run beside it."""
    upath = fleet.add_legacy_vhost("shop.example")
    engine = _build(MigrationEngine, fleet)

    outcome = engine.migrate("shop.example")

    assert outcome.status is MigrationStatus.MIGRATED
    assert (upath / "web" / "app" / "public" / "index.php").is_file()
    assert (upath / "web" / "app" / "public" / "css" / "site.css").is_file()
    assert (upath / "web" / "log" / "access.log").is_file()
    assert (upath / "web" / "run").is_dir()
    assert not (upath / "var").exists()
    assert (upath / "private" / "notes.txt").read_text(encoding="utf-8") == "keep\n"
    assert len(_archives(upath)) == 1
    assert outcome.log.backup_archive == str(_archives(upath)[0])
    assert outcome.log.verification["entry_point_file"] == "index.php"

    record = fleet.runtime.store.get("shop.example")
    assert record.status is MigrationStatus.MIGRATED
    assert record.rollback_available is True


def test_preflight_failure_leaves_everything_alone(fleet: Fleet) -> None:
    """A missing vhost root is caught before any mutation."""
    upath = fleet.add_legacy_vhost("gone.example")
    shutil.rmtree(upath)
    engine = _build(MigrationEngine, fleet)

    with pytest.raises(PreconditionError, match="does not exist"):
        engine.migrate("gone.example")

    record = fleet.runtime.store.get("gone.example")
    assert record.status is MigrationStatus.VALIDATED
    assert record.migration_log is None


def _snapshot(upath: Path) -> dict[str, str | None]:
    """Map every path under *upath* (except archives) to its contents."""
    tree: dict[str, str | None] = {}
    for path in sorted(upath.rglob("*")):
        relative = path.relative_to(upath)
        if relative.parts[0] == ".archive":
            continue
        tree[relative.as_posix()] = (
            path.read_text(encoding="utf-8") if path.is_file() else None
        )
    return tree


def test_rollback_restores_legacy_tree(fleet: Fleet) -> None:
    """Rolling back reproduces the pre-migration tree exactly."""
    upath = fleet.add_legacy_vhost("blog.example")
    (upath / "web" / ".htaccess").write_text("Options -Indexes\n", encoding="utf-8")
    (upath / ".user.ini").write_text("memory_limit=128M\n", encoding="utf-8")
    before = _snapshot(upath)
    engine = _build(MigrationEngine, fleet)
    rollback = _build(RollbackEngine, fleet)
    engine.migrate("blog.example")
    (upath / "web" / "app" / "public" / "added-after.txt").write_text("x", encoding="utf-8")

    points = rollback.list_rollback_points("blog.example")
    outcome = rollback.rollback("blog.example")

    assert len(points) == 1
    assert outcome.archive == points[0].path
    assert points[0].size > 0
    assert outcome.status is MigrationStatus.VALIDATED
    after = _snapshot(upath)
    assert after == before
    assert "web/app/public/added-after.txt" not in after
    assert after["private/notes.txt"] == "keep\n"
    assert after["web/.htaccess"] == "Options -Indexes\n"
    assert "web" in outcome.restored
    assert "web" in outcome.removed
    assert len(_archives(upath)) == 1

    record = fleet.runtime.store.get("blog.example")
    assert record.status is MigrationStatus.VALIDATED
    assert record.migrated_at is None
    assert record.history[-1]["action"] == "rollback"


def test_rollback_then_migrate_again(fleet: Fleet) -> None:
    """A rolled back vhost can be migrated a second time."""
    upath = fleet.add_legacy_vhost("again.example")
    engine = _build(MigrationEngine, fleet)
    rollback = _build(RollbackEngine, fleet)
    first = engine.migrate("again.example")
    rollback.rollback("again.example", first.log.backup_archive)

    # Archive names carry a one-second stamp; drop the first one so the
    # second backup never collides with it.
    assert first.log.backup_archive is not None
    Path(first.log.backup_archive).unlink()
    outcome = engine.migrate("again.example")

    assert outcome.status is MigrationStatus.MIGRATED
    assert (upath / "web" / "app" / "public" / "index.php").is_file()


def test_rollback_requires_backup(fleet: Fleet) -> None:
    """Migrations run without a backup cannot be rolled back."""
    fleet.add_legacy_vhost("nobackup.example")
    engine = _build(MigrationEngine, fleet)
    rollback = _build(RollbackEngine, fleet)
    engine.migrate("nobackup.example", skip_backup=True)

    with pytest.raises(PreconditionError, match="no backup was taken"):
        rollback.rollback("nobackup.example")


def test_rollback_rejects_foreign_archive(fleet: Fleet, tmp_path: Path) -> None:
    """Archives outside the vhost's archive directory are refused."""
    fleet.add_legacy_vhost("foreign.example")
    engine = _build(MigrationEngine, fleet)
    rollback = _build(RollbackEngine, fleet)
    engine.migrate("foreign.example")

    with pytest.raises(PreconditionError, match="is not inside"):
        rollback.rollback(
            "foreign.example", str(tmp_path / "pre-migration-20250101-000000.tar.gz")
        )
    assert fleet.runtime.store.get("foreign.example").status is MigrationStatus.MIGRATED


def test_rollback_of_unmigrated_vhost_is_refused(fleet: Fleet) -> None:
    """Rollback only applies to migrated or failed vhosts."""
    fleet.add_legacy_vhost("fresh.example")
    rollback = _build(RollbackEngine, fleet)

    with pytest.raises(PreconditionError):
        rollback.rollback("fresh.example")


def test_validate_marks_discovered_vhost_validated(fleet: Fleet) -> None:
    """A healthy legacy tree passes validation."""
    fleet.add_legacy_vhost("new.example", status="discovered")
    validator = _build(Validator, fleet)

    report = validator.validate("new.example")

    assert report.passed is True
    assert report.status is MigrationStatus.VALIDATED
    assert report.count("CRIT") == 0
    record = fleet.runtime.store.get("new.example")
    assert record.status is MigrationStatus.VALIDATED
    assert record.validation is not None
    assert record.validation["outcome"] == report.outcome


def test_validate_missing_root_is_critical(fleet: Fleet) -> None:
    """A missing vhost root fails validation without changing status."""
    upath = fleet.add_legacy_vhost("missing.example", status="discovered")
    shutil.rmtree(upath)
    validator = _build(Validator, fleet)

    report = validator.validate("missing.example")

    assert report.outcome == FAILED
    assert report.passed is False
    assert report.status is MigrationStatus.DISCOVERED


def test_chperms_normalises_web_tree(fleet: Fleet) -> None:
    """File and directory modes under the web root are reapplied."""
    upath = fleet.add_legacy_vhost("perms.example")
    index = upath / "web" / "index.php"
    index.chmod(0o600)
    fixer = _build(PermissionFixer, fleet)

    result = fixer.fix_permissions("perms.example", web_only=True)

    assert result.ok is True
    assert str(upath / "web") in result.fixed
    assert index.stat().st_mode & 0o777 == 0o644
    assert (upath / "web" / "css").stat().st_mode & 0o2000


def test_chperms_dry_run_changes_nothing(fleet: Fleet) -> None:
    """Dry runs only report the command that would run."""
    upath = fleet.add_legacy_vhost("dry.example")
    index = upath / "web" / "index.php"
    index.chmod(0o600)
    fixer = _build(PermissionFixer, fleet)

    result = fixer.fix_permissions("dry.example", dry_run=True)

    assert result.command is not None
    assert "permissions_fix v1" in result.command
    assert index.stat().st_mode & 0o777 == 0o600


def test_chperms_node_covers_every_vhost(fleet: Fleet) -> None:
    """Every vhost on the node is visited; missing trees are skipped quietly."""
    fleet.add_legacy_vhost("ok.example")
    registry = fleet.runtime.registry
    registry.write_vhosts(
        [
            *registry.read_vhosts(),
            {
                "name": "broken.example",
                "node": "local",
                "upath": str(fleet.root / "srv" / "broken.example"),
                "uid": os.getuid(),
                "web_group": "vhostctl-no-such-group",
                "mpath": "/nonexistent/mail",
            },
        ]
    )
    fixer = _build(PermissionFixer, fleet)

    results = fixer.fix_node("local")

    assert [result.vhost for result in results] == ["ok.example", "broken.example"]
    assert all(result.ok for result in results)
    assert results[1].fixed == ()
    assert any("not found" in warning for warning in results[1].warnings)
