"""Read-only readiness checks for vhosts."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..errors import RemoteFailure
from .base import VHostOperation
from .models import MigrationStatus, now_iso

_log = logging.getLogger(__name__)

LEVELS = ("PASS", "WARN", "FAIL", "CRIT")

PASSED = "passed"
PASSED_WITH_WARNINGS = "passed_with_warnings"
NEEDS_FIXES = "needs_fixes"
FAILED = "failed"

VALIDATABLE = (
    MigrationStatus.DISCOVERED,
    MigrationStatus.VALIDATED,
    MigrationStatus.FAILED,
)


@dataclass(frozen=True, slots=True)
class ValidationCheck:
    """One line reported by the validation script."""

    level: str
    category: str
    message: str

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {"level": self.level, "category": self.category, "message": self.message}


@dataclass(frozen=True, slots=True)
class ValidationReport:
    """Aggregated validation outcome for a vhost."""

    vhost: str
    outcome: str
    status: MigrationStatus
    checks: tuple[ValidationCheck, ...] = field(default_factory=tuple)
    checked_at: str = field(default_factory=now_iso)

    @property
    def passed(self) -> bool:
        """Return True when the vhost may be migrated."""
        return self.outcome in (PASSED, PASSED_WITH_WARNINGS)

    def count(self, level: str) -> int:
        """Return how many checks reported *level*."""
        return sum(1 for check in self.checks if check.level == level)

    def to_dict(self) -> dict[str, object]:
        """Return the form stored on the vhost record."""
        return {
            "outcome": self.outcome,
            "checked_at": self.checked_at,
            "summary": {level.lower(): self.count(level) for level in LEVELS},
            "checks": [check.to_dict() for check in self.checks],
        }


def parse_checks(output: str) -> list[ValidationCheck]:
    """Parse ``LEVEL category message`` lines, ignoring anything else."""
    checks: list[ValidationCheck] = []
    for line in output.splitlines():
        parts = line.strip().split(" ", 2)
        if len(parts) < 2 or parts[0] not in LEVELS:
            continue
        message = parts[2] if len(parts) == 3 else ""
        checks.append(ValidationCheck(level=parts[0], category=parts[1], message=message))
    return checks


def summarise(checks: list[ValidationCheck]) -> str:
    """Return the outcome implied by the worst reported level."""
    levels = {check.level for check in checks}
    if "CRIT" in levels:
        return FAILED
    if "FAIL" in levels:
        return NEEDS_FIXES
    if "WARN" in levels:
        return PASSED_WITH_WARNINGS
    return PASSED


class Validator(VHostOperation):
    """Run the validation script and record its outcome."""

    def validate(self, vhost: str) -> ValidationReport:
        """Validate *vhost*; a passing result moves it to ``validated``."""
        with self._vhost_guard(vhost):
            record = self.store.get(vhost)
            target = self.resolve_target(record.node)
            layout = record.layout
            result = self._run(
                target, "validate", [layout.upath, layout.wpath, layout.uid, layout.gid]
            )
            if not result.success:
                raise RemoteFailure(
                    f"Validation script failed for {vhost}: "
                    f"{result.stderr.strip() or f'exit code {result.exit_code}'}",
                    result=result,
                )
            checks = parse_checks(result.stdout)
            if not checks:
                raise RemoteFailure(
                    f"Validation of {vhost} produced no checks.", result=result
                )
            outcome = summarise(checks)

            if outcome in (PASSED, PASSED_WITH_WARNINGS) and record.status in VALIDATABLE:
                record.transition(MigrationStatus.VALIDATED, "validate")
            report = ValidationReport(
                vhost=vhost, outcome=outcome, status=record.status, checks=tuple(checks)
            )
            record.validation = report.to_dict()
            self.store.save(record)
            _log.info("Validation of %s: %s", vhost, outcome)
            return report


__all__ = [
    "FAILED",
    "LEVELS",
    "NEEDS_FIXES",
    "PASSED",
    "PASSED_WITH_WARNINGS",
    "ValidationCheck",
    "ValidationReport",
    "Validator",
    "parse_checks",
    "summarise",
]
