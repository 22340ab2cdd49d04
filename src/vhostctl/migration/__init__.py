"""Vhost layout migration: validate, migrate, roll back and repair permissions."""
from __future__ import annotations

from .base import TargetResolver, VHostOperation
from .engine import EXPECTED_TREE, MIGRATABLE, MigrationEngine
from .models import (
    PIPELINE_STEPS,
    BatchRow,
    MigrationLog,
    MigrationOutcome,
    MigrationRecord,
    MigrationStatus,
    RollbackOutcome,
    RollbackPoint,
    VHostLayout,
)
from .permissions import PermissionFix, PermissionFixer
from .rollback import RollbackEngine
from .store import MigrationStore
from .validation import ValidationReport, Validator

__all__ = [
    "BatchRow",
    "EXPECTED_TREE",
    "MIGRATABLE",
    "MigrationEngine",
    "MigrationLog",
    "MigrationOutcome",
    "MigrationRecord",
    "MigrationStatus",
    "MigrationStore",
    "PIPELINE_STEPS",
    "PermissionFix",
    "PermissionFixer",
    "RollbackEngine",
    "RollbackOutcome",
    "RollbackPoint",
    "TargetResolver",
    "VHostLayout",
    "ValidationReport",
    "Validator",
    "VHostOperation",
]
