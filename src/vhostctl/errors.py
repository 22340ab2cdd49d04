"""Error taxonomy shared by the remote execution and migration layers.

Each error carries the :class:`~vhostctl.exit_codes.ExitCode` the CLI should
surface so callers never have to re-derive it from the exception type.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

from .exit_codes import ExitCode

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .remote.target import ExecutionResult


class VhostctlError(RuntimeError):
    """Base class for errors raised by the vhostctl core."""

    exit_code: ExitCode = ExitCode.FAILURE


class TransportError(VhostctlError):
    """A session to the remote node could not be established.

    Covers DNS failures, authentication failures, ssh connect timeouts and
    local process spawn failures. Remote state is never changed when this is raised,
    which makes it the only error eligible for retry.
    """

    exit_code = ExitCode.TRANSPORT

    def __init__(self, message: str, *, target: str | None = None, stderr: str = "") -> None:
        """Record the unreachable *target* and any captured transport stderr."""
        super().__init__(message)
        self.target = target
        self.stderr = stderr


class RemoteFailure(VhostctlError):
    """The remote command ran and exited non-zero."""

    exit_code = ExitCode.FAILURE

    def __init__(self, message: str, *, result: ExecutionResult) -> None:
        """Attach the :class:`ExecutionResult` that triggered the failure."""
        super().__init__(message)
        self.result = result

    @property
    def stdout(self) -> str:
        """Return the captured remote stdout."""
        return self.result.stdout

    @property
    def stderr(self) -> str:
        """Return the captured remote stderr."""
        return self.result.stderr


class RemoteTimeout(VhostctlError):
    """A remote command was started but outlived its timeout.

    The script may already have changed remote state, so this is never
    retried. Whatever output arrived before the deadline is kept.
    """

    exit_code = ExitCode.FAILURE

    def __init__(
        self,
        message: str,
        *,
        target: str | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Record the *target* and the output captured before the deadline."""
        super().__init__(message)
        self.target = target
        self.stdout = stdout
        self.stderr = stderr


class PreconditionError(VhostctlError):
    """Local validation failed before any network call was made."""

    exit_code = ExitCode.PRECONDITION


class StateTransitionError(PreconditionError):
    """A migration record was asked to move to a status it cannot reach."""


class PartialMigrationFailure(VhostctlError):
    """A pipeline step failed after the migration started mutating state.

    ``log`` records exactly which steps completed so an operator (or the
    rollback engine) can reason about the remote tree.
    """

    exit_code = ExitCode.FAILURE

    def __init__(
        self,
        message: str,
        *,
        vhost: str,
        failed_step: str,
        log: Mapping[str, object],
        record: Mapping[str, object] | None = None,
    ) -> None:
        """Capture the failing step together with the persisted log."""
        super().__init__(message)
        self.vhost = vhost
        self.failed_step = failed_step
        self.log = dict(log)
        self.record = dict(record) if record is not None else None

    @property
    def steps_completed(self) -> Sequence[str]:
        """Return the steps that finished before the failure."""
        steps = self.log.get("steps_completed", [])
        return list(steps) if isinstance(steps, list) else []


__all__ = [
    "PartialMigrationFailure",
    "PreconditionError",
    "RemoteFailure",
    "RemoteTimeout",
    "StateTransitionError",
    "TransportError",
    "VhostctlError",
]
