"""Value objects describing a remote invocation and its outcome."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import RemoteFailure

ELEVATION_POLICIES = ("sudo", "none")


@dataclass(frozen=True, slots=True)
class RemoteTarget:
    """A node resolved to concrete SSH coordinates.

    ``elevation`` is the node's privilege policy: ``"sudo"`` elevates with
    ``sudo -n``; ``"none"`` runs privileged scripts as the login user (used for
    root logins and local test shells).
    """

    name: str
    hostname: str
    ssh_user: str = "root"
    ssh_port: int = 22
    identity_file: Path | None = None
    elevation: str = "sudo"

    def __post_init__(self) -> None:
        """Validate the coordinates eagerly."""
        if not self.name.strip():
            raise ValueError("Remote target name must be non-empty.")
        if not self.hostname.strip():
            raise ValueError(f"Remote target '{self.name}' has no hostname.")
        if not 1 <= self.ssh_port <= 65535:
            raise ValueError(f"Remote target '{self.name}' has invalid port {self.ssh_port}.")
        if self.elevation not in ELEVATION_POLICIES:
            raise ValueError(
                f"Remote target '{self.name}' has unknown elevation '{self.elevation}'."
            )

    @property
    def destination(self) -> str:
        """Return the ``user@host`` destination for ssh."""
        return f"{self.ssh_user}@{self.hostname}"

    @property
    def needs_elevation(self) -> bool:
        """Return True when privileged scripts must be wrapped in sudo."""
        return self.elevation == "sudo" and self.ssh_user != "root"


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """Every option the script executor accepts, spelled out."""

    target: RemoteTarget
    script_body: str
    positional_args: tuple[str, ...] = ()
    as_privileged: bool = False
    dry_run: bool = False
    timeout: float | None = None

    def __post_init__(self) -> None:
        """Coerce positional arguments to a tuple of strings."""
        object.__setattr__(
            self, "positional_args", tuple(str(arg) for arg in self.positional_args)
        )

    @classmethod
    def build(
        cls,
        target: RemoteTarget,
        script_body: str,
        args: Sequence[object] = (),
        *,
        as_privileged: bool = False,
        dry_run: bool = False,
        timeout: float | None = None,
    ) -> ExecutionRequest:
        """Construct a request from loosely typed arguments."""
        return cls(
            target=target,
            script_body=script_body,
            positional_args=tuple(str(arg) for arg in args),
            as_privileged=as_privileged,
            dry_run=dry_run,
            timeout=timeout,
        )


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of a remote script run (or of a dry run)."""

    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    dry_run: bool = False
    target: str | None = field(default=None, compare=False)

    @property
    def output(self) -> str:
        """Alias for ``stdout``."""
        return self.stdout

    @property
    def error(self) -> str:
        """Alias for ``stderr``."""
        return self.stderr

    def raise_for_status(self) -> ExecutionResult:
        """Raise :class:`RemoteFailure` when the remote command failed."""
        if not self.success:
            detail = self.stderr.strip() or self.stdout.strip() or "no output"
            where = f" on {self.target}" if self.target else ""
            raise RemoteFailure(
                f"Remote command failed{where} with exit code {self.exit_code}: {detail}",
                result=self,
            )
        return self

    def markers(self, key: str) -> list[str]:
        """Return values of ``KEY=value`` lines printed by a script."""
        prefix = f"{key}="
        return [
            line[len(prefix) :].strip()
            for line in self.stdout.splitlines()
            if line.startswith(prefix)
        ]

    def marker(self, key: str) -> str | None:
        """Return the last ``KEY=value`` value printed by a script."""
        values = self.markers(key)
        return values[-1] if values else None


__all__ = ["ELEVATION_POLICIES", "ExecutionRequest", "ExecutionResult", "RemoteTarget"]
