"""Execute scripts on remote nodes over SSH.

A script travels as a single here-document piped into ``bash -s`` on the node::

    sudo -n bash -s -- 'arg one' 'arg two' <<'VHOSTCTL_EOF_3f9a1c2b'
    #!/bin/bash
    set -euo pipefail
    ...
    VHOSTCTL_EOF_3f9a1c2b

Caller data only ever appears as quoted positional parameters after ``--``;
it is never spliced into the script text, so there is no quoting layer in the
script body to get wrong.
"""
from __future__ import annotations

import logging
import re
import secrets
import shlex
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..errors import RemoteTimeout, TransportError
from .runner import ProcessRunner
from .target import ExecutionRequest, ExecutionResult, RemoteTarget

_log = logging.getLogger(__name__)

SSH_TRANSPORT_FAILURE = 255
MARKER_PREFIX = "VHOSTCTL_EOF_"
_SET_LINE = re.compile(r"^\s*set\s+-", re.MULTILINE)


class Transport(Protocol):
    """Turns a remote shell command into a local argv."""

    def command(self, target: RemoteTarget, remote_command: str) -> list[str]:
        """Return the argv running *remote_command* on *target*."""
        ...

    def forward_command(
        self,
        target: RemoteTarget,
        *,
        bind_address: str,
        local_port: int,
        remote_host: str,
        remote_port: int,
        control_path: Path,
    ) -> list[str]:
        """Return the argv of a background port forward."""
        ...


@dataclass(frozen=True)
class SshTransport:
    """Build OpenSSH argv lists for a target."""

    binary: str = "ssh"
    connect_timeout: int = 10
    strict_host_key_checking: str = "accept-new"

    def base_options(self, target: RemoteTarget) -> list[str]:
        """Return options shared by every ssh invocation."""
        options = [
            self.binary,
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", f"StrictHostKeyChecking={self.strict_host_key_checking}",
            "-o", "LogLevel=ERROR",
            "-p", str(target.ssh_port),
        ]
        if target.identity_file is not None:
            options.extend(["-i", str(target.identity_file), "-o", "IdentitiesOnly=yes"])
        return options

    def command(self, target: RemoteTarget, remote_command: str) -> list[str]:
        """Return the argv running *remote_command* on *target*."""
        return [*self.base_options(target), target.destination, remote_command]

    def forward_command(
        self,
        target: RemoteTarget,
        *,
        bind_address: str,
        local_port: int,
        remote_host: str,
        remote_port: int,
        control_path: Path,
    ) -> list[str]:
        """Return the argv of a multiplexed, foreground-held port forward."""
        return [
            *self.base_options(target),
            "-N",
            "-M",
            "-S", str(control_path),
            "-o", "ExitOnForwardFailure=yes",
            "-o", "ServerAliveInterval=30",
            "-o", "ServerAliveCountMax=3",
            "-L", f"{bind_address}:{local_port}:{remote_host}:{remote_port}",
            target.destination,
        ]


def wrap_script(script_body: str) -> str:
    """Add a bash shebang and strict mode when the script lacks them."""
    body = script_body.strip("\n")
    lines = body.splitlines()
    shebang = "#!/bin/bash"
    if lines and lines[0].startswith("#!"):
        shebang, lines = lines[0], lines[1:]
    rest = "\n".join(lines)
    if not _SET_LINE.search(rest):
        rest = f"set -euo pipefail\n{rest}" if rest else "set -euo pipefail"
    return f"{shebang}\n{rest}\n"


def heredoc_marker(script: str) -> str:
    """Return a delimiter that does not occur anywhere in *script*."""
    while True:
        marker = f"{MARKER_PREFIX}{secrets.token_hex(4).upper()}"
        if marker not in script:
            return marker


def render_remote_command(request: ExecutionRequest) -> str:
    """Render the shell command that the remote login shell will run."""
    script = wrap_script(request.script_body)
    marker = heredoc_marker(script)
    words: list[str] = []
    if request.as_privileged and request.target.needs_elevation:
        words.extend(["sudo", "-n"])
    words.extend(["bash", "-s", "--"])
    words.extend(shlex.quote(arg) for arg in request.positional_args)
    return f"{' '.join(words)} <<'{marker}'\n{script}{marker}\n"


class ScriptExecutor:
    """Run scripts on remote targets and return :class:`ExecutionResult`."""

    def __init__(
        self,
        runner: ProcessRunner,
        transport: Transport,
        *,
        default_timeout: float = 300.0,
        retries: int = 0,
        retry_backoff: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Wire the executor to a runner and transport."""
        self.runner = runner
        self.transport = transport
        self.default_timeout = default_timeout
        self.retries = retries
        self.retry_backoff = retry_backoff
        self._sleep = sleep

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run *request* once.

        Raises :class:`TransportError` when the node cannot be reached and
        :class:`RemoteTimeout` when the script started but overran its
        timeout. A remote non-zero exit is returned as ``success=False``.
        """
        remote_command = render_remote_command(request)
        target = request.target
        if request.dry_run:
            return ExecutionResult(
                success=True,
                exit_code=0,
                stdout=remote_command,
                dry_run=True,
                target=target.name,
            )

        argv = self.transport.command(target, remote_command)
        timeout = request.timeout if request.timeout is not None else self.default_timeout
        _log.info(
            "Executing script on %s (privileged=%s, args=%d)",
            target.name,
            request.as_privileged,
            len(request.positional_args),
        )
        try:
            completed = self.runner.run(argv, timeout=timeout)
        except TransportError as exc:
            raise TransportError(
                f"Cannot reach {target.name} ({target.hostname}): {exc}",
                target=target.name,
                stderr=exc.stderr,
            ) from exc
        except RemoteTimeout as exc:
            _log.error("Script on %s overran its %.0fs timeout", target.name, timeout)
            raise RemoteTimeout(
                f"Script on {target.name} ({target.hostname}) did not finish: {exc}",
                target=target.name,
                stdout=exc.stdout,
                stderr=exc.stderr,
            ) from exc

        if completed.returncode == SSH_TRANSPORT_FAILURE:
            stderr = (completed.stderr or "").strip()
            raise TransportError(
                f"SSH session to {target.name} ({target.hostname}) failed: "
                f"{stderr or 'connection error'}",
                target=target.name,
                stderr=stderr,
            )

        result = ExecutionResult(
            success=completed.returncode == 0,
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            target=target.name,
        )
        if not result.success:
            _log.warning("Script on %s exited with %d", target.name, result.exit_code)
        return result

    def execute_script(
        self,
        target: RemoteTarget,
        script_body: str,
        args: Sequence[object] = (),
        *,
        as_privileged: bool = False,
        dry_run: bool = False,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Build an :class:`ExecutionRequest` and run it with retries."""
        request = ExecutionRequest.build(
            target,
            script_body,
            args,
            as_privileged=as_privileged,
            dry_run=dry_run,
            timeout=timeout,
        )
        return self.run_with_retry(request)

    def run_with_retry(
        self,
        request: ExecutionRequest,
        *,
        attempts: int | None = None,
        backoff: float | None = None,
    ) -> ExecutionResult:
        """Run *request*, retrying only transport failures.

        A :class:`RemoteTimeout` propagates on the first attempt because the
        script may already have changed remote state.
        """
        total = max(1, (self.retries if attempts is None else attempts - 1) + 1)
        delay = self.retry_backoff if backoff is None else backoff
        for attempt in range(1, total + 1):
            try:
                return self.execute(request)
            except TransportError as exc:
                if attempt >= total:
                    raise
                _log.warning(
                    "Transport failure on attempt %d/%d for %s: %s",
                    attempt,
                    total,
                    request.target.name,
                    exc,
                )
                self._sleep(delay * attempt)
        raise AssertionError("unreachable")  # pragma: no cover


__all__ = [
    "SSH_TRANSPORT_FAILURE",
    "ScriptExecutor",
    "SshTransport",
    "Transport",
    "heredoc_marker",
    "render_remote_command",
    "wrap_script",
]
