"""Local process runner underpinning every remote call.

The runner only knows about local processes. A non-zero exit is data, not an
exception; the only conditions it raises for are the ones where no result
exists at all (the binary could not be started, or the call outlived its
timeout).
"""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path

from ..errors import RemoteTimeout, TransportError

_log = logging.getLogger(__name__)


def _text(stream: str | bytes | None) -> str:
    if isinstance(stream, bytes):
        return stream.decode("utf-8", errors="replace")
    return stream or ""


class ProcessRunner:
    """Spawn local processes with bounded timeouts."""

    def run(
        self,
        argv: Sequence[str],
        *,
        input_text: str | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *argv* to completion and capture its output.

        A process that started but outlived *timeout* raises
        :class:`RemoteTimeout`; failing to start it raises
        :class:`TransportError`.
        """
        _log.debug("run: %s (timeout=%s)", argv[0] if argv else "", timeout)
        try:
            return subprocess.run(  # noqa: S603 - argv is built from trusted config
                list(argv),
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise TransportError(f"Command not found: {argv[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise RemoteTimeout(
                f"Command timed out after {timeout:.0f}s: {argv[0]}",
                stdout=_text(exc.stdout),
                stderr=_text(exc.stderr),
            ) from exc
        except OSError as exc:
            raise TransportError(f"Failed to start {argv[0]}: {exc}") from exc

    def spawn(
        self,
        argv: Sequence[str],
        *,
        log_path: Path | None = None,
    ) -> subprocess.Popen[bytes]:
        """Start *argv* in its own session and return immediately.

        stderr is appended to *log_path* when given and discarded otherwise,
        so a long-lived child never blocks on a pipe nobody reads.
        """
        _log.debug("spawn: %s", argv[0] if argv else "")
        try:
            if log_path is None:
                return self._popen(argv, subprocess.DEVNULL)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("ab") as stderr:
                return self._popen(argv, stderr)
        except FileNotFoundError as exc:
            raise TransportError(f"Command not found: {argv[0]}") from exc
        except OSError as exc:
            raise TransportError(f"Failed to start {argv[0]}: {exc}") from exc

    @staticmethod
    def _popen(argv: Sequence[str], stderr: object) -> subprocess.Popen[bytes]:
        return subprocess.Popen(  # noqa: S603 - argv is built from trusted config
            list(argv),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=stderr,  # type: ignore[arg-type]
            start_new_session=True,
        )


__all__ = ["ProcessRunner"]
