"""Structured operation logging for vhostctl.

Every mutating command runs inside :meth:`StructuredLogger.operation`, which
emits one JSON document per operation to ``operations.jsonl``. Core modules use
ordinary :mod:`logging` loggers; :func:`configure_logging` mirrors those into
``vhostctl.log`` next to the operations file.

Logging must never break the command it observes: when the log directory or
file is not writable the logger disables itself and keeps going.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

OPERATIONS_LOG_NAME = "operations.jsonl"
TEXT_LOG_NAME = "vhostctl.log"
LOGGER_NAME = "vhostctl"

_log = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


def _current_actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):  # pragma: no cover - depends on passwd entries
        user = "unknown"
    return {"user": user, "uid": os.getuid(), "pid": os.getpid()}


class OperationScope:
    """Collects the outcome of a single operation and writes it on exit."""

    def __init__(
        self,
        logger: StructuredLogger,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Bind the scope to *logger* and capture the operation metadata."""
        self._logger = logger
        self.name = name
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.operation_id = f"op-{uuid.uuid4().hex[:12]}"
        self.actor: Mapping[str, object] = _current_actor()
        self.started_at = _now_iso()
        self._started = time.monotonic()
        self._lock_wait_ms: int | None = None
        self._result: dict[str, object] | None = None

    # ------------------------------------------------------------------
    # Context manager protocol
    # ------------------------------------------------------------------
    def __enter__(self) -> OperationScope:
        """Enter the scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Record an implicit outcome when none was set, then flush."""
        if self._result is None:
            if exc is None or _is_clean_exit(exc):
                self.success(f"{self.name} completed.")
            else:
                self.error(f"{self.name} failed: {exc}", errors=[str(exc) or type(exc).__name__])
        self._flush()

    # ------------------------------------------------------------------
    # Outcome recorders
    # ------------------------------------------------------------------
    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its locks."""
        self._lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._record(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._record(
            "warning",
            message,
            changed=changed,
            warnings=warnings if warnings is not None else [message],
            errors=errors,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._record(
            "error",
            message,
            changed=changed,
            errors=errors if errors is not None else [message],
            rc=rc,
            context=context,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _record(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        backups: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": [str(item) for item in warnings or ()],
            "errors": [str(item) for item in errors or ()],
            "backups": [str(item) for item in backups or ()],
        }
        if rc is not None:
            result["rc"] = rc
        if context is not None:
            result["context"] = _sanitise(context)
        self._result = result
        level = {"success": logging.INFO, "warning": logging.WARNING}.get(status, logging.ERROR)
        _log.log(level, "%s [%s]: %s", self.name, self.operation_id, message)

    def _flush(self) -> None:
        record = {
            "id": self.operation_id,
            "operation": self.name,
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "actor": _sanitise(self.actor),
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "lock_wait_ms": self._lock_wait_ms,
            "result": self._result,
        }
        self._logger._write(record)


def _is_clean_exit(exc: BaseException) -> bool:
    """Return True for exits raised after an outcome was already reported."""
    if isinstance(exc, SystemExit):
        return not exc.code
    return getattr(exc, "exit_code", None) == 0


class StructuredLogger:
    """Append-only JSON operation log."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable logging when it cannot be created."""
        self.log_dir = Path(log_dir)
        self._operations_log_path = self.log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _log.warning("Structured logging disabled; cannot create %s: %s", self.log_dir, exc)
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return whether records are still being written."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` that is flushed on exit."""
        scope = OperationScope(self, name, args=args, target=target)
        with scope:
            yield scope

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True))
                handle.write("\n")
        except OSError as exc:
            _log.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


def configure_logging(log_dir: Path | None, *, verbose: bool = False) -> None:
    """Attach handlers for the ``vhostctl`` logger hierarchy.

    A file handler on ``vhostctl.log`` always records INFO and above; *verbose*
    additionally streams DEBUG records to stderr.
    """
    root = logging.getLogger(LOGGER_NAME)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(root.handlers):
        if getattr(handler, "_vhostctl_handler", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    if log_dir is not None:
        try:
            Path(log_dir).mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(Path(log_dir) / TEXT_LOG_NAME, encoding="utf-8")
        except OSError:
            file_handler = None
        if file_handler is not None:
            file_handler.setFormatter(formatter)
            file_handler.setLevel(logging.INFO)
            file_handler._vhostctl_handler = True  # type: ignore[attr-defined]
            root.addHandler(file_handler)

    if verbose:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(logging.DEBUG)
        stream_handler._vhostctl_handler = True  # type: ignore[attr-defined]
        root.addHandler(stream_handler)


__all__ = ["OperationScope", "StructuredLogger", "configure_logging"]
