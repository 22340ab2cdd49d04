"""Remote execution primitives: targets, the process runner and the script executor."""
from __future__ import annotations

from .executor import ScriptExecutor, SshTransport, Transport
from .runner import ProcessRunner
from .target import ExecutionRequest, ExecutionResult, RemoteTarget

__all__ = [
    "ExecutionRequest",
    "ExecutionResult",
    "ProcessRunner",
    "RemoteTarget",
    "ScriptExecutor",
    "SshTransport",
    "Transport",
]
