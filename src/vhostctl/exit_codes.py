"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    ``TRANSPORT`` is kept distinct so automation can tell "the server could not
    be reached" apart from "the command ran and failed".
    """

    OK = 0
    FAILURE = 1
    PRECONDITION = 2
    TRANSPORT = 3
