"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
    TEMPLATE = 5
    PRECONDITION = 6
    REJECTED = 7
    BUSY = 8
    ROLLED_BACK = 9
    INCONSISTENT = 10
