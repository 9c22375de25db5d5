"""External collaborators used by the vhostctl core."""
from __future__ import annotations

from .nginx import (
    CheckResult,
    NginxReloadTrigger,
    NginxSyntaxChecker,
    ReloadTrigger,
    SyntaxChecker,
)

__all__ = [
    "CheckResult",
    "NginxReloadTrigger",
    "NginxSyntaxChecker",
    "ReloadTrigger",
    "SyntaxChecker",
]
