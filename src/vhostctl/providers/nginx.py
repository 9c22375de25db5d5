"""Nginx syntax checker and reload trigger."""
from __future__ import annotations

import logging
import os
import re
import subprocess
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..config import NginxConfig
from ..errors import ReloadError, SyntaxCheckerError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckResult:
    """Outcome of a configuration syntax check."""

    ok: bool
    output: str
    command: tuple[str, ...] = ()


class SyntaxChecker(Protocol):
    """Validates the complete proxy configuration tree."""

    def check(self, candidate: Path | None = None) -> CheckResult:
        """Validate the configuration, staging *candidate* when it is not linked."""
        ...


class ReloadTrigger(Protocol):
    """Asks the running proxy to reload its configuration."""

    def reload(self) -> None:
        """Reload gracefully or raise :class:`~vhostctl.errors.ReloadError`."""
        ...


@dataclass(slots=True)
class NginxSyntaxChecker:
    """Run ``nginx -t`` against the full configuration."""

    settings: NginxConfig
    sites_enabled: Path

    def check(self, candidate: Path | None = None) -> CheckResult:
        """Run the syntax check and return its verdict with nginx's output."""
        args: list[str] = [self.settings.binary, "-t"]
        probe = self._stage(candidate) if candidate is not None else None
        if probe is not None:
            args.extend(["-c", str(probe)])
        try:
            return self._run(args)
        finally:
            if probe is not None:
                probe.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    def _run(self, args: Sequence[str]) -> CheckResult:
        command = tuple(args)
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.settings.test_timeout,
            )
        except FileNotFoundError as exc:
            raise SyntaxCheckerError(
                f"{self.settings.binary} not found; cannot validate configuration."
            ) from exc
        except subprocess.TimeoutExpired:
            return CheckResult(
                ok=False,
                output=f"{' '.join(command)} timed out after {self.settings.test_timeout:g}s",
                command=command,
            )
        # nginx reports to stderr even on success.
        output = "\n".join(
            part.strip() for part in (result.stderr, result.stdout) if part and part.strip()
        )
        return CheckResult(ok=result.returncode == 0, output=output, command=command)

    def _stage(self, candidate: Path) -> Path:
        """Write a probe main config that also includes *candidate*.

        A plain ``nginx -t`` never sees an unlinked candidate, so failing to
        stage it raises :class:`SyntaxCheckerError` instead of checking the
        live set alone.
        """
        main = self.settings.main_config
        try:
            text = main.read_text(encoding="utf-8", errors="surrogateescape")
        except OSError as exc:
            raise SyntaxCheckerError(
                f"Cannot read {main} to stage {candidate} for validation: {exc}"
            ) from exc
        pattern = re.compile(
            rf"^(?P<indent>\s*)include\s+\S*{re.escape(self.sites_enabled.name)}\S*\s*;"
        )
        lines = text.splitlines()
        for index, line in enumerate(lines):
            match = pattern.match(line)
            if match is None:
                continue
            lines.insert(index + 1, f"{match.group('indent')}include {candidate.resolve()};")
            break
        else:
            raise SyntaxCheckerError(
                f"{main} has no include for {self.sites_enabled}; cannot stage {candidate} "
                "for validation."
            )
        try:
            fd, name = tempfile.mkstemp(
                dir=str(main.parent), prefix=".vhostctl-probe-", suffix=".conf"
            )
        except OSError as exc:
            raise SyntaxCheckerError(
                f"Cannot write a staging config beside {main} to stage {candidate}: {exc}"
            ) from exc
        with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape") as handle:
            handle.write("\n".join(lines) + "\n")
        LOGGER.debug("Staged %s through probe %s", candidate, name)
        return Path(name)


@dataclass(slots=True)
class NginxReloadTrigger:
    """Reload nginx with the configured command (``systemctl reload nginx``)."""

    settings: NginxConfig

    def reload(self) -> None:
        """Run the reload command, raising :class:`ReloadError` on failure."""
        args = list(self.settings.reload_command)
        try:
            result = subprocess.run(  # noqa: S603
                args,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.settings.reload_timeout,
            )
        except FileNotFoundError as exc:
            raise ReloadError(f"{args[0]} not found; cannot reload nginx.") from exc
        except subprocess.TimeoutExpired as exc:
            raise ReloadError(
                f"{' '.join(args)} timed out after {self.settings.reload_timeout:g}s"
            ) from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise ReloadError(
                f"{' '.join(args)} failed (exit {result.returncode}): {message}"
            )


__all__ = [
    "CheckResult",
    "NginxReloadTrigger",
    "NginxSyntaxChecker",
    "ReloadTrigger",
    "SyntaxChecker",
]
