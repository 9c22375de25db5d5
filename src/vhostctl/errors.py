"""Error taxonomy shared by the vhostctl core and CLI."""
from __future__ import annotations

from .exit_codes import ExitCode


class VhostctlError(RuntimeError):
    """Base exception for all vhostctl operations."""

    exit_code: ExitCode = ExitCode.VALIDATION

    def __init__(self, message: str, *, exit_code: ExitCode | None = None) -> None:
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidInputError(VhostctlError, ValueError):
    """Malformed domain, port, or site attribute."""


class UnknownArchetypeError(InvalidInputError):
    """No template is registered for the requested archetype."""

    def __init__(self, archetype: str, known: tuple[str, ...] = ()) -> None:
        message = f"Unknown archetype '{archetype}'."
        if known:
            message += f" Known archetypes: {', '.join(known)}."
        super().__init__(message)
        self.archetype = archetype


class RenderIncompleteError(VhostctlError):
    """Placeholders survived rendering."""

    exit_code = ExitCode.TEMPLATE

    def __init__(self, message: str, *, unresolved: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.unresolved = unresolved


class ArtifactMissingError(VhostctlError):
    """The available store holds no artifact for the domain."""

    exit_code = ExitCode.PRECONDITION


class AnchorNotFoundError(VhostctlError):
    """No ``server_name`` anchor line matched the domain."""

    exit_code = ExitCode.PRECONDITION


class RejectedError(VhostctlError):
    """The syntax checker refused the configuration."""

    exit_code = ExitCode.REJECTED

    def __init__(self, message: str, *, diagnostics: str = "") -> None:
        super().__init__(message)
        self.diagnostics = diagnostics


class CollaboratorError(VhostctlError):
    """An external collaborator could not be invoked or failed."""

    exit_code = ExitCode.PROVIDER


class SyntaxCheckerError(CollaboratorError):
    """The syntax checker could not be run."""


class ReloadError(CollaboratorError):
    """The reload trigger failed."""


class CertificateError(CollaboratorError):
    """Certificate issuance failed or no certificate is available."""


class StorageError(VhostctlError):
    """A store, snapshot or lock path could not be read or written."""

    exit_code = ExitCode.ENVIRONMENT

    @classmethod
    def from_os_error(cls, exc: OSError) -> StorageError:
        """Describe *exc* with the path it concerns."""
        target = exc.filename if exc.filename is not None else "filesystem"
        reason = exc.strerror or exc.__class__.__name__
        return cls(f"Cannot access {target}: {reason}.")


class InconsistentStateError(VhostctlError):
    """A rollback restore did not validate; live content is unknown."""

    exit_code = ExitCode.INCONSISTENT

    def __init__(self, message: str, *, diagnostics: str = "") -> None:
        super().__init__(message)
        self.diagnostics = diagnostics


__all__ = [
    "AnchorNotFoundError",
    "ArtifactMissingError",
    "CertificateError",
    "CollaboratorError",
    "InconsistentStateError",
    "InvalidInputError",
    "RejectedError",
    "ReloadError",
    "RenderIncompleteError",
    "StorageError",
    "SyntaxCheckerError",
    "UnknownArchetypeError",
    "VhostctlError",
]
