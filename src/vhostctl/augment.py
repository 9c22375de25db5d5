"""In-place TLS augmentation of rendered site configurations.

The augmenter does not parse nginx grammar. It works on the artifact as a
sequence of lines, uses ``server_name`` lines as anchors and tracks brace depth
only to tell which server block an anchor belongs to. TLS directives are
inserted directly below the anchor with the anchor's indentation, preceded by
a sentinel comment that marks the artifact as augmented.
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .errors import AnchorNotFoundError, ArtifactMissingError
from .tls import CertificateMaterial, TLSDirectives

LOGGER = logging.getLogger(__name__)

TLS_MARKER = "# vhostctl: tls"
_SERVER_NAME_RE = re.compile(r"^(?P<indent>\s*)server_name\s+(?P<names>[^;]*);")
_LISTEN_443_RE = re.compile(r"^\s*listen\s+(?:\S+:)?443\b")


@dataclass(frozen=True)
class Anchor:
    """A ``server_name`` line."""

    index: int
    indent: str
    names: tuple[str, ...]


@dataclass
class ConfigLines:
    """Line-oriented view of a configuration artifact."""

    lines: list[str]
    trailing_newline: bool = True

    @classmethod
    def from_text(cls, text: str) -> ConfigLines:
        """Split *text* into lines, remembering the trailing newline."""
        return cls(text.splitlines(), trailing_newline=text.endswith("\n"))

    def to_text(self) -> str:
        """Join the lines back into text."""
        text = "\n".join(self.lines)
        return text + "\n" if self.trailing_newline else text

    def has_marker(self) -> bool:
        """Return True when the TLS sentinel comment is present."""
        return any(line.strip() == TLS_MARKER for line in self.lines)

    def anchors(self) -> list[Anchor]:
        """Return every ``server_name`` line in order."""
        found: list[Anchor] = []
        for index, line in enumerate(self.lines):
            match = _SERVER_NAME_RE.match(line)
            if match is None:
                continue
            names = tuple(match.group("names").split())
            found.append(Anchor(index=index, indent=match.group("indent"), names=names))
        return found

    def find_anchor(self, *hosts: str) -> Anchor | None:
        """Return the first anchor naming any of *hosts* exactly."""
        for anchor in self.anchors():
            if any(host in anchor.names for host in hosts):
                return anchor
        return None

    def block_span(self, index: int) -> tuple[int, int]:
        """Return the ``(start, end)`` line indices of the block enclosing *index*."""
        depth = 0
        start = 0
        for position in range(index - 1, -1, -1):
            opened, closed = _count_braces(self.lines[position])
            depth += closed - opened
            if depth < 0:
                start = position
                break
        depth = 0
        end = len(self.lines) - 1
        for position in range(start, len(self.lines)):
            opened, closed = _count_braces(self.lines[position])
            depth += opened - closed
            if depth <= 0 and position > start:
                end = position
                break
        return start, end

    def block_listens_on_443(self, index: int) -> bool:
        """Return True when the block enclosing *index* already listens on 443."""
        start, end = self.block_span(index)
        return any(_LISTEN_443_RE.match(line) for line in self.lines[start : end + 1])

    def insert_after(self, anchor: Anchor, directives: Sequence[str]) -> None:
        """Insert *directives* immediately below *anchor* using its indentation."""
        block = [f"{anchor.indent}{line}" for line in directives]
        self.lines[anchor.index + 1 : anchor.index + 1] = block


def _count_braces(line: str) -> tuple[int, int]:
    code = line.split("#", 1)[0]
    return code.count("{"), code.count("}")


@dataclass(frozen=True)
class BackupSnapshot:
    """Exact byte copy of an artifact taken before augmentation."""

    artifact: Path
    path: Path
    content: bytes

    @classmethod
    def take(cls, artifact: Path, snapshots_dir: Path) -> BackupSnapshot:
        """Copy *artifact* into *snapshots_dir* and return the snapshot."""
        content = artifact.read_bytes()
        snapshots_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
        path = snapshots_dir / f"{artifact.name}.{stamp}.bak"
        path.write_bytes(content)
        return cls(artifact=artifact, path=path, content=content)

    def restore(self) -> None:
        """Write the snapshot content back to the artifact verbatim."""
        atomic_write(self.artifact, self.content)
        LOGGER.debug("Restored %s from %s", self.artifact, self.path)

    def discard(self) -> None:
        """Delete the on-disk snapshot copy."""
        self.path.unlink(missing_ok=True)


@dataclass
class AugmentResult:
    """Outcome of an augmentation attempt."""

    changed: bool
    snapshot: BackupSnapshot | None = None
    anchors: list[int] = field(default_factory=list)


def atomic_write(path: Path, content: bytes) -> None:
    """Replace *path* with *content*, keeping the existing file mode."""
    path.parent.mkdir(parents=True, exist_ok=True)
    mode = path.stat().st_mode & 0o777 if path.exists() else 0o644
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


@dataclass(slots=True)
class ConfigAugmenter:
    """Inject TLS directives into an already rendered artifact."""

    directives: TLSDirectives
    snapshots_dir: Path

    def is_augmented(self, text: str, domain: str) -> bool:
        """Return True when *text* already terminates TLS for *domain*."""
        config = ConfigLines.from_text(text)
        if config.has_marker():
            return True
        primary = config.find_anchor(domain, f"www.{domain}")
        return primary is not None and config.block_listens_on_443(primary.index)

    def augment_with_tls(
        self,
        artifact: Path,
        domain: str,
        material: CertificateMaterial,
    ) -> AugmentResult:
        """Insert TLS directives for *domain* into *artifact* once.

        Returns an unchanged result when the artifact is already augmented.
        Otherwise a :class:`BackupSnapshot` is taken before the write and
        returned so the caller can restore it if validation fails.
        """
        if not artifact.exists():
            raise ArtifactMissingError(f"No configuration artifact at {artifact}.")
        # Operator edits may hold non-UTF-8 bytes; keep them byte for byte.
        text = artifact.read_text(encoding="utf-8", errors="surrogateescape")
        if self.is_augmented(text, domain):
            LOGGER.debug("%s already carries TLS directives", artifact)
            return AugmentResult(changed=False)

        config = ConfigLines.from_text(text)
        # The primary block precedes any www redirect block.
        primary = config.find_anchor(domain, f"www.{domain}")
        if primary is None:
            raise AnchorNotFoundError(
                f"No 'server_name {domain}' line found in {artifact}; cannot add TLS."
            )

        snapshot = BackupSnapshot.take(artifact, self.snapshots_dir)
        config.insert_after(primary, [TLS_MARKER, *self.directives.primary_block(material)])
        touched = [primary.index]

        secondary = self._secondary_anchor(config, domain, primary.index)
        if secondary is not None:
            config.insert_after(secondary, self.directives.secondary_block(material))
            touched.append(secondary.index)

        atomic_write(artifact, config.to_text().encode("utf-8", errors="surrogateescape"))
        return AugmentResult(changed=True, snapshot=snapshot, anchors=touched)

    @staticmethod
    def _secondary_anchor(
        config: ConfigLines,
        domain: str,
        primary_index: int,
    ) -> Anchor | None:
        primary_span = config.block_span(primary_index)
        for anchor in config.anchors():
            if anchor.index == primary_index:
                continue
            if f"www.{domain}" not in anchor.names and domain not in anchor.names:
                continue
            if config.block_span(anchor.index) == primary_span:
                continue
            if config.block_listens_on_443(anchor.index):
                continue
            return anchor
        return None


__all__ = [
    "Anchor",
    "AugmentResult",
    "BackupSnapshot",
    "ConfigAugmenter",
    "ConfigLines",
    "TLS_MARKER",
    "atomic_write",
]
