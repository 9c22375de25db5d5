"""Available/enabled store membership for sites.

A site is *available* when its rendered artifact exists under
``sites_available`` and *enabled* when ``sites_enabled`` holds a symlink of
the same name pointing at that artifact. A link whose target has vanished is
a dangling link: it is reported by :meth:`ActivationManager.list` as an
anomaly rather than treated as enabled.
"""
from __future__ import annotations

import os
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .errors import ArtifactMissingError


class SiteState(str, Enum):
    """Activation state reported by :meth:`ActivationManager.list`."""

    ENABLED = "enabled"
    AVAILABLE = "available"
    DANGLING = "dangling"
    FOREIGN = "foreign"


@dataclass(frozen=True)
class SiteStatus:
    """One row of the site listing."""

    domain: str
    state: SiteState
    artifact: Path
    link: Path | None = None
    link_target: Path | None = None

    @property
    def enabled(self) -> bool:
        """Return True when the site is linked to its own artifact."""
        return self.state is SiteState.ENABLED

    @property
    def anomaly(self) -> str | None:
        """Describe an inconsistent link, if any."""
        if self.state is SiteState.DANGLING:
            return f"enabled link {self.link} points at missing artifact {self.link_target}"
        if self.state is SiteState.FOREIGN:
            return f"enabled link {self.link} points at {self.link_target}, not {self.artifact}"
        return None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "state": self.state.value,
            "enabled": self.enabled,
            "artifact": str(self.artifact),
            "link": str(self.link) if self.link is not None else None,
            "anomaly": self.anomaly,
        }


class SiteListing:
    """Lazy, restartable iteration over the site stores."""

    def __init__(self, manager: ActivationManager) -> None:
        self._manager = manager

    def __iter__(self) -> Iterator[SiteStatus]:
        return self._manager.iter_status()


@dataclass(slots=True)
class ActivationManager:
    """Manage ``sites-enabled`` symlinks for rendered artifacts."""

    sites_available: Path
    sites_enabled: Path

    def artifact_path(self, domain: str) -> Path:
        """Return the available-store path for *domain*."""
        return self.sites_available / domain

    def link_path(self, domain: str) -> Path:
        """Return the enabled-store link path for *domain*."""
        return self.sites_enabled / domain

    def artifact_exists(self, domain: str) -> bool:
        """Return True when the rendered artifact exists."""
        return self.artifact_path(domain).is_file()

    def is_enabled(self, domain: str) -> bool:
        """Return True when the link exists and resolves to the artifact."""
        link = self.link_path(domain)
        if not link.is_symlink():
            return False
        try:
            return link.resolve(strict=True) == self.artifact_path(domain).resolve(strict=True)
        except FileNotFoundError:
            return False

    def enable(self, domain: str) -> bool:
        """Link the artifact into the enabled store.

        Returns ``False`` when the site was already enabled.
        """
        source = self.artifact_path(domain)
        if not source.is_file():
            raise ArtifactMissingError(
                f"Configuration for {domain} does not exist at {source}."
            )
        if self.is_enabled(domain):
            return False
        target = self.link_path(domain)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_symlink() or target.exists():
            # Dangling or foreign link; replace it with a fresh one.
            target.unlink()
        target.symlink_to(source.resolve())
        return True

    def disable(self, domain: str) -> bool:
        """Remove the enabled-store link; the artifact is never touched.

        Returns ``False`` when the site was not enabled.
        """
        target = self.link_path(domain)
        if not target.is_symlink():
            return False
        target.unlink()
        return True

    def remove(self, domain: str) -> None:
        """Disable *domain* and delete its artifact."""
        source = self.artifact_path(domain)
        if not source.is_file():
            raise ArtifactMissingError(
                f"Configuration for {domain} does not exist at {source}."
            )
        self.disable(domain)
        source.unlink()

    def status(self, domain: str) -> SiteStatus:
        """Return the activation status of *domain*."""
        artifact = self.artifact_path(domain)
        link = self.link_path(domain)
        if not link.is_symlink():
            return SiteStatus(domain=domain, state=SiteState.AVAILABLE, artifact=artifact)
        raw_target = Path(os.readlink(link))
        link_target = raw_target if raw_target.is_absolute() else link.parent / raw_target
        if not link_target.exists():
            state = SiteState.DANGLING
        elif self.is_enabled(domain):
            state = SiteState.ENABLED
        else:
            state = SiteState.FOREIGN
        return SiteStatus(
            domain=domain,
            state=state,
            artifact=artifact,
            link=link,
            link_target=link_target,
        )

    def list(self) -> SiteListing:
        """Return a restartable listing of every known site."""
        return SiteListing(self)

    def iter_status(self) -> Iterator[SiteStatus]:
        """Yield a status for each artifact, then each orphaned link."""
        seen: set[str] = set()
        for artifact in _sorted_entries(self.sites_available):
            if not artifact.is_file() or artifact.name.startswith("."):
                continue
            if artifact.name.endswith(".rejected"):
                continue
            seen.add(artifact.name)
            yield self.status(artifact.name)
        for link in _sorted_entries(self.sites_enabled):
            if link.name in seen or not link.is_symlink():
                continue
            status = self.status(link.name)
            if status.state is SiteState.DANGLING:
                yield status


def _sorted_entries(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(directory.iterdir(), key=lambda entry: entry.name)


__all__ = ["ActivationManager", "SiteListing", "SiteState", "SiteStatus"]
