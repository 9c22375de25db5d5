"""Template store for archetype configuration bodies.

Templates are plain text files named ``<archetype>.conf`` containing
``{{NAME}}`` placeholders. Operators may shadow a built-in body by dropping a
file with the same name into the configured ``templates_dir``; lookups consult
that directory first and fall back to the templates shipped in
``vhostctl/templates/sites``.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    BaseLoader,
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    TemplateNotFound,
)

from ..errors import UnknownArchetypeError
from ..models import Archetype

TEMPLATE_SUFFIX = ".conf"


@dataclass(frozen=True)
class TemplateBody:
    """Raw template text for one archetype."""

    archetype: str
    text: str
    origin: str | None = None


class TemplateStore:
    """Look up archetype template bodies."""

    def __init__(self, loader: BaseLoader) -> None:
        self._loader = loader
        self._environment = Environment(loader=loader, autoescape=False)
        self._cache: dict[str, TemplateBody] = {}

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateStore:
        """Return a store preferring *override_dir* over the packaged templates."""
        loaders: list[BaseLoader] = []
        if override_dir is not None and override_dir.is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("vhostctl", "templates/sites"))
        return cls(ChoiceLoader(loaders))

    def lookup(self, archetype: str | Archetype) -> TemplateBody:
        """Return the template body registered for *archetype*."""
        name = archetype.value if isinstance(archetype, Archetype) else str(archetype)
        cached = self._cache.get(name)
        if cached is not None:
            return cached
        try:
            source, filename, _ = self._loader.get_source(
                self._environment, f"{name}{TEMPLATE_SUFFIX}"
            )
        except TemplateNotFound:
            raise UnknownArchetypeError(name, self.archetypes()) from None
        body = TemplateBody(archetype=name, text=source, origin=filename)
        self._cache[name] = body
        return body

    def archetypes(self) -> tuple[str, ...]:
        """Return the archetype names with a registered template."""
        return tuple(sorted(_strip_suffix(self._loader.list_templates())))


def _strip_suffix(names: Iterable[str]) -> set[str]:
    return {
        name[: -len(TEMPLATE_SUFFIX)]
        for name in names
        if name.endswith(TEMPLATE_SUFFIX) and "/" not in name
    }


__all__ = ["TemplateBody", "TemplateStore"]
