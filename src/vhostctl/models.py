"""Site model and input validation."""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from .errors import InvalidInputError, UnknownArchetypeError

_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_TLD_RE = re.compile(r"^[a-z][a-z0-9-]*[a-z0-9]$")
_VERSION_RE = re.compile(r"^\d+(?:\.\d+)*$")
_UPSTREAM_HOST_RE = re.compile(r"^(?:[a-z0-9.-]+|\[[0-9a-f:]+\])$")
_ROOT_PATH_RE = re.compile(r"^/[A-Za-z0-9._~@+=,:/-]*$")


class Archetype(str, Enum):
    """Site configuration patterns with a registered template."""

    STATIC = "static"
    PHP = "php"
    PROXY = "proxy"
    REDIRECT = "redirect"

    @classmethod
    def parse(cls, value: str | Archetype) -> Archetype:
        """Return the archetype named by *value*."""
        if isinstance(value, Archetype):
            return value
        key = value.strip().lower()
        try:
            return cls(_ARCHETYPE_ALIASES.get(key, key))
        except ValueError:
            raise UnknownArchetypeError(value, tuple(item.value for item in cls)) from None


_ARCHETYPE_ALIASES = {
    "php-application": "php",
    "laravel": "php",
    "process-proxy": "proxy",
    "nodejs": "proxy",
    "redirect-pair": "redirect",
}


class WwwPolicy(str, Enum):
    """How the ``www.`` host relates to the apex domain."""

    NONE = "none"
    APEX = "apex"
    WWW = "www"
    BOTH = "both"

    @classmethod
    def parse(cls, value: str | WwwPolicy) -> WwwPolicy:
        """Return the policy named by *value*."""
        if isinstance(value, WwwPolicy):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            allowed = ", ".join(item.value for item in cls)
            raise InvalidInputError(
                f"Unknown www policy '{value}'. Allowed: {allowed}."
            ) from None

    @property
    def redirects(self) -> bool:
        """Return True when a secondary redirect server block is rendered."""
        return self in (WwwPolicy.APEX, WwwPolicy.WWW)


def validate_domain(value: str) -> str:
    """Validate and normalise a hostname."""
    normalised = value.strip().lower().rstrip(".")
    if not normalised:
        raise InvalidInputError("Domain must be a non-empty string.")
    if len(normalised) > 253:
        raise InvalidInputError("Domain must be 253 characters or fewer.")
    labels = normalised.split(".")
    if len(labels) < 2:
        raise InvalidInputError(f"Invalid domain format: {value!r} (expected name.tld).")
    for label in labels:
        if not _LABEL_RE.match(label):
            raise InvalidInputError(
                f"Invalid domain format: {value!r} (label {label!r} must use letters, "
                "digits, and inner hyphens)."
            )
    if not _TLD_RE.match(labels[-1]):
        raise InvalidInputError(f"Invalid domain format: {value!r} (bad top-level label).")
    return normalised


def validate_port(value: int | str) -> int:
    """Validate a TCP port number."""
    if isinstance(value, bool):
        raise InvalidInputError(f"Invalid port number: {value!r}.")
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise InvalidInputError(f"Invalid port number: {value!r}.") from None
    if port < 1 or port > 65535:
        raise InvalidInputError(f"Invalid port number: {port} (must be 1-65535).")
    return port


def validate_root_path(value: str) -> str:
    """Validate an absolute document root that is safe to splice into a directive."""
    root = value.strip().rstrip("/") or "/"
    if not root.startswith("/"):
        raise InvalidInputError(f"Document root must be an absolute path: {value!r}.")
    if not _ROOT_PATH_RE.fullmatch(root):
        raise InvalidInputError(
            f"Document root contains characters nginx would parse: {value!r}."
        )
    return root


def validate_runtime_version(value: str) -> str:
    """Validate an interpreter version tag such as ``8.1``."""
    normalised = value.strip()
    if not _VERSION_RE.match(normalised):
        raise InvalidInputError(f"Invalid runtime version: {value!r}.")
    return normalised


@dataclass(frozen=True)
class Site:
    """A virtual host rendered from one archetype."""

    domain: str
    archetype: Archetype
    root_path: str | None = None
    upstream_host: str = "127.0.0.1"
    port: int | None = None
    redirect_target: str | None = None
    runtime_version: str | None = None
    tls: bool = False
    www_policy: WwwPolicy = WwwPolicy.NONE

    @classmethod
    def create(
        cls,
        domain: str,
        archetype: str | Archetype,
        *,
        root_path: str | None = None,
        upstream_host: str | None = None,
        port: int | str | None = None,
        redirect_target: str | None = None,
        runtime_version: str | None = None,
        tls: bool = False,
        www_policy: str | WwwPolicy = WwwPolicy.NONE,
    ) -> Site:
        """Validate raw operator input and build a :class:`Site`."""
        kind = Archetype.parse(archetype)
        name = validate_domain(domain)
        policy = WwwPolicy.parse(www_policy)

        root: str | None = None
        if kind in (Archetype.STATIC, Archetype.PHP):
            if not root_path or not root_path.strip():
                raise InvalidInputError(f"Archetype '{kind.value}' requires a document root.")
            root = validate_root_path(root_path)

        checked_port: int | None = None
        host = "127.0.0.1"
        if kind is Archetype.PROXY:
            if port is None:
                raise InvalidInputError("Archetype 'proxy' requires an upstream port.")
            checked_port = validate_port(port)
            if upstream_host:
                host = upstream_host.strip().lower()
                if not _UPSTREAM_HOST_RE.match(host):
                    raise InvalidInputError(f"Invalid upstream host: {upstream_host!r}.")

        target: str | None = None
        if kind is Archetype.REDIRECT:
            if not redirect_target:
                raise InvalidInputError("Archetype 'redirect' requires a target host.")
            target = validate_domain(redirect_target)
            if target == name:
                raise InvalidInputError("Redirect target must differ from the domain.")

        version: str | None = None
        if kind is Archetype.PHP:
            version = validate_runtime_version(runtime_version or "8.1")
        elif runtime_version:
            version = validate_runtime_version(runtime_version)

        return cls(
            domain=name,
            archetype=kind,
            root_path=root,
            upstream_host=host,
            port=checked_port,
            redirect_target=target,
            runtime_version=version,
            tls=tls,
            www_policy=policy,
        )

    @property
    def www_domain(self) -> str:
        """Return the ``www.`` variant of the domain."""
        return f"www.{self.domain}"

    @property
    def primary_host(self) -> str:
        """Return the canonical host name for redirects."""
        if self.www_policy is WwwPolicy.WWW:
            return self.www_domain
        return self.domain

    def variables(self) -> dict[str, str]:
        """Return the base variable mapping for this site.

        Only attributes relevant to the archetype are included; derived
        ``www`` and TLS values are added by the substitution engine.
        """
        mapping: dict[str, str] = {"DOMAIN": self.domain}
        if self.root_path is not None:
            mapping["ROOT_PATH"] = self.root_path
        if self.runtime_version is not None:
            mapping["RUNTIME_VERSION"] = self.runtime_version
        if self.port is not None:
            mapping["PORT"] = str(self.port)
            mapping["UPSTREAM_HOST"] = self.upstream_host
        if self.redirect_target is not None:
            mapping["REDIRECT_TARGET"] = self.redirect_target
        return mapping

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "archetype": self.archetype.value,
            "root_path": self.root_path,
            "upstream_host": self.upstream_host if self.port is not None else None,
            "port": self.port,
            "redirect_target": self.redirect_target,
            "runtime_version": self.runtime_version,
            "tls": self.tls,
            "www_policy": self.www_policy.value,
        }


__all__ = [
    "Archetype",
    "Site",
    "WwwPolicy",
    "validate_domain",
    "validate_port",
    "validate_root_path",
    "validate_runtime_version",
]
