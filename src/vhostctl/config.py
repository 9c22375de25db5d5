"""Configuration loader for vhostctl.

Configuration values are read from multiple sources, later sources winning:

1. Built-in defaults.
2. ``/etc/vhostctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``VHOSTCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export VHOSTCTL_NGINX__TEST_TIMEOUT=5
    export VHOSTCTL_DEFAULTS__WWW_POLICY=apex

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` and handed to every component at construction time; nothing
in the core reads process-global paths.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load vhostctl configuration. Install with "
        "`pip install vhostctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "VHOSTCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

ALLOWED_WWW_POLICIES = {"none", "apex", "www", "both"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class NginxConfig:
    """Syntax checker and reload settings."""

    binary: str = "nginx"
    main_config: Path = Path("/etc/nginx/nginx.conf")
    test_timeout: float = 30.0
    reload_command: tuple[str, ...] = ("systemctl", "reload", "nginx")
    reload_timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "binary": self.binary,
            "main_config": str(self.main_config),
            "test_timeout": self.test_timeout,
            "reload_command": list(self.reload_command),
            "reload_timeout": self.reload_timeout,
        }


@dataclass(frozen=True)
class TLSConfig:
    """Certificate locations, issuance settings and injected directives."""

    live_dir: Path = Path("/etc/letsencrypt/live")
    email: str | None = None
    certbot_bin: str = "certbot"
    webroot: Path | None = None
    issue_timeout: float = 300.0
    protocols: str = "TLSv1.2 TLSv1.3"
    ciphers: str = (
        "ECDHE-ECDSA-AES128-GCM-SHA256:ECDHE-RSA-AES128-GCM-SHA256:"
        "ECDHE-ECDSA-AES256-GCM-SHA384:ECDHE-RSA-AES256-GCM-SHA384"
    )
    session_cache: str = "shared:SSL:10m"
    session_timeout: str = "10m"

    def certificate_path(self, domain: str) -> Path:
        """Return the certificate chain path for *domain*."""
        return self.live_dir / domain / "fullchain.pem"

    def key_path(self, domain: str) -> Path:
        """Return the private key path for *domain*."""
        return self.live_dir / domain / "privkey.pem"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "live_dir": str(self.live_dir),
            "email": self.email,
            "certbot_bin": self.certbot_bin,
            "webroot": str(self.webroot) if self.webroot is not None else None,
            "issue_timeout": self.issue_timeout,
            "protocols": self.protocols,
            "ciphers": self.ciphers,
            "session_cache": self.session_cache,
            "session_timeout": self.session_timeout,
        }


@dataclass(frozen=True)
class SiteDefaults:
    """Defaults applied when the operator omits a site attribute."""

    php_version: str = "8.1"
    www_policy: str = "none"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"php_version": self.php_version, "www_policy": self.www_policy}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for vhostctl."""

    config_file: Path
    sites_available: Path
    sites_enabled: Path
    templates_dir: Path
    state_dir: Path
    snapshots_dir: Path
    runtime_dir: Path
    logs_dir: Path
    lock_timeout: float
    nginx: NginxConfig
    tls: TLSConfig
    defaults: SiteDefaults

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "sites_available": str(self.sites_available),
            "sites_enabled": str(self.sites_enabled),
            "templates_dir": str(self.templates_dir),
            "state_dir": str(self.state_dir),
            "snapshots_dir": str(self.snapshots_dir),
            "runtime_dir": str(self.runtime_dir),
            "logs_dir": str(self.logs_dir),
            "lock_timeout": self.lock_timeout,
            "nginx": self.nginx.to_dict(),
            "tls": self.tls.to_dict(),
            "defaults": self.defaults.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/vhostctl/config.yml",
    "sites_available": "/etc/nginx/sites-available",
    "sites_enabled": "/etc/nginx/sites-enabled",
    "templates_dir": "/etc/vhostctl/templates",
    "snapshots_dir": None,  # derived from state_dir when absent
    "state_dir": "/var/lib/vhostctl",
    "runtime_dir": "/run/vhostctl",
    "logs_dir": "/var/log/vhostctl",
    "lock_timeout": 30.0,
    "nginx": {
        "binary": "nginx",
        "main_config": "/etc/nginx/nginx.conf",
        "test_timeout": 30.0,
        "reload_command": ["systemctl", "reload", "nginx"],
        "reload_timeout": 30.0,
    },
    "tls": {
        "live_dir": "/etc/letsencrypt/live",
        "email": None,
        "certbot_bin": "certbot",
        "webroot": None,
        "issue_timeout": 300.0,
        "protocols": TLSConfig.protocols,
        "ciphers": TLSConfig.ciphers,
        "session_cache": TLSConfig.session_cache,
        "session_timeout": TLSConfig.session_timeout,
    },
    "defaults": {
        "php_version": "8.1",
        "www_policy": "none",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_NESTED_KEYS: dict[str, set[str]] = {
    "nginx": set(cast(Mapping[str, object], DEFAULTS["nginx"]).keys()),
    "tls": set(cast(Mapping[str, object], DEFAULTS["tls"]).keys()),
    "defaults": set(cast(Mapping[str, object], DEFAULTS["defaults"]).keys()),
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _NESTED_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    defaults_map = _as_dict(raw.get("defaults"), "defaults")
    policy = defaults_map.get("www_policy")
    if policy is not None and str(policy) not in ALLOWED_WWW_POLICIES:
        allowed_text = ", ".join(sorted(ALLOWED_WWW_POLICIES))
        raise ConfigError(
            f"Unsupported defaults.www_policy '{policy}'. Allowed: {allowed_text}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    state_dir = _to_path(raw.get("state_dir"))
    snapshots_value = raw.get("snapshots_dir")
    snapshots_dir = _to_path(snapshots_value) if snapshots_value else state_dir / "snapshots"

    nginx_mapping = _as_dict(raw.get("nginx"), "nginx")
    reload_command = tuple(
        str(part)
        for part in _as_sequence(
            nginx_mapping.get("reload_command", ["systemctl", "reload", "nginx"]),
            "nginx.reload_command",
        )
    )
    if not reload_command:
        raise ConfigError("nginx.reload_command must contain at least one element.")
    nginx = NginxConfig(
        binary=str(nginx_mapping.get("binary", "nginx")),
        main_config=_to_path(nginx_mapping.get("main_config", "/etc/nginx/nginx.conf")),
        test_timeout=_expect_positive_float(
            nginx_mapping.get("test_timeout"), "nginx.test_timeout", default=30.0
        ),
        reload_command=reload_command,
        reload_timeout=_expect_positive_float(
            nginx_mapping.get("reload_timeout"), "nginx.reload_timeout", default=30.0
        ),
    )

    tls_mapping = _as_dict(raw.get("tls"), "tls")
    email_value = tls_mapping.get("email")
    webroot_value = tls_mapping.get("webroot")
    tls = TLSConfig(
        live_dir=_to_path(tls_mapping.get("live_dir", "/etc/letsencrypt/live")),
        email=str(email_value) if email_value else None,
        certbot_bin=str(tls_mapping.get("certbot_bin", "certbot")),
        webroot=_to_path(webroot_value) if webroot_value else None,
        issue_timeout=_expect_positive_float(
            tls_mapping.get("issue_timeout"), "tls.issue_timeout", default=300.0
        ),
        protocols=str(tls_mapping.get("protocols", TLSConfig.protocols)),
        ciphers=str(tls_mapping.get("ciphers", TLSConfig.ciphers)),
        session_cache=str(tls_mapping.get("session_cache", TLSConfig.session_cache)),
        session_timeout=str(tls_mapping.get("session_timeout", TLSConfig.session_timeout)),
    )

    defaults_mapping = _as_dict(raw.get("defaults"), "defaults")
    defaults = SiteDefaults(
        php_version=str(defaults_mapping.get("php_version", "8.1")),
        www_policy=str(defaults_mapping.get("www_policy", "none")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        sites_available=_to_path(raw.get("sites_available")),
        sites_enabled=_to_path(raw.get("sites_enabled")),
        templates_dir=_to_path(raw.get("templates_dir")),
        state_dir=state_dir,
        snapshots_dir=snapshots_dir,
        runtime_dir=_to_path(raw.get("runtime_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        nginx=nginx,
        tls=tls,
        defaults=defaults,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, str):
        # Shell-style command strings are accepted for convenience.
        return value.split()
    if isinstance(value, bytes) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "NginxConfig",
    "SiteDefaults",
    "TLSConfig",
    "load_config",
]
