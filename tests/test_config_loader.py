"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from vhostctl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.sites_available == Path("/etc/nginx/sites-available")
    assert config.sites_enabled == Path("/etc/nginx/sites-enabled")
    assert config.snapshots_dir == Path("/var/lib/vhostctl/snapshots")
    assert config.nginx.reload_command == ("systemctl", "reload", "nginx")
    assert config.tls.email is None
    assert config.defaults.php_version == "8.1"
    assert config.defaults.www_policy == "none"


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "vhostctl.yml"
    cfg.write_text(
        "sites_available: {root}/available\n"
        "nginx:\n"
        "  binary: /usr/sbin/nginx\n"
        "  reload_command: nginx -s reload\n"
        "tls:\n"
        "  email: admin@example.com\n"
        "  webroot: /var/www/acme\n"
        "defaults:\n"
        "  www_policy: apex\n".format(root=tmp_path)
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.sites_available == tmp_path / "available"
    assert config.nginx.binary == "/usr/sbin/nginx"
    assert config.nginx.reload_command == ("nginx", "-s", "reload")
    assert config.tls.email == "admin@example.com"
    assert config.tls.webroot == Path("/var/www/acme")
    assert config.defaults.www_policy == "apex"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "vhostctl.yml"
    cfg.write_text("lock_timeout: 10\nnginx:\n  test_timeout: 20\n")
    state_dir = tmp_path / "state"
    env = {
        "VHOSTCTL_CONFIG_FILE": str(cfg),
        "VHOSTCTL_STATE_DIR": str(state_dir),
        "VHOSTCTL_LOCK_TIMEOUT": "45",
        "VHOSTCTL_NGINX__TEST_TIMEOUT": "5",
        "VHOSTCTL_TLS__CERTBOT_BIN": "/opt/certbot/bin/certbot",
        "UNRELATED": "ignored",
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.state_dir == state_dir
    assert config.snapshots_dir == state_dir / "snapshots"
    assert config.lock_timeout == 45.0
    assert config.nginx.test_timeout == 5.0
    assert config.tls.certbot_bin == "/opt/certbot/bin/certbot"


def test_overrides_win_over_environment(tmp_path: Path) -> None:
    """Programmatic overrides (CLI flags) are applied last."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"VHOSTCTL_LOCK_TIMEOUT": "45"},
        overrides={"lock_timeout": 2.5},
    )

    assert config.lock_timeout == 2.5


def test_unknown_keys_rejected(tmp_path: Path) -> None:
    """Unknown top-level or nested keys raise a configuration error."""
    cfg = tmp_path / "vhostctl.yml"
    cfg.write_text("nginx:\n  bogus: true\n")

    with pytest.raises(ConfigError, match="Unknown nginx configuration keys: bogus"):
        load_config(config_file=cfg, env={})

    cfg.write_text("surprise: 1\n")
    with pytest.raises(ConfigError, match="Unknown configuration keys: surprise"):
        load_config(config_file=cfg, env={})


def test_invalid_values_rejected(tmp_path: Path) -> None:
    """Invalid policies and non-positive timeouts are reported."""
    cfg = tmp_path / "vhostctl.yml"
    cfg.write_text("defaults:\n  www_policy: sometimes\n")
    with pytest.raises(ConfigError, match="www_policy"):
        load_config(config_file=cfg, env={})

    cfg.write_text("lock_timeout: 0\n")
    with pytest.raises(ConfigError, match="greater than zero"):
        load_config(config_file=cfg, env={})


def test_non_mapping_file_rejected(tmp_path: Path) -> None:
    """A YAML list at the top level is not a valid configuration."""
    cfg = tmp_path / "vhostctl.yml"
    cfg.write_text("- one\n- two\n")

    with pytest.raises(ConfigError, match="mapping"):
        load_config(config_file=cfg, env={})


def test_to_dict_is_json_safe(tmp_path: Path) -> None:
    """The rendered dictionary contains only plain values."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})
    data = config.to_dict()

    assert data["sites_enabled"] == "/etc/nginx/sites-enabled"
    assert data["nginx"]["reload_command"] == ["systemctl", "reload", "nginx"]  # type: ignore[index]
    assert data["tls"]["webroot"] is None  # type: ignore[index]
