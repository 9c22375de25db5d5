"""Tests for the vhostctl command line."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
from conftest import FakeChecker, FakeIssuer, FakeReload, write_certificate
from typer.testing import CliRunner

from vhostctl import __version__
from vhostctl.augment import TLS_MARKER
from vhostctl.cli import RuntimeContext, app, build_runtime
from vhostctl.config import AppConfig
from vhostctl.providers.nginx import CheckResult

runner = CliRunner()

EMERG = 'nginx: [emerg] unexpected "}" in example.com:9'


@pytest.fixture
def runtime(
    app_config: AppConfig,
    checker: FakeChecker,
    reloader: FakeReload,
    issuer: FakeIssuer,
) -> RuntimeContext:
    """Return a runtime wired to fake collaborators."""
    return build_runtime(app_config, checker=checker, reloader=reloader, issuer=issuer)


def _records(runtime: RuntimeContext) -> list[dict[str, object]]:
    lines = runtime.logger.path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_version_flag() -> None:
    """The version flag prints the package version."""
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert f"vhostctl {__version__}" in result.stdout


def test_config_show_json_uses_config_file(config_file: Path, tmp_path: Path) -> None:
    """The effective configuration is loaded from --config-file."""
    result = runner.invoke(app, ["--config-file", str(config_file), "config", "show", "--json"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["sites_enabled"] == str(tmp_path / "nginx" / "sites-enabled")
    assert payload["tls"]["email"] == "ops@example.com"


def test_invalid_config_exits_environment(tmp_path: Path) -> None:
    """Unknown configuration keys stop the CLI with the environment code."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("surprise: true\n")

    result = runner.invoke(app, ["--config-file", str(cfg), "config", "show"])

    assert result.exit_code == 3
    assert "Configuration error" in result.stdout


def test_create_static_enables_site(runtime: RuntimeContext, reloader: FakeReload) -> None:
    """Creating a site renders, validates, enables and reloads."""
    result = runner.invoke(
        app,
        ["site", "create", "static", "example.com", "/srv/example", "--www", "apex"],
        obj=runtime,
    )

    assert result.exit_code == 0, result.stdout
    assert "Site example.com enabled" in result.stdout
    assert runtime.transaction.activation.is_enabled("example.com")
    assert reloader.count == 1
    record = _records(runtime)[-1]
    assert record["op"] == "site create static"
    assert [step["name"] for step in record["steps"]] == [  # type: ignore[index, union-attr]
        "render",
        "write",
        "check",
        "enable",
        "reload",
    ]
    assert record["result"]["status"] == "success"  # type: ignore[index]


def test_create_rejected_exits_with_diagnostics(
    runtime: RuntimeContext,
    checker: FakeChecker,
) -> None:
    """A checker failure prints nginx's output verbatim and exits 7."""
    checker.verdict = lambda candidate: CheckResult(ok=False, output=EMERG)

    result = runner.invoke(
        app,
        ["site", "create", "proxy", "api.example.com", "3000"],
        obj=runtime,
    )

    assert result.exit_code == 7
    assert EMERG in result.stdout
    assert runtime.transaction.activation.artifact_exists("api.example.com")
    assert not runtime.transaction.activation.is_enabled("api.example.com")
    assert _records(runtime)[-1]["result"]["rc"] == 7  # type: ignore[index]


def test_create_invalid_domain_exits_validation(runtime: RuntimeContext) -> None:
    """Input errors exit 2 before anything is written."""
    result = runner.invoke(
        app,
        ["site", "create", "static", "not a domain", "/srv/example"],
        obj=runtime,
    )

    assert result.exit_code == 2
    assert list(runtime.config.sites_available.glob("*")) == []


def test_create_unsafe_root_exits_validation(runtime: RuntimeContext) -> None:
    """A document root carrying nginx syntax is refused before any write."""
    result = runner.invoke(
        app,
        ["site", "create", "static", "example.com", "/srv/example; }"],
        obj=runtime,
    )

    assert result.exit_code == 2
    assert list(runtime.config.sites_available.glob("*")) == []


def test_create_dry_run_prints_configuration(runtime: RuntimeContext) -> None:
    """Dry runs render to stdout without touching the stores."""
    result = runner.invoke(
        app,
        ["site", "create", "php", "example.com", "/srv/app", "--php-version", "8.3", "--dry-run"],
        obj=runtime,
    )

    assert result.exit_code == 0
    assert "php8.3-fpm.sock" in result.stdout
    assert not runtime.transaction.activation.artifact_exists("example.com")


def test_create_redirect_with_tls_and_issue(
    runtime: RuntimeContext,
    issuer: FakeIssuer,
) -> None:
    """Issuing a certificate during create augments the site."""
    result = runner.invoke(
        app,
        [
            "site",
            "create",
            "redirect",
            "old.example.com",
            "new.example.com",
            "--tls",
            "--issue",
            "--email",
            "certs@example.com",
        ],
        obj=runtime,
    )

    assert result.exit_code == 0, result.stdout
    assert issuer.calls == [("old.example.com", "certs@example.com", False)]
    text = runtime.transaction.activation.artifact_path("old.example.com").read_text()
    assert TLS_MARKER in text


def test_site_tls_rollback_exits_nine(
    runtime: RuntimeContext,
    app_config: AppConfig,
    checker: FakeChecker,
) -> None:
    """A rolled back augmentation is a warning with its own exit code."""
    runner.invoke(app, ["site", "create", "static", "example.com", "/srv/example"], obj=runtime)
    write_certificate(app_config.tls.live_dir, "example.com")
    artifact = runtime.transaction.activation.artifact_path("example.com")
    before = artifact.read_bytes()
    checker.verdict = lambda candidate: CheckResult(
        ok=TLS_MARKER not in artifact.read_text(),
        output="nginx: [emerg] cannot load certificate",
    )

    result = runner.invoke(app, ["site", "tls", "example.com"], obj=runtime)

    assert result.exit_code == 9
    assert "rolled back" in result.stdout
    assert artifact.read_bytes() == before
    assert _records(runtime)[-1]["result"]["status"] == "warning"  # type: ignore[index]


def test_site_tls_without_certificate_warns(runtime: RuntimeContext) -> None:
    """Missing certificates leave the site on HTTP with a hint."""
    runner.invoke(app, ["site", "create", "static", "example.com", "/srv/example"], obj=runtime)

    result = runner.invoke(app, ["site", "tls", "example.com"], obj=runtime)

    assert result.exit_code == 0
    assert "No certificate found" in result.stdout


def test_site_tls_missing_site_exits_precondition(runtime: RuntimeContext) -> None:
    """TLS for an unknown site is a precondition failure."""
    result = runner.invoke(app, ["site", "tls", "missing.example"], obj=runtime)

    assert result.exit_code == 6


def test_enable_disable_and_list(runtime: RuntimeContext) -> None:
    """Sites can be toggled and listed, with dangling links reported."""
    runner.invoke(app, ["site", "create", "static", "example.com", "/srv/example"], obj=runtime)
    runner.invoke(app, ["site", "create", "static", "gone.example", "/srv/gone"], obj=runtime)

    disabled = runner.invoke(app, ["site", "disable", "example.com"], obj=runtime)
    assert disabled.exit_code == 0
    assert "disabled" in disabled.stdout
    again = runner.invoke(app, ["site", "disable", "example.com"], obj=runtime)
    assert again.exit_code == 0
    assert "was not enabled" in again.stdout

    runtime.transaction.activation.artifact_path("gone.example").unlink()
    listing = runner.invoke(app, ["site", "list", "--json"], obj=runtime)

    assert listing.exit_code == 0
    payload = {row["domain"]: row for row in json.loads(listing.stdout)}
    assert payload["example.com"]["state"] == "available"
    assert payload["gone.example"]["state"] == "dangling"
    assert _records(runtime)[-1]["result"]["status"] == "warning"  # type: ignore[index]

    enabled = runner.invoke(app, ["site", "enable", "example.com"], obj=runtime)
    assert enabled.exit_code == 0
    assert runtime.transaction.activation.is_enabled("example.com")


def test_enable_missing_site(runtime: RuntimeContext) -> None:
    """Enabling an unknown site exits with the precondition code."""
    result = runner.invoke(app, ["site", "enable", "missing.example"], obj=runtime)

    assert result.exit_code == 6


def test_remove_requires_confirmation(runtime: RuntimeContext) -> None:
    """Removal asks before deleting unless --yes is given."""
    runner.invoke(app, ["site", "create", "static", "example.com", "/srv/example"], obj=runtime)

    aborted = runner.invoke(app, ["site", "remove", "example.com"], input="n\n", obj=runtime)
    assert aborted.exit_code == 0
    assert runtime.transaction.activation.artifact_exists("example.com")

    removed = runner.invoke(app, ["site", "remove", "example.com", "--yes"], obj=runtime)
    assert removed.exit_code == 0
    assert not runtime.transaction.activation.artifact_exists("example.com")


def test_show_reports_certificate(runtime: RuntimeContext, app_config: AppConfig) -> None:
    """Show includes state and certificate expiry."""
    runner.invoke(app, ["site", "create", "static", "example.com", "/srv/example"], obj=runtime)
    write_certificate(app_config.tls.live_dir, "example.com", days=45)

    result = runner.invoke(app, ["site", "show", "example.com", "--json"], obj=runtime)

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["state"] == "enabled"
    assert payload["tls"] is False
    assert payload["certificate"]["subject"] == "example.com"


def test_show_and_tls_handle_non_utf8_artifact(
    runtime: RuntimeContext,
    app_config: AppConfig,
) -> None:
    """Hand-edited artifacts in another encoding neither crash show nor tls."""
    runner.invoke(app, ["site", "create", "static", "example.com", "/srv/example"], obj=runtime)
    artifact = runtime.transaction.activation.artifact_path("example.com")
    with artifact.open("ab") as handle:
        handle.write(b"# caf\xe9 tuned by hand\n")
    write_certificate(app_config.tls.live_dir, "example.com")

    shown = runner.invoke(app, ["site", "show", "example.com", "--json"], obj=runtime)
    assert shown.exit_code == 0, shown.stdout
    assert json.loads(shown.stdout)["tls"] is False

    secured = runner.invoke(app, ["site", "tls", "example.com"], obj=runtime)
    assert secured.exit_code == 0, secured.stdout
    assert artifact.read_bytes().endswith(b"# caf\xe9 tuned by hand\n")


def test_filesystem_error_exits_environment(runtime: RuntimeContext) -> None:
    """An unusable store path is reported with the environment code, not a traceback."""
    store = runtime.config.sites_available
    store.parent.mkdir(parents=True, exist_ok=True)
    store.write_text("not a directory\n")

    result = runner.invoke(
        app,
        ["site", "create", "static", "example.com", "/srv/example"],
        obj=runtime,
    )

    assert result.exit_code == 3
    assert result.exception is None or isinstance(result.exception, SystemExit)
    assert "Cannot access" in result.stdout
    assert _records(runtime)[-1]["result"]["rc"] == 3  # type: ignore[index]


def test_show_missing_site(runtime: RuntimeContext) -> None:
    """Showing an unknown site exits with the precondition code."""
    result = runner.invoke(app, ["site", "show", "missing.example"], obj=runtime)

    assert result.exit_code == 6


def test_test_and_reload_commands(
    runtime: RuntimeContext,
    checker: FakeChecker,
    reloader: FakeReload,
) -> None:
    """The test and reload commands honour the checker verdict."""
    passed = runner.invoke(app, ["test"], obj=runtime)
    assert passed.exit_code == 0
    assert "test passed" in passed.stdout

    reloaded = runner.invoke(app, ["reload"], obj=runtime)
    assert reloaded.exit_code == 0
    assert reloader.count == 1

    checker.verdict = lambda candidate: CheckResult(ok=False, output=EMERG)
    failed = runner.invoke(app, ["test"], obj=runtime)
    assert failed.exit_code == 7
    assert EMERG in failed.stdout
    refused = runner.invoke(app, ["reload"], obj=runtime)
    assert refused.exit_code == 7
    assert reloader.count == 1


def test_busy_site_exits_eight(runtime: RuntimeContext) -> None:
    """A held lock surfaces as the busy exit code."""
    runtime.transaction.locks.default_timeout = 0.1

    with runtime.transaction.locks.site_lock("example.com"):
        result = runner.invoke(
            app,
            ["site", "create", "static", "example.com", "/srv/example"],
            obj=runtime,
        )

    assert result.exit_code == 8
