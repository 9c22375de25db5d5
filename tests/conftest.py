"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from vhostctl.config import AppConfig, load_config
from vhostctl.errors import CertificateError, ReloadError
from vhostctl.locking import LockManager
from vhostctl.providers.nginx import CheckResult
from vhostctl.tls import CertificateMaterial
from vhostctl.transaction import SiteTransaction


@dataclass
class FakeChecker:
    """Syntax checker driven by a verdict function over the enabled set."""

    verdict: Callable[[Path | None], CheckResult] | None = None
    calls: list[Path | None] = field(default_factory=list)

    def check(self, candidate: Path | None = None) -> CheckResult:
        self.calls.append(candidate)
        if self.verdict is None:
            return CheckResult(ok=True, output="nginx: configuration file test is successful")
        return self.verdict(candidate)


@dataclass
class FakeReload:
    """Reload trigger that counts invocations."""

    count: int = 0
    fail: bool = False

    def reload(self) -> None:
        self.count += 1
        if self.fail:
            raise ReloadError("systemctl reload nginx failed (exit 1): Job failed")


@dataclass
class FakeIssuer:
    """Certificate issuer writing a self-signed pair into the live directory."""

    live_dir: Path
    fail: bool = False
    calls: list[tuple[str, str | None, bool]] = field(default_factory=list)

    def issue(
        self,
        domain: str,
        email: str | None,
        *,
        include_www: bool = False,
    ) -> CertificateMaterial:
        self.calls.append((domain, email, include_www))
        if self.fail:
            raise CertificateError(f"certbot failed for {domain} (exit 1): challenge failed")
        certificate, key = write_certificate(self.live_dir, domain)
        return CertificateMaterial(certificate=certificate, key=key)


def write_certificate(live_dir: Path, domain: str, *, days: int = 60) -> tuple[Path, Path]:
    """Create a self-signed certificate/key pair in the Let's Encrypt layout."""
    now = datetime.now(UTC)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    directory = live_dir / domain
    directory.mkdir(parents=True, exist_ok=True)
    cert_path = directory / "fullchain.pem"
    key_path = directory / "privkey.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    return cert_path, key_path


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Write a config file that keeps every path inside *tmp_path*."""
    path = tmp_path / "vhostctl.yml"
    path.write_text(
        "\n".join(
            [
                f"sites_available: {tmp_path / 'nginx' / 'sites-available'}",
                f"sites_enabled: {tmp_path / 'nginx' / 'sites-enabled'}",
                f"templates_dir: {tmp_path / 'templates'}",
                f"state_dir: {tmp_path / 'state'}",
                f"runtime_dir: {tmp_path / 'run'}",
                f"logs_dir: {tmp_path / 'logs'}",
                "lock_timeout: 1",
                "nginx:",
                f"  main_config: {tmp_path / 'nginx' / 'nginx.conf'}",
                "tls:",
                f"  live_dir: {tmp_path / 'letsencrypt' / 'live'}",
                "  email: ops@example.com",
                "",
            ]
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def app_config(config_file: Path) -> AppConfig:
    """Return the loaded temporary configuration."""
    return load_config(config_file=config_file, env={})


@pytest.fixture
def checker() -> FakeChecker:
    """Return a checker that accepts everything."""
    return FakeChecker()


@pytest.fixture
def reloader() -> FakeReload:
    """Return a counting reload trigger."""
    return FakeReload()


@pytest.fixture
def issuer(app_config: AppConfig) -> FakeIssuer:
    """Return a fake certificate issuer bound to the temporary live dir."""
    return FakeIssuer(app_config.tls.live_dir)


@pytest.fixture
def transaction(
    app_config: AppConfig,
    checker: FakeChecker,
    reloader: FakeReload,
    issuer: FakeIssuer,
) -> SiteTransaction:
    """Return a transaction wired to fake collaborators."""
    return SiteTransaction.from_config(
        app_config,
        locks=LockManager(app_config.runtime_dir, default_timeout=1.0),
        checker=checker,
        reloader=reloader,
        issuer=issuer,
    )
