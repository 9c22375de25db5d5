"""TLS helpers: certificate material, directive blocks and issuance."""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from cryptography import x509
from cryptography.x509.oid import NameOID

from .config import TLSConfig
from .errors import CertificateError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CertificateMaterial:
    """Certificate chain and private key for one domain."""

    certificate: Path
    key: Path


@dataclass(frozen=True)
class CertificateInfo:
    """Selected fields of an issued certificate."""

    subject: str
    not_valid_after: datetime
    days_remaining: int

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "subject": self.subject,
            "not_valid_after": self.not_valid_after.isoformat(),
            "days_remaining": self.days_remaining,
        }


class CertificateIssuer(Protocol):
    """Obtains certificates for a domain from an ACME authority."""

    def issue(
        self,
        domain: str,
        email: str | None,
        *,
        include_www: bool = False,
    ) -> CertificateMaterial:
        """Issue (or renew) a certificate and return its material."""
        ...


@dataclass(frozen=True)
class TLSDirectives:
    """Render the nginx directives that terminate TLS for a server block."""

    settings: TLSConfig

    def listen_lines(self) -> list[str]:
        """Return the 443 listen directives."""
        return ["listen 443 ssl;", "listen [::]:443 ssl;"]

    def certificate_lines(self, material: CertificateMaterial) -> list[str]:
        """Return the certificate and key references."""
        return [
            f"ssl_certificate {material.certificate};",
            f"ssl_certificate_key {material.key};",
        ]

    def session_lines(self) -> list[str]:
        """Return protocol, cipher and session settings in their fixed order."""
        return [
            f"ssl_protocols {self.settings.protocols};",
            f"ssl_ciphers {self.settings.ciphers};",
            "ssl_prefer_server_ciphers off;",
            f"ssl_session_cache {self.settings.session_cache};",
            f"ssl_session_timeout {self.settings.session_timeout};",
        ]

    def primary_block(self, material: CertificateMaterial) -> list[str]:
        """Directives injected into the primary server block."""
        return [
            *self.listen_lines(),
            *self.certificate_lines(material),
            *self.session_lines(),
        ]

    def secondary_block(self, material: CertificateMaterial) -> list[str]:
        """Directives injected into a redirect server block."""
        return [*self.listen_lines(), *self.certificate_lines(material)]


class CertificateStore:
    """Locate and inspect certificates in the well-known live directory."""

    def __init__(self, settings: TLSConfig) -> None:
        self.settings = settings

    def material_for(self, domain: str) -> CertificateMaterial:
        """Return the expected material paths for *domain*."""
        return CertificateMaterial(
            certificate=self.settings.certificate_path(domain),
            key=self.settings.key_path(domain),
        )

    def lookup(self, domain: str) -> CertificateMaterial | None:
        """Return material for *domain* when both files are present."""
        material = self.material_for(domain)
        if material.certificate.exists() and material.key.exists():
            return material
        return None

    def inspect(self, domain: str) -> CertificateInfo | None:
        """Return expiry details for the certificate of *domain*, if any."""
        material = self.lookup(domain)
        if material is None:
            return None
        try:
            certificate = x509.load_pem_x509_certificate(material.certificate.read_bytes())
        except (OSError, ValueError) as exc:
            raise CertificateError(
                f"Unable to read certificate {material.certificate}: {exc}"
            ) from exc
        expires = certificate.not_valid_after_utc
        names = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        subject = str(names[0].value) if names else certificate.subject.rfc4514_string()
        remaining = (expires - datetime.now(UTC)).days
        return CertificateInfo(subject=subject, not_valid_after=expires, days_remaining=remaining)


@dataclass(slots=True)
class CertbotIssuer:
    """Issue certificates by invoking ``certbot certonly``."""

    settings: TLSConfig

    def issue(
        self,
        domain: str,
        email: str | None,
        *,
        include_www: bool = False,
    ) -> CertificateMaterial:
        """Run certbot for *domain* and return the resulting material."""
        args = self._build_args(domain, email, include_www=include_www)
        LOGGER.debug("Running %s", " ".join(args))
        try:
            result = subprocess.run(  # noqa: S603
                args,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.settings.issue_timeout,
            )
        except FileNotFoundError as exc:
            raise CertificateError(
                f"{self.settings.certbot_bin} not found; install certbot to issue certificates."
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise CertificateError(
                f"certbot timed out after {self.settings.issue_timeout:g}s for {domain}."
            ) from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise CertificateError(
                f"certbot failed for {domain} (exit {result.returncode}): {message}"
            )
        material = CertificateMaterial(
            certificate=self.settings.certificate_path(domain),
            key=self.settings.key_path(domain),
        )
        return material

    def _build_args(self, domain: str, email: str | None, *, include_www: bool) -> list[str]:
        args: list[str] = [self.settings.certbot_bin, "certonly", "--non-interactive"]
        if self.settings.webroot is not None:
            args.extend(["--webroot", "-w", str(self.settings.webroot)])
        else:
            args.append("--nginx")
        args.extend(["-d", domain])
        if include_www:
            args.extend(["-d", f"www.{domain}"])
        if email:
            args.extend(["--email", email, "--no-eff-email"])
        else:
            args.append("--register-unsafely-without-email")
        args.extend(["--agree-tos", "--keep-until-expiring", "--cert-name", domain])
        return args


__all__ = [
    "CertbotIssuer",
    "CertificateInfo",
    "CertificateIssuer",
    "CertificateMaterial",
    "CertificateStore",
    "TLSDirectives",
]
