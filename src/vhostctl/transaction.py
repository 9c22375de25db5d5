"""Validate-before-commit transactions around the site stores.

:class:`SiteTransaction` is the single entry point for mutating a site. Each
mutation holds the site's lock for its full duration and follows the same
rule: nothing is linked into the enabled store and nothing is reloaded until
the syntax checker has accepted the configuration.

Commit path::

    render -> write -> check -> enable -> reload [-> augment -> check -> reload]

A rejected check leaves the artifact on disk for inspection and the enabled
store untouched. A rejected augmentation restores the pre-augmentation
snapshot byte for byte and re-checks; if that re-check also fails the live
content can no longer be vouched for and :class:`InconsistentStateError` is
raised.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .activation import ActivationManager, SiteListing
from .augment import ConfigAugmenter, atomic_write
from .config import AppConfig
from .errors import (
    ArtifactMissingError,
    CertificateError,
    InconsistentStateError,
    RejectedError,
    SyntaxCheckerError,
)
from .locking import LockManager
from .models import Site, WwwPolicy, validate_domain
from .providers.nginx import (
    CheckResult,
    NginxReloadTrigger,
    NginxSyntaxChecker,
    ReloadTrigger,
    SyntaxChecker,
)
from .substitution import SubstitutionEngine, derive_variables
from .templates import TemplateStore
from .tls import CertbotIssuer, CertificateIssuer, CertificateStore, TLSDirectives

LOGGER = logging.getLogger(__name__)

REJECTED_SUFFIX = ".rejected"


class TransactionState(str, Enum):
    """Final state reported for a site operation."""

    COMMITTED = "committed"
    AUGMENTED = "augmented"
    ROLLED_BACK = "rolled_back"
    TLS_PENDING = "tls_pending"
    ENABLED = "enabled"
    DISABLED = "disabled"
    REMOVED = "removed"
    UNCHANGED = "unchanged"


@dataclass
class TransactionStep:
    """A single recorded step."""

    name: str
    status: str
    detail: str | None = None


@dataclass
class TransactionResult:
    """Outcome of a site operation."""

    domain: str
    artifact: Path
    state: TransactionState = TransactionState.UNCHANGED
    steps: list[TransactionStep] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    diagnostics: str = ""
    lock_wait_ms: int = 0
    changed: int = 0

    def add_step(self, name: str, status: str = "success", detail: str | None = None) -> None:
        """Record a step."""
        self.steps.append(TransactionStep(name, status, detail))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "artifact": str(self.artifact),
            "state": self.state.value,
            "steps": [
                {"name": step.name, "status": step.status, "detail": step.detail}
                for step in self.steps
            ],
            "warnings": list(self.warnings),
            "diagnostics": self.diagnostics,
            "lock_wait_ms": self.lock_wait_ms,
            "changed": self.changed,
        }


class SiteTransaction:
    """Render, validate, activate and augment sites."""

    def __init__(
        self,
        *,
        store: TemplateStore,
        engine: SubstitutionEngine,
        activation: ActivationManager,
        augmenter: ConfigAugmenter,
        checker: SyntaxChecker,
        reloader: ReloadTrigger,
        certificates: CertificateStore,
        locks: LockManager,
        issuer: CertificateIssuer | None = None,
        email: str | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.activation = activation
        self.augmenter = augmenter
        self.checker = checker
        self.reloader = reloader
        self.certificates = certificates
        self.locks = locks
        self.issuer = issuer
        self.email = email

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        locks: LockManager | None = None,
        checker: SyntaxChecker | None = None,
        reloader: ReloadTrigger | None = None,
        issuer: CertificateIssuer | None = None,
    ) -> SiteTransaction:
        """Wire the default collaborators described by *config*."""
        directives = TLSDirectives(config.tls)
        return cls(
            store=TemplateStore.with_overrides(config.templates_dir),
            engine=SubstitutionEngine(),
            activation=ActivationManager(config.sites_available, config.sites_enabled),
            augmenter=ConfigAugmenter(directives, config.snapshots_dir),
            checker=checker or NginxSyntaxChecker(config.nginx, config.sites_enabled),
            reloader=reloader or NginxReloadTrigger(config.nginx),
            certificates=CertificateStore(config.tls),
            locks=locks or LockManager(config.runtime_dir, config.lock_timeout),
            issuer=issuer or CertbotIssuer(config.tls),
            email=config.tls.email,
        )

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------
    def render(self, site: Site) -> str:
        """Return the rendered configuration text for *site*."""
        body = self.store.lookup(site.archetype)
        material = self.certificates.lookup(site.domain) if site.tls else None
        variables = derive_variables(
            site,
            directives=self.augmenter.directives,
            material=material,
        )
        return self.engine.render(body.text, variables)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def commit(
        self,
        site: Site,
        *,
        reload: bool = True,
        issue_certificate: bool = False,
    ) -> TransactionResult:
        """Render *site*, validate it, enable it and optionally add TLS."""
        artifact = self.activation.artifact_path(site.domain)
        result = TransactionResult(domain=site.domain, artifact=artifact)
        with self.locks.mutate_sites([site.domain]) as bundle:
            result.lock_wait_ms = bundle.wait_ms
            text = self.render(site)
            result.add_step("render", detail=f"archetype={site.archetype.value}")

            self._write_validated(site.domain, text, result)
            if self.activation.enable(site.domain):
                result.changed += 1
                result.add_step("enable")
            else:
                result.add_step("enable", "skipped", "already enabled")
            result.state = TransactionState.COMMITTED
            if reload:
                self._reload(result)

            if site.tls:
                self._augment(
                    site.domain,
                    result,
                    issue=issue_certificate,
                    include_www=site.www_policy is not WwwPolicy.NONE,
                    reload=reload,
                )
        return result

    def apply_tls(
        self,
        domain: str,
        *,
        issue_certificate: bool = False,
        include_www: bool = False,
        reload: bool = True,
    ) -> TransactionResult:
        """Inject TLS directives into an existing artifact and re-validate."""
        name = validate_domain(domain)
        artifact = self.activation.artifact_path(name)
        result = TransactionResult(domain=name, artifact=artifact)
        with self.locks.mutate_sites([name]) as bundle:
            result.lock_wait_ms = bundle.wait_ms
            if not self.activation.artifact_exists(name):
                raise ArtifactMissingError(f"Configuration for {name} does not exist at {artifact}.")
            self._augment(
                name,
                result,
                issue=issue_certificate,
                include_www=include_www,
                reload=reload,
            )
        return result

    def enable(self, domain: str, *, reload: bool = True) -> TransactionResult:
        """Link *domain* into the enabled store once the checker accepts it."""
        name = validate_domain(domain)
        result = TransactionResult(domain=name, artifact=self.activation.artifact_path(name))
        with self.locks.mutate_sites([name]) as bundle:
            result.lock_wait_ms = bundle.wait_ms
            if not self.activation.enable(name):
                result.add_step("enable", "skipped", "already enabled")
                result.state = TransactionState.UNCHANGED
                return result
            result.add_step("enable")
            check = self.checker.check()
            if not check.ok:
                self.activation.disable(name)
                result.add_step("check", "failed")
                raise RejectedError(
                    f"Enabling {name} produced an invalid configuration; link removed.",
                    diagnostics=check.output,
                )
            result.add_step("check")
            result.changed = 1
            result.state = TransactionState.ENABLED
            if reload:
                self._reload(result)
        return result

    def disable(self, domain: str, *, reload: bool = True) -> TransactionResult:
        """Remove the enabled-store link for *domain*."""
        name = validate_domain(domain)
        result = TransactionResult(domain=name, artifact=self.activation.artifact_path(name))
        with self.locks.mutate_sites([name]) as bundle:
            result.lock_wait_ms = bundle.wait_ms
            self._unlink_validated(name, result)
            if result.changed and reload:
                self._reload(result)
        return result

    def remove(self, domain: str, *, reload: bool = True) -> TransactionResult:
        """Disable *domain* and delete its artifact."""
        name = validate_domain(domain)
        artifact = self.activation.artifact_path(name)
        result = TransactionResult(domain=name, artifact=artifact)
        with self.locks.mutate_sites([name]) as bundle:
            result.lock_wait_ms = bundle.wait_ms
            if not self.activation.artifact_exists(name):
                raise ArtifactMissingError(f"Configuration for {name} does not exist at {artifact}.")
            was_enabled = bool(self._unlink_validated(name, result))
            self.activation.remove(name)
            artifact.with_name(artifact.name + REJECTED_SUFFIX).unlink(missing_ok=True)
            result.add_step("artifact.delete", detail=str(artifact))
            result.changed += 1
            result.state = TransactionState.REMOVED
            if was_enabled and reload:
                self._reload(result)
        return result

    # ------------------------------------------------------------------
    # Read-only helpers
    # ------------------------------------------------------------------
    def list(self) -> SiteListing:
        """Return a lazy listing of every site."""
        return self.activation.list()

    def test(self) -> CheckResult:
        """Run the syntax checker against the live configuration."""
        return self.checker.check()

    def reload(self) -> CheckResult:
        """Validate the live configuration, then reload the proxy."""
        check = self.checker.check()
        if not check.ok:
            raise RejectedError("Configuration test failed; reload skipped.", diagnostics=check.output)
        self.reloader.reload()
        return check

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _candidate(self, domain: str) -> Path | None:
        """Return the artifact to stage when it is not already linked."""
        if self.activation.is_enabled(domain):
            return None
        return self.activation.artifact_path(domain)

    def _write_validated(self, domain: str, text: str, result: TransactionResult) -> None:
        artifact = self.activation.artifact_path(domain)
        rejected = artifact.with_name(artifact.name + REJECTED_SUFFIX)
        live = self.activation.is_enabled(domain)
        previous = artifact.read_bytes() if live else None

        atomic_write(artifact, text.encode("utf-8"))
        result.changed += 1
        result.add_step("write", detail=str(artifact))

        check = self.checker.check(None if live else artifact)
        if check.ok:
            rejected.unlink(missing_ok=True)
            result.add_step("check")
            return

        result.add_step("check", "failed")
        if previous is not None:
            # Keep the enabled set on validated content; park the reject beside it.
            atomic_write(rejected, text.encode("utf-8"))
            atomic_write(artifact, previous)
            result.add_step("restore", detail=f"rejected text kept at {rejected}")
            where = rejected
        else:
            where = artifact
        raise RejectedError(
            f"Configuration for {domain} failed validation; not enabled. Inspect {where}.",
            diagnostics=check.output,
        )

    def _unlink_validated(self, domain: str, result: TransactionResult) -> int:
        if not self.activation.disable(domain):
            result.add_step("disable", "skipped", "not enabled")
            result.state = TransactionState.UNCHANGED
            return 0
        result.add_step("disable")
        check = self.checker.check()
        if not check.ok:
            self.activation.enable(domain)
            result.add_step("check", "failed")
            raise RejectedError(
                f"Disabling {domain} produced an invalid configuration; link restored.",
                diagnostics=check.output,
            )
        result.add_step("check")
        result.changed += 1
        result.state = TransactionState.DISABLED
        return 1

    def _reload(self, result: TransactionResult) -> None:
        self.reloader.reload()
        result.add_step("reload")

    def _augment(
        self,
        domain: str,
        result: TransactionResult,
        *,
        issue: bool,
        include_www: bool,
        reload: bool,
    ) -> None:
        material = self.certificates.lookup(domain)
        if material is None and issue:
            if self.issuer is None:
                raise CertificateError("No certificate issuer configured.")
            material = self.issuer.issue(domain, self.email, include_www=include_www)
            result.add_step("certificate.issue", detail=str(material.certificate))
        if material is None:
            message = (
                f"No certificate found for {domain}; TLS not applied. "
                f"Run 'vhostctl site tls {domain} --issue' once DNS points here."
            )
            result.warnings.append(message)
            result.add_step("tls.augment", "skipped", "no certificate")
            result.state = TransactionState.TLS_PENDING
            return

        artifact = self.activation.artifact_path(domain)
        outcome = self.augmenter.augment_with_tls(artifact, domain, material)
        if not outcome.changed:
            result.add_step("tls.augment", "skipped", "already present")
            result.state = TransactionState.AUGMENTED
            return
        snapshot = outcome.snapshot
        if snapshot is None:
            raise InconsistentStateError(
                f"TLS directives were written to {artifact} without a snapshot; "
                "refusing to validate without a restore point."
            )
        result.changed += 1
        result.add_step("tls.augment", detail=f"snapshot={snapshot.path}")

        candidate = self._candidate(domain)
        try:
            check = self.checker.check(candidate)
        except SyntaxCheckerError:
            snapshot.restore()
            snapshot.discard()
            result.add_step("restore", detail="checker unavailable")
            raise
        if check.ok:
            snapshot.discard()
            result.add_step("check")
            result.state = TransactionState.AUGMENTED
            if reload:
                self._reload(result)
            return

        result.add_step("check", "failed")
        snapshot.restore()
        result.add_step("restore", detail=str(snapshot.path))
        confirm = self.checker.check(candidate)
        if not confirm.ok:
            result.add_step("check", "failed", "after restore")
            raise InconsistentStateError(
                f"Restored configuration for {domain} no longer validates; live content "
                f"is uncertain. Snapshot kept at {snapshot.path}.",
                diagnostics="\n".join(part for part in (check.output, confirm.output) if part),
            )
        snapshot.discard()
        result.add_step("check", detail="after restore")
        result.state = TransactionState.ROLLED_BACK
        result.diagnostics = check.output
        result.warnings.append(
            f"TLS directives for {domain} were rejected and rolled back; "
            "the site is still served over HTTP."
        )


__all__ = [
    "SiteTransaction",
    "TransactionResult",
    "TransactionState",
    "TransactionStep",
]
