"""Typer command line for ``vhostctl``.

Every command resolves a shared :class:`RuntimeContext`, runs inside a
structured-log operation and exits with the code mapped from the error
taxonomy in :mod:`vhostctl.exit_codes`.
"""
from __future__ import annotations

import json
import logging
import textwrap
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .activation import SiteState
from .config import AppConfig, ConfigError, load_config
from .errors import ArtifactMissingError, CertificateError, StorageError, VhostctlError
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .models import Archetype, Site, validate_domain
from .providers import ReloadTrigger, SyntaxChecker
from .tls import CertificateIssuer
from .transaction import SiteTransaction, TransactionResult, TransactionState

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to vhostctl's YAML config file.",
)
WWW_OPTION = typer.Option(
    None,
    "--www",
    help="How www.<domain> is served (none|apex|www|both). Defaults to the configured policy.",
)
TLS_OPTION = typer.Option(
    False,
    "--tls",
    help="Add TLS directives once the site is enabled.",
)
ISSUE_OPTION = typer.Option(
    False,
    "--issue/--no-issue",
    help="Request a certificate with certbot when none is present.",
)
EMAIL_OPTION = typer.Option(
    None,
    "--email",
    help="Contact address passed to certbot (overrides tls.email).",
)
NO_RELOAD_OPTION = typer.Option(
    False,
    "--no-reload",
    help="Validate and enable without reloading nginx.",
)
DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Print the rendered configuration without writing anything.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Nginx virtual host configuration manager.

        Renders site configurations from archetype templates, validates them
        with nginx before anything is enabled and adds TLS in place.
        """
    ).strip(),
)
site_app = typer.Typer(help="Create, activate and inspect sites.")
create_app = typer.Typer(help="Render, validate and enable a new site.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(site_app, name="site")
app.add_typer(config_app, name="config")
site_app.add_typer(create_app, name="create")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    transaction: SiteTransaction


def build_runtime(
    config: AppConfig,
    *,
    checker: SyntaxChecker | None = None,
    reloader: ReloadTrigger | None = None,
    issuer: CertificateIssuer | None = None,
) -> RuntimeContext:
    """Wire the runtime objects for *config*."""
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    transaction = SiteTransaction.from_config(
        config,
        locks=locks,
        checker=checker,
        reloader=reloader,
        issuer=issuer,
    )
    return RuntimeContext(
        config=config,
        locks=locks,
        logger=StructuredLogger(config.logs_dir),
        transaction=transaction,
    )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc
    runtime = build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the vhostctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Emit debug logging on stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    if version:
        console.print(f"vhostctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: list[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=errors or [message], rc=rc)
    raise typer.Exit(code=rc)


def _fail(op: OperationScope, exc: VhostctlError | OSError) -> NoReturn:
    """Report *exc*, echoing any checker output verbatim."""
    if isinstance(exc, OSError):
        exc = StorageError.from_os_error(exc)
    message = str(exc)
    diagnostics = getattr(exc, "diagnostics", "")
    errors = [message]
    if diagnostics:
        console.print(diagnostics, markup=False, highlight=False)
        errors.append(diagnostics)
    _command_error(op, message, rc=int(exc.exit_code), errors=errors)


def _record_steps(op: OperationScope, result: TransactionResult) -> None:
    op.set_lock_wait_ms(result.lock_wait_ms)
    for step in result.steps:
        op.add_step(step.name, status=step.status, detail=step.detail)


def _report(op: OperationScope, result: TransactionResult, message: str) -> None:
    """Print and log the outcome of a site transaction."""
    _record_steps(op, result)
    context = result.to_dict()
    if result.state is TransactionState.ROLLED_BACK:
        for warning in result.warnings:
            console.print(f"[yellow]{warning}[/yellow]")
        if result.diagnostics:
            console.print(result.diagnostics, markup=False, highlight=False)
        code = int(ExitCode.ROLLED_BACK)
        op.warning(message, warnings=result.warnings, changed=result.changed, context=context, rc=code)
        raise typer.Exit(code=code)
    console.print(f"[green]{message}[/green]")
    if result.warnings:
        for warning in result.warnings:
            console.print(f"[yellow]{warning}[/yellow]")
        op.warning(message, warnings=result.warnings, changed=result.changed, context=context)
        return
    op.success(message, changed=result.changed, context=context)


def _create_site(
    ctx: typer.Context,
    archetype: Archetype,
    domain: str,
    *,
    www: str | None,
    tls: bool,
    issue: bool,
    email: str | None,
    no_reload: bool,
    dry_run: bool,
    attributes: Mapping[str, object],
) -> None:
    runtime = _get_runtime(ctx)
    defaults = runtime.config.defaults
    args = {
        "domain": domain,
        "www": www,
        "tls": tls,
        "issue": issue,
        "no_reload": no_reload,
        "dry_run": dry_run,
        **attributes,
    }
    with runtime.logger.operation(
        f"site create {archetype.value}",
        args=args,
        target={"kind": "site", "domain": domain},
    ) as op:
        try:
            site = Site.create(
                domain,
                archetype,
                www_policy=www or defaults.www_policy,
                tls=tls,
                **attributes,  # type: ignore[arg-type]
            )
            if dry_run:
                text = runtime.transaction.render(site)
                console.print(text, markup=False, highlight=False, end="")
                op.add_step("render", status="success", detail="dry run")
                op.success("Dry run complete.", changed=0, context={"site": site.to_dict()})
                return
            if email:
                runtime.transaction.email = email
            result = runtime.transaction.commit(
                site,
                reload=not no_reload,
                issue_certificate=issue,
            )
        except (VhostctlError, OSError) as exc:
            _fail(op, exc)
        _report(op, result, f"Site {site.domain} enabled ({result.state.value}).")


@create_app.command("static")
def create_static(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain served by the site."),
    root: str = typer.Argument(..., help="Absolute document root."),
    www: str | None = WWW_OPTION,
    tls: bool = TLS_OPTION,
    issue: bool = ISSUE_OPTION,
    email: str | None = EMAIL_OPTION,
    no_reload: bool = NO_RELOAD_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Serve static files from ROOT."""
    _create_site(
        ctx,
        Archetype.STATIC,
        domain,
        www=www,
        tls=tls,
        issue=issue,
        email=email,
        no_reload=no_reload,
        dry_run=dry_run,
        attributes={"root_path": root},
    )


@create_app.command("php")
def create_php(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain served by the site."),
    root: str = typer.Argument(..., help="Absolute application root (public/ is served)."),
    php_version: str | None = typer.Option(
        None,
        "--php-version",
        help="PHP-FPM version whose socket is used. Defaults to defaults.php_version.",
    ),
    www: str | None = WWW_OPTION,
    tls: bool = TLS_OPTION,
    issue: bool = ISSUE_OPTION,
    email: str | None = EMAIL_OPTION,
    no_reload: bool = NO_RELOAD_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Serve a PHP application through PHP-FPM."""
    runtime = _get_runtime(ctx)
    _create_site(
        ctx,
        Archetype.PHP,
        domain,
        www=www,
        tls=tls,
        issue=issue,
        email=email,
        no_reload=no_reload,
        dry_run=dry_run,
        attributes={
            "root_path": root,
            "runtime_version": php_version or runtime.config.defaults.php_version,
        },
    )


@create_app.command("proxy")
def create_proxy(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain served by the site."),
    port: str = typer.Argument(..., help="Upstream port of the local process."),
    host: str | None = typer.Option(
        None,
        "--host",
        help="Upstream host (defaults to 127.0.0.1).",
    ),
    www: str | None = WWW_OPTION,
    tls: bool = TLS_OPTION,
    issue: bool = ISSUE_OPTION,
    email: str | None = EMAIL_OPTION,
    no_reload: bool = NO_RELOAD_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Reverse-proxy to a local process listening on PORT."""
    _create_site(
        ctx,
        Archetype.PROXY,
        domain,
        www=www,
        tls=tls,
        issue=issue,
        email=email,
        no_reload=no_reload,
        dry_run=dry_run,
        attributes={"port": port, "upstream_host": host},
    )


@create_app.command("redirect")
def create_redirect(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain to redirect from."),
    target: str = typer.Argument(..., help="Host that receives the redirect."),
    www: str | None = WWW_OPTION,
    tls: bool = TLS_OPTION,
    issue: bool = ISSUE_OPTION,
    email: str | None = EMAIL_OPTION,
    no_reload: bool = NO_RELOAD_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Permanently redirect DOMAIN to TARGET."""
    _create_site(
        ctx,
        Archetype.REDIRECT,
        domain,
        www=www,
        tls=tls,
        issue=issue,
        email=email,
        no_reload=no_reload,
        dry_run=dry_run,
        attributes={"redirect_target": target},
    )


@site_app.command("enable")
def site_enable(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site to enable."),
    no_reload: bool = NO_RELOAD_OPTION,
) -> None:
    """Link an available site into sites-enabled after a syntax check."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site enable",
        args={"domain": domain, "no_reload": no_reload},
        target={"kind": "site", "domain": domain},
    ) as op:
        try:
            result = runtime.transaction.enable(domain, reload=not no_reload)
        except (VhostctlError, OSError) as exc:
            _fail(op, exc)
        if result.state is TransactionState.UNCHANGED:
            message = f"Site {result.domain} is already enabled."
        else:
            message = f"Site {result.domain} enabled."
        _report(op, result, message)


@site_app.command("disable")
def site_disable(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site to disable."),
    no_reload: bool = NO_RELOAD_OPTION,
) -> None:
    """Remove a site's sites-enabled link; the configuration is kept."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site disable",
        args={"domain": domain, "no_reload": no_reload},
        target={"kind": "site", "domain": domain},
    ) as op:
        try:
            result = runtime.transaction.disable(domain, reload=not no_reload)
        except (VhostctlError, OSError) as exc:
            _fail(op, exc)
        if result.state is TransactionState.UNCHANGED:
            message = f"Site {result.domain} was not enabled."
        else:
            message = f"Site {result.domain} disabled."
        _report(op, result, message)


@site_app.command("remove")
def site_remove(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site to delete."),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip confirmation prompt and proceed non-interactively.",
    ),
    no_reload: bool = NO_RELOAD_OPTION,
) -> None:
    """Disable a site and delete its configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site remove",
        args={"domain": domain, "yes": yes, "no_reload": no_reload},
        target={"kind": "site", "domain": domain},
    ) as op:
        if not yes:
            confirmed = typer.confirm(f"Delete the configuration for {domain}?", default=False)
            if not confirmed:
                console.print("[yellow]Aborted.[/yellow]")
                op.warning("Removal aborted by operator.", rc=0)
                return
        try:
            result = runtime.transaction.remove(domain, reload=not no_reload)
        except (VhostctlError, OSError) as exc:
            _fail(op, exc)
        _report(op, result, f"Site {result.domain} removed.")


@site_app.command("tls")
def site_tls(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site to secure."),
    issue: bool = ISSUE_OPTION,
    email: str | None = EMAIL_OPTION,
    include_www: bool = typer.Option(
        False,
        "--include-www",
        help="Also request www.<domain> when issuing.",
    ),
    no_reload: bool = NO_RELOAD_OPTION,
) -> None:
    """Add TLS directives to an existing site configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site tls",
        args={"domain": domain, "issue": issue, "include_www": include_www},
        target={"kind": "site", "domain": domain},
    ) as op:
        if email:
            runtime.transaction.email = email
        try:
            result = runtime.transaction.apply_tls(
                domain,
                issue_certificate=issue,
                include_www=include_www,
                reload=not no_reload,
            )
        except (VhostctlError, OSError) as exc:
            _fail(op, exc)
        if result.state is TransactionState.AUGMENTED:
            message = f"TLS enabled for {result.domain}."
        else:
            message = f"TLS not applied for {result.domain}."
        _report(op, result, message)


_STATE_STYLES = {
    SiteState.ENABLED: "[green]enabled[/green]",
    SiteState.AVAILABLE: "[yellow]available[/yellow]",
    SiteState.DANGLING: "[red]dangling[/red]",
    SiteState.FOREIGN: "[red]foreign[/red]",
}


@site_app.command("list")
def site_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List available and enabled sites."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site list",
        args={"json": json_output},
        target={"kind": "site", "scope": "all"},
    ) as op:
        try:
            statuses = list(runtime.transaction.list())
        except OSError as exc:
            _fail(op, exc)
        anomalies = [status.anomaly for status in statuses if status.anomaly]
        if json_output:
            console.print_json(data=[status.to_dict() for status in statuses])
        elif not statuses:
            console.print("No sites configured.")
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Domain", style="bold")
            table.add_column("State")
            table.add_column("Artifact")
            table.add_column("Notes")
            for status in statuses:
                table.add_row(
                    status.domain,
                    _STATE_STYLES[status.state],
                    str(status.artifact),
                    status.anomaly or "",
                )
            console.print(table)
        if anomalies:
            op.warning("Listed sites with anomalies.", warnings=anomalies)
        else:
            op.success("Listed sites.", context={"count": len(statuses)})


@site_app.command("show")
def site_show(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site to inspect."),
    content: bool = typer.Option(
        False,
        "--content",
        help="Print the configuration text as well.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show a site's state, artifact and certificate expiry."""
    runtime = _get_runtime(ctx)
    transaction = runtime.transaction
    with runtime.logger.operation(
        "site show",
        args={"domain": domain, "content": content, "json": json_output},
        target={"kind": "site", "domain": domain},
    ) as op:
        try:
            name = validate_domain(domain)
            status = transaction.activation.status(name)
            if status.state is not SiteState.DANGLING and not status.artifact.is_file():
                raise ArtifactMissingError(f"Configuration for {name} does not exist at {status.artifact}.")
            raw = status.artifact.read_bytes() if status.artifact.is_file() else b""
        except (VhostctlError, OSError) as exc:
            _fail(op, exc)

        data: dict[str, object] = status.to_dict()
        warnings: list[str] = []
        try:
            info = transaction.certificates.inspect(name)
        except CertificateError as exc:
            info = None
            warnings.append(str(exc))
        data["certificate"] = info.to_dict() if info is not None else None
        text = raw.decode("utf-8", errors="replace")
        data["tls"] = bool(text) and transaction.augmenter.is_augmented(text, name)

        if json_output:
            if content:
                data["content"] = text
            console.print_json(data=data)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Key", style="bold")
            table.add_column("Value")
            table.add_row("domain", name)
            table.add_row("state", _STATE_STYLES[status.state])
            table.add_row("artifact", str(status.artifact))
            table.add_row("tls", "yes" if data["tls"] else "no")
            if info is not None:
                table.add_row(
                    "certificate",
                    f"{info.subject}, expires {info.not_valid_after:%Y-%m-%d} "
                    f"({info.days_remaining} days)",
                )
            if status.anomaly:
                table.add_row("anomaly", status.anomaly)
            console.print(table)
            if content and text:
                console.print(text, markup=False, highlight=False, end="")
        for warning in warnings:
            console.print(f"[yellow]{warning}[/yellow]")
        if warnings:
            op.warning("Site inspected with warnings.", warnings=warnings)
        else:
            op.success("Site inspected.")


@app.command("test")
def test_config(ctx: typer.Context) -> None:
    """Run the nginx syntax check against the live configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("test", target={"kind": "nginx"}) as op:
        try:
            check = runtime.transaction.test()
        except (VhostctlError, OSError) as exc:
            _fail(op, exc)
        if check.output:
            console.print(check.output, markup=False, highlight=False)
        if not check.ok:
            _command_error(
                op,
                "Configuration test failed.",
                rc=int(ExitCode.REJECTED),
                errors=[check.output],
            )
        console.print("[green]Configuration test passed.[/green]")
        op.success("Configuration test passed.", context={"command": list(check.command)})


@app.command("reload")
def reload_nginx(ctx: typer.Context) -> None:
    """Validate the live configuration, then reload nginx."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("reload", target={"kind": "nginx"}) as op:
        try:
            runtime.transaction.reload()
        except (VhostctlError, OSError) as exc:
            _fail(op, exc)
        op.add_step("check", status="success")
        op.add_step("reload", status="success")
        console.print("[green]nginx reloaded.[/green]")
        op.success("nginx reloaded.")


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "build_runtime", "main"]
