"""Typer-powered command line interface for ``milouctl``.

Commands build one :class:`RuntimeContext` per invocation (configuration,
operations logger, container engine and provisioning engine) and run inside a
structured ``logger.operation`` scope so every invocation leaves an audit
record in ``operations.jsonl``.
"""
from __future__ import annotations

import textwrap
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .consistency import MismatchAction, ValidationReport
from .doctor import (
    PROBE_CATEGORY_VALUES,
    DoctorEngine,
    DoctorImpact,
    DoctorReport,
    ProbeExecutorOptions,
    ProbeStatus,
    collect_probes,
    create_probe_context,
    select_probes,
    serialize_report,
)
from .environment import SslMode, check_descriptor
from .errors import ProvisioningError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .ports import PortProbe, SocketPortProbe
from .providers import ContainerEngine, DockerProvider
from .provisioning import (
    CleanupMode,
    NonInteractivePrompter,
    Prompter,
    ProvisioningEngine,
    SetupReport,
    SetupRequest,
)
from .volumes import VolumeSnapshot

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to milouctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of tables.",
)

SETUP_DOMAIN_OPTION = typer.Option(
    ...,
    "--domain",
    help="Public domain (FQDN, IPv4 address or localhost).",
)
SETUP_EMAIL_OPTION = typer.Option(
    ...,
    "--email",
    help="Administrator email address.",
)
SETUP_TOKEN_OPTION = typer.Option(
    "",
    "--token",
    envvar="MILOU_GITHUB_TOKEN",
    help="Registry access token (ghp_/gho_/ghu_/ghs_/ghr_ or github_pat_).",
)
SETUP_FORCE_OPTION = typer.Option(
    False,
    "--force",
    help="Regenerate credentials even when existing ones are present.",
)
SETUP_CLEAN_OPTION = typer.Option(
    False,
    "--clean",
    help="Remove existing data volumes before setup.",
)
SETUP_NON_INTERACTIVE_OPTION = typer.Option(
    False,
    "--non-interactive",
    help="Never prompt; always keep existing data.",
)
SETUP_SSL_MODE_OPTION = typer.Option(
    SslMode.GENERATE.value,
    "--ssl-mode",
    help="TLS material source (generate|existing|letsencrypt|none).",
)
SETUP_SSL_CERT_OPTION = typer.Option(
    None,
    "--ssl-cert",
    dir_okay=False,
    help="Certificate path (defaults to <ssl_dir>/<project>.crt).",
)
SETUP_SSL_KEY_OPTION = typer.Option(
    None,
    "--ssl-key",
    dir_okay=False,
    help="Private key path (defaults to <ssl_dir>/<project>.key).",
)
SETUP_VERSION_TAG_OPTION = typer.Option(
    None,
    "--version-tag",
    help="Release version applied to every service image.",
)
SETUP_IMAGE_OPTION = typer.Option(
    None,
    "--image",
    metavar="SERVICE=TAG",
    help="Override the image tag of a single service (repeatable).",
)
SETUP_SKIP_START_OPTION = typer.Option(
    False,
    "--skip-start",
    help="Write configuration without starting services.",
)

CLEANUP_MODE_OPTION = typer.Option(
    CleanupMode.SAFE.value,
    "--mode",
    help="Cleanup scope (safe|full|credential-fix).",
)
CLEANUP_YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Skip the confirmation prompt for destructive modes.",
)

_PROBE_CATEGORY_NAMES = ", ".join(PROBE_CATEGORY_VALUES)

DOCTOR_ONLY_OPTION = typer.Option(
    None,
    "--only",
    metavar="CATEGORY[,CATEGORY...]",
    help=f"Comma-separated probe categories to include ({_PROBE_CATEGORY_NAMES}).",
)
DOCTOR_EXCLUDE_OPTION = typer.Option(
    None,
    "--exclude",
    metavar="CATEGORY[,CATEGORY...]",
    help=f"Comma-separated probe categories to exclude ({_PROBE_CATEGORY_NAMES}).",
)
DOCTOR_MAX_CONCURRENCY_OPTION = typer.Option(
    None,
    "--max-concurrency",
    min=1,
    help="Limit the number of probes executed concurrently.",
)

_PROBE_CATEGORY_SET = frozenset(PROBE_CATEGORY_VALUES)
_PROBE_STATUS_STYLE = {
    ProbeStatus.GREEN: "[green]PASS[/green]",
    ProbeStatus.YELLOW: "[yellow]WARN[/yellow]",
    ProbeStatus.RED: "[red]FAIL[/red]",
}
_SUMMARY_STATUS_STYLE = {
    ProbeStatus.GREEN: "[green]GREEN[/green]",
    ProbeStatus.YELLOW: "[yellow]WARN[/yellow]",
    ProbeStatus.RED: "[red]RED[/red]",
}
_DOCTOR_IMPACT_MESSAGES = {
    DoctorImpact.OK: "Doctor run completed successfully.",
    DoctorImpact.VALIDATION: "Doctor detected configuration validation errors.",
    DoctorImpact.ENVIRONMENT: "Doctor detected environment dependency errors.",
    DoctorImpact.PROVIDER: "Doctor detected container engine or service failures.",
    DoctorImpact.CONFLICT: "Doctor detected port conflicts.",
}
_OUTCOME_STYLE = {
    "success": "[green]success[/green]",
    "configured": "[green]configured[/green]",
    "degraded": "[yellow]degraded[/yellow]",
    "failed": "[red]failed[/red]",
    "interrupted": "[red]interrupted[/red]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Milou installation provisioning and reconciliation CLI.

        Classifies the current installation, reconciles credentials with the
        data already on disk, writes the environment descriptor and starts the
        service stack tier by tier.
        """
    ).strip(),
)
ports_app = typer.Typer(help="Inspect host port assignments.")
env_app = typer.Typer(help="Inspect the environment descriptor.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(ports_app, name="ports")
app.add_typer(env_app, name="env")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    engine: ContainerEngine
    port_probe: PortProbe
    provisioning: ProvisioningEngine


class TyperPrompter:
    """Prompter asking the operator on the terminal."""

    def confirm_regenerate(self, snapshot: VolumeSnapshot) -> bool:
        """Ask before regenerating credentials over existing data."""
        volumes = ", ".join(
            f"{info.name} ({info.size_class.value})" for info in snapshot
        )
        console.print(
            "[yellow]Regenerating credentials makes existing data unreadable:[/yellow] "
            f"{volumes or 'no volumes'}"
        )
        return typer.confirm("Regenerate credentials anyway?", default=False)

    def choose_mismatch_action(self, report: ValidationReport) -> MismatchAction:
        """Ask how to proceed when the database rejects the credentials."""
        console.print(f"[red]Database rejected the stored credentials:[/red] {report.detail}")
        choices = [action.value for action in MismatchAction]
        while True:
            raw = typer.prompt(
                f"Choose an action ({'|'.join(choices)})",
                default=MismatchAction.CONTINUE.value,
            )
            try:
                return MismatchAction(str(raw).strip().lower())
            except ValueError:
                console.print(f"[yellow]Unknown action '{raw}'.[/yellow]")


def _build_engine(config: AppConfig) -> ContainerEngine:
    return DockerProvider(
        project_name=config.project_name,
        compose_file=config.compose_file,
        env_file=config.env_file,
        docker_bin=config.docker.binary,
        command_timeout=config.docker.command_timeout,
    )


def _build_port_probe() -> PortProbe:
    return SocketPortProbe()


def _build_provisioning(
    config: AppConfig,
    engine: ContainerEngine,
    port_probe: PortProbe,
    prompter: Prompter | None = None,
) -> ProvisioningEngine:
    return ProvisioningEngine(
        config,
        engine,
        prompter=prompter or NonInteractivePrompter(),
        port_probe=port_probe,
    )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    engine = _build_engine(config)
    port_probe = _build_port_probe()
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        engine=engine,
        port_probe=port_probe,
        provisioning=_build_provisioning(config, engine, port_probe),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the milouctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"milouctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _provisioning_error(op: OperationScope, exc: ProvisioningError) -> NoReturn:
    _command_error(op, exc.describe(), rc=int(exc.exit_code), errors=[str(exc)])


def _interrupted(op: OperationScope) -> NoReturn:
    _command_error(op, "Interrupted.", rc=int(ExitCode.INTERRUPTED))


def _parse_image_overrides(op: OperationScope, raw: Sequence[str] | None) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for item in raw or ():
        service, sep, tag = item.partition("=")
        if not sep or not service.strip() or not tag.strip():
            _command_error(op, f"Invalid --image value '{item}'; expected SERVICE=TAG.", rc=2)
        overrides[service.strip().lower()] = tag.strip()
    return overrides


# ---------------------------------------------------------------------------
# setup
# ---------------------------------------------------------------------------


def _render_setup_report(report: SetupReport) -> None:
    state = report.state
    console.print(f"Installation state: [bold]{state.state.value}[/bold] ({state.description})")
    if report.reconcile is not None:
        console.print(f"Credentials: {report.reconcile.decision.value}")
    if report.ports is not None:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Service", style="bold")
        table.add_column("Port")
        table.add_column("Source")
        for entry in report.ports.assignment:
            table.add_row(entry.name, str(entry.port), entry.source.value)
        console.print(table)
    if report.descriptor is not None:
        console.print(f"Descriptor written: {report.descriptor.path}")
        if report.descriptor.backup is not None:
            console.print(f"  previous version backed up to {report.descriptor.backup}")
    if report.certificate is not None:
        console.print(f"TLS material: {report.certificate.action.value}")
    if report.removed_volumes:
        console.print("[yellow]Removed volumes:[/yellow] " + ", ".join(report.removed_volumes))
    if report.startup is not None and report.startup.not_ready:
        console.print("[yellow]Not ready:[/yellow] " + ", ".join(report.startup.not_ready))
        for error in report.startup.errors:
            console.print(f"  {error}")
    if report.rollback is not None:
        label = "[green]ok[/green]" if report.rollback.ok else "[red]incomplete[/red]"
        console.print(f"Rollback: {label}")
        for step in report.rollback.steps:
            console.print(f"  {step.name}: {'ok' if step.ok else 'failed'} {step.detail}".rstrip())
    for warning in report.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")
    console.print(f"Outcome: {_OUTCOME_STYLE.get(report.outcome, report.outcome)}")


@app.command()
def setup(
    ctx: typer.Context,
    domain: str = SETUP_DOMAIN_OPTION,
    email: str = SETUP_EMAIL_OPTION,
    token: str = SETUP_TOKEN_OPTION,
    force: bool = SETUP_FORCE_OPTION,
    clean: bool = SETUP_CLEAN_OPTION,
    non_interactive: bool = SETUP_NON_INTERACTIVE_OPTION,
    ssl_mode: str = SETUP_SSL_MODE_OPTION,
    ssl_cert: Path | None = SETUP_SSL_CERT_OPTION,
    ssl_key: Path | None = SETUP_SSL_KEY_OPTION,
    version_tag: str | None = SETUP_VERSION_TAG_OPTION,
    image: list[str] | None = SETUP_IMAGE_OPTION,
    skip_start: bool = SETUP_SKIP_START_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Provision or reconcile the installation and start its services."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "setup",
        args={
            "domain": domain,
            "email": email,
            "token": bool(token),
            "force": force,
            "clean": clean,
            "non_interactive": non_interactive,
            "ssl_mode": ssl_mode,
            "version_tag": version_tag,
            "image": list(image or []),
            "skip_start": skip_start,
        },
        target={"kind": "installation", "path": str(runtime.config.install_dir)},
    ) as op:
        request = SetupRequest(
            domain=domain,
            email=email,
            token=token,
            force=force,
            clean=clean,
            ssl_mode=ssl_mode,
            ssl_cert=ssl_cert,
            ssl_key=ssl_key,
            version=version_tag,
            image_overrides=_parse_image_overrides(op, image),
            skip_start=skip_start,
        )
        prompter: Prompter = NonInteractivePrompter() if non_interactive else TyperPrompter()
        provisioning = _build_provisioning(
            runtime.config, runtime.engine, runtime.port_probe, prompter
        )
        try:
            report = provisioning.setup(request)
        except KeyboardInterrupt:
            _interrupted(op)
        except ProvisioningError as exc:
            _provisioning_error(op, exc)

        payload = report.to_dict()
        op.add_step("state", detail=report.state.state.value)
        if report.reconcile is not None:
            op.add_step("credentials", detail=report.reconcile.decision.value)
        if report.startup is not None:
            op.add_step("startup", detail=report.startup.outcome.value)

        if json_output:
            console.print_json(data=payload)
        else:
            _render_setup_report(report)

        rc = int(report.exit_code)
        if rc != 0:
            message = f"Setup finished with outcome '{report.outcome}'."
            op.error(message, rc=rc, warnings=report.warnings or None, context=payload)
            raise typer.Exit(code=rc)
        backups = [str(report.descriptor.backup)] if report.descriptor and report.descriptor.backup else None
        if report.warnings:
            op.warning(
                f"Setup finished with outcome '{report.outcome}'.",
                warnings=report.warnings,
                changed=1,
                backups=backups,
                context=payload,
            )
        else:
            op.success(
                f"Setup finished with outcome '{report.outcome}'.",
                changed=1,
                backups=backups,
                context=payload,
            )


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


@app.command()
def status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the installation state and the state of every service container."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "installation", "path": str(runtime.config.install_dir)},
    ) as op:
        report = runtime.provisioning.classify()
        try:
            services = runtime.provisioning.service_states()
        except ProvisioningError as exc:
            _provisioning_error(op, exc)

        payload = report.to_dict()
        payload["services"] = {
            service.name: {
                "container": state.name,
                "tier": service.tier.value,
                "status": state.status,
                "health": state.health,
            }
            for service, state in services
        }
        if json_output:
            console.print_json(data=payload)
            op.success("Reported installation status as JSON.", changed=0)
            return

        console.print(f"Installation state: [bold]{report.state.value}[/bold]")
        console.print(report.description)
        for warning in report.warnings:
            console.print(f"[yellow]warning:[/yellow] {warning}")
        for issue in report.issues:
            console.print(f"[red]issue:[/red] {issue}")

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Service", style="bold")
        table.add_column("Tier")
        table.add_column("Container")
        table.add_column("Status")
        table.add_column("Health")
        for service, state in services:
            table.add_row(
                service.name,
                service.tier.value,
                state.name,
                state.status,
                state.health or "-",
            )
        console.print(table)

        console.print("Recommended actions:")
        for action in payload["recommended_actions"]:
            console.print(f"  - {action}")
        op.success("Reported installation status.", changed=0)


# ---------------------------------------------------------------------------
# doctor
# ---------------------------------------------------------------------------


def _parse_probe_categories(raw: str | None) -> set[str]:
    """Parse comma-separated probe categories into a normalised set."""
    if raw is None:
        return set()
    return {part.strip().lower() for part in raw.split(",") if part.strip()}


def _render_doctor_report(report: DoctorReport) -> None:
    """Render a doctor report in a human-friendly format."""
    summary = report.summary
    totals = summary.totals
    console.print(
        f"Doctor summary: {_SUMMARY_STATUS_STYLE[summary.status]} "
        f"(impact={summary.impact.name.lower()}, exit={summary.exit_code})"
    )
    console.print(
        f"Totals: green={totals.get(ProbeStatus.GREEN, 0)} "
        f"warn={totals.get(ProbeStatus.YELLOW, 0)} "
        f"red={totals.get(ProbeStatus.RED, 0)}"
    )
    if not report.results:
        console.print("No probes were executed.")
        return

    console.print()
    for result in report.results:
        console.print(
            f"{_PROBE_STATUS_STYLE[result.status]} [{result.category}] {result.id}: {result.message}"
        )
        if result.remediation:
            console.print(f"  remediation: {result.remediation}")
        if result.warnings:
            console.print(f"  notes: {', '.join(result.warnings)}")
        if result.impact is not DoctorImpact.OK:
            console.print(f"  impact: {result.impact.name.lower()} (exit={result.impact.value})")


@app.command()
def doctor(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
    only: str | None = DOCTOR_ONLY_OPTION,
    exclude: str | None = DOCTOR_EXCLUDE_OPTION,
    max_concurrency: int | None = DOCTOR_MAX_CONCURRENCY_OPTION,
) -> None:
    """Run environment, configuration and service health checks."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "doctor",
        args={
            "json": json_output,
            "only": only,
            "exclude": exclude,
            "max_concurrency": max_concurrency,
        },
        target={"kind": "system", "scope": "health"},
    ) as op:
        include_categories = _parse_probe_categories(only)
        exclude_categories = _parse_probe_categories(exclude)
        invalid = (include_categories | exclude_categories) - _PROBE_CATEGORY_SET
        if invalid:
            _command_error(op, f"Unknown probe categories: {', '.join(sorted(invalid))}", rc=2)
        if only is not None and exclude is not None:
            _command_error(op, "Cannot combine --only and --exclude.", rc=2)

        defaults = ProbeExecutorOptions()
        options = ProbeExecutorOptions(
            max_concurrency=max_concurrency or defaults.max_concurrency,
        )
        context = create_probe_context(runtime, options)
        discovered = list(collect_probes(context))
        matched = select_probes(
            discovered, only=include_categories, exclude=exclude_categories
        )
        metadata = {
            "filters": {
                "only": sorted(include_categories) if only is not None else None,
                "exclude": sorted(exclude_categories) if exclude is not None else None,
            },
            "discovered_probes": len(discovered),
            "matched_probes": len(matched),
            "options": asdict(options),
        }
        report = DoctorEngine(context).run(matched, metadata=metadata)
        payload = serialize_report(report)

        if json_output:
            console.print_json(data=payload)
        else:
            _render_doctor_report(report)

        summary = report.summary
        warning_ids = report.labels(ProbeStatus.YELLOW)
        error_ids = report.labels(ProbeStatus.RED)
        impact_message = _DOCTOR_IMPACT_MESSAGES.get(summary.impact, "Doctor detected issues.")
        if summary.exit_code == 0:
            if summary.status is ProbeStatus.YELLOW:
                if not json_output:
                    console.print("[yellow]Doctor completed with warnings.[/yellow]")
                op.warning(
                    "Doctor completed with warnings.",
                    warnings=warning_ids or None,
                    context={"report": payload},
                )
            else:
                op.success(impact_message, context={"report": payload})
            return

        if not json_output:
            console.print(f"[red]{impact_message}[/red]")
        op.error(
            impact_message,
            rc=summary.exit_code,
            errors=error_ids or None,
            warnings=warning_ids or None,
            context={"report": payload},
        )
        raise typer.Exit(code=summary.exit_code)


# ---------------------------------------------------------------------------
# ports / env / config
# ---------------------------------------------------------------------------


@ports_app.command("check")
def ports_check(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Probe the port table and show the assignment setup would use."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports check",
        args={"json": json_output},
        target={"kind": "ports"},
    ) as op:
        try:
            resolution = runtime.provisioning.resolve_ports()
        except ProvisioningError as exc:
            _provisioning_error(op, exc)

        assignment = resolution.assignment
        if json_output:
            console.print_json(
                data={"ports": assignment.to_dict(), "warnings": list(resolution.warnings)}
            )
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Service", style="bold")
            table.add_column("Port")
            table.add_column("Source")
            table.add_column("Occupant")
            for entry in assignment:
                table.add_row(entry.name, str(entry.port), entry.source.value, entry.occupant or "")
            console.print(table)
            for warning in resolution.warnings:
                console.print(f"[yellow]warning:[/yellow] {warning}")

        if resolution.warnings:
            op.warning("Port check completed with reassignments.", warnings=resolution.warnings)
        else:
            op.success("Port check completed.", changed=0)


@env_app.command("validate")
def env_validate(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Validate the environment descriptor without modifying it."""
    runtime = _get_runtime(ctx)
    path = runtime.config.env_file
    with runtime.logger.operation(
        "env validate",
        args={"json": json_output},
        target={"kind": "descriptor", "path": str(path)},
    ) as op:
        check = check_descriptor(path)
        payload = check.to_dict()
        if json_output:
            console.print_json(data=payload)
        elif check.present:
            for issue in check.issues:
                console.print(f"[red]line {issue.line_number}:[/red] {issue.reason}")
            if check.missing_keys:
                console.print("[red]Missing keys:[/red] " + ", ".join(check.missing_keys))
            if not check.mode_ok:
                console.print(f"[yellow]Permissions are {payload['mode']}; expected 0o600.[/yellow]")
            if check.weak_keys:
                console.print("[yellow]Weak values:[/yellow] " + ", ".join(check.weak_keys))
            if check.ok:
                console.print(f"[green]{path} is valid.[/green]")

        if not check.present:
            _command_error(op, f"Descriptor not found at {path}.", rc=int(ExitCode.VALIDATION))
        if not check.ok:
            errors = [issue.reason for issue in check.issues]
            errors.extend(f"missing:{key}" for key in check.missing_keys)
            if not check.mode_ok:
                errors.append(f"mode:{payload['mode']}")
            op.error("Descriptor failed validation.", rc=int(ExitCode.VALIDATION), errors=errors)
            raise typer.Exit(code=int(ExitCode.VALIDATION))
        if check.weak_keys:
            op.warning("Descriptor valid with weak values.", warnings=list(check.weak_keys))
        else:
            op.success("Descriptor valid.", changed=0)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
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
                rendered = "\n".join(f"{sub}: {item}" for sub, item in value.items())
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


# ---------------------------------------------------------------------------
# cleanup / rollback
# ---------------------------------------------------------------------------


@app.command()
def cleanup(
    ctx: typer.Context,
    mode: str = CLEANUP_MODE_OPTION,
    yes: bool = CLEANUP_YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Stop the installation and optionally remove its data."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cleanup",
        args={"mode": mode, "yes": yes, "json": json_output},
        target={"kind": "installation", "path": str(runtime.config.install_dir)},
    ) as op:
        try:
            cleanup_mode = CleanupMode(mode.strip().lower())
        except ValueError:
            choices = "|".join(item.value for item in CleanupMode)
            _command_error(op, f"Unknown cleanup mode '{mode}'; expected {choices}.", rc=2)

        if cleanup_mode is not CleanupMode.SAFE and not yes:
            confirmed = typer.confirm(
                f"Cleanup mode '{cleanup_mode.value}' permanently removes data. Continue?",
                default=False,
            )
            if not confirmed:
                op.add_step("confirm", status="skipped", detail="declined")
                console.print("Cleanup aborted.")
                op.warning("Cleanup aborted by operator.")
                raise typer.Exit(code=int(ExitCode.VALIDATION))

        try:
            report = runtime.provisioning.cleanup(cleanup_mode)
        except ProvisioningError as exc:
            _provisioning_error(op, exc)

        payload = report.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(f"[green]Cleanup '{cleanup_mode.value}' completed.[/green]")
            if report.removed_volumes:
                console.print("Removed volumes: " + ", ".join(report.removed_volumes))
            if report.descriptor_backup is not None:
                console.print(f"Descriptor backed up to {report.descriptor_backup}")
        backups = [str(report.descriptor_backup)] if report.descriptor_backup else None
        op.success(
            f"Cleanup '{cleanup_mode.value}' completed.",
            changed=len(report.removed_volumes) + int(report.descriptor_removed),
            backups=backups,
            context=payload,
        )


@app.command()
def rollback(ctx: typer.Context) -> None:
    """Restore the newest descriptor backup that differs from the current file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rollback",
        target={"kind": "descriptor", "path": str(runtime.config.env_file)},
    ) as op:
        try:
            result = runtime.provisioning.rollback_latest()
        except ProvisioningError as exc:
            _provisioning_error(op, exc)

        console.print(f"[green]Restored descriptor from {result.restored_from}.[/green]")
        if result.previous_backup is not None:
            console.print(f"Previous descriptor saved as {result.previous_backup}")
        op.success(
            "Descriptor restored.",
            changed=1,
            backups=[str(result.previous_backup)] if result.previous_backup else None,
            context={"restored_from": str(result.restored_from)},
        )


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "TyperPrompter", "app", "main"]
