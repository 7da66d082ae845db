"""Probe registration entry point for the doctor command."""

from __future__ import annotations

import os
import platform
import shutil
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

from .. import __version__
from ..certificates import inspect_material
from ..descriptor import read_descriptor
from ..environment import SslMode, check_descriptor
from ..errors import ConflictError, ProvisioningError
from ..state import InstallationState, recommended_actions
from ..volumes import SizeClass
from .models import (
    DoctorImpact,
    ProbeCategory,
    ProbeContext,
    ProbeDefinition,
    ProbeResult,
    ProbeStatus,
)


def collect_probes(context: ProbeContext) -> Sequence[ProbeDefinition]:
    """Return the set of probes that should run for the current context."""
    probes: list[ProbeDefinition] = []
    probes.extend(_env_probes(context))
    probes.extend(_config_probes())
    probes.extend(_state_probes())
    probes.extend(_ports_probes())
    probes.extend(_volume_probes())
    probes.extend(_service_probes())
    probes.extend(_tls_probes())
    return tuple(probes)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_probe(
    probe_id: str,
    category: ProbeCategory,
    handler: Callable[[ProbeContext], ProbeResult],
) -> ProbeDefinition:
    def _runner(context: ProbeContext) -> ProbeResult:
        return handler(context)

    return ProbeDefinition(id=probe_id, category=category, run=_runner)


def _command_exists(command: str) -> bool:
    path = Path(command)
    if path.is_absolute() or str(path.parent) not in {"", "."}:
        return path.exists() and os.access(path, os.X_OK)
    resolved = shutil.which(command)
    return resolved is not None and os.access(resolved, os.X_OK)


def _impact_for(exc: ProvisioningError) -> DoctorImpact:
    try:
        return DoctorImpact.from_exit_code(int(exc.exit_code))
    except ValueError:
        return DoctorImpact.PROVIDER


def _engine_failure(
    probe_id: str,
    category: ProbeCategory,
    action: str,
    exc: ProvisioningError,
) -> ProbeResult:
    return ProbeResult(
        id=probe_id,
        category=category,
        status=ProbeStatus.RED,
        impact=_impact_for(exc),
        message=f"Failed to {action}: {exc}",
        remediation=exc.remediation,
    )


# ---------------------------------------------------------------------------
# Environment probes
# ---------------------------------------------------------------------------


def _env_probes(context: ProbeContext) -> Sequence[ProbeDefinition]:
    return (
        _make_probe("env-python", "env", _probe_env_python),
        _make_probe("env-milouctl", "env", _probe_env_milouctl),
        _make_probe("env-docker", "env", _probe_env_docker(context.config.docker.binary)),
    )


def _probe_env_python(_context: ProbeContext) -> ProbeResult:
    version = platform.python_version()
    return ProbeResult(
        id="env-python",
        category="env",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"Python {version} detected.",
        data={"executable": sys.executable, "version": version},
    )


def _probe_env_milouctl(_context: ProbeContext) -> ProbeResult:
    return ProbeResult(
        id="env-milouctl",
        category="env",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"milouctl {__version__} installed.",
    )


def _probe_env_docker(binary: str) -> Callable[[ProbeContext], ProbeResult]:
    def _run(context: ProbeContext) -> ProbeResult:
        if not _command_exists(binary):
            return ProbeResult(
                id="env-docker",
                category="env",
                status=ProbeStatus.RED,
                impact=DoctorImpact.ENVIRONMENT,
                message=f"Required binary '{binary}' not found on PATH.",
                remediation="Install Docker Engine with the compose plugin.",
            )
        try:
            version = context.engine.ping()
        except ProvisioningError as exc:
            return _engine_failure("env-docker", "env", "reach the docker daemon", exc)
        return ProbeResult(
            id="env-docker",
            category="env",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message=f"Docker daemon reachable (server {version or 'unknown'}).",
            data={"binary": binary, "server_version": version},
        )

    return _run


# ---------------------------------------------------------------------------
# Configuration probes
# ---------------------------------------------------------------------------


def _config_probes() -> Sequence[ProbeDefinition]:
    return (_make_probe("config-descriptor", "config", _probe_config_descriptor),)


def _probe_config_descriptor(context: ProbeContext) -> ProbeResult:
    check = check_descriptor(context.config.env_file)
    data = check.to_dict()
    if not check.present:
        return ProbeResult(
            id="config-descriptor",
            category="config",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"No descriptor at {check.path}; the installation is not configured yet.",
            remediation="Run `milouctl setup`.",
            data=data,
        )
    if check.issues or check.missing_keys:
        problems = [f"line {issue.line_number}: {issue.reason}" for issue in check.issues]
        if check.missing_keys:
            problems.append("missing keys: " + ", ".join(check.missing_keys))
        return ProbeResult(
            id="config-descriptor",
            category="config",
            status=ProbeStatus.RED,
            impact=DoctorImpact.VALIDATION,
            message="Descriptor failed validation: " + "; ".join(problems),
            remediation="Run `milouctl setup` to rebuild it or `milouctl rollback` to restore a backup.",
            data=data,
        )
    if not check.mode_ok:
        return ProbeResult(
            id="config-descriptor",
            category="config",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.VALIDATION,
            message=f"Descriptor permissions are {data['mode']}; expected 0o600.",
            remediation=f"chmod 600 {check.path}",
            data=data,
        )
    if check.weak_keys:
        return ProbeResult(
            id="config-descriptor",
            category="config",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message="Descriptor holds weak credentials: " + ", ".join(check.weak_keys),
            remediation="Re-run `milouctl setup --force` on a fresh installation to rotate them.",
            data=data,
            warnings=tuple(f"weak:{key}" for key in check.weak_keys),
        )
    return ProbeResult(
        id="config-descriptor",
        category="config",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message="Descriptor is valid and owner-only.",
        data=data,
    )


# ---------------------------------------------------------------------------
# Installation state probes
# ---------------------------------------------------------------------------


def _state_probes() -> Sequence[ProbeDefinition]:
    return (_make_probe("state-installation", "state", _probe_state_installation),)


def _probe_state_installation(context: ProbeContext) -> ProbeResult:
    report = context.provisioning.classify()
    actions = recommended_actions(report.state)
    status = {
        InstallationState.COMPLETE: ProbeStatus.GREEN,
        InstallationState.FRESH: ProbeStatus.YELLOW,
        InstallationState.PARTIAL: ProbeStatus.YELLOW,
        InstallationState.CORRUPTED: ProbeStatus.RED,
    }[report.state]
    impact = (
        DoctorImpact.VALIDATION
        if report.state is InstallationState.CORRUPTED
        else DoctorImpact.OK
    )
    return ProbeResult(
        id="state-installation",
        category="state",
        status=status,
        impact=impact,
        message=f"Installation is {report.state.value}: {report.description}",
        remediation=actions[0] if actions and status is not ProbeStatus.GREEN else None,
        data=report.to_dict(),
        warnings=report.warnings,
    )


# ---------------------------------------------------------------------------
# Port probes
# ---------------------------------------------------------------------------


def _ports_probes() -> Sequence[ProbeDefinition]:
    return (_make_probe("ports-conflicts", "ports", _probe_ports_conflicts),)


def _probe_ports_conflicts(context: ProbeContext) -> ProbeResult:
    try:
        resolution = context.provisioning.resolve_ports()
    except ConflictError as exc:
        return ProbeResult(
            id="ports-conflicts",
            category="ports",
            status=ProbeStatus.RED,
            impact=DoctorImpact.CONFLICT,
            message=str(exc),
            remediation=exc.remediation,
        )
    assignment = resolution.assignment
    moved = assignment.reassigned
    if moved:
        detail = ", ".join(f"{entry.name} -> {entry.port}" for entry in moved)
        return ProbeResult(
            id="ports-conflicts",
            category="ports",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Default ports are taken; alternatives would be used: {detail}.",
            data=assignment.to_dict(),
            warnings=tuple(resolution.warnings),
        )
    return ProbeResult(
        id="ports-conflicts",
        category="ports",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message="All default ports are free or owned by this installation.",
        data=assignment.to_dict(),
        warnings=tuple(resolution.warnings),
    )


# ---------------------------------------------------------------------------
# Volume probes
# ---------------------------------------------------------------------------


def _volume_probes() -> Sequence[ProbeDefinition]:
    return (_make_probe("volumes-data", "volumes", _probe_volumes_data),)


def _probe_volumes_data(context: ProbeContext) -> ProbeResult:
    try:
        snapshot = context.provisioning.inspector.inspect()
    except ProvisioningError as exc:
        return _engine_failure("volumes-data", "volumes", "inspect data volumes", exc)
    if not snapshot:
        return ProbeResult(
            id="volumes-data",
            category="volumes",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message="No data volumes exist yet.",
        )
    data = snapshot.to_dict()
    unmeasured = [info.name for info in snapshot if not info.measured]
    duplicated = [info.name for info in snapshot if info.others]
    summary = ", ".join(f"{info.role.value}={info.size_class.value}" for info in snapshot)
    if unmeasured or duplicated:
        warnings = [f"unmeasured:{name}" for name in unmeasured]
        warnings.extend(f"duplicate-convention:{name}" for name in duplicated)
        return ProbeResult(
            id="volumes-data",
            category="volumes",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Data volumes need attention ({summary}).",
            remediation=(
                "Volumes that cannot be measured are treated as holding data; "
                "check `docker volume ls` for leftovers from older naming."
            ),
            data=data,
            warnings=tuple(warnings),
        )
    substantial = [info.name for info in snapshot if info.size_class is SizeClass.SUBSTANTIAL]
    return ProbeResult(
        id="volumes-data",
        category="volumes",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"Data volumes present ({summary}); {len(substantial)} hold substantial data.",
        data=data,
    )


# ---------------------------------------------------------------------------
# Service probes
# ---------------------------------------------------------------------------


def _service_probes() -> Sequence[ProbeDefinition]:
    return (_make_probe("services-status", "services", _probe_services_status),)


def _probe_services_status(context: ProbeContext) -> ProbeResult:
    try:
        states = context.provisioning.service_states()
    except ProvisioningError as exc:
        return _engine_failure("services-status", "services", "query service containers", exc)
    data = {
        service.name: {"container": state.name, "status": state.status, "health": state.health}
        for service, state in states
    }
    existing = [(service, state) for service, state in states if state.exists]
    if not existing:
        return ProbeResult(
            id="services-status",
            category="services",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message="No service containers exist.",
            remediation="Run `milouctl setup` to start the stack.",
            data=data,
        )
    failed = [
        service.name
        for service, state in existing
        if state.status in {"exited", "dead", "restarting"} or state.health == "unhealthy"
    ]
    if failed:
        return ProbeResult(
            id="services-status",
            category="services",
            status=ProbeStatus.RED,
            impact=DoctorImpact.PROVIDER,
            message="Services not running correctly: " + ", ".join(failed),
            remediation="Inspect `docker logs <container>` and re-run `milouctl setup`.",
            data=data,
        )
    missing = [service.name for service, state in states if not state.exists]
    if missing:
        return ProbeResult(
            id="services-status",
            category="services",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message="Services without a container: " + ", ".join(missing),
            data=data,
        )
    return ProbeResult(
        id="services-status",
        category="services",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"All {len(states)} services are running.",
        data=data,
    )


# ---------------------------------------------------------------------------
# TLS probes
# ---------------------------------------------------------------------------


def _tls_probes() -> Sequence[ProbeDefinition]:
    return (_make_probe("tls-certificate", "tls", _probe_tls_certificate),)


def _probe_tls_certificate(context: ProbeContext) -> ProbeResult:
    config = context.config
    parsed = read_descriptor(config.env_file)
    entries = parsed.as_dict() if parsed is not None else {}
    mode = entries.get("SSL_MODE", SslMode.GENERATE.value)
    if mode in {SslMode.LETSENCRYPT.value, SslMode.NONE.value}:
        return ProbeResult(
            id="tls-certificate",
            category="tls",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message=f"TLS material is not managed locally (ssl mode {mode}).",
        )
    project = config.project_name
    cert_path = Path(entries.get("SSL_CERT_FILE") or config.ssl_dir / f"{project}.crt")
    key_path = Path(entries.get("SSL_KEY_FILE") or config.ssl_dir / f"{project}.key")
    if not cert_path.is_absolute():
        cert_path = config.install_dir / cert_path
    if not key_path.is_absolute():
        key_path = config.install_dir / key_path
    not_after, problem = inspect_material(cert_path, key_path)
    data = {
        "cert_path": str(cert_path),
        "key_path": str(key_path),
        "not_valid_after": not_after.isoformat() if not_after else None,
    }
    if problem is not None:
        return ProbeResult(
            id="tls-certificate",
            category="tls",
            status=ProbeStatus.YELLOW if parsed is None else ProbeStatus.RED,
            impact=DoctorImpact.OK if parsed is None else DoctorImpact.VALIDATION,
            message=f"TLS material problem: {problem}.",
            remediation="Re-run `milouctl setup --ssl-mode generate` or supply a valid pair.",
            data=data,
        )
    return ProbeResult(
        id="tls-certificate",
        category="tls",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"TLS certificate valid until {data['not_valid_after']}.",
        data=data,
    )
