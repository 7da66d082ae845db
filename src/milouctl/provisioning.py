"""Top-level provisioning flow: classify, reconcile, write, validate, start.

:class:`ProvisioningEngine` wires the individual components together around a
single :class:`~milouctl.config.AppConfig` and an injected
:class:`~milouctl.providers.base.ContainerEngine`. Interactive choices go
through a :class:`Prompter`; :class:`NonInteractivePrompter` always picks the
choice that keeps existing data.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from .certificates import CertificateProvider, CertificateStatus, SelfSignedCertificateProvider
from .config import AppConfig
from .consistency import (
    ConsistencyValidator,
    MismatchAction,
    MismatchResolution,
    MismatchResolver,
    ValidationReport,
)
from .credentials.backups import CredentialBackups
from .credentials.reconciler import CredentialDecision, CredentialReconciler, ReconcileResult
from .descriptor import backup_descriptor, list_descriptor_backups, write_descriptor
from .environment import (
    DescriptorInputs,
    EnvironmentWriter,
    SslMode,
    WriteResult,
    build_descriptor,
    validate_domain,
    validate_email,
    validate_ssl_mode,
    validate_token,
)
from .errors import ProvisioningError, ValidationError
from .exit_codes import ExitCode
from .images import select_image_tags
from .orchestrator.health import HealthMonitor, HttpStatus, http_status
from .orchestrator.services import DEFAULT_SERVICES, ServiceDefinition, service_names
from .orchestrator.startup import StartupOrchestrator, StartupOutcome, StartupReport
from .ports import PortConflictResolver, PortProbe, PortResolution, SocketPortProbe
from .providers.base import ContainerEngine, ContainerState
from .rollback import RollbackManager, RollbackReport
from .state.classifier import StateClassifier, StateReport
from .volumes import SizeClass, VolumeInspector, VolumeRole, VolumeSnapshot

LOGGER = logging.getLogger(__name__)


class Prompter(Protocol):
    """Operator interaction points during setup."""

    def confirm_regenerate(self, snapshot: VolumeSnapshot) -> bool:
        """Return ``True`` to regenerate credentials despite existing data."""

    def choose_mismatch_action(self, report: ValidationReport) -> MismatchAction:
        """Return the action to take when the database rejects the credentials."""


class NonInteractivePrompter:
    """Prompter that always keeps existing data."""

    def confirm_regenerate(self, snapshot: VolumeSnapshot) -> bool:
        """Never regenerate over existing data."""
        return False

    def choose_mismatch_action(self, report: ValidationReport) -> MismatchAction:
        """Continue with a warning."""
        return MismatchAction.CONTINUE


@dataclass(frozen=True)
class SetupRequest:
    """Caller-supplied inputs for :meth:`ProvisioningEngine.setup`."""

    domain: str
    email: str
    token: str = ""
    force: bool = False
    clean: bool = False
    ssl_mode: SslMode | str = SslMode.GENERATE
    ssl_cert: Path | None = None
    ssl_key: Path | None = None
    version: str | None = None
    image_overrides: Mapping[str, str] = field(default_factory=dict)
    skip_start: bool = False


@dataclass
class SetupReport:
    """Everything that happened during one setup run."""

    state: StateReport
    ports: PortResolution | None = None
    reconcile: ReconcileResult | None = None
    descriptor: WriteResult | None = None
    credential_backup: Path | None = None
    certificate: CertificateStatus | None = None
    validation: MismatchResolution | None = None
    startup: StartupReport | None = None
    rollback: RollbackReport | None = None
    removed_volumes: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    interrupted: bool = False

    @property
    def outcome(self) -> str:
        """Return a one-word summary of the run."""
        if self.interrupted:
            return StartupOutcome.INTERRUPTED.value
        if self.startup is None:
            return "configured"
        return self.startup.outcome.value

    @property
    def exit_code(self) -> ExitCode:
        """Return the CLI exit code for this run."""
        if self.interrupted:
            return ExitCode.INTERRUPTED
        if self.startup is None:
            return ExitCode.OK
        outcome = self.startup.outcome
        if outcome is StartupOutcome.INTERRUPTED:
            return ExitCode.INTERRUPTED
        if outcome is StartupOutcome.FAILED:
            timed_out = self.startup.health is not None and self.startup.health.timed_out
            return ExitCode.TIMEOUT if timed_out else ExitCode.PROVIDER
        return ExitCode.OK

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (credential values excluded)."""
        return {
            "outcome": self.outcome,
            "state": self.state.to_dict(),
            "ports": self.ports.assignment.to_dict() if self.ports else None,
            "credentials": self.reconcile.to_dict() if self.reconcile else None,
            "descriptor": str(self.descriptor.path) if self.descriptor else None,
            "descriptor_backup": (
                str(self.descriptor.backup) if self.descriptor and self.descriptor.backup else None
            ),
            "credential_backup": str(self.credential_backup) if self.credential_backup else None,
            "certificate": self.certificate.to_dict() if self.certificate else None,
            "validation": self.validation.to_dict() if self.validation else None,
            "startup": self.startup.to_dict() if self.startup else None,
            "rollback": self.rollback.to_dict() if self.rollback else None,
            "removed_volumes": list(self.removed_volumes),
            "warnings": list(self.warnings),
        }


class CleanupMode(str, Enum):
    """Teardown scopes offered by :meth:`ProvisioningEngine.cleanup`."""

    SAFE = "safe"
    FULL = "full"
    CREDENTIAL_FIX = "credential-fix"


@dataclass(frozen=True)
class CleanupReport:
    """Outcome of :meth:`ProvisioningEngine.cleanup`."""

    mode: CleanupMode
    removed_volumes: tuple[str, ...] = ()
    descriptor_backup: Path | None = None
    descriptor_removed: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "mode": self.mode.value,
            "removed_volumes": list(self.removed_volumes),
            "descriptor_backup": str(self.descriptor_backup) if self.descriptor_backup else None,
            "descriptor_removed": self.descriptor_removed,
        }


@dataclass(frozen=True)
class RestoreResult:
    """Outcome of :meth:`ProvisioningEngine.rollback_latest`."""

    restored_from: Path
    previous_backup: Path | None


class ProvisioningEngine:
    """Compose the provisioning components around one configuration."""

    def __init__(
        self,
        config: AppConfig,
        engine: ContainerEngine,
        *,
        prompter: Prompter | None = None,
        port_probe: PortProbe | None = None,
        certificates: CertificateProvider | None = None,
        services: tuple[ServiceDefinition, ...] = DEFAULT_SERVICES,
        http_get: HttpStatus = http_status,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Store configuration and collaborators."""
        self._config = config
        self._engine = engine
        self._prompter: Prompter = prompter or NonInteractivePrompter()
        self._port_probe = port_probe or SocketPortProbe()
        self._certificates = certificates or SelfSignedCertificateProvider()
        self._services = services
        self._http_get = http_get
        self._clock = clock
        self._sleep = sleep
        self._inspector = VolumeInspector(config, engine)
        self._rollback = RollbackManager(engine, config.container_prefix)

    @property
    def inspector(self) -> VolumeInspector:
        """Return the volume inspector bound to this engine."""
        return self._inspector

    # Observation ---------------------------------------------------------
    def classify(self) -> StateReport:
        """Return the current installation state."""
        classifier = StateClassifier(
            self._config.env_file,
            self._engine,
            self._inspector,
            self._config.container_prefix,
        )
        return classifier.classify()

    def resolve_ports(self) -> PortResolution:
        """Probe the port table and return a fresh assignment."""
        resolver = PortConflictResolver(
            self._config.ports,
            probe=self._port_probe,
            engine=self._engine,
            container_prefix=self._config.container_prefix,
        )
        return resolver.resolve()

    def service_states(self) -> list[tuple[ServiceDefinition, ContainerState]]:
        """Return the container state of every known service."""
        project = self._config.project_name
        return [
            (service, self._engine.container_state(service.container_name(project)))
            for service in self._services
        ]

    # Setup ---------------------------------------------------------------
    def setup(self, request: SetupRequest) -> SetupReport:
        """Run the full provisioning flow for *request*.

        Nothing is mutated until input validation, port resolution and
        credential reconciliation have succeeded. After that point any
        :class:`~milouctl.errors.ProvisioningError` triggers compensation
        before it propagates, and a :class:`KeyboardInterrupt` triggers
        compensation and returns an interrupted report.
        """
        config = self._config
        project = config.project_name
        domain = validate_domain(request.domain)
        email = validate_email(request.email)
        token = validate_token(request.token)
        ssl_mode = validate_ssl_mode(request.ssl_mode)
        images = select_image_tags(
            request.version,
            request.image_overrides,
            default_tag=config.images.default_tag,
            registry=config.images.registry,
        )

        state = self.classify()
        report = SetupReport(state=state)
        report.warnings.extend(state.warnings)
        LOGGER.info("Installation state: %s", state.state.value)

        report.ports = self.resolve_ports()
        report.warnings.extend(report.ports.warnings)

        snapshot = self._inspector.inspect()
        backups = CredentialBackups(
            config.backups_dir / "credentials",
            retention=config.credentials.backup_retention,
        )
        previous_backups = backups.existing()
        reconciler = CredentialReconciler(
            config.env_file,
            project=project,
            confirm_regenerate=self._prompter.confirm_regenerate,
            fallback=previous_backups[0] if previous_backups else None,
        )
        result = reconciler.reconcile(
            state.state,
            snapshot,
            force=request.force,
            clean=request.clean,
        )
        report.reconcile = result
        report.warnings.extend(result.warnings)

        cert_path = request.ssl_cert or config.ssl_dir / f"{project}.crt"
        key_path = request.ssl_key or config.ssl_dir / f"{project}.key"
        descriptor = build_descriptor(
            DescriptorInputs(
                domain=domain,
                email=email,
                token=token,
                bundle=result.bundle,
                ports=report.ports.assignment,
                project=project,
                ssl_mode=ssl_mode,
                ssl_cert_path=cert_path,
                ssl_key_path=key_path,
                images=images,
            )
        )

        rollback_snapshot = self._rollback.capture(config.env_file)
        starting = False
        try:
            if result.teardown_volumes:
                self._teardown(result.teardown_volumes)
                report.removed_volumes.extend(result.teardown_volumes)

            writer = EnvironmentWriter(config.env_file, config.backups_dir)
            report.descriptor = writer.write(descriptor)
            report.credential_backup = backups.save(result.bundle)

            report.certificate = self._certificates.ensure(
                domain, cert_path, key_path, mode=ssl_mode
            )

            if self._needs_validation(result, snapshot):
                resolution = self._validate(result)
                report.validation = resolution
                report.warnings.extend(resolution.warnings)
                report.removed_volumes.extend(resolution.removed_volumes)
                if resolution.report.interrupted:
                    report.interrupted = True
                    report.rollback = self._rollback.compensate(rollback_snapshot)
                    return report

            if request.skip_start:
                return report

            starting = True
            report.startup = self._start(report.ports)
        except ProvisioningError:
            LOGGER.error("Setup failed after changes were made; rolling back.")
            report.rollback = self._rollback.compensate(
                rollback_snapshot, service_names(self._services) if starting else ()
            )
            raise
        except KeyboardInterrupt:
            LOGGER.warning("Setup interrupted after changes were made; rolling back.")
            report.interrupted = True
            report.rollback = self._rollback.compensate(
                rollback_snapshot, service_names(self._services) if starting else ()
            )
            return report

        if report.startup.outcome.needs_rollback:
            LOGGER.error("Startup %s; rolling back.", report.startup.outcome.value)
            report.interrupted = report.startup.outcome is StartupOutcome.INTERRUPTED
            report.rollback = self._rollback.compensate(rollback_snapshot, report.startup.started)
        elif report.startup.outcome is StartupOutcome.DEGRADED:
            report.warnings.append(
                "started in degraded mode; not ready: " + ", ".join(report.startup.not_ready)
            )
        return report

    def _needs_validation(self, result: ReconcileResult, snapshot: VolumeSnapshot) -> bool:
        return (
            result.decision is CredentialDecision.PRESERVE
            and snapshot.size_class(VolumeRole.DATABASE) is SizeClass.SUBSTANTIAL
        )

    def _validate(self, result: ReconcileResult) -> MismatchResolution:
        validator = ConsistencyValidator(
            self._config,
            self._engine,
            self._inspector,
            clock=self._clock,
            sleep=self._sleep,
        )
        resolver = MismatchResolver(
            self._config,
            self._engine,
            self._inspector,
            validator,
            choose=self._prompter.choose_mismatch_action,
            sleep=self._sleep,
        )
        report = validator.validate(result.bundle)
        LOGGER.info("Credential check: %s (%s)", report.result.value, report.detail)
        if report.interrupted:
            return MismatchResolution(MismatchAction.CONTINUE, report)
        return resolver.resolve(result.bundle, report)

    def _start(self, ports: PortResolution) -> StartupReport:
        monitor = HealthMonitor(
            self._engine,
            self._config.health,
            project=self._config.project_name,
            ports=ports.assignment,
            probe=self._port_probe,
            http_get=self._http_get,
            clock=self._clock,
            sleep=self._sleep,
        )
        return StartupOrchestrator(self._engine, monitor, self._services).start()

    def _teardown(self, volumes: tuple[str, ...]) -> None:
        LOGGER.warning("Removing data volumes before setup: %s", ", ".join(volumes))
        self._engine.down(remove_volumes=False)
        self._engine.remove_volumes(list(volumes))

    # Maintenance -----------------------------------------------------------
    def cleanup(self, mode: CleanupMode) -> CleanupReport:
        """Stop the installation and optionally remove data.

        ``safe`` only stops containers. ``full`` also removes every data volume
        and the descriptor (after backing it up). ``credential-fix`` removes
        only the database volumes so the current credentials initialise a
        fresh database on next start.
        """
        config = self._config
        self._engine.down(remove_volumes=False)
        if mode is CleanupMode.SAFE:
            return CleanupReport(mode)
        if mode is CleanupMode.CREDENTIAL_FIX:
            names = self._inspector.find(VolumeRole.DATABASE)
            self._engine.remove_volumes(names)
            return CleanupReport(mode, removed_volumes=tuple(names))

        names = self._inspector.all_volume_names()
        self._engine.remove_volumes(names)
        backup = backup_descriptor(config.env_file, config.backups_dir)
        removed = config.env_file.exists()
        config.env_file.unlink(missing_ok=True)
        return CleanupReport(
            mode,
            removed_volumes=tuple(names),
            descriptor_backup=backup,
            descriptor_removed=removed,
        )

    def rollback_latest(self) -> RestoreResult:
        """Restore the newest descriptor backup that differs from the current file."""
        config = self._config
        current = config.env_file.read_bytes() if config.env_file.exists() else None
        candidates = [
            path
            for path in list_descriptor_backups(config.env_file, config.backups_dir)
            if path.read_bytes() != current
        ]
        if not candidates:
            raise ValidationError(
                "No descriptor backup is available to restore.",
                remediation=f"Check {config.backups_dir} or re-run `milouctl setup`.",
            )
        source = candidates[0]
        previous = backup_descriptor(config.env_file, config.backups_dir)
        write_descriptor(config.env_file, source.read_text(encoding="utf-8"))
        LOGGER.info("Restored descriptor from %s", source)
        return RestoreResult(restored_from=source, previous_backup=previous)


__all__ = [
    "CleanupMode",
    "CleanupReport",
    "NonInteractivePrompter",
    "Prompter",
    "ProvisioningEngine",
    "RestoreResult",
    "SetupReport",
    "SetupRequest",
]
