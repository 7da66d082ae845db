"""Credential/volume consistency validation and mismatch resolution.

Preserved credentials are only useful if the database stored in the existing
volume accepts them. :class:`ConsistencyValidator` answers that question by
querying the running database container, or a throwaway one started on the
volume when the service is down; :class:`MismatchResolver` applies the operator's
chosen action when the answer is "no".
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from .config import AppConfig
from .credentials.bundle import SecretBundle
from .errors import ConflictError, ProvisioningError
from .providers.base import ContainerEngine, ExecResult
from .retry import RetryPolicy
from .volumes import SizeClass, VolumeInspector, VolumeRole

LOGGER = logging.getLogger(__name__)

PROBE_DATA_DIR = "/var/lib/postgresql/data"
_AUTH_FAILURE_MARKERS = (
    "password authentication failed",
    "authentication failed",
    "no pg_hba.conf entry",
)


class CompatibilityResult(str, Enum):
    """Whether the candidate credentials open the existing database."""

    COMPATIBLE = "compatible"
    INCOMPATIBLE = "incompatible"
    INCONCLUSIVE = "inconclusive"


@dataclass(frozen=True, slots=True)
class ValidationReport:
    """Outcome of one validation pass."""

    result: CompatibilityResult
    detail: str
    probed: bool = False
    interrupted: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "result": self.result.value,
            "detail": self.detail,
            "probed": self.probed,
            "interrupted": self.interrupted,
        }


class ConsistencyValidator:
    """Check candidate database credentials against the existing data volume."""

    def __init__(
        self,
        config: AppConfig,
        engine: ContainerEngine,
        inspector: VolumeInspector,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Store collaborators; *clock* and *sleep* drive the readiness poll."""
        self._config = config
        self._engine = engine
        self._inspector = inspector
        self._clock = clock
        self._sleep = sleep

    @property
    def probe_name(self) -> str:
        """Return the name of the ephemeral probe container."""
        return f"{self._config.container_prefix}credential-probe"

    @property
    def database_name(self) -> str:
        """Return the database the credential query connects to."""
        return f"{self._config.project_name}_database"

    def validate(self, bundle: SecretBundle) -> ValidationReport:
        """Return whether *bundle* opens the database volume."""
        info = self._inspector.measure(VolumeRole.DATABASE)
        if info is None or info.size_class is SizeClass.EMPTY:
            return ValidationReport(
                CompatibilityResult.COMPATIBLE,
                "database volume is empty; treated as a fresh installation",
            )
        return self._probe(bundle, info.name)

    def _probe(self, bundle: SecretBundle, volume: str) -> ValidationReport:
        live = f"{self._config.container_prefix}database"
        try:
            # The running server owns the volume; a second postmaster must not open it.
            if self._engine.container_state(live).status == "running":
                LOGGER.info("Database container %s is running; querying it directly.", live)
                return self._query(live, bundle)
        except ProvisioningError as exc:
            LOGGER.warning("Credential check against %s failed: %s", live, exc)
            return ValidationReport(
                CompatibilityResult.INCONCLUSIVE,
                f"probe could not run: {exc}",
                probed=True,
            )
        return self._probe_ephemeral(bundle, volume)

    def _probe_ephemeral(self, bundle: SecretBundle, volume: str) -> ValidationReport:
        probe = self._config.probe
        name = self.probe_name
        user = bundle["db_user"]
        try:
            self._engine.remove_container(name)
            self._engine.run_detached(
                name,
                probe.image,
                env={
                    "POSTGRES_USER": user,
                    "POSTGRES_PASSWORD": bundle["db_password"],
                    "POSTGRES_DB": self.database_name,
                },
                volumes={volume: PROBE_DATA_DIR},
            )
            policy = RetryPolicy(
                interval=probe.interval,
                timeout=probe.timeout,
                clock=self._clock,
                sleep=self._sleep,
            )
            readiness = policy.run(lambda: self._ready(name, user))
            if readiness.interrupted:
                return ValidationReport(
                    CompatibilityResult.INCONCLUSIVE,
                    "probe interrupted before the database became ready",
                    probed=True,
                    interrupted=True,
                )
            if not readiness.succeeded:
                return ValidationReport(
                    CompatibilityResult.INCONCLUSIVE,
                    f"database did not become ready within {probe.timeout:.0f}s",
                    probed=True,
                )
            return self._query(name, bundle)
        except ProvisioningError as exc:
            LOGGER.warning("Credential probe failed: %s", exc)
            return ValidationReport(
                CompatibilityResult.INCONCLUSIVE,
                f"probe could not run: {exc}",
                probed=True,
            )
        finally:
            try:
                self._engine.remove_container(name)
            except ProvisioningError as exc:
                LOGGER.warning("Could not remove probe container %s: %s", name, exc)

    def _query(self, container: str, bundle: SecretBundle) -> ValidationReport:
        # TCP forces password authentication even where local sockets are trusted.
        user = bundle["db_user"]
        result = self._engine.exec(
            container,
            ["psql", "-h", "127.0.0.1", "-U", user, "-d", self.database_name, "-c", "SELECT 1;"],
            env={"PGPASSWORD": bundle["db_password"]},
            timeout=self._config.probe.timeout,
        )
        return interpret_query(result)

    def _ready(self, name: str, user: str) -> bool | None:
        result = self._engine.exec(name, ["pg_isready", "-h", "127.0.0.1", "-U", user])
        return True if result.ok else None


def interpret_query(result: ExecResult) -> ValidationReport:
    """Map the probe query result onto a :class:`CompatibilityResult`."""
    if result.ok:
        return ValidationReport(
            CompatibilityResult.COMPATIBLE,
            "existing database accepted the credentials",
            probed=True,
        )
    output = result.output.lower()
    if any(marker in output for marker in _AUTH_FAILURE_MARKERS) or (
        "role" in output and "does not exist" in output
    ):
        return ValidationReport(
            CompatibilityResult.INCOMPATIBLE,
            "existing database rejected the credentials",
            probed=True,
        )
    return ValidationReport(
        CompatibilityResult.INCONCLUSIVE,
        f"probe query failed: {result.output or 'no output'}",
        probed=True,
    )


# Mismatch resolution ---------------------------------------------------------
class MismatchAction(str, Enum):
    """Operator choices when credentials do not match the stored data."""

    CONTINUE = "continue"
    RETRY = "retry"
    RESET_VOLUME = "reset-volume"
    FULL_CLEAN = "full-clean"
    ABORT = "abort"


ChooseAction = Callable[[ValidationReport], MismatchAction]


def continue_by_default(report: ValidationReport) -> MismatchAction:
    """Return the non-interactive choice: keep going with a warning."""
    return MismatchAction.CONTINUE


@dataclass(frozen=True, slots=True)
class MismatchResolution:
    """What was done about a validation report."""

    action: MismatchAction
    report: ValidationReport
    removed_volumes: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    attempts: int = 1

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "action": self.action.value,
            "report": self.report.to_dict(),
            "removed_volumes": list(self.removed_volumes),
            "warnings": list(self.warnings),
            "attempts": self.attempts,
        }


class MismatchResolver:
    """Apply the mismatch policy.

    Data is destroyed only for ``RESET_VOLUME`` and ``FULL_CLEAN``, which are
    never chosen by :func:`continue_by_default`.
    """

    def __init__(
        self,
        config: AppConfig,
        engine: ContainerEngine,
        inspector: VolumeInspector,
        validator: ConsistencyValidator,
        *,
        choose: ChooseAction = continue_by_default,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Store collaborators and the action chooser."""
        self._config = config
        self._engine = engine
        self._inspector = inspector
        self._validator = validator
        self._choose = choose
        self._sleep = sleep

    def resolve(self, bundle: SecretBundle, report: ValidationReport) -> MismatchResolution:
        """Return the resolution for *report*, re-validating on ``RETRY``.

        Raises
        ------
        ConflictError
            When the chosen action is ``ABORT``.
        """
        if report.result is CompatibilityResult.COMPATIBLE:
            return MismatchResolution(MismatchAction.CONTINUE, report)
        if report.result is CompatibilityResult.INCONCLUSIVE:
            return MismatchResolution(
                MismatchAction.CONTINUE,
                report,
                warnings=(f"credential check inconclusive: {report.detail}",),
            )

        retries = 0
        attempts = 1
        while True:
            action = self._choose(report)
            if action is MismatchAction.RETRY:
                if retries >= self._config.probe.max_retries:
                    return MismatchResolution(
                        MismatchAction.CONTINUE,
                        report,
                        warnings=(
                            "credentials still rejected after "
                            f"{retries} retr{'y' if retries == 1 else 'ies'}; continuing",
                        ),
                        attempts=attempts,
                    )
                retries += 1
                attempts += 1
                LOGGER.info(
                    "Waiting %.0fs before re-validating credentials (retry %d/%d).",
                    self._config.probe.retry_delay,
                    retries,
                    self._config.probe.max_retries,
                )
                self._sleep(self._config.probe.retry_delay)
                report = self._validator.validate(bundle)
                if report.result is not CompatibilityResult.INCOMPATIBLE:
                    return MismatchResolution(MismatchAction.RETRY, report, attempts=attempts)
                continue
            if action is MismatchAction.CONTINUE:
                return MismatchResolution(
                    action,
                    report,
                    warnings=(
                        "existing database rejected the credentials; services that use the "
                        "database may fail (re-run with --clean to start from empty volumes)",
                    ),
                    attempts=attempts,
                )
            if action is MismatchAction.RESET_VOLUME:
                removed = self._remove(self._inspector.find(VolumeRole.DATABASE))
                return MismatchResolution(action, report, removed_volumes=removed, attempts=attempts)
            if action is MismatchAction.FULL_CLEAN:
                removed = self._remove(self._inspector.all_volume_names())
                return MismatchResolution(action, report, removed_volumes=removed, attempts=attempts)
            raise ConflictError(
                "Existing database rejected the configured credentials; setup aborted.",
                remediation=(
                    "Restore the previous descriptor with `milouctl rollback`, or re-run "
                    "setup with --clean to discard existing data."
                ),
            )

    def _remove(self, names: list[str]) -> tuple[str, ...]:
        self._engine.down(remove_volumes=False)
        self._engine.remove_volumes(names)
        LOGGER.warning("Removed data volumes: %s", ", ".join(names) or "none")
        return tuple(names)


__all__ = [
    "ChooseAction",
    "CompatibilityResult",
    "ConsistencyValidator",
    "MismatchAction",
    "MismatchResolution",
    "MismatchResolver",
    "ValidationReport",
    "continue_by_default",
    "interpret_query",
]
