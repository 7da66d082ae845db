"""Installation state classification.

The state is recomputed on every invocation from the descriptor file and the
container engine; it is never persisted. Classification never raises: engine
failures degrade to "nothing observed" and are reported as warnings.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..credentials.extractor import extract_secrets_from_mapping, has_recognised_secret
from ..descriptor import read_descriptor
from ..errors import ProvisioningError
from ..providers.base import ContainerEngine
from ..volumes import VolumeInspector

LOGGER = logging.getLogger(__name__)


class InstallationState(str, Enum):
    """Lifecycle phase of the deployment."""

    FRESH = "fresh"
    PARTIAL = "partial"
    COMPLETE = "complete"
    CORRUPTED = "corrupted"


@dataclass(frozen=True, slots=True)
class StateReport:
    """Classification result with the observations that produced it."""

    state: InstallationState
    descriptor_present: bool
    descriptor_valid: bool
    has_secrets: bool
    volumes: tuple[str, ...] = ()
    containers: tuple[str, ...] = ()
    issues: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def description(self) -> str:
        """Return a human readable description of the state."""
        return describe_state(self.state)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "state": self.state.value,
            "description": self.description,
            "descriptor_present": self.descriptor_present,
            "descriptor_valid": self.descriptor_valid,
            "has_secrets": self.has_secrets,
            "volumes": list(self.volumes),
            "containers": list(self.containers),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "recommended_actions": list(recommended_actions(self.state)),
        }


def decide_state(
    *,
    descriptor_present: bool,
    descriptor_valid: bool,
    has_secrets: bool,
    volumes_present: bool,
) -> InstallationState:
    """Apply the classification rules in priority order."""
    if not descriptor_present and not volumes_present:
        return InstallationState.FRESH
    if descriptor_present and descriptor_valid and has_secrets:
        return InstallationState.COMPLETE
    if descriptor_present and not descriptor_valid:
        return InstallationState.CORRUPTED
    return InstallationState.PARTIAL


class StateClassifier:
    """Gather observations and classify the installation."""

    def __init__(
        self,
        descriptor_path: Path,
        engine: ContainerEngine,
        inspector: VolumeInspector,
        container_prefix: str,
    ) -> None:
        """Store collaborators used to observe the installation."""
        self._descriptor_path = descriptor_path
        self._engine = engine
        self._inspector = inspector
        self._container_prefix = container_prefix

    def classify(self) -> StateReport:
        """Return a fresh :class:`StateReport`."""
        warnings: list[str] = []
        parsed = read_descriptor(self._descriptor_path)
        descriptor_present = parsed is not None
        descriptor_valid = bool(parsed and parsed.valid)
        has_secrets = False
        issues: tuple[str, ...] = ()
        if parsed is not None:
            issues = tuple(f"line {issue.line_number}: {issue.reason}" for issue in parsed.issues)
            if parsed.valid:
                has_secrets = has_recognised_secret(extract_secrets_from_mapping(parsed.as_dict()))

        try:
            volumes = tuple(self._inspector.all_volume_names())
        except ProvisioningError as exc:
            LOGGER.warning("Volume discovery failed: %s", exc)
            warnings.append(f"volume discovery failed: {exc}")
            volumes = ()

        try:
            containers = tuple(self._engine.list_containers(self._container_prefix))
        except ProvisioningError as exc:
            LOGGER.warning("Container discovery failed: %s", exc)
            warnings.append(f"container discovery failed: {exc}")
            containers = ()

        state = decide_state(
            descriptor_present=descriptor_present,
            descriptor_valid=descriptor_valid,
            has_secrets=has_secrets,
            volumes_present=bool(volumes),
        )
        LOGGER.debug("Installation classified as %s", state.value)
        return StateReport(
            state=state,
            descriptor_present=descriptor_present,
            descriptor_valid=descriptor_valid,
            has_secrets=has_secrets,
            volumes=volumes,
            containers=containers,
            issues=issues,
            warnings=tuple(warnings),
        )


_DESCRIPTIONS: dict[InstallationState, str] = {
    InstallationState.FRESH: "No configuration or data volumes found; ready for a fresh install.",
    InstallationState.PARTIAL: (
        "Some installation artifacts exist but the configuration is missing or incomplete."
    ),
    InstallationState.COMPLETE: "A valid configuration with stored credentials is present.",
    InstallationState.CORRUPTED: (
        "The configuration file exists but failed validation; credentials will be salvaged."
    ),
}

_ACTIONS: dict[InstallationState, tuple[str, ...]] = {
    InstallationState.FRESH: ("Run `milouctl setup --domain <fqdn> --email <address>`.",),
    InstallationState.PARTIAL: (
        "Run `milouctl setup` to complete the installation; existing credentials are salvaged.",
        "Use `milouctl setup --clean` to discard old volumes and start over.",
    ),
    InstallationState.COMPLETE: (
        "Run `milouctl status` to check services.",
        "Re-run `milouctl setup` to update configuration; credentials are preserved.",
        "Use `--force` to regenerate credentials (existing data may become inaccessible).",
    ),
    InstallationState.CORRUPTED: (
        "Run `milouctl env validate` to see the offending lines.",
        "Run `milouctl setup` to rebuild the configuration from salvaged credentials.",
        "Run `milouctl rollback` to restore the most recent configuration backup.",
    ),
}


def describe_state(state: InstallationState) -> str:
    """Return a human readable description for *state*."""
    return _DESCRIPTIONS[state]


def recommended_actions(state: InstallationState) -> tuple[str, ...]:
    """Return operator actions recommended for *state*."""
    return _ACTIONS[state]


__all__ = [
    "InstallationState",
    "StateClassifier",
    "StateReport",
    "decide_state",
    "describe_state",
    "recommended_actions",
]
