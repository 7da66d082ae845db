"""Credential reconciliation: decide whether to preserve or regenerate secrets."""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..state.classifier import InstallationState
from ..volumes import VolumeSnapshot
from .bundle import SECRET_NAMES, SPECS_BY_NAME, SecretBundle
from .extractor import extract_secrets

LOGGER = logging.getLogger(__name__)

ConfirmRegenerate = Callable[[VolumeSnapshot], bool]


class CredentialDecision(str, Enum):
    """Outcome of reconciliation."""

    PRESERVE = "preserve"
    REGENERATE = "regenerate"


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    """Decision plus the fully populated bundle it produced."""

    decision: CredentialDecision
    bundle: SecretBundle
    reason: str
    preserved_keys: tuple[str, ...] = ()
    generated_keys: tuple[str, ...] = ()
    teardown_volumes: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (values are never included)."""
        return {
            "decision": self.decision.value,
            "reason": self.reason,
            "preserved_keys": list(self.preserved_keys),
            "generated_keys": list(self.generated_keys),
            "teardown_volumes": list(self.teardown_volumes),
            "warnings": list(self.warnings),
        }


class CredentialReconciler:
    """Apply the preserve/regenerate decision table.

    Parameters
    ----------
    descriptor_path:
        Location of the existing descriptor (may be missing or invalid).
    project:
        Project name used as the prefix of generated usernames.
    confirm_regenerate:
        Optional callback consulted when existing data would normally force
        preservation. Returning ``True`` regenerates anyway; the default is to
        preserve.
    fallback:
        Optional credential backup consulted when salvaging finds gaps.
    """

    def __init__(
        self,
        descriptor_path: Path,
        *,
        project: str,
        confirm_regenerate: ConfirmRegenerate | None = None,
        fallback: Path | None = None,
    ) -> None:
        """Store reconciliation inputs."""
        self._descriptor_path = descriptor_path
        self._project = project
        self._confirm_regenerate = confirm_regenerate
        self._fallback = fallback

    def reconcile(
        self,
        state: InstallationState,
        snapshot: VolumeSnapshot,
        *,
        force: bool = False,
        clean: bool = False,
    ) -> ReconcileResult:
        """Return the credential decision for the observed installation."""
        if clean:
            return self._regenerate(
                "clean requested; matching volumes are torn down before new credentials are used",
                teardown=snapshot.names,
            )
        if force:
            warnings: tuple[str, ...] = ()
            if snapshot:
                warnings = (
                    "force regenerates credentials without removing volumes; existing data "
                    "may reject the new credentials (use --clean to start from empty volumes)",
                )
            return self._regenerate("force requested", warnings=warnings)
        if state is InstallationState.FRESH:
            return self._regenerate("fresh installation")
        if state is InstallationState.COMPLETE:
            return self._reconcile_complete(snapshot)
        return self._salvage(state)

    # ------------------------------------------------------------------
    def _reconcile_complete(self, snapshot: VolumeSnapshot) -> ReconcileResult:
        if not snapshot.has_substantial:
            return self._regenerate("existing volumes hold no substantial data")

        if self._confirm_regenerate is not None and self._confirm_regenerate(snapshot):
            return self._regenerate(
                "operator chose to regenerate despite existing data",
                warnings=(
                    "credentials regenerated while substantial data exists; "
                    "the consistency check may report a mismatch",
                ),
            )

        existing = SecretBundle(extract_secrets(self._descriptor_path))
        missing = existing.missing()
        bundle = existing.with_generated(missing, project=self._project)
        warnings = list(_weak_warnings(existing))
        if missing:
            warnings.append(
                "generated missing credentials while preserving: " + ", ".join(missing)
            )
        LOGGER.info("Preserving credentials for installation with existing data.")
        return ReconcileResult(
            decision=CredentialDecision.PRESERVE,
            bundle=bundle,
            reason="existing installation with substantial data",
            preserved_keys=tuple(name for name in SECRET_NAMES if name not in missing),
            generated_keys=missing,
            warnings=tuple(warnings),
        )

    def _salvage(self, state: InstallationState) -> ReconcileResult:
        values = extract_secrets(self._descriptor_path)
        warnings: list[str] = []
        if self._fallback is not None and not all(values.values()):
            recovered = extract_secrets(self._fallback)
            filled = [name for name, value in values.items() if not value and recovered[name]]
            for name in filled:
                values[name] = recovered[name]
            if filled:
                warnings.append(
                    f"recovered {len(filled)} credential(s) from backup {self._fallback.name}"
                )
        salvaged = SecretBundle(values)
        missing = salvaged.missing()
        bundle = salvaged.with_generated(missing, project=self._project)
        preserved = tuple(name for name in SECRET_NAMES if name not in missing)
        decision = CredentialDecision.PRESERVE if preserved else CredentialDecision.REGENERATE
        warnings.extend(_weak_warnings(salvaged))
        if preserved:
            warnings.append(f"salvaged {len(preserved)} credential(s) from {state.value} install")
        return ReconcileResult(
            decision=decision,
            bundle=bundle,
            reason=f"{state.value} installation; salvaged existing credentials",
            preserved_keys=preserved,
            generated_keys=missing,
            warnings=tuple(warnings),
        )

    def _regenerate(
        self,
        reason: str,
        *,
        teardown: tuple[str, ...] = (),
        warnings: tuple[str, ...] = (),
    ) -> ReconcileResult:
        LOGGER.info("Regenerating credentials: %s", reason)
        return ReconcileResult(
            decision=CredentialDecision.REGENERATE,
            bundle=SecretBundle.generate(project=self._project),
            reason=reason,
            generated_keys=SECRET_NAMES,
            teardown_volumes=teardown,
            warnings=warnings,
        )


def _weak_warnings(bundle: SecretBundle) -> list[str]:
    messages = []
    for name in bundle.weak_entries():
        spec = SPECS_BY_NAME[name]
        messages.append(
            f"kept existing {spec.env_key} although it is weaker than a generated value"
        )
    return messages


__all__ = [
    "ConfirmRegenerate",
    "CredentialDecision",
    "CredentialReconciler",
    "ReconcileResult",
]
