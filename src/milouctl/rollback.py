"""Compensating rollback for failed or interrupted setup runs.

A :class:`RollbackSnapshot` is captured before anything is mutated. If setup
fails, :meth:`RollbackManager.compensate` stops what this run started,
restores the descriptor bytes and restarts the containers that were running
beforehand. Volumes are never restored; only configuration and process state.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .descriptor import write_descriptor
from .errors import ProvisioningError
from .providers.base import ContainerEngine

LOGGER = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class RollbackSnapshot:
    """State captured before setup mutates anything."""

    descriptor_path: Path
    descriptor_bytes: bytes | None
    running_containers: tuple[str, ...]
    taken_at: str

    @property
    def had_descriptor(self) -> bool:
        """Return ``True`` when a descriptor existed at capture time."""
        return self.descriptor_bytes is not None


@dataclass(frozen=True, slots=True)
class RollbackStep:
    """One compensation step and whether it succeeded."""

    name: str
    ok: bool
    detail: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "ok": self.ok, "detail": self.detail}


@dataclass(frozen=True)
class RollbackReport:
    """Every step attempted during compensation."""

    steps: tuple[RollbackStep, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        """Return ``True`` when every step succeeded."""
        return all(step.ok for step in self.steps)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"ok": self.ok, "steps": [step.to_dict() for step in self.steps]}


class RollbackManager:
    """Capture and compensate installation state around a setup run."""

    def __init__(self, engine: ContainerEngine, container_prefix: str) -> None:
        """Store the engine and the installation's container prefix."""
        self._engine = engine
        self._container_prefix = container_prefix

    def capture(self, descriptor_path: Path) -> RollbackSnapshot:
        """Return a snapshot of the descriptor and running containers."""
        try:
            content: bytes | None = descriptor_path.read_bytes()
        except FileNotFoundError:
            content = None
        try:
            running = tuple(self._engine.running_containers(self._container_prefix))
        except ProvisioningError as exc:
            LOGGER.warning("Could not list running containers for rollback: %s", exc)
            running = ()
        return RollbackSnapshot(
            descriptor_path=descriptor_path,
            descriptor_bytes=content,
            running_containers=running,
            taken_at=_now_iso(),
        )

    def compensate(
        self,
        snapshot: RollbackSnapshot,
        started_services: Sequence[str] = (),
    ) -> RollbackReport:
        """Undo this run's changes; failures are recorded, never raised."""
        steps: list[RollbackStep] = []

        if started_services:
            try:
                self._engine.stop_services(list(started_services))
            except ProvisioningError as exc:
                LOGGER.error("Rollback could not stop services: %s", exc)
                steps.append(RollbackStep("stop-services", False, str(exc)))
            else:
                steps.append(RollbackStep("stop-services", True, ", ".join(started_services)))

        steps.append(self._restore_descriptor(snapshot))

        if snapshot.running_containers:
            try:
                self._engine.start_containers(list(snapshot.running_containers))
            except ProvisioningError as exc:
                LOGGER.error("Rollback could not restart previous containers: %s", exc)
                steps.append(RollbackStep("restart-previous", False, str(exc)))
            else:
                steps.append(
                    RollbackStep("restart-previous", True, ", ".join(snapshot.running_containers))
                )

        return RollbackReport(tuple(steps))

    def _restore_descriptor(self, snapshot: RollbackSnapshot) -> RollbackStep:
        path = snapshot.descriptor_path
        try:
            if snapshot.descriptor_bytes is None:
                path.unlink(missing_ok=True)
                return RollbackStep("restore-descriptor", True, "removed descriptor created by this run")
            write_descriptor(path, snapshot.descriptor_bytes.decode("utf-8"))
        except (OSError, UnicodeDecodeError) as exc:
            LOGGER.error("Rollback could not restore %s: %s", path, exc)
            return RollbackStep("restore-descriptor", False, str(exc))
        return RollbackStep("restore-descriptor", True, f"restored {path}")


__all__ = ["RollbackManager", "RollbackReport", "RollbackSnapshot", "RollbackStep"]
