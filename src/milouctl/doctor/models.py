"""Result and report types shared by doctor probes."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal, get_args

if TYPE_CHECKING:
    from ..config import AppConfig
    from ..ports import PortProbe
    from ..providers.base import ContainerEngine
    from ..provisioning import ProvisioningEngine


class ProbeStatus(str, Enum):
    """Traffic-light outcome of one probe."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"

    @property
    def severity(self) -> int:
        """Return 0 for green, 1 for yellow and 2 for red."""
        return _STATUS_SEVERITY[self]


_STATUS_SEVERITY = {ProbeStatus.GREEN: 0, ProbeStatus.YELLOW: 1, ProbeStatus.RED: 2}


class DoctorImpact(Enum):
    """What a failing probe means for the process exit code.

    Values equal the CLI exit codes; a higher value wins when several probes
    fail, so a port conflict outranks a broken container which outranks a
    missing binary.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
    CONFLICT = 5

    @classmethod
    def from_exit_code(cls, code: int) -> DoctorImpact:
        """Map an error's exit code onto an impact."""
        try:
            return cls(code)
        except ValueError:
            raise ValueError(f"Unsupported doctor exit code: {code}") from None


ProbeCategory = Literal["env", "config", "state", "ports", "volumes", "services", "tls"]

PROBE_CATEGORY_VALUES: tuple[ProbeCategory, ...] = get_args(ProbeCategory)


@dataclass(slots=True, frozen=True)
class ProbeExecutorOptions:
    """Tunables for a doctor run."""

    max_concurrency: int = 4


@dataclass(slots=True, frozen=True)
class ProbeContext:
    """Collaborators handed to every probe."""

    config: AppConfig
    engine: ContainerEngine
    provisioning: ProvisioningEngine
    port_probe: PortProbe
    options: ProbeExecutorOptions


@dataclass(slots=True, frozen=True)
class ProbeResult:
    """Outcome of one probe, with an optional remediation hint."""

    id: str
    category: ProbeCategory
    status: ProbeStatus
    impact: DoctorImpact
    message: str
    remediation: str | None = None
    duration_ms: int | None = None
    data: Mapping[str, Any] | None = None
    warnings: Sequence[str] = field(default_factory=tuple)

    @property
    def label(self) -> str:
        """Return ``category:id``."""
        return f"{self.category}:{self.id}"


@dataclass(slots=True, frozen=True)
class ProbeDefinition:
    """A named probe bound to its category."""

    id: str
    category: ProbeCategory
    run: Callable[[ProbeContext], ProbeResult]


@dataclass(slots=True, frozen=True)
class DoctorSummary:
    """Worst status, worst impact and per-status counts."""

    status: ProbeStatus
    impact: DoctorImpact
    totals: Mapping[ProbeStatus, int]

    @property
    def exit_code(self) -> int:
        return self.impact.value


@dataclass(slots=True, frozen=True)
class DoctorReport:
    """Probe results in execution order plus their summary."""

    results: Sequence[ProbeResult]
    summary: DoctorSummary
    metadata: Mapping[str, Any] | None = None

    def labels(self, status: ProbeStatus) -> list[str]:
        """Return ``category:id`` for every result with *status*."""
        return [result.label for result in self.results if result.status is status]


def aggregate_results(results: Iterable[ProbeResult]) -> DoctorSummary:
    """Summarise *results*; an empty run is green."""
    materialised = list(results)
    totals = {status: 0 for status in ProbeStatus}
    for result in materialised:
        totals[result.status] += 1
    status = max(
        (result.status for result in materialised),
        key=lambda item: item.severity,
        default=ProbeStatus.GREEN,
    )
    impact = max(
        (result.impact for result in materialised),
        key=lambda item: item.value,
        default=DoctorImpact.OK,
    )
    return DoctorSummary(status=status, impact=impact, totals=totals)


def build_report(
    results: Sequence[ProbeResult],
    metadata: Mapping[str, Any] | None = None,
) -> DoctorReport:
    """Wrap *results* and their summary into a report."""
    return DoctorReport(
        results=tuple(results),
        summary=aggregate_results(results),
        metadata=metadata,
    )
