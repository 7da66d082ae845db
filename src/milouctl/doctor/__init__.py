"""Doctor command infrastructure."""

from __future__ import annotations

from .engine import (
    DoctorEngine,
    create_probe_context,
    execute_probe,
    run_probes,
    select_probes,
)
from .models import (
    PROBE_CATEGORY_VALUES,
    DoctorImpact,
    DoctorReport,
    DoctorSummary,
    ProbeCategory,
    ProbeContext,
    ProbeDefinition,
    ProbeExecutorOptions,
    ProbeResult,
    ProbeStatus,
    aggregate_results,
    build_report,
)
from .probes import collect_probes
from .utils import serialize_report

__all__ = [
    "DoctorEngine",
    "DoctorImpact",
    "DoctorReport",
    "DoctorSummary",
    "ProbeCategory",
    "PROBE_CATEGORY_VALUES",
    "ProbeContext",
    "ProbeDefinition",
    "ProbeExecutorOptions",
    "ProbeResult",
    "ProbeStatus",
    "aggregate_results",
    "build_report",
    "collect_probes",
    "create_probe_context",
    "execute_probe",
    "run_probes",
    "select_probes",
    "serialize_report",
]
