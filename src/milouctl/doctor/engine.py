"""Run doctor probes against the installation and aggregate their results."""

from __future__ import annotations

import time
import traceback
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import TYPE_CHECKING

from .models import (
    DoctorImpact,
    DoctorReport,
    ProbeContext,
    ProbeDefinition,
    ProbeExecutorOptions,
    ProbeResult,
    ProbeStatus,
    build_report,
)

if TYPE_CHECKING:
    from ..cli import RuntimeContext


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def select_probes(
    probes: Iterable[ProbeDefinition],
    *,
    only: Iterable[str] = (),
    exclude: Iterable[str] = (),
) -> list[ProbeDefinition]:
    """Filter *probes* by category.

    An empty ``only`` keeps every category. ``exclude`` is applied last.
    """
    wanted = set(only)
    skipped = set(exclude)
    return [
        probe
        for probe in probes
        if (not wanted or probe.category in wanted) and probe.category not in skipped
    ]


def execute_probe(probe: ProbeDefinition, context: ProbeContext) -> ProbeResult:
    """Run one probe and stamp its identity and duration onto the result.

    A probe that raises is reported as a red provider failure so the other
    probes still run.
    """
    start = time.perf_counter()
    try:
        result = probe.run(context)
    except Exception as exc:  # noqa: BLE001
        return ProbeResult(
            id=probe.id,
            category=probe.category,
            status=ProbeStatus.RED,
            impact=DoctorImpact.PROVIDER,
            message=f"Probe '{probe.id}' raised an unexpected error: {exc}",
            duration_ms=_elapsed_ms(start),
            data={"exception": repr(exc), "traceback": traceback.format_exc()},
            warnings=("unhandled-exception",),
        )
    duration = result.duration_ms if result.duration_ms is not None else _elapsed_ms(start)
    return replace(result, id=probe.id, category=probe.category, duration_ms=duration)


def run_probes(
    context: ProbeContext,
    probes: Sequence[ProbeDefinition],
) -> list[ProbeResult]:
    """Execute *probes* on a thread pool; results keep the input order."""
    workers = min(max(1, context.options.max_concurrency), len(probes))
    if workers <= 1:
        return [execute_probe(probe, context) for probe in probes]
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="milouctl-doctor") as pool:
        return list(pool.map(lambda probe: execute_probe(probe, context), probes))


def create_probe_context(
    runtime: RuntimeContext,
    options: ProbeExecutorOptions | None = None,
) -> ProbeContext:
    """Build a probe context from the CLI runtime."""
    return ProbeContext(
        config=runtime.config,
        engine=runtime.engine,
        provisioning=runtime.provisioning,
        port_probe=runtime.port_probe,
        options=options or ProbeExecutorOptions(),
    )


class DoctorEngine:
    """Execute a probe selection and build the report."""

    def __init__(self, context: ProbeContext) -> None:
        self._context = context

    def run(
        self,
        probes: Sequence[ProbeDefinition],
        *,
        metadata: Mapping[str, object] | None = None,
    ) -> DoctorReport:
        """Run *probes* and return the aggregated report.

        The report metadata records the run duration, the probe count, the
        categories covered and the concurrency used, merged with *metadata*.
        """
        start = time.perf_counter()
        results = run_probes(self._context, probes)
        run_metadata: dict[str, object] = {
            "duration_ms": _elapsed_ms(start),
            "probe_count": len(results),
            "categories": sorted({probe.category for probe in probes}),
            "concurrency": self._context.options.max_concurrency,
        }
        if metadata:
            run_metadata.update(metadata)
        return build_report(results, metadata=run_metadata)
