"""Tests for the doctor probe execution engine and report serialisation."""
from __future__ import annotations

import json
import time
from pathlib import Path
from types import SimpleNamespace

import pytest

from milouctl.cli import RuntimeContext
from milouctl.doctor import (
    DoctorEngine,
    DoctorImpact,
    ProbeContext,
    ProbeDefinition,
    ProbeExecutorOptions,
    ProbeResult,
    ProbeStatus,
    aggregate_results,
    build_report,
    create_probe_context,
    execute_probe,
    run_probes,
    select_probes,
    serialize_report,
)
from milouctl.doctor.engine import _elapsed_ms


def _context(options: ProbeExecutorOptions) -> ProbeContext:
    sentinel = object()
    return ProbeContext(
        config=sentinel,  # type: ignore[arg-type]
        engine=sentinel,  # type: ignore[arg-type]
        provisioning=sentinel,  # type: ignore[arg-type]
        port_probe=sentinel,  # type: ignore[arg-type]
        options=options,
    )


def _result(status: ProbeStatus, impact: DoctorImpact, *, probe_id: str = "probe") -> ProbeResult:
    return ProbeResult(
        id=probe_id,
        category="env",
        status=status,
        impact=impact,
        message="ok",
    )


def test_yellow_summary_still_exits_zero() -> None:
    """Warnings promote the status without failing the run."""
    summary = aggregate_results(
        [_result(ProbeStatus.GREEN, DoctorImpact.OK), _result(ProbeStatus.YELLOW, DoctorImpact.OK)]
    )

    assert summary.status is ProbeStatus.YELLOW
    assert summary.exit_code == 0
    assert summary.totals[ProbeStatus.YELLOW] == 1


def test_worst_impact_sets_exit_code() -> None:
    """A port conflict outranks a validation problem."""
    summary = aggregate_results(
        [
            _result(ProbeStatus.RED, DoctorImpact.VALIDATION),
            _result(ProbeStatus.RED, DoctorImpact.CONFLICT),
            _result(ProbeStatus.YELLOW, DoctorImpact.ENVIRONMENT),
        ]
    )

    assert summary.status is ProbeStatus.RED
    assert summary.impact is DoctorImpact.CONFLICT
    assert summary.exit_code == 5


def test_from_exit_code_round_trip() -> None:
    """Exit codes map back onto impacts; unknown codes are rejected."""
    assert DoctorImpact.from_exit_code(4) is DoctorImpact.PROVIDER
    with pytest.raises(ValueError):
        DoctorImpact.from_exit_code(6)


def test_sequential_run_aligns_ids_and_records_duration() -> None:
    """Probe metadata wins over whatever the probe returned."""
    context = _context(ProbeExecutorOptions(max_concurrency=1))

    def probe(ctx: ProbeContext) -> ProbeResult:
        assert ctx is context
        return ProbeResult(
            id="other",
            category="tls",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message="fine",
        )

    results = run_probes(
        context,
        [
            ProbeDefinition(id="ports-conflicts", category="ports", run=probe),
            ProbeDefinition(id="volumes-data", category="volumes", run=probe),
        ],
    )

    assert [(result.id, result.category) for result in results] == [
        ("ports-conflicts", "ports"),
        ("volumes-data", "volumes"),
    ]
    assert all(result.duration_ms is not None for result in results)


def test_parallel_run_preserves_order() -> None:
    """Slow probes do not reorder the results."""
    context = _context(ProbeExecutorOptions(max_concurrency=4))

    def slow(ctx: ProbeContext) -> ProbeResult:
        time.sleep(0.01)
        return _result(ProbeStatus.GREEN, DoctorImpact.OK)

    def fast(ctx: ProbeContext) -> ProbeResult:
        return _result(ProbeStatus.YELLOW, DoctorImpact.OK)

    results = run_probes(
        context,
        [
            ProbeDefinition(id="slow", category="env", run=slow),
            ProbeDefinition(id="fast", category="env", run=fast),
        ],
    )

    assert [result.id for result in results] == ["slow", "fast"]


def test_probe_exception_becomes_provider_failure() -> None:
    """A crashing probe is reported instead of aborting the run."""

    def boom(ctx: ProbeContext) -> ProbeResult:
        raise RuntimeError("kaboom")

    result = execute_probe(
        ProbeDefinition(id="services-status", category="services", run=boom),
        _context(ProbeExecutorOptions()),
    )

    assert result.status is ProbeStatus.RED
    assert result.impact is DoctorImpact.PROVIDER
    assert result.warnings == ("unhandled-exception",)
    assert "kaboom" in str(result.data)


def test_engine_run_adds_metadata() -> None:
    """The report carries run metadata merged with caller metadata."""
    engine = DoctorEngine(_context(ProbeExecutorOptions(max_concurrency=2)))

    report = engine.run(
        [
            ProbeDefinition(
                id="env-python",
                category="env",
                run=lambda ctx: _result(ProbeStatus.GREEN, DoctorImpact.OK),
            )
        ],
        metadata={"selected_categories": ["env"]},
    )

    assert report.summary.exit_code == 0
    assert report.metadata is not None
    assert report.metadata["probe_count"] == 1
    assert report.metadata["concurrency"] == 2
    assert report.metadata["categories"] == ["env"]
    assert report.metadata["selected_categories"] == ["env"]


def test_empty_run_is_green() -> None:
    """No probes means nothing failed."""
    report = DoctorEngine(_context(ProbeExecutorOptions())).run([])

    assert report.results == ()
    assert report.summary.status is ProbeStatus.GREEN
    assert report.summary.exit_code == 0


def test_select_probes_by_category() -> None:
    """``only`` narrows the selection and ``exclude`` removes from it."""
    probes = [
        ProbeDefinition(id=f"{category}-probe", category=category, run=lambda ctx: None)  # type: ignore[arg-type,return-value]
        for category in ("env", "config", "ports", "tls")
    ]

    assert [probe.id for probe in select_probes(probes, only={"env", "tls"})] == [
        "env-probe",
        "tls-probe",
    ]
    assert [probe.id for probe in select_probes(probes, exclude={"ports"})] == [
        "env-probe",
        "config-probe",
        "tls-probe",
    ]
    assert len(select_probes(probes)) == 4


def test_report_labels_group_by_status() -> None:
    """Labels identify failing and warning probes by category and id."""
    report = build_report(
        [
            _result(ProbeStatus.RED, DoctorImpact.CONFLICT, probe_id="ports-conflicts"),
            _result(ProbeStatus.YELLOW, DoctorImpact.OK, probe_id="volumes-data"),
        ]
    )

    assert report.labels(ProbeStatus.RED) == ["env:ports-conflicts"]
    assert report.labels(ProbeStatus.YELLOW) == ["env:volumes-data"]
    assert report.labels(ProbeStatus.GREEN) == []


def test_create_probe_context_mirrors_runtime() -> None:
    """Runtime collaborators flow into the probe context."""
    runtime = RuntimeContext(
        config="cfg",  # type: ignore[arg-type]
        logger=SimpleNamespace(),  # type: ignore[arg-type]
        engine="engine",  # type: ignore[arg-type]
        port_probe="probe",  # type: ignore[arg-type]
        provisioning="provisioning",  # type: ignore[arg-type]
    )

    context = create_probe_context(runtime)

    assert context.config == "cfg"
    assert context.engine == "engine"
    assert context.port_probe == "probe"
    assert context.provisioning == "provisioning"
    assert context.options.max_concurrency == ProbeExecutorOptions().max_concurrency


def test_elapsed_ms_uses_perf_counter(monkeypatch: pytest.MonkeyPatch) -> None:
    """Durations are perf_counter deltas in milliseconds."""
    monkeypatch.setattr("milouctl.doctor.engine.time.perf_counter", lambda: 10.25)

    assert _elapsed_ms(10.0) == 250


def test_serialize_report_is_json_safe() -> None:
    """Enums, paths and tuples inside probe data serialise cleanly."""
    result = ProbeResult(
        id="config-descriptor",
        category="config",
        status=ProbeStatus.RED,
        impact=DoctorImpact.VALIDATION,
        message="bad",
        remediation="fix it",
        duration_ms=3,
        data={"path": Path("/opt/milou/.env"), "status": ProbeStatus.RED, "keys": ("A", "B")},
        warnings=("weak:ADMIN_PASSWORD",),
    )

    payload = serialize_report(build_report([result], metadata={"probe_count": 1}))

    assert json.loads(json.dumps(payload)) == payload
    assert payload["summary"] == {
        "status": "red",
        "impact": "validation",
        "impact_code": 2,
        "exit_code": 2,
        "totals": {"green": 0, "yellow": 0, "red": 1},
    }
    entry = payload["results"][0]  # type: ignore[index]
    assert entry["data"] == {"path": "/opt/milou/.env", "status": "red", "keys": ["A", "B"]}
    assert entry["warnings"] == ["weak:ADMIN_PASSWORD"]
