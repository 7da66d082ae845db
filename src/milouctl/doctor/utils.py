"""Serialisation helpers for doctor reports."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import Enum
from pathlib import Path

from .models import DoctorReport, ProbeResult, ProbeStatus


def _sanitize_payload(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return _sanitize_payload(value.value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [_sanitize_payload(item) for item in value]
    return str(value)


def _serialize_result(result: ProbeResult) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": result.id,
        "category": result.category,
        "status": result.status.value,
        "impact": result.impact.name.lower(),
        "impact_code": result.impact.value,
        "message": result.message,
    }
    if result.remediation:
        payload["remediation"] = result.remediation
    if result.duration_ms is not None:
        payload["duration_ms"] = result.duration_ms
    if result.data:
        payload["data"] = _sanitize_payload(result.data)
    if result.warnings:
        payload["warnings"] = list(result.warnings)
    return payload


def serialize_report(report: DoctorReport) -> dict[str, object]:
    """Convert a doctor report into a JSON-serialisable mapping."""
    summary = report.summary
    return {
        "summary": {
            "status": summary.status.value,
            "impact": summary.impact.name.lower(),
            "impact_code": summary.impact.value,
            "exit_code": summary.exit_code,
            "totals": {status.value: int(summary.totals.get(status, 0)) for status in ProbeStatus},
        },
        "results": [_serialize_result(result) for result in report.results],
        "metadata": _sanitize_payload(report.metadata) if report.metadata else {},
    }
