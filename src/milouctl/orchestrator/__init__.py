"""Phased startup of the compose services and health monitoring."""
from __future__ import annotations

from .health import HealthMonitor, HealthReport, ServiceHealth
from .services import DEFAULT_SERVICES, ServiceDefinition, Tier
from .startup import StartupOrchestrator, StartupOutcome, StartupReport, evaluate_startup

__all__ = [
    "DEFAULT_SERVICES",
    "HealthMonitor",
    "HealthReport",
    "ServiceDefinition",
    "ServiceHealth",
    "StartupOrchestrator",
    "StartupOutcome",
    "StartupReport",
    "Tier",
    "evaluate_startup",
]
