"""Installation state helpers for milouctl."""
from __future__ import annotations

from .classifier import (
    InstallationState,
    StateClassifier,
    StateReport,
    decide_state,
    describe_state,
    recommended_actions,
)

__all__ = [
    "InstallationState",
    "StateClassifier",
    "StateReport",
    "decide_state",
    "describe_state",
    "recommended_actions",
]
