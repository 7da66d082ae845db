"""Provider interfaces for milouctl."""
from __future__ import annotations

from .base import ContainerEngine, ContainerState, ExecResult
from .docker import DockerProvider

__all__ = [
    "ContainerEngine",
    "ContainerState",
    "DockerProvider",
    "ExecResult",
]
