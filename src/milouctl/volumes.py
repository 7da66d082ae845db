"""Volume inspection: existence and size class of persistent data volumes."""
from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, replace
from enum import Enum

from .config import AppConfig
from .errors import ProvisioningError
from .providers.base import ContainerEngine

LOGGER = logging.getLogger(__name__)


class VolumeRole(str, Enum):
    """Logical data roles backed by persistent volumes."""

    DATABASE = "database"
    CACHE = "cache"
    QUEUE = "queue"

    @property
    def suffix(self) -> str:
        """Return the volume name suffix used by the compose project."""
        return _ROLE_SUFFIXES[self]


_ROLE_SUFFIXES: Mapping[VolumeRole, str] = {
    VolumeRole.DATABASE: "pgdata",
    VolumeRole.CACHE: "redis_data",
    VolumeRole.QUEUE: "rabbitmq_data",
}


class SizeClass(str, Enum):
    """Coarse size buckets used to decide whether a volume holds real data."""

    EMPTY = "empty"
    SMALL = "small"
    SUBSTANTIAL = "substantial"


@dataclass(frozen=True, slots=True)
class VolumeInfo:
    """Observed state of one role's volume."""

    role: VolumeRole
    name: str
    size_class: SizeClass
    size_kb: int | None
    measured: bool = True
    others: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "role": self.role.value,
            "name": self.name,
            "size_class": self.size_class.value,
            "size_kb": self.size_kb,
            "measured": self.measured,
            "others": list(self.others),
        }


@dataclass(frozen=True, slots=True)
class VolumeSnapshot:
    """Roles with an existing volume, each tagged with a size class."""

    volumes: tuple[VolumeInfo, ...] = ()

    def __iter__(self) -> Iterator[VolumeInfo]:
        """Iterate over observed volumes."""
        return iter(self.volumes)

    def __bool__(self) -> bool:
        """Return ``True`` when any data volume exists."""
        return bool(self.volumes)

    def get(self, role: VolumeRole) -> VolumeInfo | None:
        """Return the volume observed for *role*, if any."""
        for info in self.volumes:
            if info.role is role:
                return info
        return None

    def size_class(self, role: VolumeRole) -> SizeClass | None:
        """Return the size class for *role*, or ``None`` when the volume is absent."""
        info = self.get(role)
        return info.size_class if info else None

    @property
    def has_substantial(self) -> bool:
        """Return ``True`` when any role holds substantial data."""
        return any(info.size_class is SizeClass.SUBSTANTIAL for info in self.volumes)

    @property
    def names(self) -> tuple[str, ...]:
        """Return the names of every observed volume, including convention duplicates."""
        names: list[str] = []
        for info in self.volumes:
            names.append(info.name)
            names.extend(info.others)
        return tuple(names)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"volumes": [info.to_dict() for info in self.volumes]}


def classify_size(size_kb: int, *, empty_kb: int, substantial_kb: int) -> SizeClass:
    """Bucket *size_kb* into a :class:`SizeClass`."""
    if size_kb < empty_kb:
        return SizeClass.EMPTY
    if size_kb > substantial_kb:
        return SizeClass.SUBSTANTIAL
    return SizeClass.SMALL


class VolumeInspector:
    """Query the container engine for data volumes of this installation.

    Results are never cached; every call reflects the engine's current state.
    """

    def __init__(self, config: AppConfig, engine: ContainerEngine) -> None:
        """Store the configuration and engine capability."""
        self._config = config
        self._engine = engine

    def candidate_names(self, role: VolumeRole) -> tuple[str, ...]:
        """Return every volume name *role* may use across naming conventions."""
        return tuple(f"{prefix}_{role.suffix}" for prefix in self._config.volume_prefixes())

    def find(self, role: VolumeRole) -> list[str]:
        """Return the existing volumes for *role*."""
        found: list[str] = []
        for name in self.candidate_names(role):
            if self._engine.volume_exists(name):
                found.append(name)
        return found

    def all_volume_names(self) -> list[str]:
        """Return every existing volume belonging to any data role."""
        names: list[str] = []
        for role in VolumeRole:
            names.extend(self.find(role))
        return names

    def measure(self, role: VolumeRole) -> VolumeInfo | None:
        """Re-measure the volume for *role*; ``None`` when it does not exist."""
        names = self.find(role)
        if not names:
            return None
        best: VolumeInfo | None = None
        for name in names:
            info = self._measure_named(role, name)
            if best is None or _rank(info) > _rank(best):
                best = info
        if best is not None and len(names) > 1:
            best = replace(best, others=tuple(name for name in names if name != best.name))
        return best

    def inspect(self) -> VolumeSnapshot:
        """Return a live :class:`VolumeSnapshot` for all data roles."""
        infos: list[VolumeInfo] = []
        for role in VolumeRole:
            info = self.measure(role)
            if info is not None:
                infos.append(info)
        return VolumeSnapshot(tuple(infos))

    def _measure_named(self, role: VolumeRole, name: str) -> VolumeInfo:
        volumes = self._config.volumes
        try:
            size_kb = self._engine.volume_usage_kb(
                name,
                image=volumes.inspect_image,
                timeout=volumes.inspect_timeout,
            )
        except ProvisioningError as exc:
            # Unknown size is treated as real data so it is never discarded.
            LOGGER.warning("Could not measure volume %s (%s); assuming it holds data.", name, exc)
            return VolumeInfo(role, name, SizeClass.SUBSTANTIAL, None, measured=False)
        size_class = classify_size(
            size_kb,
            empty_kb=volumes.empty_threshold_kb,
            substantial_kb=volumes.substantial_threshold_kb,
        )
        return VolumeInfo(role, name, size_class, size_kb)


_SIZE_RANK: Mapping[SizeClass, int] = {
    SizeClass.EMPTY: 0,
    SizeClass.SMALL: 1,
    SizeClass.SUBSTANTIAL: 2,
}


def _rank(info: VolumeInfo) -> tuple[int, int]:
    return (_SIZE_RANK[info.size_class], info.size_kb or 0)


__all__ = [
    "SizeClass",
    "VolumeInfo",
    "VolumeInspector",
    "VolumeRole",
    "VolumeSnapshot",
    "classify_size",
]
