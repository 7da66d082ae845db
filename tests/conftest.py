"""Pytest configuration helpers and shared fakes for the test suite."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from pathlib import Path

import pytest

from milouctl.config import AppConfig, load_config
from milouctl.errors import ExternalToolError
from milouctl.providers.base import ContainerState, ExecResult

ExecHandler = Callable[[str, Sequence[str], Mapping[str, str] | None], ExecResult]


class FakeEngine:
    """In-memory container engine recording every mutating call."""

    def __init__(
        self,
        *,
        project: str = "milou",
        volumes: Mapping[str, int] | None = None,
        containers: Mapping[str, str] | None = None,
        publishers: Mapping[int, Sequence[str]] | None = None,
        service_states: Mapping[str, ContainerState] | None = None,
        logs: Mapping[str, str] | None = None,
        exec_handler: ExecHandler | None = None,
    ) -> None:
        """Seed volumes (name -> KiB), containers (name -> status) and publishers."""
        self.project = project
        self.volumes: dict[str, int] = dict(volumes or {})
        self.containers: dict[str, ContainerState] = {
            name: ContainerState(name, status) for name, status in (containers or {}).items()
        }
        self.publishers: dict[int, list[str]] = {
            port: list(names) for port, names in (publishers or {}).items()
        }
        self.service_states: dict[str, ContainerState] = dict(service_states or {})
        self.logs: dict[str, str] = dict(logs or {})
        self.exec_handler = exec_handler
        self.calls: list[tuple[object, ...]] = []
        self.failures: dict[str, Exception] = {}
        self.unmeasurable: set[str] = set()
        self.version = "27.0.1"

    # helpers -------------------------------------------------------------
    def fail(self, method: str, message: str = "docker failed") -> None:
        """Make *method* raise :class:`ExternalToolError`."""
        self.failures[method] = ExternalToolError(message)

    def _check(self, method: str) -> None:
        exc = self.failures.get(method)
        if exc is not None:
            raise exc

    def calls_named(self, method: str) -> list[tuple[object, ...]]:
        """Return recorded calls for *method*."""
        return [call for call in self.calls if call[0] == method]

    # discovery -----------------------------------------------------------
    def ping(self) -> str:
        self._check("ping")
        return self.version

    def list_containers(self, prefix: str, *, include_stopped: bool = True) -> list[str]:
        self._check("list_containers")
        return sorted(
            name
            for name, state in self.containers.items()
            if name.startswith(prefix) and (include_stopped or state.status == "running")
        )

    def running_containers(self, prefix: str) -> list[str]:
        return self.list_containers(prefix, include_stopped=False)

    def container_state(self, name: str) -> ContainerState:
        self._check("container_state")
        return self.containers.get(name, ContainerState.missing(name))

    def container_logs(self, name: str, *, tail: int = 50) -> str:
        self._check("container_logs")
        return self.logs.get(name, "")

    def list_volumes(self, prefix: str) -> list[str]:
        self._check("list_volumes")
        return sorted(name for name in self.volumes if name.startswith(prefix))

    def volume_exists(self, name: str) -> bool:
        self._check("volume_exists")
        return name in self.volumes

    def volume_usage_kb(self, name: str, *, image: str, timeout: float) -> int:
        self._check("volume_usage_kb")
        if name in self.unmeasurable:
            raise ExternalToolError(f"cannot measure {name}")
        return self.volumes[name]

    def list_networks(self, prefix: str) -> list[str]:
        return []

    def port_publishers(self, port: int) -> list[str]:
        self._check("port_publishers")
        return list(self.publishers.get(port, []))

    # lifecycle -----------------------------------------------------------
    def start_services(self, services: Sequence[str]) -> None:
        self.calls.append(("start_services", tuple(services)))
        self._check("start_services")
        for service in services:
            name = f"{self.project}-{service}"
            state = self.service_states.get(service, ContainerState(name, "running"))
            self.containers[name] = ContainerState(name, state.status, state.health)

    def stop_services(self, services: Sequence[str]) -> None:
        self.calls.append(("stop_services", tuple(services)))
        self._check("stop_services")
        for service in services:
            name = f"{self.project}-{service}"
            if name in self.containers:
                self.containers[name] = ContainerState(name, "exited")

    def start_containers(self, names: Sequence[str]) -> None:
        self.calls.append(("start_containers", tuple(names)))
        self._check("start_containers")
        for name in names:
            self.containers[name] = ContainerState(name, "running")

    def down(self, *, remove_volumes: bool = False) -> None:
        self.calls.append(("down", remove_volumes))
        self._check("down")
        for name in list(self.containers):
            if name.startswith(f"{self.project}-"):
                del self.containers[name]

    def remove_volumes(self, names: Sequence[str]) -> None:
        self.calls.append(("remove_volumes", tuple(names)))
        self._check("remove_volumes")
        for name in names:
            self.volumes.pop(name, None)

    def run_detached(
        self,
        name: str,
        image: str,
        *,
        env: Mapping[str, str],
        volumes: Mapping[str, str],
    ) -> None:
        self.calls.append(("run_detached", name, image, dict(env), dict(volumes)))
        self._check("run_detached")
        self.containers[name] = ContainerState(name, "running")

    def exec(
        self,
        name: str,
        command: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        self.calls.append(("exec", name, tuple(command)))
        self._check("exec")
        if self.exec_handler is not None:
            return self.exec_handler(name, command, env)
        return ExecResult(0, "ok")

    def remove_container(self, name: str) -> None:
        self.calls.append(("remove_container", name))
        self.containers.pop(name, None)


class FakePortProbe:
    """Port probe reporting a fixed set of busy ports."""

    def __init__(self, busy: Iterable[int] = ()) -> None:
        """Record the ports that should appear in use."""
        self.busy = set(busy)

    def in_use(self, port: int) -> bool:
        return port in self.busy


class ManualClock:
    """Monotonic clock that only advances when ``sleep`` is called."""

    def __init__(self) -> None:
        """Start at zero."""
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_config(tmp_path: Path, **overrides: object) -> AppConfig:
    """Return a config rooted under *tmp_path* with fast polling bounds."""
    merged: dict[str, object] = {
        "install_dir": str(tmp_path / "milou"),
        "logs_dir": str(tmp_path / "logs"),
        "health": {"timeout": 30.0, "interval": 1.0, "restart_grace": 5.0},
        "probe": {"timeout": 10.0, "interval": 1.0, "retry_delay": 2.0, "max_retries": 2},
    }
    merged.update(overrides)
    return load_config(config_file=tmp_path / "missing.yml", env={}, overrides=merged)


@pytest.fixture()
def config(tmp_path: Path) -> AppConfig:
    """Provide a config rooted in the test's temporary directory."""
    return make_config(tmp_path)


@pytest.fixture()
def engine() -> FakeEngine:
    """Provide an empty fake container engine."""
    return FakeEngine()


@pytest.fixture()
def clock() -> ManualClock:
    """Provide a manual clock."""
    return ManualClock()
