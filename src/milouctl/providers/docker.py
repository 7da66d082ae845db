"""Docker CLI provider implementing :class:`ContainerEngine`."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ExternalToolError, OperationTimeoutError, PrivilegeError
from .base import ContainerState, ExecResult

LOGGER = logging.getLogger(__name__)

_PERMISSION_MARKERS = ("permission denied", "operation not permitted")


@dataclass(slots=True)
class DockerProvider:
    """Drive the docker CLI (and ``docker compose``) for one installation."""

    project_name: str
    compose_file: Path
    env_file: Path
    docker_bin: str = "docker"
    command_timeout: float = 300.0

    # Discovery ----------------------------------------------------------
    def ping(self) -> str:
        """Return the docker server version, raising when the daemon is unreachable."""
        result = self._docker("version", "--format", "{{.Server.Version}}", timeout=15.0)
        return result.stdout.strip()

    def list_containers(self, prefix: str, *, include_stopped: bool = True) -> list[str]:
        """Return container names starting with *prefix*."""
        args = ["ps", "--format", "{{.Names}}", "--filter", f"name={prefix}"]
        if include_stopped:
            args.insert(1, "-a")
        return _filter_prefix(self._docker(*args).stdout, prefix)

    def running_containers(self, prefix: str) -> list[str]:
        """Return running container names starting with *prefix*."""
        return self.list_containers(prefix, include_stopped=False)

    def container_state(self, name: str) -> ContainerState:
        """Return the process and health state for *name*."""
        result = self._docker(
            "inspect",
            "--format",
            "{{.State.Status}};{{if .State.Health}}{{.State.Health.Status}}{{end}}",
            name,
            check=False,
        )
        if result.returncode != 0:
            return ContainerState.missing(name)
        status, _, health = result.stdout.strip().partition(";")
        return ContainerState(name=name, status=status.strip(), health=health.strip())

    def container_logs(self, name: str, *, tail: int = 50) -> str:
        """Return the last *tail* log lines for *name*."""
        result = self._docker("logs", "--tail", str(tail), name, check=False)
        return f"{result.stdout}{result.stderr}"

    def list_volumes(self, prefix: str) -> list[str]:
        """Return volume names starting with *prefix*."""
        result = self._docker("volume", "ls", "--format", "{{.Name}}", "--filter", f"name={prefix}")
        return _filter_prefix(result.stdout, prefix)

    def volume_exists(self, name: str) -> bool:
        """Return ``True`` when the named volume exists."""
        return self._docker("volume", "inspect", name, check=False).returncode == 0

    def volume_usage_kb(self, name: str, *, image: str, timeout: float) -> int:
        """Measure a volume by mounting it read-only in a throwaway container."""
        result = self._docker(
            "run",
            "--rm",
            "-v",
            f"{name}:/data:ro",
            image,
            "du",
            "-sk",
            "/data",
            timeout=timeout,
        )
        first = result.stdout.strip().split()
        if not first or not first[0].isdigit():
            raise ExternalToolError(
                f"Unexpected du output for volume {name}: {result.stdout.strip()!r}",
                remediation=f"Run `docker volume inspect {name}` to check the volume manually.",
            )
        return int(first[0])

    def list_networks(self, prefix: str) -> list[str]:
        """Return network names starting with *prefix*."""
        result = self._docker("network", "ls", "--format", "{{.Name}}", "--filter", f"name={prefix}")
        return _filter_prefix(result.stdout, prefix)

    def port_publishers(self, port: int) -> list[str]:
        """Return container names publishing host *port*."""
        result = self._docker("ps", "--format", "{{.Names}}", "--filter", f"publish={port}")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # Lifecycle ----------------------------------------------------------
    def start_services(self, services: Sequence[str]) -> None:
        """Start compose *services*; docker compose brings them up concurrently."""
        self._compose("up", "-d", "--remove-orphans", *services)

    def stop_services(self, services: Sequence[str]) -> None:
        """Stop compose *services*."""
        self._compose("stop", *services)

    def start_containers(self, names: Sequence[str]) -> None:
        """Start existing containers by name."""
        if names:
            self._docker("start", *names)

    def down(self, *, remove_volumes: bool = False) -> None:
        """Stop and remove the compose project."""
        args = ["down", "--remove-orphans"]
        if remove_volumes:
            args.append("--volumes")
        self._compose(*args)

    def remove_volumes(self, names: Sequence[str]) -> None:
        """Remove the named volumes."""
        if names:
            self._docker("volume", "rm", "--force", *names)

    def run_detached(
        self,
        name: str,
        image: str,
        *,
        env: Mapping[str, str],
        volumes: Mapping[str, str],
    ) -> None:
        """Run an ephemeral detached container named *name*."""
        args: list[str] = ["run", "-d", "--name", name]
        for key, value in env.items():
            args.extend(["-e", f"{key}={value}"])
        for volume, mount in volumes.items():
            args.extend(["-v", f"{volume}:{mount}"])
        args.append(image)
        self._docker(*args)

    def exec(
        self,
        name: str,
        command: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        """Execute *command* inside container *name* without raising on failure."""
        args: list[str] = ["exec"]
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        args.append(name)
        args.extend(command)
        result = self._docker(*args, check=False, timeout=timeout)
        return ExecResult(result.returncode, result.stdout or "", result.stderr or "")

    def remove_container(self, name: str) -> None:
        """Force-remove *name*; a missing container is not an error."""
        self._docker("rm", "-f", name, check=False)

    # ------------------------------------------------------------------
    def _compose(self, *args: str) -> subprocess.CompletedProcess[str]:
        command = [
            "compose",
            "-f",
            str(self.compose_file),
            "--env-file",
            str(self.env_file),
            "-p",
            self.project_name,
            *args,
        ]
        return self._docker(*command)

    def _docker(
        self,
        *args: str,
        check: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.docker_bin, *args]
        subcommand = " ".join(args[:2])
        return self._run_command(
            command,
            check=check,
            error_prefix=f"{self.docker_bin} {subcommand}".rstrip(),
            timeout=timeout if timeout is not None else self.command_timeout,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        timeout: float,
    ) -> subprocess.CompletedProcess[str]:
        LOGGER.debug("Running %s", " ".join(args[:3]))
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise ExternalToolError(
                f"{args[0]} not found: {exc}",
                remediation="Install Docker Engine with the compose plugin and re-run.",
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise OperationTimeoutError(
                f"{error_prefix} timed out after {timeout:.0f}s",
                remediation="Check that the Docker daemon is responsive (`docker info`).",
            ) from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            if any(marker in message.lower() for marker in _PERMISSION_MARKERS):
                raise PrivilegeError(
                    f"{error_prefix} failed (exit {result.returncode}): {message}",
                    remediation="Re-run with sudo or add your user to the 'docker' group.",
                )
            raise ExternalToolError(
                f"{error_prefix} failed (exit {result.returncode}): {message}",
                remediation="Inspect `docker info` and the command output above.",
            )
        return result


def _filter_prefix(output: str, prefix: str) -> list[str]:
    names = [line.strip() for line in output.splitlines() if line.strip()]
    return sorted(name for name in names if name.startswith(prefix))


__all__ = ["DockerProvider"]
