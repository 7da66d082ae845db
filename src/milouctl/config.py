"""Configuration loader for milouctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/milouctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``MILOUCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MILOUCTL_HEALTH__TIMEOUT=180
    export MILOUCTL_PORTS__DATABASE__ALTERNATE=5434

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` and passed explicitly into every component.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml


ENV_PREFIX = "MILOUCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortRule:
    """Default and documented alternate port for one logical service."""

    default: int
    alternate: int

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"default": self.default, "alternate": self.alternate}


DEFAULT_PORT_RULES: dict[str, PortRule] = {
    "http": PortRule(80, 8080),
    "https": PortRule(443, 8443),
    "database": PortRule(5432, 5433),
    "cache": PortRule(6379, 6380),
    "queue": PortRule(5672, 5673),
    "backend": PortRule(9999, 10000),
    "monitoring": PortRule(9090, 9091),
}


@dataclass(frozen=True)
class DockerConfig:
    """Container engine binaries and command bounds."""

    binary: str = "docker"
    command_timeout: float = 300.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"binary": self.binary, "command_timeout": self.command_timeout}


@dataclass(frozen=True)
class VolumesConfig:
    """Naming conventions and size thresholds for persistent volumes."""

    prefixes: tuple[str, ...] = ("{project}", "static", "{project}-static")
    empty_threshold_kb: int = 1024
    substantial_threshold_kb: int = 10240
    inspect_timeout: float = 10.0
    inspect_image: str = "alpine:3"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "prefixes": list(self.prefixes),
            "empty_threshold_kb": self.empty_threshold_kb,
            "substantial_threshold_kb": self.substantial_threshold_kb,
            "inspect_timeout": self.inspect_timeout,
            "inspect_image": self.inspect_image,
        }


@dataclass(frozen=True)
class HealthConfig:
    """Bounds for the startup health monitor."""

    timeout: float = 120.0
    interval: float = 3.0
    restart_grace: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timeout": self.timeout,
            "interval": self.interval,
            "restart_grace": self.restart_grace,
        }


@dataclass(frozen=True)
class ProbeConfig:
    """Settings for the credential compatibility probe."""

    image: str = "postgres:15-alpine"
    timeout: float = 30.0
    interval: float = 2.0
    retry_delay: float = 30.0
    max_retries: int = 3

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "image": self.image,
            "timeout": self.timeout,
            "interval": self.interval,
            "retry_delay": self.retry_delay,
            "max_retries": self.max_retries,
        }


@dataclass(frozen=True)
class CredentialsConfig:
    """Credential backup retention."""

    backup_retention: int = 10

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"backup_retention": self.backup_retention}


@dataclass(frozen=True)
class ImagesConfig:
    """Image registry and default tag selection."""

    registry: str = "ghcr.io/milou-sh/milou"
    default_tag: str = "latest"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"registry": self.registry, "default_tag": self.default_tag}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for milouctl."""

    config_file: Path
    project_name: str
    install_dir: Path
    env_file: Path
    compose_file: Path
    backups_dir: Path
    logs_dir: Path
    ssl_dir: Path
    docker: DockerConfig
    ports: Mapping[str, PortRule]
    volumes: VolumesConfig
    health: HealthConfig
    probe: ProbeConfig
    credentials: CredentialsConfig
    images: ImagesConfig

    @property
    def container_prefix(self) -> str:
        """Return the prefix shared by every container of this installation."""
        return f"{self.project_name}-"

    def volume_prefixes(self) -> tuple[str, ...]:
        """Return the volume naming conventions with the project substituted."""
        return tuple(
            prefix.replace("{project}", self.project_name) for prefix in self.volumes.prefixes
        )

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "project_name": self.project_name,
            "install_dir": str(self.install_dir),
            "env_file": str(self.env_file),
            "compose_file": str(self.compose_file),
            "backups_dir": str(self.backups_dir),
            "logs_dir": str(self.logs_dir),
            "ssl_dir": str(self.ssl_dir),
            "docker": self.docker.to_dict(),
            "ports": {name: rule.to_dict() for name, rule in self.ports.items()},
            "volumes": self.volumes.to_dict(),
            "health": self.health.to_dict(),
            "probe": self.probe.to_dict(),
            "credentials": self.credentials.to_dict(),
            "images": self.images.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/milouctl/config.yml",
    "project_name": "milou",
    "install_dir": "/opt/milou",
    "env_file": None,  # derived from install_dir when absent
    "compose_file": None,  # derived from install_dir when absent
    "backups_dir": None,  # derived from install_dir when absent
    "logs_dir": "/var/log/milouctl",
    "ssl_dir": None,  # derived from install_dir when absent
    "docker": {
        "binary": "docker",
        "command_timeout": 300.0,
    },
    "ports": {name: rule.to_dict() for name, rule in DEFAULT_PORT_RULES.items()},
    "volumes": {
        "prefixes": ["{project}", "static", "{project}-static"],
        "empty_threshold_kb": 1024,
        "substantial_threshold_kb": 10240,
        "inspect_timeout": 10.0,
        "inspect_image": "alpine:3",
    },
    "health": {
        "timeout": 120.0,
        "interval": 3.0,
        "restart_grace": 30.0,
    },
    "probe": {
        "image": "postgres:15-alpine",
        "timeout": 30.0,
        "interval": 2.0,
        "retry_delay": 30.0,
        "max_retries": 3,
    },
    "credentials": {
        "backup_retention": 10,
    },
    "images": {
        "registry": "ghcr.io/milou-sh/milou",
        "default_tag": "latest",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    "docker": {"binary", "command_timeout"},
    "volumes": {
        "prefixes",
        "empty_threshold_kb",
        "substantial_threshold_kb",
        "inspect_timeout",
        "inspect_image",
    },
    "health": {"timeout", "interval", "restart_grace"},
    "probe": {"image", "timeout", "interval", "retry_delay", "max_retries"},
    "credentials": {"backup_retention"},
    "images": {"registry", "default_tag"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = copy.deepcopy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    project = raw.get("project_name")
    if not isinstance(project, str) or not project.strip():
        raise ConfigError("project_name must be a non-empty string.")

    ports_map = _as_dict(raw.get("ports"), "ports")
    for name, value in ports_map.items():
        rule_map = _as_dict(value, f"ports.{name}")
        unknown = set(rule_map.keys()) - {"default", "alternate"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown keys for ports.{name}: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    project_name = str(raw.get("project_name", "milou")).strip()
    install_dir = _to_path(raw.get("install_dir"))
    env_file = _derived_path(raw.get("env_file"), install_dir / ".env")
    compose_file = _derived_path(
        raw.get("compose_file"), install_dir / "static" / "docker-compose.yml"
    )
    backups_dir = _derived_path(raw.get("backups_dir"), install_dir / "backups")
    ssl_dir = _derived_path(raw.get("ssl_dir"), install_dir / "ssl")
    logs_dir = _to_path(raw.get("logs_dir"))

    docker_mapping = _as_dict(raw.get("docker"), "docker")
    docker = DockerConfig(
        binary=str(docker_mapping.get("binary", "docker")),
        command_timeout=_expect_positive_float(
            docker_mapping.get("command_timeout"), "docker.command_timeout", default=300.0
        ),
    )

    ports = _build_port_rules(_as_dict(raw.get("ports"), "ports"))

    volumes_mapping = _as_dict(raw.get("volumes"), "volumes")
    prefixes_raw = volumes_mapping.get("prefixes")
    prefixes: tuple[str, ...]
    if prefixes_raw is None:
        prefixes = VolumesConfig().prefixes
    else:
        prefixes = tuple(
            str(item).strip()
            for item in _as_sequence(prefixes_raw, "volumes.prefixes")
            if str(item).strip()
        )
        if not prefixes:
            raise ConfigError("volumes.prefixes must list at least one naming convention.")
    empty_kb = _expect_int(
        volumes_mapping.get("empty_threshold_kb"), "volumes.empty_threshold_kb", default=1024
    )
    substantial_kb = _expect_int(
        volumes_mapping.get("substantial_threshold_kb"),
        "volumes.substantial_threshold_kb",
        default=10240,
    )
    if empty_kb < 0 or substantial_kb < empty_kb:
        raise ConfigError(
            "volumes thresholds must satisfy 0 <= empty_threshold_kb <= substantial_threshold_kb."
        )
    volumes = VolumesConfig(
        prefixes=prefixes,
        empty_threshold_kb=empty_kb,
        substantial_threshold_kb=substantial_kb,
        inspect_timeout=_expect_positive_float(
            volumes_mapping.get("inspect_timeout"), "volumes.inspect_timeout", default=10.0
        ),
        inspect_image=str(volumes_mapping.get("inspect_image", "alpine:3")),
    )

    health_mapping = _as_dict(raw.get("health"), "health")
    health = HealthConfig(
        timeout=_expect_positive_float(
            health_mapping.get("timeout"), "health.timeout", default=120.0
        ),
        interval=_expect_positive_float(
            health_mapping.get("interval"), "health.interval", default=3.0
        ),
        restart_grace=_expect_positive_float(
            health_mapping.get("restart_grace"), "health.restart_grace", default=30.0
        ),
    )

    probe_mapping = _as_dict(raw.get("probe"), "probe")
    max_retries = _expect_int(probe_mapping.get("max_retries"), "probe.max_retries", default=3)
    if max_retries < 0:
        raise ConfigError("probe.max_retries must be non-negative.")
    probe = ProbeConfig(
        image=str(probe_mapping.get("image", "postgres:15-alpine")),
        timeout=_expect_positive_float(probe_mapping.get("timeout"), "probe.timeout", default=30.0),
        interval=_expect_positive_float(
            probe_mapping.get("interval"), "probe.interval", default=2.0
        ),
        retry_delay=_expect_positive_float(
            probe_mapping.get("retry_delay"), "probe.retry_delay", default=30.0
        ),
        max_retries=max_retries,
    )

    credentials_mapping = _as_dict(raw.get("credentials"), "credentials")
    retention = _expect_int(
        credentials_mapping.get("backup_retention"), "credentials.backup_retention", default=10
    )
    if retention < 1:
        raise ConfigError("credentials.backup_retention must be at least 1.")

    images_mapping = _as_dict(raw.get("images"), "images")
    images = ImagesConfig(
        registry=str(images_mapping.get("registry", "ghcr.io/milou-sh/milou")).rstrip("/"),
        default_tag=str(images_mapping.get("default_tag", "latest")),
    )

    return AppConfig(
        config_file=config_file,
        project_name=project_name,
        install_dir=install_dir,
        env_file=env_file,
        compose_file=compose_file,
        backups_dir=backups_dir,
        logs_dir=logs_dir,
        ssl_dir=ssl_dir,
        docker=docker,
        ports=ports,
        volumes=volumes,
        health=health,
        probe=probe,
        credentials=CredentialsConfig(backup_retention=retention),
        images=images,
    )


def _build_port_rules(mapping: Mapping[str, object]) -> dict[str, PortRule]:
    rules: dict[str, PortRule] = {}
    for name, value in mapping.items():
        rule_map = _as_dict(value, f"ports.{name}")
        fallback = DEFAULT_PORT_RULES.get(name)
        if fallback is None and ("default" not in rule_map or "alternate" not in rule_map):
            raise ConfigError(f"ports.{name} must define both 'default' and 'alternate'.")
        default = _expect_port(
            rule_map.get("default"),
            f"ports.{name}.default",
            default=fallback.default if fallback else 0,
        )
        alternate = _expect_port(
            rule_map.get("alternate"),
            f"ports.{name}.alternate",
            default=fallback.alternate if fallback else 0,
        )
        if default == alternate:
            raise ConfigError(f"ports.{name} alternate must differ from its default port.")
        rules[name] = PortRule(default=default, alternate=alternate)

    defaults_seen: dict[int, str] = {}
    for name, rule in rules.items():
        owner = defaults_seen.get(rule.default)
        if owner is not None:
            raise ConfigError(
                f"ports.{name}.default duplicates ports.{owner}.default ({rule.default})."
            )
        defaults_seen[rule.default] = name
    return rules


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    """Turn ``MILOUCTL_A__B=value`` variables into ``{"a": {"b": value}}``."""
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if not key.startswith(ENV_PREFIX) or key in RESERVED_ENV_KEYS:
            continue
        path = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if path:
            _assign_nested(overrides, path, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    node = tree
    for segment in path[:-1]:
        child = node.setdefault(segment, {})
        if not isinstance(child, MutableMapping):
            raise ConfigError(
                f"Environment override {'.'.join(path)} conflicts with scalar {segment}."
            )
        node = cast(MutableMapping[str, object], child)
    node[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, key))
        else:
            target[key] = value


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return value
    raise ConfigError(f"{label} must be a list. Got {type(value).__name__}.")


def _coerce_value(raw: str) -> object:
    # "8080" -> 8080, "true" -> True, "[a, b]" -> list; anything unparsable stays text.
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def _to_path(value: object) -> Path:
    if isinstance(value, (str, Path)):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _derived_path(value: object, fallback: Path) -> Path:
    return fallback if value in (None, "") else _to_path(value)


def _expect_number(value: object, label: str, kind: type[int] | type[float]) -> int | float:
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        if kind is int and isinstance(value, float) and not value.is_integer():
            raise ConfigError(f"{label} must be a whole number. Got {value!r}.")
        return kind(value)
    if isinstance(value, str):
        try:
            return int(value, 0) if kind is int else float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"{label} must be a number. Got {type(value).__name__}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    return int(_expect_number(value, label, int))


def _expect_port(value: object | None, label: str, *, default: int) -> int:
    port = _expect_int(value, label, default=default)
    if not 1 <= port <= 65535:
        raise ConfigError(f"{label} must be between 1 and 65535. Got {port}.")
    return port


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    number = float(_expect_number(value, label, float))
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


def _expect_str(value: object, key: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string. Got {value!r}.")
    return value


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{label} must be a mapping. Got {type(value).__name__}.")
    bad_keys = [key for key in value if not isinstance(key, str)]
    if bad_keys:
        raise ConfigError(f"{label} must use string keys. Got {bad_keys[0]!r}.")
    return dict(value)


__all__ = [
    "AppConfig",
    "ConfigError",
    "CredentialsConfig",
    "DEFAULT_PORT_RULES",
    "DockerConfig",
    "HealthConfig",
    "ImagesConfig",
    "PortRule",
    "ProbeConfig",
    "VolumesConfig",
    "load_config",
]
