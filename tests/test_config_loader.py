"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from milouctl.config import DEFAULT_PORT_RULES, AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "absent.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.project_name == "milou"
    assert config.install_dir == Path("/opt/milou")
    assert config.env_file == Path("/opt/milou/.env")
    assert config.compose_file == Path("/opt/milou/static/docker-compose.yml")
    assert config.backups_dir == Path("/opt/milou/backups")
    assert config.ssl_dir == Path("/opt/milou/ssl")
    assert config.container_prefix == "milou-"
    assert dict(config.ports) == DEFAULT_PORT_RULES
    assert config.health.timeout == 120.0
    assert config.probe.max_retries == 3


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file and derived paths follow install_dir."""
    cfg = tmp_path / "milouctl.yml"
    cfg.write_text(
        "install_dir: {root}\n"
        "project_name: acme\n"
        "health:\n"
        "  timeout: 60\n"
        "ports:\n"
        "  http:\n"
        "    alternate: 8181\n".format(root=tmp_path / "install")
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.env_file == tmp_path / "install" / ".env"
    assert config.project_name == "acme"
    assert config.health.timeout == 60.0
    assert config.ports["http"].default == 80
    assert config.ports["http"].alternate == 8181
    assert config.volume_prefixes() == ("acme", "static", "acme-static")


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "milouctl.yml"
    cfg.write_text("health:\n  timeout: 60\n")
    env = {
        "MILOUCTL_HEALTH__TIMEOUT": "180",
        "MILOUCTL_PORTS__DATABASE__ALTERNATE": "5434",
        "MILOUCTL_ENV_FILE": str(tmp_path / "custom.env"),
        "MILOUCTL_PROBE__MAX_RETRIES": "0",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.health.timeout == 180.0
    assert config.ports["database"].alternate == 5434
    assert config.env_file == tmp_path / "custom.env"
    assert config.probe.max_retries == 0


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """The MILOUCTL_CONFIG_FILE variable selects an alternate config file."""
    cfg = tmp_path / "override.yml"
    cfg.write_text("project_name: other\n")

    config = load_config(env={"MILOUCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.project_name == "other"


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A YAML document that is not a mapping raises ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_section_key_raises(tmp_path: Path) -> None:
    """Extra keys inside a known section are rejected."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("health:\n  deadline: 5\n")

    with pytest.raises(ConfigError, match="Unknown health configuration keys"):
        load_config(config_file=cfg, env={})


def test_duplicate_default_ports_raise(tmp_path: Path) -> None:
    """Two services may not share a default port."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("ports:\n  backend:\n    default: 80\n    alternate: 8081\n")

    with pytest.raises(ConfigError, match="duplicates"):
        load_config(config_file=cfg, env={})


def test_custom_port_requires_both_values(tmp_path: Path) -> None:
    """A new logical port must declare its default and alternate."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("ports:\n  metrics:\n    default: 9100\n")

    with pytest.raises(ConfigError, match="must define both"):
        load_config(config_file=cfg, env={})


def test_volume_thresholds_are_ordered(tmp_path: Path) -> None:
    """The substantial threshold may not be below the empty threshold."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("volumes:\n  empty_threshold_kb: 500\n  substantial_threshold_kb: 100\n")

    with pytest.raises(ConfigError, match="thresholds"):
        load_config(config_file=cfg, env={})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """to_dict renders paths as strings and nests sections."""
    config = load_config(config_file=tmp_path / "absent.yml", env={})

    data = config.to_dict()

    assert data["install_dir"] == "/opt/milou"
    assert data["ports"]["http"] == {"default": 80, "alternate": 8080}  # type: ignore[index]
    assert data["docker"] == {"binary": "docker", "command_timeout": 300.0}


@pytest.mark.parametrize(
    ("key", "value", "message"),
    [
        ("MILOUCTL_VOLUMES__EMPTY_THRESHOLD_KB", "1.5", "whole number"),
        ("MILOUCTL_HEALTH__TIMEOUT", "true", "boolean"),
        ("MILOUCTL_HEALTH__INTERVAL", "0", "greater than zero"),
        ("MILOUCTL_PORTS__HTTP__DEFAULT", "70000", "between 1 and 65535"),
        ("MILOUCTL_VOLUMES__PREFIXES", "milou_", "must be a list"),
    ],
)
def test_env_values_are_type_checked(
    tmp_path: Path, key: str, value: str, message: str
) -> None:
    """Environment values are coerced with YAML and then validated."""
    with pytest.raises(ConfigError, match=message):
        load_config(config_file=tmp_path / "missing.yml", env={key: value})


def test_integer_strings_accept_base_prefixes(tmp_path: Path) -> None:
    """Quoted integers in the YAML file may use 0x/0o prefixes."""
    cfg = tmp_path / "milouctl.yml"
    cfg.write_text("credentials:\n  backup_retention: '0x10'\n")

    config = load_config(config_file=cfg, env={})

    assert config.credentials.backup_retention == 16
