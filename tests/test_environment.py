"""Tests for descriptor generation, validation and persistence."""
from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from milouctl.credentials.bundle import SecretBundle
from milouctl.descriptor import descriptor_mode, parse_descriptor, render_descriptor
from milouctl.environment import (
    REQUIRED_KEYS,
    DescriptorInputs,
    EnvironmentWriter,
    SslMode,
    build_descriptor,
    check_descriptor,
    validate_domain,
    validate_email,
    validate_ssl_mode,
    validate_token,
)
from milouctl.errors import ValidationError
from milouctl.images import select_image_tags
from milouctl.ports import PortAssignment, PortEntry, PortSource

PORTS = PortAssignment(
    (
        PortEntry("http", 80, PortSource.DEFAULT),
        PortEntry("https", 8443, PortSource.ALTERNATE),
        PortEntry("database", 5432, PortSource.DEFAULT),
    )
)


def _inputs(bundle: SecretBundle | None = None, **changes: object) -> DescriptorInputs:
    values: dict[str, object] = {
        "domain": "Milou.Example.com",
        "email": "ops@example.com",
        "bundle": bundle or SecretBundle.generate(),
        "ports": PORTS,
        "generated_at": datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC),
    }
    values.update(changes)
    return DescriptorInputs(**values)  # type: ignore[arg-type]


@pytest.mark.parametrize("domain", ["localhost", "10.0.0.5", "milou.example.com", "a-b.c"])
def test_validate_domain_accepts(domain: str) -> None:
    """Hostnames, IPv4 addresses and localhost are accepted."""
    assert validate_domain(domain) == domain


@pytest.mark.parametrize("domain", ["", "-bad.example.com", "exa mple.com", "bad_domain.com"])
def test_validate_domain_rejects(domain: str) -> None:
    """Malformed names raise with a remediation."""
    with pytest.raises(ValidationError) as excinfo:
        validate_domain(domain)
    assert excinfo.value.remediation


def test_validate_email() -> None:
    """Email addresses need a local part and a dotted domain."""
    assert validate_email(" admin@example.com ") == "admin@example.com"
    with pytest.raises(ValidationError):
        validate_email("admin@localhost")


def test_validate_token() -> None:
    """Tokens are optional but must look like GitHub tokens when present."""
    classic = "ghp_" + "a" * 36
    assert validate_token(None) == ""
    assert validate_token(classic) == classic
    assert validate_token("github_pat_" + "B" * 30).startswith("github_pat_")
    with pytest.raises(ValidationError):
        validate_token("not-a-token")


@pytest.mark.parametrize("prefix", ["ghp_", "gho_", "ghu_", "ghs_", "ghr_"])
def test_validate_token_accepts_every_github_prefix(prefix: str) -> None:
    """Each advertised token family passes validation."""
    token = prefix + "Z9" * 18
    assert validate_token(token) == token


def test_validate_token_rejects_bare_hex() -> None:
    """A legacy 40-character hex token is not an accepted format."""
    with pytest.raises(ValidationError) as excinfo:
        validate_token("0123456789abcdef" * 2 + "01234567")

    assert excinfo.value.remediation is not None
    assert "github_pat_" in excinfo.value.remediation


def test_validate_ssl_mode() -> None:
    """Modes are case-insensitive and unknown values are rejected."""
    assert validate_ssl_mode("Existing") is SslMode.EXISTING
    with pytest.raises(ValidationError, match="Unknown SSL mode"):
        validate_ssl_mode("self")


def test_build_descriptor_contains_required_keys() -> None:
    """The rendered descriptor carries every required key and the port assignment."""
    bundle = SecretBundle.generate()
    descriptor = build_descriptor(_inputs(bundle))
    values = descriptor.as_dict()

    assert all(values.get(key) for key in REQUIRED_KEYS)
    assert values["DOMAIN"] == "milou.example.com"
    assert values["HTTPS_PORT"] == "8443"
    assert values["POSTGRES_PASSWORD"] == bundle.db_password
    assert values["DB_PASSWORD"] == bundle.db_password
    assert values["MILOU_GENERATED_AT"] == "2026-01-02T03:04:05Z"
    assert values["MILOU_BACKEND_TAG"] == "latest"
    assert parse_descriptor(render_descriptor(descriptor)).valid


def test_build_descriptor_is_deterministic_apart_from_timestamp() -> None:
    """Same inputs render the same descriptor except for the generation time."""
    bundle = SecretBundle.generate()
    first = build_descriptor(_inputs(bundle)).as_dict()
    second = build_descriptor(
        _inputs(bundle, generated_at=datetime(2027, 5, 6, tzinfo=UTC))
    ).as_dict()

    first.pop("MILOU_GENERATED_AT")
    second.pop("MILOU_GENERATED_AT")
    assert first == second


def test_build_descriptor_uses_image_selection() -> None:
    """Per-service image tags flow into the descriptor."""
    images = select_image_tags("v1.4.0", {"nginx": "1.3.9"})

    values = build_descriptor(_inputs(images=images)).as_dict()

    assert values["MILOU_BACKEND_TAG"] == "1.4.0"
    assert values["MILOU_NGINX_TAG"] == "1.3.9"


def test_build_descriptor_rejects_incomplete_bundle() -> None:
    """A bundle with gaps is never rendered."""
    with pytest.raises(ValidationError, match="missing credentials"):
        build_descriptor(_inputs(SecretBundle({"db_password": "x" * 40})))


def test_build_descriptor_rejects_unsafe_preserved_value() -> None:
    """A preserved secret that would corrupt the file is a validation error."""
    bundle = SecretBundle.generate()
    values = dict(bundle)
    values["admin_password"] = "abc;rm -rf /"

    with pytest.raises(ValidationError, match="unsafe"):
        build_descriptor(_inputs(SecretBundle(values)))


def test_writer_backs_up_previous_file_and_writes_owner_only(tmp_path: Path) -> None:
    """Overwrites keep a backup and the new file is 0600."""
    env_file = tmp_path / ".env"
    env_file.write_text("DOMAIN=old.example.com\n", encoding="utf-8")
    writer = EnvironmentWriter(env_file, tmp_path / "backups")

    result = writer.write(build_descriptor(_inputs()))

    assert result.backup is not None
    assert result.backup.read_text(encoding="utf-8") == "DOMAIN=old.example.com\n"
    assert descriptor_mode(env_file) == 0o600
    assert check_descriptor(env_file).ok


def test_writer_restores_previous_file_when_verification_fails(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed integrity check restores the backup and keeps the failed copy."""
    env_file = tmp_path / ".env"
    env_file.write_text("DOMAIN=old.example.com\n", encoding="utf-8")
    writer = EnvironmentWriter(env_file, tmp_path / "backups")
    monkeypatch.setattr(EnvironmentWriter, "_verify", lambda self, descriptor: "mismatch")

    with pytest.raises(ValidationError, match="integrity check failed"):
        writer.write(build_descriptor(_inputs()))

    assert env_file.read_text(encoding="utf-8") == "DOMAIN=old.example.com\n"
    failed = list(tmp_path.glob(".env.rollback_*"))
    assert len(failed) == 1
    assert "POSTGRES_PASSWORD" in failed[0].read_text(encoding="utf-8")


def test_check_descriptor_reports_findings(tmp_path: Path) -> None:
    """Missing keys, weak values, issues and loose modes are all reported."""
    env_file = tmp_path / ".env"
    env_file.write_text(
        "DOMAIN=example.com\nADMIN_PASSWORD=short\nHOOK=`id`\n", encoding="utf-8"
    )
    env_file.chmod(0o644)

    check = check_descriptor(env_file)

    assert check.present and not check.ok
    assert "POSTGRES_PASSWORD" in check.missing_keys
    assert check.weak_keys == ("ADMIN_PASSWORD",)
    assert [issue.line_number for issue in check.issues] == [3]
    assert check.to_dict()["mode"] == "0o644"
    assert not check.mode_ok


def test_check_descriptor_for_missing_file(tmp_path: Path) -> None:
    """An absent descriptor is reported as not present."""
    check = check_descriptor(tmp_path / ".env")

    assert not check.present
    assert not check.ok
