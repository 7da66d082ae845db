"""Tests for secret bundles, extraction and credential backups."""
from __future__ import annotations

from pathlib import Path

import pytest

from milouctl.credentials.backups import CredentialBackups
from milouctl.credentials.bundle import SECRET_NAMES, SPECS_BY_NAME, SecretBundle
from milouctl.credentials.extractor import (
    extract_secrets,
    extract_secrets_from_text,
    has_recognised_secret,
)
from milouctl.descriptor import DANGEROUS_PATTERN, descriptor_mode


def test_generated_bundle_is_complete_and_well_formed() -> None:
    """Every secret is generated and meets its own constraints."""
    bundle = SecretBundle.generate(project="acme")

    assert bundle.is_complete()
    assert bundle.weak_entries() == ()
    assert bundle.db_user.startswith("acme_user_")
    assert len(bundle.db_user) == len("acme_user_") + 8
    assert bundle.queue_user.startswith("acme_rabbit_")
    assert len(bundle.encryption_key) == 64
    assert set(bundle.encryption_key) <= set("0123456789abcdef")
    assert len(bundle.session_secret) == 64
    for value in bundle.values():
        assert DANGEROUS_PATTERN.search(value) is None


def test_generated_bundles_differ() -> None:
    """Two generations never share a password."""
    first = SecretBundle.generate()
    second = SecretBundle.generate()

    assert first.db_password != second.db_password


def test_with_generated_only_fills_gaps() -> None:
    """Populated values are preserved while missing ones are generated."""
    partial = SecretBundle({"db_user": "legacy_user", "db_password": "p" * 40})

    assert set(partial.missing()) == set(SECRET_NAMES) - {"db_user", "db_password"}
    filled = partial.with_generated()

    assert filled.db_user == "legacy_user"
    assert filled.db_password == "p" * 40
    assert filled.is_complete()


def test_weak_values_are_reported_not_rejected() -> None:
    """Short or off-alphabet values are flagged as weak."""
    bundle = SecretBundle({"admin_password": "short", "encryption_key": "Z" * 64})

    assert set(bundle.weak_entries()) == {"admin_password", "encryption_key"}


def test_unknown_names_raise_key_error() -> None:
    """Only the fixed secret names are accepted."""
    with pytest.raises(KeyError):
        SecretBundle({"api_token": "x"})


def test_repr_does_not_leak_values() -> None:
    """The representation shows counts only."""
    bundle = SecretBundle({"db_password": "hunter2-hunter2"})

    assert "hunter2" not in repr(bundle)
    assert repr(bundle) == f"SecretBundle(populated=1/{len(SECRET_NAMES)})"


def test_to_env_uses_primary_keys() -> None:
    """Descriptor keys follow the canonical spellings."""
    env = SecretBundle.generate().to_env()

    assert set(env) == {spec.env_key for spec in SPECS_BY_NAME.values()}
    assert "JWT_SECRET" in env and "POSTGRES_USER" in env


def test_extractor_tolerates_exports_quotes_and_aliases() -> None:
    """Loose syntax and alias keys are still recognised."""
    text = (
        "# old install\n"
        "export POSTGRES_USER='milou_user_abc'\n"
        "DB_PASSWORD = \"secret-value\"\n"
        "RABBITMQ_DEFAULT_PASS=queuepw\n"
        "garbage line $(whoami)\n"
    )

    found = extract_secrets_from_text(text)

    assert found["db_user"] == "milou_user_abc"
    assert found["db_password"] == "secret-value"
    assert found["queue_password"] == "queuepw"
    assert found["admin_password"] == ""
    assert set(found) == set(SECRET_NAMES)


def test_extractor_prefers_first_non_empty_value() -> None:
    """Empty assignments do not mask a later populated alias."""
    found = extract_secrets_from_text("POSTGRES_PASSWORD=\nDB_PASSWORD=fallback\n")

    assert found["db_password"] == "fallback"


def test_extract_secrets_never_raises_for_missing_file(tmp_path: Path) -> None:
    """A missing descriptor yields an all-empty mapping."""
    found = extract_secrets(tmp_path / "absent.env")

    assert not has_recognised_secret(found)


def test_credential_backups_save_and_prune(tmp_path: Path) -> None:
    """Backups are owner-only and pruned to the retention count."""
    backups = CredentialBackups(tmp_path / "credentials", retention=2)
    bundle = SecretBundle.generate()

    saved = [backups.save(bundle) for _ in range(3)]

    existing = backups.existing()
    assert existing == [saved[2], saved[1]]
    assert not saved[0].exists()
    assert descriptor_mode(saved[2]) == 0o600
    assert extract_secrets(saved[2]) == dict(bundle)
