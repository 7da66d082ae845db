"""Tests for TLS material validation and self-signed generation."""
from __future__ import annotations

from pathlib import Path

import pytest
from cryptography import x509

from milouctl.certificates import (
    CertificateAction,
    SelfSignedCertificateProvider,
    inspect_material,
)
from milouctl.environment import SslMode
from milouctl.errors import ValidationError


@pytest.fixture()
def provider() -> SelfSignedCertificateProvider:
    """Return a provider with a small key for speed."""
    return SelfSignedCertificateProvider(days=30, key_size=2048)


def test_generate_writes_valid_pair(tmp_path: Path, provider: SelfSignedCertificateProvider) -> None:
    """Missing material is generated with restrictive key permissions."""
    cert, key = tmp_path / "ssl" / "milou.crt", tmp_path / "ssl" / "milou.key"

    status = provider.ensure("milou.example.com", cert, key)

    assert status.action is CertificateAction.GENERATED
    assert key.stat().st_mode & 0o777 == 0o600
    assert cert.stat().st_mode & 0o777 == 0o644
    not_after, problem = inspect_material(cert, key)
    assert problem is None
    assert not_after is not None and status.not_valid_after is not None
    assert abs((not_after - status.not_valid_after).total_seconds()) < 1
    parsed = x509.load_pem_x509_certificate(cert.read_bytes())
    names = parsed.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert names.get_values_for_type(x509.DNSName) == ["milou.example.com"]


def test_valid_material_is_reused(tmp_path: Path, provider: SelfSignedCertificateProvider) -> None:
    """A second ensure keeps the existing pair."""
    cert, key = tmp_path / "milou.crt", tmp_path / "milou.key"
    provider.ensure("10.0.0.5", cert, key)
    original = cert.read_bytes()

    status = provider.ensure("10.0.0.5", cert, key)

    assert status.action is CertificateAction.REUSED
    assert cert.read_bytes() == original


def test_mismatched_key_is_regenerated(tmp_path: Path, provider: SelfSignedCertificateProvider) -> None:
    """A certificate paired with another key is replaced in generate mode."""
    cert, key = tmp_path / "milou.crt", tmp_path / "milou.key"
    other_cert, other_key = tmp_path / "other.crt", tmp_path / "other.key"
    provider.ensure("milou.example.com", cert, key)
    provider.ensure("milou.example.com", other_cert, other_key)
    key.write_bytes(other_key.read_bytes())

    assert inspect_material(cert, key)[1] == "certificate does not match the private key"
    status = provider.ensure("milou.example.com", cert, key)

    assert status.action is CertificateAction.GENERATED
    assert inspect_material(cert, key)[1] is None


def test_existing_mode_requires_valid_material(
    tmp_path: Path, provider: SelfSignedCertificateProvider
) -> None:
    """Operator-supplied material is never replaced silently."""
    cert, key = tmp_path / "milou.crt", tmp_path / "milou.key"
    cert.write_text("not a certificate", encoding="utf-8")
    key.write_text("not a key", encoding="utf-8")

    with pytest.raises(ValidationError, match="unusable"):
        provider.ensure("milou.example.com", cert, key, mode=SslMode.EXISTING)


@pytest.mark.parametrize("mode", [SslMode.LETSENCRYPT, SslMode.NONE])
def test_external_modes_are_skipped(
    tmp_path: Path, provider: SelfSignedCertificateProvider, mode: SslMode
) -> None:
    """Modes that do not use local material touch nothing."""
    status = provider.ensure("milou.example.com", tmp_path / "a.crt", tmp_path / "a.key", mode=mode)

    assert status.action is CertificateAction.SKIPPED
    assert list(tmp_path.iterdir()) == []


def test_inspect_missing_files(tmp_path: Path) -> None:
    """Missing files are reported as a problem."""
    assert inspect_material(tmp_path / "a.crt", tmp_path / "a.key") == (
        None,
        "certificate or key file is missing",
    )
