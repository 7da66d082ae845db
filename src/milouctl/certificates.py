"""TLS material for the edge proxy: validation and a self-signed fallback."""
from __future__ import annotations

import ipaddress
import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Protocol

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .environment import SslMode
from .errors import ValidationError

LOGGER = logging.getLogger(__name__)

CERT_MODE = 0o644
KEY_MODE = 0o600
SELF_SIGNED_DAYS = 365


class CertificateAction(str, Enum):
    """What :meth:`CertificateProvider.ensure` did."""

    REUSED = "reused"
    GENERATED = "generated"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class CertificateStatus:
    """Outcome of ensuring TLS material for a domain."""

    action: CertificateAction
    cert_path: Path | None
    key_path: Path | None
    not_valid_after: datetime | None = None
    detail: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "action": self.action.value,
            "cert_path": str(self.cert_path) if self.cert_path else None,
            "key_path": str(self.key_path) if self.key_path else None,
            "not_valid_after": (
                self.not_valid_after.isoformat() if self.not_valid_after else None
            ),
            "detail": self.detail,
        }


class CertificateProvider(Protocol):
    """Obtain TLS material for the edge proxy."""

    def ensure(
        self,
        domain: str,
        cert_path: Path,
        key_path: Path,
        *,
        mode: SslMode = SslMode.GENERATE,
    ) -> CertificateStatus:
        """Make sure usable material exists at the given paths."""


def inspect_material(cert_path: Path, key_path: Path) -> tuple[datetime | None, str | None]:
    """Return ``(not_valid_after, problem)`` for existing material.

    ``problem`` is ``None`` when the certificate parses, is unexpired and
    matches the key.
    """
    if not cert_path.is_file() or not key_path.is_file():
        return None, "certificate or key file is missing"
    try:
        cert = _load_certificate(cert_path)
        private_key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
    except (OSError, ValueError, TypeError) as exc:
        return None, f"cannot parse TLS material: {exc}"
    not_after = cert.not_valid_after_utc
    if not_after <= datetime.now(tz=UTC):
        return not_after, f"certificate expired on {not_after.isoformat()}"
    if not _public_keys_match(cert, private_key):
        return not_after, "certificate does not match the private key"
    return not_after, None


class SelfSignedCertificateProvider:
    """Reuse valid material or write a fresh self-signed RSA certificate."""

    def __init__(self, *, days: int = SELF_SIGNED_DAYS, key_size: int = 2048) -> None:
        """Store certificate lifetime and key size."""
        self._days = days
        self._key_size = key_size

    def ensure(
        self,
        domain: str,
        cert_path: Path,
        key_path: Path,
        *,
        mode: SslMode = SslMode.GENERATE,
    ) -> CertificateStatus:
        """Ensure TLS material according to *mode*.

        Raises
        ------
        ValidationError
            In ``existing`` mode when the supplied material is missing or invalid.
        """
        if mode in {SslMode.LETSENCRYPT, SslMode.NONE}:
            return CertificateStatus(
                CertificateAction.SKIPPED, None, None, detail=f"ssl mode {mode.value}"
            )

        not_after, problem = inspect_material(cert_path, key_path)
        if problem is None:
            return CertificateStatus(CertificateAction.REUSED, cert_path, key_path, not_after)
        if mode is SslMode.EXISTING:
            raise ValidationError(
                f"Existing TLS material is unusable: {problem}.",
                remediation="Pass --ssl-cert/--ssl-key pointing at a valid pair, or use --ssl-mode generate.",
            )

        LOGGER.info("Generating self-signed certificate for %s (%s).", domain, problem)
        not_after = self._generate(domain, cert_path, key_path)
        return CertificateStatus(
            CertificateAction.GENERATED,
            cert_path,
            key_path,
            not_after,
            detail=problem,
        )

    def _generate(self, domain: str, cert_path: Path, key_path: Path) -> datetime:
        key = rsa.generate_private_key(public_exponent=65537, key_size=self._key_size)
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
        now = datetime.now(tz=UTC)
        not_after = now + timedelta(days=self._days)
        try:
            alt_name: x509.GeneralName = x509.IPAddress(ipaddress.ip_address(domain))
        except ValueError:
            alt_name = x509.DNSName(domain)
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(not_after)
            .add_extension(x509.SubjectAlternativeName([alt_name]), critical=False)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .sign(key, hashes.SHA256())
        )
        key_bytes = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        _write_secure(key_path, key_bytes, KEY_MODE)
        _write_secure(cert_path, cert.public_bytes(serialization.Encoding.PEM), CERT_MODE)
        return not_after


def _write_secure(path: Path, data: bytes, mode: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)
    os.chmod(path, mode)


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _public_keys_match(cert: x509.Certificate, private_key: object) -> bool:
    public_key = getattr(private_key, "public_key", None)
    if public_key is None:
        return False
    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


__all__ = [
    "CertificateAction",
    "CertificateProvider",
    "CertificateStatus",
    "SelfSignedCertificateProvider",
    "inspect_material",
]
