"""Environment descriptor generation, validation and persistence.

:func:`build_descriptor` is pure: given the same inputs it renders the same
descriptor, apart from the ``MILOU_GENERATED_AT`` timestamp. Persistence goes
through :class:`EnvironmentWriter`, which backs up the previous file, writes the
new one atomically with mode 0600 and re-reads it to confirm the credentials
survived the round trip.
"""
from __future__ import annotations

import ipaddress
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from urllib.parse import quote

from .credentials.bundle import SECRET_SPECS, SecretBundle
from .credentials.extractor import extract_secrets_from_mapping
from .descriptor import (
    DESCRIPTOR_MODE,
    DescriptorIssue,
    EnvironmentDescriptor,
    backup_descriptor,
    backup_timestamp,
    descriptor_mode,
    read_descriptor,
    write_descriptor,
)
from .errors import ValidationError
from .images import ImageSelection, select_image_tags
from .ports import PortAssignment

LOGGER = logging.getLogger(__name__)

_FQDN_PATTERN = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)
_EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
_TOKEN_PATTERNS = (
    re.compile(r"^gh[pousr]_[A-Za-z0-9]{36}$"),
    re.compile(r"^github_pat_[A-Za-z0-9_]{22,255}$"),
)

REQUIRED_KEYS: tuple[str, ...] = (
    "MILOU_GENERATED_AT",
    "SERVER_NAME",
    "DOMAIN",
    "SSL_MODE",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "POSTGRES_DB",
    "DATABASE_URL",
    "REDIS_PASSWORD",
    "REDIS_URL",
    "RABBITMQ_USER",
    "RABBITMQ_PASSWORD",
    "RABBITMQ_URL",
    "SESSION_SECRET",
    "ENCRYPTION_KEY",
    "JWT_SECRET",
    "ADMIN_EMAIL",
    "ADMIN_PASSWORD",
    "HTTP_PORT",
    "HTTPS_PORT",
    "COMPOSE_PROJECT_NAME",
)


class SslMode(str, Enum):
    """How TLS material for the edge proxy is obtained."""

    GENERATE = "generate"
    EXISTING = "existing"
    LETSENCRYPT = "letsencrypt"
    NONE = "none"


# Input validation -----------------------------------------------------------
def validate_domain(value: str) -> str:
    """Validate and normalise a domain (FQDN, IPv4 address or ``localhost``)."""
    normalised = value.strip().lower()
    if not normalised:
        raise ValidationError("Domain must be a non-empty string.", remediation="Pass --domain.")
    if normalised == "localhost":
        return normalised
    try:
        ipaddress.IPv4Address(normalised)
    except ValueError:
        pass
    else:
        return normalised
    if len(normalised) > 253 or not _FQDN_PATTERN.match(normalised):
        raise ValidationError(
            f"Invalid domain '{value}'.",
            remediation="Pass --domain with a hostname such as milou.example.com, an IP, or localhost.",
        )
    return normalised


def validate_email(value: str) -> str:
    """Validate an administrator email address."""
    normalised = value.strip()
    if not _EMAIL_PATTERN.match(normalised):
        raise ValidationError(
            f"Invalid email address '{value}'.",
            remediation="Pass --email with an address such as admin@example.com.",
        )
    return normalised


def validate_token(value: str | None) -> str:
    """Validate an optional GitHub token; an empty value is allowed."""
    token = (value or "").strip()
    if not token:
        return ""
    if not any(pattern.match(token) for pattern in _TOKEN_PATTERNS):
        raise ValidationError(
            "The GitHub token format is not recognised.",
            remediation=(
                "Pass --token with a ghp_/gho_/ghu_/ghs_/ghr_ or github_pat_ token, or omit it."
            ),
        )
    return token


def validate_ssl_mode(value: str | SslMode) -> SslMode:
    """Return *value* as an :class:`SslMode`."""
    if isinstance(value, SslMode):
        return value
    try:
        return SslMode(value.strip().lower())
    except ValueError as exc:
        choices = ", ".join(mode.value for mode in SslMode)
        raise ValidationError(
            f"Unknown SSL mode '{value}'.",
            remediation=f"Pass --ssl-mode with one of: {choices}.",
        ) from exc


# Generation -----------------------------------------------------------------
@dataclass(frozen=True)
class DescriptorInputs:
    """Everything :func:`build_descriptor` needs to render the descriptor."""

    domain: str
    email: str
    bundle: SecretBundle
    ports: PortAssignment
    project: str = "milou"
    token: str = ""
    ssl_mode: SslMode | str = SslMode.GENERATE
    ssl_cert_path: Path | None = None
    ssl_key_path: Path | None = None
    images: ImageSelection = field(default_factory=select_image_tags)
    generated_at: datetime | None = None


def build_descriptor(inputs: DescriptorInputs) -> EnvironmentDescriptor:
    """Render the full descriptor for *inputs*.

    Raises
    ------
    ValidationError
        When the domain, email, token or SSL mode is invalid, or the bundle
        is incomplete.
    """
    domain = validate_domain(inputs.domain)
    email = validate_email(inputs.email)
    token = validate_token(inputs.token)
    ssl_mode = validate_ssl_mode(inputs.ssl_mode)
    bundle = inputs.bundle
    if not bundle.is_complete():
        raise ValidationError(
            "Cannot render descriptor with missing credentials: " + ", ".join(bundle.missing()),
            remediation="Re-run setup so missing credentials are generated.",
        )

    project = inputs.project
    moment = inputs.generated_at or datetime.now(tz=UTC)
    generated_at = moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
    ports = inputs.ports
    cert_path = inputs.ssl_cert_path or Path("ssl") / f"{project}.crt"
    key_path = inputs.ssl_key_path or Path("ssl") / f"{project}.key"

    db_name = f"{project}_database"
    db_host = f"{project}-database"
    cache_host = f"{project}-redis"
    queue_host = f"{project}-rabbitmq"
    db_user = bundle["db_user"]
    db_password = bundle["db_password"]
    cache_password = bundle["cache_password"]
    queue_user = bundle["queue_user"]
    queue_password = bundle["queue_password"]
    https_port = ports.get("https", 443)

    sections: list[tuple[str, tuple[tuple[str, str], ...]]] = [
        ("Metadata", (("MILOU_GENERATED_AT", generated_at),)),
        (
            "Server and SSL",
            (
                ("SERVER_NAME", domain),
                ("DOMAIN", domain),
                ("CORS_ORIGIN", f"https://{domain}"),
                ("SSL_MODE", ssl_mode.value),
                ("SSL_PORT", str(https_port)),
                ("SSL_CERT_FILE", str(cert_path)),
                ("SSL_KEY_FILE", str(key_path)),
            ),
        ),
        (
            "Database",
            (
                ("POSTGRES_USER", db_user),
                ("POSTGRES_PASSWORD", db_password),
                ("POSTGRES_DB", db_name),
                ("DB_HOST", db_host),
                ("DB_PORT", "5432"),
                ("DB_USER", db_user),
                ("DB_PASSWORD", db_password),
                ("DB_NAME", db_name),
                (
                    "DATABASE_URL",
                    f"postgresql://{quote(db_user, safe='')}:{quote(db_password, safe='')}"
                    f"@{db_host}:5432/{db_name}",
                ),
            ),
        ),
        (
            "Cache",
            (
                ("REDIS_PASSWORD", cache_password),
                ("REDIS_HOST", cache_host),
                ("REDIS_PORT", "6379"),
                ("REDIS_URL", f"redis://:{quote(cache_password, safe='')}@{cache_host}:6379/0"),
            ),
        ),
        (
            "Queue",
            (
                ("RABBITMQ_USER", queue_user),
                ("RABBITMQ_PASSWORD", queue_password),
                ("RABBITMQ_DEFAULT_USER", queue_user),
                ("RABBITMQ_DEFAULT_PASS", queue_password),
                ("RABBITMQ_HOST", queue_host),
                ("RABBITMQ_PORT", "5672"),
                (
                    "RABBITMQ_URL",
                    f"amqp://{quote(queue_user, safe='')}:{quote(queue_password, safe='')}"
                    f"@{queue_host}:5672/",
                ),
            ),
        ),
        (
            "Security",
            (
                ("SESSION_SECRET", bundle["session_secret"]),
                ("ENCRYPTION_KEY", bundle["encryption_key"]),
                ("JWT_SECRET", bundle["signing_key"]),
            ),
        ),
        (
            "Admin",
            (
                ("ADMIN_EMAIL", email),
                ("ADMIN_USERNAME", "admin"),
                ("ADMIN_PASSWORD", bundle["admin_password"]),
            ),
        ),
        ("Integrations", (("GITHUB_TOKEN", token),)),
        (
            "Ports",
            (
                ("HTTP_PORT", str(ports.get("http", 80))),
                ("HTTPS_PORT", str(https_port)),
                ("DB_EXTERNAL_PORT", str(ports.get("database", 5432))),
                ("REDIS_EXTERNAL_PORT", str(ports.get("cache", 6379))),
                ("RABBITMQ_EXTERNAL_PORT", str(ports.get("queue", 5672))),
                ("BACKEND_EXTERNAL_PORT", str(ports.get("backend", 9999))),
                ("PROMETHEUS_PORT", str(ports.get("monitoring", 9090))),
            ),
        ),
        (
            "Project",
            (
                ("COMPOSE_PROJECT_NAME", project),
                ("NODE_ENV", "production"),
            ),
        ),
        ("Images", tuple(inputs.images.to_env())),
    ]
    try:
        return EnvironmentDescriptor(
            sections=tuple(sections),
            header=("milouctl environment descriptor", "Contains credentials; keep mode 0600."),
        )
    except ValueError as exc:
        raise ValidationError(
            str(exc),
            remediation="Remove shell metacharacters from preserved values or re-run with --force.",
        ) from exc


# Persistence ----------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class WriteResult:
    """Outcome of :meth:`EnvironmentWriter.write`."""

    path: Path
    backup: Path | None


class EnvironmentWriter:
    """Persist descriptors with backup, atomic replace and integrity check."""

    def __init__(self, env_file: Path, backups_dir: Path) -> None:
        """Store the descriptor location and its backup directory."""
        self._env_file = env_file
        self._backups_dir = backups_dir

    @property
    def path(self) -> Path:
        """Return the descriptor path."""
        return self._env_file

    def write(self, descriptor: EnvironmentDescriptor) -> WriteResult:
        """Write *descriptor*, restoring the previous file if verification fails."""
        backup = backup_descriptor(self._env_file, self._backups_dir)
        if backup is not None:
            LOGGER.info("Backed up descriptor to %s", backup)
        write_descriptor(self._env_file, descriptor)
        problem = self._verify(descriptor)
        if problem is not None:
            self._rollback(backup)
            raise ValidationError(
                f"Descriptor integrity check failed: {problem}",
                remediation=(
                    "Inspect the .rollback_* copy next to the descriptor; the previous "
                    "configuration has been restored."
                ),
            )
        return WriteResult(self._env_file, backup)

    def _verify(self, descriptor: EnvironmentDescriptor) -> str | None:
        parsed = read_descriptor(self._env_file)
        if parsed is None:
            return "descriptor missing after write"
        if not parsed.valid:
            return "; ".join(issue.reason for issue in parsed.issues)
        expected = extract_secrets_from_mapping(descriptor.as_dict())
        actual = extract_secrets_from_mapping(parsed.as_dict())
        mismatched = [name for name, value in expected.items() if actual.get(name) != value]
        if mismatched:
            return "credentials did not round-trip: " + ", ".join(mismatched)
        if descriptor_mode(self._env_file) != DESCRIPTOR_MODE:
            return "descriptor mode is not 0600"
        return None

    def _rollback(self, backup: Path | None) -> None:
        failed = self._env_file.with_name(f"{self._env_file.name}.rollback_{backup_timestamp()}")
        os.replace(self._env_file, failed)
        os.chmod(failed, DESCRIPTOR_MODE)
        LOGGER.error("Kept failed descriptor as %s", failed)
        if backup is not None:
            write_descriptor(self._env_file, backup.read_text(encoding="utf-8"))


# Inspection -----------------------------------------------------------------
@dataclass(frozen=True)
class DescriptorCheck:
    """Validation findings for an existing descriptor."""

    path: Path
    present: bool
    issues: tuple[DescriptorIssue, ...] = ()
    missing_keys: tuple[str, ...] = ()
    weak_keys: tuple[str, ...] = ()
    mode: int | None = None

    @property
    def mode_ok(self) -> bool:
        """Return ``True`` when the file is owner-only."""
        return self.mode == DESCRIPTOR_MODE

    @property
    def ok(self) -> bool:
        """Return ``True`` when the descriptor is present, valid and complete."""
        return self.present and not self.issues and not self.missing_keys and self.mode_ok

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": str(self.path),
            "present": self.present,
            "ok": self.ok,
            "issues": [issue.to_dict() for issue in self.issues],
            "missing_keys": list(self.missing_keys),
            "weak_keys": list(self.weak_keys),
            "mode": oct(self.mode) if self.mode is not None else None,
        }


def check_descriptor(path: Path) -> DescriptorCheck:
    """Validate the descriptor at *path* without modifying it."""
    parsed = read_descriptor(path)
    if parsed is None:
        return DescriptorCheck(path=path, present=False)
    entries = parsed.as_dict()
    missing = tuple(key for key in REQUIRED_KEYS if not entries.get(key))
    bundle = SecretBundle(extract_secrets_from_mapping(entries))
    weak = tuple(
        spec.env_key for spec in SECRET_SPECS if spec.name in set(bundle.weak_entries())
    )
    return DescriptorCheck(
        path=path,
        present=True,
        issues=parsed.issues,
        missing_keys=missing,
        weak_keys=weak,
        mode=descriptor_mode(path),
    )


__all__ = [
    "DescriptorCheck",
    "DescriptorInputs",
    "EnvironmentWriter",
    "REQUIRED_KEYS",
    "SslMode",
    "WriteResult",
    "build_descriptor",
    "check_descriptor",
    "validate_domain",
    "validate_email",
    "validate_ssl_mode",
    "validate_token",
]
