"""Timestamped backups of the credential subset of the descriptor."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from ..descriptor import DESCRIPTOR_MODE, backup_timestamp, write_descriptor
from ..errors import ProvisioningError
from .bundle import SecretBundle

LOGGER = logging.getLogger(__name__)

BACKUP_PREFIX = "credentials_"
BACKUP_SUFFIX = ".env"


class CredentialBackupError(ProvisioningError):
    """Raised when the credential backup directory cannot be used."""


@dataclass(slots=True)
class CredentialBackups:
    """Write and prune ``credentials_<timestamp>.env`` files."""

    root: Path
    retention: int = 10

    def __post_init__(self) -> None:
        """Normalise the backup root."""
        self.root = self.root.expanduser()

    def ensure_root(self) -> None:
        """Ensure the backup directory exists with owner-only permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o700)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise CredentialBackupError(
                f"Failed to prepare credential backups at {self.root}: {exc}",
                remediation="Check ownership of the backups directory or re-run with sudo.",
            ) from exc

    def save(self, bundle: SecretBundle) -> Path:
        """Persist *bundle* and prune old backups; return the new file."""
        self.ensure_root()
        path = self.root / f"{BACKUP_PREFIX}{backup_timestamp()}{BACKUP_SUFFIX}"
        lines = ["# milouctl credential backup"]
        lines.extend(f"{key}={value}" for key, value in bundle.to_env().items())
        write_descriptor(path, "\n".join(lines) + "\n")
        os.chmod(path, DESCRIPTOR_MODE)
        LOGGER.info("Saved credential backup %s", path)
        self.prune()
        return path

    def existing(self) -> list[Path]:
        """Return existing credential backups, newest first."""
        if not self.root.is_dir():
            return []
        candidates = [
            item
            for item in self.root.glob(f"{BACKUP_PREFIX}*{BACKUP_SUFFIX}")
            if item.is_file()
        ]
        return sorted(candidates, key=lambda item: item.name, reverse=True)

    def prune(self) -> list[Path]:
        """Delete backups beyond the retention count; return what was removed."""
        removed: list[Path] = []
        for stale in self.existing()[max(self.retention, 1) :]:
            try:
                stale.unlink()
            except OSError as exc:
                LOGGER.warning("Could not remove old credential backup %s: %s", stale, exc)
                continue
            removed.append(stale)
        return removed


__all__ = ["CredentialBackupError", "CredentialBackups"]
