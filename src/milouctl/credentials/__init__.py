"""Credential handling: bundle definitions, extraction and backups."""
from __future__ import annotations

from .backups import CredentialBackups
from .bundle import SECRET_NAMES, SECRET_SPECS, CharacterClass, SecretBundle, SecretSpec
from .extractor import extract_secrets, extract_secrets_from_text

__all__ = [
    "CharacterClass",
    "CredentialBackups",
    "SECRET_NAMES",
    "SECRET_SPECS",
    "SecretBundle",
    "SecretSpec",
    "extract_secrets",
    "extract_secrets_from_text",
]
