"""Best-effort extraction of prior credential values from a descriptor."""
from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from pathlib import Path

from ..descriptor import strip_quotes
from .bundle import SECRET_SPECS

LOGGER = logging.getLogger(__name__)

# Deliberately looser than the descriptor parser: tolerate ``export`` prefixes
# and surrounding whitespace so corrupted files can still be salvaged.
_PERMISSIVE_LINE = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*?)\s*$")


def _lookup_table() -> dict[str, str]:
    table: dict[str, str] = {}
    for spec in SECRET_SPECS:
        for key in spec.lookup_keys():
            table.setdefault(key.upper(), spec.name)
    return table


_LOOKUP = _lookup_table()


def _empty() -> dict[str, str]:
    return {spec.name: "" for spec in SECRET_SPECS}


def _collect(pairs: Iterable[tuple[str, str]]) -> dict[str, str]:
    found = _empty()
    for key, value in pairs:
        name = _LOOKUP.get(key.upper())
        if name is None or found[name]:
            continue
        if value:
            found[name] = value
    return found


def extract_secrets_from_text(text: str) -> dict[str, str]:
    """Return secret values recognised in *text*; unmatched names map to ``""``."""
    pairs: list[tuple[str, str]] = []
    for raw_line in text.splitlines():
        if raw_line.lstrip().startswith("#"):
            continue
        match = _PERMISSIVE_LINE.match(raw_line)
        if match is None:
            continue
        pairs.append((match.group(1), strip_quotes(match.group(2))))
    return _collect(pairs)


def extract_secrets_from_mapping(entries: Mapping[str, str]) -> dict[str, str]:
    """Return secret values recognised among already-parsed descriptor *entries*."""
    return _collect(entries.items())


def extract_secrets(path: Path) -> dict[str, str]:
    """Scan the descriptor at *path* for known secrets.

    Never raises: an unreadable or missing file yields an all-empty mapping.
    """
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        LOGGER.debug("Secret extraction skipped for %s: %s", path, exc)
        return _empty()
    return extract_secrets_from_text(text)


def has_recognised_secret(values: Mapping[str, str]) -> bool:
    """Return ``True`` when at least one extracted secret is non-empty."""
    return any(values.values())


__all__ = [
    "extract_secrets",
    "extract_secrets_from_mapping",
    "extract_secrets_from_text",
    "has_recognised_secret",
]
