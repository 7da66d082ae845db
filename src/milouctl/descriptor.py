"""Parser, validator and writer for the flat ``KEY=VALUE`` environment descriptor.

The descriptor is the single long-lived artifact owned by milouctl. Validity is
all-or-nothing: one line carrying a shell metacharacter pattern invalidates the
whole file regardless of how complete the remaining content is.
"""
from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

LINE_PATTERN = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)=(.*)$")
DANGEROUS_PATTERN = re.compile(r"\$\(|`|;\s*rm|;\s*sudo")
DESCRIPTOR_MODE = 0o600


@dataclass(frozen=True)
class DescriptorIssue:
    """A single syntactic problem found while parsing a descriptor."""

    line_number: int
    line: str
    reason: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"line": self.line_number, "reason": self.reason}


@dataclass(frozen=True)
class ParsedDescriptor:
    """Typed view of a descriptor file."""

    entries: tuple[tuple[str, str], ...]
    issues: tuple[DescriptorIssue, ...]

    @property
    def valid(self) -> bool:
        """Return ``True`` when no issue was found."""
        return not self.issues

    def as_dict(self) -> dict[str, str]:
        """Return the entries as a mapping where the first occurrence wins."""
        result: dict[str, str] = {}
        for key, value in self.entries:
            result.setdefault(key, value)
        return result


@dataclass(frozen=True)
class EnvironmentDescriptor:
    """Ordered key/value mapping rendered to the descriptor file.

    ``sections`` preserves the grouping used for comments when rendering; the
    flattened :meth:`items` view enforces one value per key.
    """

    sections: tuple[tuple[str, tuple[tuple[str, str], ...]], ...]
    header: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        """Reject duplicate keys and values that would invalidate the file."""
        seen: set[str] = set()
        for _, pairs in self.sections:
            for key, value in pairs:
                if not LINE_PATTERN.match(f"{key}="):
                    raise ValueError(f"Invalid descriptor key {key!r}.")
                if key in seen:
                    raise ValueError(f"Duplicate descriptor key {key!r}.")
                if "\n" in value or DANGEROUS_PATTERN.search(value):
                    raise ValueError(f"Descriptor value for {key} contains unsafe characters.")
                seen.add(key)

    def items(self) -> Iterator[tuple[str, str]]:
        """Iterate over key/value pairs in order."""
        for _, pairs in self.sections:
            yield from pairs

    def as_dict(self) -> dict[str, str]:
        """Return the descriptor as a plain ordered mapping."""
        return dict(self.items())

    def get(self, key: str, default: str | None = None) -> str | None:
        """Return the value stored for *key*."""
        return self.as_dict().get(key, default)


def parse_descriptor(text: str) -> ParsedDescriptor:
    """Parse descriptor *text* into entries and structured issues."""
    entries: list[tuple[str, str]] = []
    issues: list[DescriptorIssue] = []
    seen: set[str] = set()
    for number, raw_line in enumerate(text.splitlines(), start=1):
        stripped = raw_line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        match = LINE_PATTERN.match(raw_line)
        if match is None:
            issues.append(DescriptorIssue(number, raw_line, "not a KEY=VALUE assignment"))
            continue
        key, raw_value = match.group(1), match.group(2)
        if DANGEROUS_PATTERN.search(raw_value):
            issues.append(
                DescriptorIssue(number, raw_line, f"{key} contains a shell metacharacter pattern")
            )
        if key in seen:
            issues.append(DescriptorIssue(number, raw_line, f"duplicate key {key}"))
        seen.add(key)
        entries.append((key, strip_quotes(raw_value.strip())))
    return ParsedDescriptor(entries=tuple(entries), issues=tuple(issues))


def strip_quotes(value: str) -> str:
    """Remove one pair of matching surrounding quotes from *value*."""
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


def read_descriptor(path: Path) -> ParsedDescriptor | None:
    """Return the parsed descriptor at *path*, or ``None`` when absent/unreadable."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return None
    except OSError:
        return None
    return parse_descriptor(text)


def render_descriptor(descriptor: EnvironmentDescriptor) -> str:
    """Render *descriptor* into the flat file format."""
    lines: list[str] = [f"# {line}" if line else "#" for line in descriptor.header]
    for title, pairs in descriptor.sections:
        if lines:
            lines.append("")
        lines.append(f"# {title}")
        lines.extend(f"{key}={value}" for key, value in pairs)
    return "\n".join(lines) + "\n"


def write_descriptor(path: Path, content: str | EnvironmentDescriptor) -> None:
    """Atomically write descriptor *content* to *path* with owner-only permissions."""
    text = content if isinstance(content, str) else render_descriptor(content)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        os.fchmod(tmp_fd, DESCRIPTOR_MODE)
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_path, path)
        os.chmod(path, DESCRIPTOR_MODE)
    finally:
        tmp_path.unlink(missing_ok=True)


def backup_timestamp(moment: datetime | None = None) -> str:
    """Return the compact UTC timestamp used in backup file names."""
    current = moment or datetime.now(tz=UTC)
    return current.strftime("%Y%m%d_%H%M%S_%f")


def backup_descriptor(path: Path, backups_dir: Path) -> Path | None:
    """Copy *path* into *backups_dir* under a timestamped name before overwrite."""
    if not path.exists():
        return None
    backups_dir.mkdir(parents=True, exist_ok=True)
    backup_path = backups_dir / f"{path.name.lstrip('.') or 'env'}.{backup_timestamp()}.bak"
    backup_path.write_bytes(path.read_bytes())
    backup_path.chmod(DESCRIPTOR_MODE)
    return backup_path


def list_descriptor_backups(path: Path, backups_dir: Path) -> list[Path]:
    """Return descriptor backups for *path*, newest first."""
    if not backups_dir.is_dir():
        return []
    stem = path.name.lstrip(".") or "env"
    candidates = [item for item in backups_dir.glob(f"{stem}.*.bak") if item.is_file()]
    return sorted(candidates, key=lambda item: item.name, reverse=True)


def descriptor_mode(path: Path) -> int | None:
    """Return the permission bits of *path*, or ``None`` when missing."""
    try:
        return path.stat().st_mode & 0o777
    except FileNotFoundError:
        return None


__all__ = [
    "DANGEROUS_PATTERN",
    "DESCRIPTOR_MODE",
    "DescriptorIssue",
    "EnvironmentDescriptor",
    "ParsedDescriptor",
    "backup_descriptor",
    "backup_timestamp",
    "descriptor_mode",
    "list_descriptor_backups",
    "parse_descriptor",
    "read_descriptor",
    "render_descriptor",
    "strip_quotes",
    "write_descriptor",
]
