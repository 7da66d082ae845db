"""Tests for descriptor parsing, rendering and backups."""
from __future__ import annotations

from pathlib import Path

import pytest

from milouctl.descriptor import (
    DESCRIPTOR_MODE,
    EnvironmentDescriptor,
    backup_descriptor,
    descriptor_mode,
    list_descriptor_backups,
    parse_descriptor,
    read_descriptor,
    render_descriptor,
    write_descriptor,
)


def test_parse_strips_quotes_and_skips_comments() -> None:
    """Comments and blank lines are ignored; one pair of quotes is removed."""
    parsed = parse_descriptor("# header\n\nDOMAIN=\"example.com\"\nSSL_MODE='generate'\nEMPTY=\n")

    assert parsed.valid
    assert parsed.as_dict() == {"DOMAIN": "example.com", "SSL_MODE": "generate", "EMPTY": ""}


@pytest.mark.parametrize(
    "line",
    [
        "TOKEN=$(curl evil)",
        "TOKEN=`id`",
        "TOKEN=abc; rm -rf /",
        "TOKEN=abc;sudo reboot",
    ],
)
def test_shell_metacharacters_invalidate_the_whole_file(line: str) -> None:
    """One dangerous line marks the descriptor invalid even if the rest is fine."""
    parsed = parse_descriptor(f"DOMAIN=example.com\n{line}\nADMIN_EMAIL=ops@example.com\n")

    assert not parsed.valid
    assert [issue.line_number for issue in parsed.issues] == [2]
    assert "TOKEN" in parsed.issues[0].reason


def test_duplicate_keys_are_reported_and_first_wins() -> None:
    """A repeated key is an issue; lookups keep the first value."""
    parsed = parse_descriptor("DOMAIN=a.example.com\nDOMAIN=b.example.com\n")

    assert parsed.issues[0].reason == "duplicate key DOMAIN"
    assert parsed.as_dict()["DOMAIN"] == "a.example.com"


def test_non_assignment_lines_are_issues() -> None:
    """Lines that are not KEY=VALUE assignments are reported."""
    parsed = parse_descriptor("just some text\nexport FOO=bar\n")

    assert len(parsed.issues) == 2
    assert parsed.issues[0].to_dict() == {"line": 1, "reason": "not a KEY=VALUE assignment"}


def test_read_descriptor_returns_none_when_missing(tmp_path: Path) -> None:
    """An absent file yields ``None`` rather than an error."""
    assert read_descriptor(tmp_path / ".env") is None


def test_environment_descriptor_rejects_duplicates_and_unsafe_values() -> None:
    """The in-memory descriptor refuses keys or values that would break the file."""
    with pytest.raises(ValueError, match="Duplicate"):
        EnvironmentDescriptor(sections=(("A", (("KEY", "1"),)), ("B", (("KEY", "2"),))))
    with pytest.raises(ValueError, match="unsafe"):
        EnvironmentDescriptor(sections=(("A", (("KEY", "$(id)"),)),))


def test_render_groups_sections_under_comments() -> None:
    """Rendering emits the header, then each section with a comment title."""
    descriptor = EnvironmentDescriptor(
        sections=(("Domain", (("DOMAIN", "example.com"),)), ("Ports", (("HTTP_PORT", "80"),))),
        header=("Generated by milouctl",),
    )

    text = render_descriptor(descriptor)

    assert text == (
        "# Generated by milouctl\n\n# Domain\nDOMAIN=example.com\n\n# Ports\nHTTP_PORT=80\n"
    )
    assert parse_descriptor(text).as_dict() == descriptor.as_dict()


def test_write_descriptor_is_owner_only(tmp_path: Path) -> None:
    """Written descriptors always end up mode 0600 without temp leftovers."""
    path = tmp_path / "install" / ".env"

    write_descriptor(path, "DOMAIN=example.com\n")

    assert path.read_text(encoding="utf-8") == "DOMAIN=example.com\n"
    assert descriptor_mode(path) == DESCRIPTOR_MODE
    assert sorted(item.name for item in path.parent.iterdir()) == [".env"]


def test_backup_descriptor_copies_and_lists_newest_first(tmp_path: Path) -> None:
    """Backups are timestamped copies listed newest first."""
    path = tmp_path / ".env"
    backups = tmp_path / "backups"
    assert backup_descriptor(path, backups) is None

    path.write_text("DOMAIN=one\n", encoding="utf-8")
    first = backup_descriptor(path, backups)
    path.write_text("DOMAIN=two\n", encoding="utf-8")
    second = backup_descriptor(path, backups)

    assert first is not None and second is not None
    assert first.name.startswith("env.") and first.name.endswith(".bak")
    assert list_descriptor_backups(path, backups) == [second, first]
    assert first.read_text(encoding="utf-8") == "DOMAIN=one\n"
    assert descriptor_mode(second) == DESCRIPTOR_MODE
