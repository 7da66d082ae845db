"""Per-service image tag selection."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from packaging.version import InvalidVersion, Version

from .errors import ValidationError

IMAGE_SERVICES: tuple[str, ...] = ("database", "backend", "frontend", "engine", "nginx")
CHANNEL_TAGS = frozenset({"latest", "stable"})
REGISTRY_ENV_KEY = "MILOU_IMAGE_REGISTRY"


@dataclass(frozen=True, slots=True)
class ImageSelection:
    """Resolved tag for every published service image."""

    tags: tuple[tuple[str, str], ...]
    registry: str = ""

    def as_dict(self) -> dict[str, str]:
        """Return the selection as a plain mapping."""
        return dict(self.tags)

    def env_key(self, service: str) -> str:
        """Return the descriptor key storing the tag for *service*."""
        return f"MILOU_{service.upper()}_TAG"

    def to_env(self) -> list[tuple[str, str]]:
        """Return ``(key, tag)`` pairs in service order, led by the registry when set."""
        pairs = [(self.env_key(service), tag) for service, tag in self.tags]
        if self.registry:
            pairs.insert(0, (REGISTRY_ENV_KEY, self.registry))
        return pairs


def normalise_tag(value: str) -> str:
    """Validate *value* and return the canonical tag.

    Channel tags are accepted as-is; anything else must parse as a version.
    A leading ``v`` is dropped so ``v1.2.0`` and ``1.2.0`` select the same image.
    """
    tag = value.strip()
    if not tag:
        raise ValidationError(
            "Image tag must not be empty.",
            remediation="Pass --version-tag latest or a release such as 1.4.0.",
        )
    if tag.lower() in CHANNEL_TAGS:
        return tag.lower()
    if tag[0] in "vV":
        tag = tag[1:]
    try:
        Version(tag)
    except InvalidVersion as exc:
        raise ValidationError(
            f"Invalid image tag '{value}'.",
            remediation="Use 'latest', 'stable' or a release version such as 1.4.0.",
        ) from exc
    return tag


def select_image_tags(
    version: str | None = None,
    overrides: Mapping[str, str] | None = None,
    *,
    default_tag: str = "latest",
    registry: str = "",
) -> ImageSelection:
    """Return per-service tags from a single *version* plus per-service *overrides*.

    *registry* is the image repository prefix recorded alongside the tags.
    """
    base = normalise_tag(version or default_tag)
    overrides = dict(overrides or {})
    unknown = set(overrides) - set(IMAGE_SERVICES)
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ValidationError(
            f"Unknown image service(s): {joined}.",
            remediation=f"Choose from: {', '.join(IMAGE_SERVICES)}.",
        )
    tags = tuple(
        (service, normalise_tag(overrides[service]) if service in overrides else base)
        for service in IMAGE_SERVICES
    )
    return ImageSelection(tags, registry.strip().rstrip("/"))


__all__ = [
    "IMAGE_SERVICES",
    "REGISTRY_ENV_KEY",
    "ImageSelection",
    "normalise_tag",
    "select_image_tags",
]
