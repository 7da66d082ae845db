"""Secret bundle definitions and secure credential generation."""
from __future__ import annotations

import secrets
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType


class CharacterClass(str, Enum):
    """Alphabets used when generating secret values."""

    ALPHANUMERIC = "alphanumeric"
    SAFE = "safe"
    HEX = "hex"

    @property
    def alphabet(self) -> str:
        """Return the characters drawn from for this class."""
        return _ALPHABETS[self]


# Ambiguous glyphs (0/O, 1/l/I) are excluded; the safe class never yields a
# ``$(``, backtick or ``;`` sequence that would invalidate the descriptor.
_ALPHANUMERIC = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnpqrstuvwxyz23456789"
_ALPHABETS: Mapping[CharacterClass, str] = {
    CharacterClass.ALPHANUMERIC: _ALPHANUMERIC,
    CharacterClass.SAFE: _ALPHANUMERIC + "@%^*_+-=",
    CharacterClass.HEX: "0123456789abcdef",
}


@dataclass(frozen=True, slots=True)
class SecretSpec:
    """Generation and lookup rules for one secret in the bundle."""

    name: str
    env_key: str
    character_class: CharacterClass
    length: int
    prefix: str = ""
    aliases: tuple[str, ...] = ()

    @property
    def min_length(self) -> int:
        """Return the minimum total length of a generated value."""
        return len(self.prefix.replace("{project}", "")) + self.length

    def lookup_keys(self) -> tuple[str, ...]:
        """Return every descriptor key this secret may be stored under."""
        return (self.env_key, *self.aliases, self.name)

    def satisfied_by(self, value: str) -> bool:
        """Return ``True`` when *value* meets the generation constraints."""
        if len(value) < self.min_length:
            return False
        alphabet = set(self.character_class.alphabet)
        body = value
        if self.prefix and "{project}" not in self.prefix:
            if not value.startswith(self.prefix):
                return False
            body = value[len(self.prefix) :]
        elif self.prefix:
            body = value[-self.length :]
        return all(char in alphabet for char in body)


SECRET_SPECS: tuple[SecretSpec, ...] = (
    SecretSpec(
        "db_user",
        "POSTGRES_USER",
        CharacterClass.ALPHANUMERIC,
        8,
        prefix="{project}_user_",
        aliases=("DB_USER",),
    ),
    SecretSpec(
        "db_password",
        "POSTGRES_PASSWORD",
        CharacterClass.SAFE,
        32,
        aliases=("DB_PASSWORD",),
    ),
    SecretSpec("cache_password", "REDIS_PASSWORD", CharacterClass.SAFE, 32),
    SecretSpec(
        "queue_user",
        "RABBITMQ_USER",
        CharacterClass.ALPHANUMERIC,
        6,
        prefix="{project}_rabbit_",
        aliases=("RABBITMQ_DEFAULT_USER",),
    ),
    SecretSpec(
        "queue_password",
        "RABBITMQ_PASSWORD",
        CharacterClass.SAFE,
        32,
        aliases=("RABBITMQ_DEFAULT_PASS",),
    ),
    SecretSpec("session_secret", "SESSION_SECRET", CharacterClass.SAFE, 64),
    SecretSpec("encryption_key", "ENCRYPTION_KEY", CharacterClass.HEX, 64),
    SecretSpec("signing_key", "JWT_SECRET", CharacterClass.SAFE, 32),
    SecretSpec("admin_password", "ADMIN_PASSWORD", CharacterClass.SAFE, 16),
)

SECRET_NAMES: tuple[str, ...] = tuple(spec.name for spec in SECRET_SPECS)
SPECS_BY_NAME: Mapping[str, SecretSpec] = MappingProxyType(
    {spec.name: spec for spec in SECRET_SPECS}
)


def generate_secret(spec: SecretSpec, *, project: str = "milou") -> str:
    """Return a fresh value for *spec* drawn from a CSPRNG."""
    alphabet = spec.character_class.alphabet
    body = "".join(secrets.choice(alphabet) for _ in range(spec.length))
    return spec.prefix.replace("{project}", project) + body


class SecretBundle(Mapping[str, str]):
    """Immutable mapping of every required secret name to its value.

    Missing or blank entries are allowed while the bundle is being assembled;
    :meth:`missing` reports them and :meth:`with_generated` fills them.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, str] | None = None) -> None:
        """Normalise *values* onto the fixed secret names."""
        source = dict(values or {})
        unknown = set(source) - set(SECRET_NAMES)
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise KeyError(f"Unknown secret names: {joined}")
        self._values: Mapping[str, str] = MappingProxyType(
            {name: str(source.get(name) or "").strip() for name in SECRET_NAMES}
        )

    def __getitem__(self, key: str) -> str:
        """Return the value stored for *key*."""
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        """Iterate over secret names in canonical order."""
        return iter(self._values)

    def __len__(self) -> int:
        """Return the number of secret names (always the full set)."""
        return len(self._values)

    def __repr__(self) -> str:
        """Return a representation that never leaks secret values."""
        populated = sum(1 for value in self._values.values() if value)
        return f"SecretBundle(populated={populated}/{len(self._values)})"

    def __getattr__(self, name: str) -> str:
        """Expose secrets as attributes, e.g. ``bundle.db_user``."""
        if name in SPECS_BY_NAME:
            return self._values[name]
        raise AttributeError(name)

    def missing(self) -> tuple[str, ...]:
        """Return the names whose values are empty."""
        return tuple(name for name, value in self._values.items() if not value)

    def is_complete(self) -> bool:
        """Return ``True`` when every required secret is populated."""
        return not self.missing()

    def with_generated(
        self,
        names: tuple[str, ...] | None = None,
        *,
        project: str = "milou",
    ) -> SecretBundle:
        """Return a copy where *names* (default: the missing ones) are generated."""
        targets = self.missing() if names is None else names
        values = dict(self._values)
        for name in targets:
            values[name] = generate_secret(SPECS_BY_NAME[name], project=project)
        return SecretBundle(values)

    def weak_entries(self) -> tuple[str, ...]:
        """Return populated names that do not satisfy their generation constraints."""
        return tuple(
            name
            for name, value in self._values.items()
            if value and not SPECS_BY_NAME[name].satisfied_by(value)
        )

    def to_env(self) -> dict[str, str]:
        """Return the bundle keyed by the primary descriptor keys."""
        return {SPECS_BY_NAME[name].env_key: value for name, value in self._values.items()}

    @classmethod
    def generate(cls, *, project: str = "milou") -> SecretBundle:
        """Return a bundle with every secret freshly generated."""
        return cls().with_generated(project=project)


__all__ = [
    "CharacterClass",
    "SECRET_NAMES",
    "SECRET_SPECS",
    "SPECS_BY_NAME",
    "SecretBundle",
    "SecretSpec",
    "generate_secret",
]
