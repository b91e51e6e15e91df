"""Release version value type.

A Version is the structured form of a release tag such as ``v1.2.0-rc1``.
Parsing and formatting live in :mod:`launchpad_core.versioning`; this module
only defines the immutable value and its total order.

Ordering, for equal (major, minor, patch):
    stable > hotfix(n) > rc(n), and within a variant a higher n is later.

Custom versions are opaque operator overrides. They compare only with other
custom versions (by raw string); ordering a custom version against a tagged
one raises TypeError.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class VersionVariant(str, Enum):
    """Pre-release classification of a version.

    Examples:
        >>> VersionVariant.RELEASE_CANDIDATE.value
        'rc'
    """

    STABLE = "stable"
    RELEASE_CANDIDATE = "rc"
    HOTFIX = "hotfix"
    CUSTOM = "custom"


# Rank within one (major, minor, patch) base. Custom is deliberately absent.
_VARIANT_RANK: dict[VersionVariant, int] = {
    VersionVariant.RELEASE_CANDIDATE: 0,
    VersionVariant.HOTFIX: 1,
    VersionVariant.STABLE: 2,
}

_NUMBERED_VARIANTS = frozenset({VersionVariant.RELEASE_CANDIDATE, VersionVariant.HOTFIX})


class Version(BaseModel):
    """Immutable, totally ordered release version.

    Attributes:
        major: Major version component.
        minor: Minor version component.
        patch: Patch version component.
        variant: Pre-release classification.
        number: The ``n`` of ``-rc<n>`` / ``-hotfix.<n>``; None otherwise.
        raw: Canonical string form (the opaque value for custom versions).

    Examples:
        >>> v = Version(major=1, minor=2, patch=0,
        ...             variant=VersionVariant.RELEASE_CANDIDATE, number=1,
        ...             raw="v1.2.0-rc1")
        >>> v.is_prerelease
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    major: int = Field(default=0, ge=0, description="Major version component")
    minor: int = Field(default=0, ge=0, description="Minor version component")
    patch: int = Field(default=0, ge=0, description="Patch version component")
    variant: VersionVariant = Field(..., description="Pre-release classification")
    number: int | None = Field(
        default=None,
        ge=0,
        description="Release-candidate or hotfix sequence number",
    )
    raw: str = Field(..., min_length=1, description="Canonical string form")

    @model_validator(mode="after")
    def validate_number_matches_variant(self) -> Version:
        """Require a sequence number exactly for rc and hotfix variants."""
        if self.variant in _NUMBERED_VARIANTS and self.number is None:
            raise ValueError(f"{self.variant.value} versions require a sequence number")
        if self.variant not in _NUMBERED_VARIANTS and self.number is not None:
            raise ValueError(f"{self.variant.value} versions do not carry a sequence number")
        return self

    @property
    def base(self) -> tuple[int, int, int]:
        """The (major, minor, patch) triple."""
        return (self.major, self.minor, self.patch)

    @property
    def is_custom(self) -> bool:
        """Whether this is an operator-supplied opaque version."""
        return self.variant == VersionVariant.CUSTOM

    @property
    def is_prerelease(self) -> bool:
        """Whether this version is a release candidate."""
        return self.variant == VersionVariant.RELEASE_CANDIDATE

    def sort_key(self) -> tuple[Any, ...]:
        """Key implementing the total order among tagged versions.

        Raises:
            TypeError: For custom versions, which have no tag ordering.
        """
        if self.is_custom:
            raise TypeError(f"custom version {self.raw!r} has no tag ordering")
        return (*self.base, _VARIANT_RANK[self.variant], self.number or 0)

    def _compare_key(self, other: object) -> tuple[Any, Any] | None:
        if not isinstance(other, Version):
            return None
        if self.is_custom and other.is_custom:
            return (self.raw, other.raw)
        if self.is_custom or other.is_custom:
            raise TypeError(
                f"cannot order custom version against tagged version "
                f"({self.raw!r}, {other.raw!r})"
            )
        return (self.sort_key(), other.sort_key())

    def __lt__(self, other: object) -> bool:
        keys = self._compare_key(other)
        if keys is None:
            return NotImplemented
        return bool(keys[0] < keys[1])

    def __le__(self, other: object) -> bool:
        keys = self._compare_key(other)
        if keys is None:
            return NotImplemented
        return bool(keys[0] <= keys[1])

    def __gt__(self, other: object) -> bool:
        keys = self._compare_key(other)
        if keys is None:
            return NotImplemented
        return bool(keys[0] > keys[1])

    def __ge__(self, other: object) -> bool:
        keys = self._compare_key(other)
        if keys is None:
            return NotImplemented
        return bool(keys[0] >= keys[1])

    def __str__(self) -> str:
        return self.raw


__all__ = ["Version", "VersionVariant"]
