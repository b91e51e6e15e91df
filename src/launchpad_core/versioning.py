"""Release tag classification.

Parses release identifiers into :class:`~launchpad_core.schemas.version.Version`
values and formats them back. The accepted grammar is::

    v<major>.<minor>.<patch>[-rc<n>|-hotfix.<n>]

where every number is a non-negative decimal without leading zeros, so that
``format_version(parse_version(s)) == s`` for every accepted ``s``.

Custom versions are never inferred from a tag; they are created only through
:func:`custom_version`, the explicit operator override path.

Example:
    >>> from launchpad_core.versioning import parse_version, format_version
    >>> v = parse_version("v1.2.1-hotfix.1")
    >>> v.variant.value, v.number
    ('hotfix', 1)
    >>> format_version(v)
    'v1.2.1-hotfix.1'
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Literal

import structlog

from launchpad_core.errors import MalformedVersionError
from launchpad_core.schemas.version import Version, VersionVariant

logger = structlog.get_logger(__name__)

_NUM = r"(0|[1-9][0-9]*)"
_TAG_PATTERN = re.compile(
    rf"v{_NUM}\.{_NUM}\.{_NUM}(?:-rc{_NUM}|-hotfix\.{_NUM})?",
    re.ASCII,
)
_NEGATIVE_PATTERN = re.compile(r"(?:^v|\.|-rc|-hotfix\.)-[0-9]")
BumpKind = Literal["major", "minor", "patch", "rc", "hotfix"]


def _diagnose(raw: str) -> str:
    """Explain why ``raw`` does not match the tag grammar."""
    if not raw:
        return "empty identifier"
    if raw != raw.strip():
        return "surrounding whitespace"
    if not raw.startswith("v"):
        return "missing 'v' prefix"
    if _NEGATIVE_PATTERN.search(raw):
        return "negative number"
    core, _, suffix = raw[1:].partition("-")
    parts = core.split(".")
    if len(parts) != 3:
        return f"expected major.minor.patch, got {len(parts)} component(s)"
    for name, part in zip(("major", "minor", "patch"), parts):
        if not part:
            return f"empty {name} component"
        if part.startswith("-") or part.startswith("+"):
            return f"signed {name} component '{part}'"
        if not part.isascii() or not part.isdigit():
            return f"non-numeric {name} component '{part}'"
        if len(part) > 1 and part.startswith("0"):
            return f"leading zero in {name} component '{part}'"
    if suffix.startswith("rc"):
        n = suffix[2:]
        if not n:
            return "empty release-candidate number"
        return f"invalid release-candidate number '{n}'"
    if suffix.startswith("hotfix."):
        n = suffix[len("hotfix.") :]
        if not n:
            return "empty hotfix number"
        return f"invalid hotfix number '{n}'"
    return f"unrecognized suffix '-{suffix}'"


def parse_version(raw: str) -> Version:
    """Parse a release tag into a Version.

    Args:
        raw: Release identifier, e.g. ``"v1.2.0-rc1"``.

    Returns:
        The classified Version.

    Raises:
        MalformedVersionError: If ``raw`` deviates from the grammar in any way.
    """
    match = _TAG_PATTERN.fullmatch(raw) if isinstance(raw, str) else None
    if match is None:
        reason = _diagnose(raw) if isinstance(raw, str) else "not a string"
        logger.warning("version_malformed", raw=raw, reason=reason)
        raise MalformedVersionError(str(raw), reason)

    major, minor, patch, rc_n, hotfix_n = match.groups()
    if rc_n is not None:
        variant, number = VersionVariant.RELEASE_CANDIDATE, int(rc_n)
    elif hotfix_n is not None:
        variant, number = VersionVariant.HOTFIX, int(hotfix_n)
    else:
        variant, number = VersionVariant.STABLE, None

    version = Version(
        major=int(major),
        minor=int(minor),
        patch=int(patch),
        variant=variant,
        number=number,
        raw=raw,
    )
    logger.debug("version_classified", raw=raw, variant=variant.value, number=number)
    return version


def format_version(version: Version) -> str:
    """Render a Version in canonical tag form.

    Custom versions render as their raw value.
    """
    if version.variant == VersionVariant.CUSTOM:
        return version.raw
    text = f"v{version.major}.{version.minor}.{version.patch}"
    if version.variant == VersionVariant.RELEASE_CANDIDATE:
        text += f"-rc{version.number}"
    elif version.variant == VersionVariant.HOTFIX:
        text += f"-hotfix.{version.number}"
    return text


def custom_version(raw: str) -> Version:
    """Create an opaque custom version through the operator override path.

    Raises:
        MalformedVersionError: If ``raw`` is empty or blank.
    """
    if not raw or not raw.strip():
        raise MalformedVersionError(raw, "custom version must be non-empty")
    return Version(variant=VersionVariant.CUSTOM, raw=raw)


def _max_sequence(
    existing: Iterable[str],
    base: tuple[int, int, int],
    variant: VersionVariant,
) -> int:
    highest = 0
    for tag in existing:
        try:
            candidate = parse_version(tag)
        except MalformedVersionError:
            continue
        if candidate.base == base and candidate.variant == variant:
            highest = max(highest, candidate.number or 0)
    return highest


def next_version(
    current: str | None,
    bump: BumpKind,
    existing: Iterable[str] = (),
) -> Version:
    """Compute the next release tag from the latest one.

    With no current tag the first release is ``v1.0.0`` (``v1.0.0-rc1`` for an
    rc, ``v1.0.1-hotfix.1`` for a hotfix). Release candidates target the next
    minor version and hotfixes the next patch; their sequence number continues
    after the highest one already tagged for that base.

    Args:
        current: Latest existing tag, or None for a fresh repository.
        bump: Which component to advance.
        existing: All existing tags, used to number rc/hotfix sequences.

    Raises:
        MalformedVersionError: If ``current`` is not a valid tag.
        ValueError: If ``bump`` is unknown.
    """
    tags = list(existing)
    if current is None:
        first = {
            "major": "v1.0.0",
            "minor": "v1.0.0",
            "patch": "v1.0.0",
            "rc": "v1.0.0-rc1",
            "hotfix": "v1.0.1-hotfix.1",
        }
        if bump not in first:
            raise ValueError(f"Invalid version bump: {bump}")
        return parse_version(first[bump])

    major, minor, patch = parse_version(current).base
    if bump == "major":
        return parse_version(f"v{major + 1}.0.0")
    if bump == "minor":
        return parse_version(f"v{major}.{minor + 1}.0")
    if bump == "patch":
        return parse_version(f"v{major}.{minor}.{patch + 1}")
    if bump == "rc":
        base = (major, minor + 1, 0)
        n = _max_sequence(tags, base, VersionVariant.RELEASE_CANDIDATE) + 1
        return parse_version(f"v{major}.{minor + 1}.0-rc{n}")
    if bump == "hotfix":
        base = (major, minor, patch + 1)
        n = _max_sequence(tags, base, VersionVariant.HOTFIX) + 1
        return parse_version(f"v{major}.{minor}.{patch + 1}-hotfix.{n}")
    raise ValueError(f"Invalid version bump: {bump}")


__all__ = [
    "BumpKind",
    "custom_version",
    "format_version",
    "next_version",
    "parse_version",
]
