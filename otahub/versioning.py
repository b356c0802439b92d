"""Firmware version helpers.

Versions are semantic versions (``MAJOR.MINOR.PATCH[-pre][+build]``) and are
ordered by semver precedence.  A leading ``v`` is tolerated on input.
"""

from __future__ import annotations

import semver

from otahub.errors import ValidationError


def parse_version(version: str) -> semver.Version:
    """Parse *version* or raise :class:`ValidationError`."""
    text = (version or "").strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    try:
        return semver.Version.parse(text)
    except (ValueError, TypeError):
        raise ValidationError(f"Not a semantic version: {version!r}")


def normalize_version(version: str) -> str:
    return str(parse_version(version))


def is_valid_version(version: str) -> bool:
    try:
        parse_version(version)
    except ValidationError:
        return False
    return True


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1 as *a* is lower than, equal to or higher than *b*."""
    return parse_version(a).compare(parse_version(b))


def is_newer(candidate: str, current: str | None) -> bool:
    """True if *candidate* is strictly newer than *current*.

    An unparseable or missing *current* counts as older than anything.
    """
    if not current or not is_valid_version(current):
        return True
    return compare_versions(candidate, current) > 0


def highest(versions: list[str]) -> str | None:
    valid = [v for v in versions if is_valid_version(v)]
    if not valid:
        return None
    return str(max(parse_version(v) for v in valid))
