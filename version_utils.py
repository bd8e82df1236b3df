"""Semantic version parsing and ordering for image tags.

Tags such as ``1.2.3``, ``v2.0`` or ``1.2.3-alpha+build.5`` are parsed into
:class:`Version` values.  Anything else (``latest``, ``stable``, digests)
simply has no version, which is a normal outcome rather than an error.
"""

from dataclasses import dataclass, field
from functools import total_ordering
from typing import Optional


@total_ordering
@dataclass(frozen=True)
class Version:
    """An immutable major.minor.patch[-prerelease][+build] version."""
    major: int
    minor: int
    patch: int = 0
    prerelease: Optional[str] = None
    # Build metadata never participates in ordering or equality
    build: Optional[str] = field(default=None, compare=False)

    def __lt__(self, other: 'Version') -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return compare(self, other) < 0

    def __str__(self) -> str:
        return format_version(self)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse(tag: Optional[str]) -> Optional[Version]:
    """Parse a tag into a Version, or return None if it is not one.

    A leading registry path (``repo/name:1.2`` style input cut at the last
    slash) and a single leading ``v`` are stripped.  Build metadata is split
    off first, then the prerelease, before the numeric triple is parsed.
    """
    if tag is None or not tag.strip():
        return None

    tag = tag.strip().split('/')[-1]
    if tag.startswith('v'):
        tag = tag[1:]

    version_part, _, build = tag.partition('+')
    version_part, _, prerelease = version_part.partition('-')

    parts = version_part.split('.')
    if not 2 <= len(parts) <= 3:
        return None
    if not (parts[0].isdecimal() and parts[1].isdecimal()):
        return None

    major = int(parts[0])
    minor = int(parts[1])
    # A patch that is not a number (1.2.x, 1.2.3b) counts as 0
    patch = int(parts[2]) if len(parts) == 3 and parts[2].isdecimal() else 0

    return Version(major, minor, patch, prerelease or None, build or None)


def compare(a: Version, b: Version) -> int:
    """Three-way comparison returning -1, 0 or 1."""
    left = (a.major, a.minor, a.patch)
    right = (b.major, b.minor, b.patch)
    if left != right:
        return -1 if left < right else 1

    if a.prerelease == b.prerelease:
        return 0
    # pre-release < release
    if a.prerelease is None:
        return 1
    if b.prerelease is None:
        return -1
    return -1 if a.prerelease < b.prerelease else 1


def major_upgrade(a: Version, b: Version) -> bool:
    """True when moving between a and b crosses a major version."""
    return a.major != b.major


def format_version(v: Version) -> str:
    result = f"{v.major}.{v.minor}.{v.patch}"
    if v.prerelease:
        result += f"-{v.prerelease}"
    if v.build:
        result += f"+{v.build}"
    return result
