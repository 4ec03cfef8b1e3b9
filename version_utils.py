"""Version coercion and tag matching utilities for Docker image tags.

Turns the free-form tags published on a registry into comparable semantic
versions and picks the newest tag that belongs to the same family as the
tag a container is currently running.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import semver


DEFAULT_TAG = "latest"

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

# First run of up to three numeric components, not preceded by a digit.
_COERCE_RE = re.compile(
    r'(?:^|[^\d])(\d{1,16})(?:\.(\d{1,16}))?(?:\.(\d{1,16}))?((?:\.\d{1,16})*)(?=$|[^\d])'
)

_PRERELEASE_RE = re.compile(
    r'^[-._]?(alpha|beta|rc|preview|pre|dev|snapshot|nightly|canary|[ab](?=\d))(?![A-Za-z])'
    r'[-._]?([0-9A-Za-z.-]*)',
    re.IGNORECASE,
)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class TagRecord:
    """A tag as published by the registry."""
    name: str
    updated: str


@dataclass(frozen=True)
class ParsedTag:
    """A tag whose name coerced to a semantic version."""
    name: str
    version: semver.Version
    tail: Tuple[int, ...]
    updated: str

    @property
    def is_prerelease(self) -> bool:
        return self.version.prerelease is not None

    @property
    def sort_key(self) -> Tuple[semver.Version, Tuple[int, ...]]:
        return (self.version, self.tail)


# ---------------------------------------------------------------------------
# Internal Helper Functions
# ---------------------------------------------------------------------------

def _prerelease_of(remainder: str) -> Optional[str]:
    """Return a semver-safe prerelease string if remainder starts with a
    prerelease marker, else None.

    Variant qualifiers such as '-alpine' are not prereleases.
    """
    match = _PRERELEASE_RE.match(remainder)
    if not match:
        return None
    label = match.group(1).lower()
    rest = re.sub(r'[^0-9A-Za-z.-]', '', match.group(2)).strip('.-')
    rest = re.sub(r'\.{2,}', '.', rest)
    return f"{label}.{rest}" if rest else label


def parse_timestamp(value: Optional[str]) -> datetime:
    """Parse a registry timestamp; unparseable values sort as the oldest."""
    if not value:
        return _EPOCH
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def coerce_version(tag: str) -> Optional[Tuple[semver.Version, Tuple[int, ...]]]:
    """Extract a semantic version from an arbitrary tag.

    Uses the first run of numeric components in the tag: '7' -> 7.0.0,
    'v1.2' -> 1.2.0, '2.4.1-alpine' -> 2.4.1, '1.2.3.4' -> 1.2.3 with a
    tail of (4,).  Returns (version, tail) or None when the tag contains
    no number at all.
    """
    match = _COERCE_RE.search(tag)
    if not match:
        return None

    major, minor, patch, extra = match.groups()
    tail = tuple(int(part) for part in extra.split('.') if part)
    prerelease = _prerelease_of(tag[match.end():])

    version = semver.Version(
        major=int(major),
        minor=int(minor or 0),
        patch=int(patch or 0),
        prerelease=prerelease,
    )
    return version, tail


def parse_tags(records: Iterable[TagRecord]) -> List[ParsedTag]:
    """Keep the records whose names coerce to a version, in catalog order."""
    parsed = []
    for record in records:
        coerced = coerce_version(record.name)
        if coerced is None:
            continue
        version, tail = coerced
        parsed.append(ParsedTag(record.name, version, tail, record.updated))
    return parsed


def is_rolling_tag(tag: str) -> bool:
    """True for the default tag and tags that begin with it ('latest-alpine')."""
    return tag.startswith(DEFAULT_TAG)


def in_family(name: str, base_tag: str) -> bool:
    """True if name is base_tag itself or a dotted/qualified extension of it."""
    return (name == base_tag
            or name.startswith(base_tag + '.')
            or name.startswith(base_tag + '-'))


def find_latest_matching_tag(records: Iterable[TagRecord], base_tag: str) -> Optional[str]:
    """Select the newest stable tag compatible with base_tag.

    For rolling tags the most recently updated stable tag wins.  Otherwise
    base_tag is a version family ('2.4') and the highest stable version in
    that family wins.  Ties go to the entry seen first in the catalog.

    Returns None when no candidate survives filtering.
    """
    stable = [t for t in parse_tags(records) if not t.is_prerelease]

    if is_rolling_tag(base_tag):
        candidates = stable
        if not candidates:
            return None
        # max() keeps the first of equal keys, so catalog order breaks ties
        return max(candidates, key=lambda t: parse_timestamp(t.updated)).name

    candidates = [t for t in stable if in_family(t.name, base_tag)]
    if not candidates:
        return None
    return max(candidates, key=lambda t: t.sort_key).name


def summarize_catalog(records: Iterable[TagRecord]) -> Dict[str, int]:
    """Count catalog entries by how the matcher classifies them."""
    records = list(records)
    parsed = parse_tags(records)
    prerelease = sum(1 for t in parsed if t.is_prerelease)
    return {
        'total': len(records),
        'versioned': len(parsed),
        'stable': len(parsed) - prerelease,
        'prerelease': prerelease,
    }
