"""Selection policy and the site filter."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from directory import SiteRecord

SUITES = ("oldoldstable", "oldstable", "stable", "testing", "unstable", "experimental", "sid")
_CODENAME_RE = re.compile(r"^[a-z][a-z0-9-]*$")


@dataclass(frozen=True, slots=True)
class SelectionPolicy:
    """Immutable criteria for one run."""

    release: str = "stable"
    architecture: str | None = None
    protocols: frozenset[str] = field(default_factory=lambda: frozenset({"https"}))
    nonfree: bool = False
    source_packages: bool = False


def valid_release(release: str) -> bool:
    """Accept a suite name or something shaped like a code name."""
    return release in SUITES or bool(_CODENAME_RE.match(release))


def matches(record: SiteRecord, policy: SelectionPolicy) -> bool:
    """Return whether ``record`` satisfies ``policy``. Read-only."""
    if policy.architecture is not None and not record.serves_all_architectures:
        if record.architectures is None or policy.architecture not in record.architectures:
            return False
    if not policy.protocols.issubset(record.endpoints):
        return False
    if record.releases is not None and policy.release not in record.releases:
        return False
    return True
