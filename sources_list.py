"""Render ranked mirrors as an apt sources.list."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from criteria import SelectionPolicy
from directory import Endpoint, SiteRecord
from prober import WORST_SCORE

APT_SCHEMES = ("https", "http", "ftp")
NONFREE_COMPONENTS = ("contrib", "non-free", "non-free-firmware")


@dataclass(slots=True)
class RenderOptions:
    max_mirrors: int = 3
    include_unreachable: bool = False


def pick_endpoint(record: SiteRecord, protocols: frozenset[str]) -> Endpoint | None:
    """Endpoint apt should use: a required protocol first, then any http(s)."""
    for scheme in APT_SCHEMES:
        if scheme in protocols and scheme in record.endpoints:
            return record.endpoints[scheme]
    for scheme in ("https", "http"):
        if scheme in record.endpoints:
            return record.endpoints[scheme]
    return None


def select(
    ranked: list[tuple[SiteRecord, int]], policy: SelectionPolicy, options: RenderOptions
) -> list[tuple[SiteRecord, int, Endpoint]]:
    """Take up to ``max_mirrors`` usable sites from the ranked list."""
    chosen: list[tuple[SiteRecord, int, Endpoint]] = []
    for record, score in ranked:
        if len(chosen) >= options.max_mirrors:
            break
        if score >= WORST_SCORE and not options.include_unreachable:
            continue
        endpoint = pick_endpoint(record, policy.protocols)
        if endpoint is None:
            logging.warning("No apt-usable endpoint for %s; skipping", record.host)
            continue
        chosen.append((record, score, endpoint))
    return chosen


def render(ranked: list[tuple[SiteRecord, int]], policy: SelectionPolicy, options: RenderOptions) -> str:
    components = " ".join(("main",) + (NONFREE_COMPONENTS if policy.nonfree else ()))
    lines = [
        "# Generated by mirror-selector on " + time.strftime("%Y-%m-%d %H:%M:%S %Z"),
        f"# release={policy.release} architecture={policy.architecture or 'any'} "
        f"protocols={','.join(sorted(policy.protocols))}",
    ]
    for record, score, endpoint in select(ranked, policy, options):
        shown = "unreachable" if score >= WORST_SCORE else f"{score}ms"
        lines.append("")
        lines.append(f"# {record.host} ({record.country or 'unknown country'}) score={shown}")
        lines.append(f"deb {endpoint.url} {policy.release} {components}")
        if policy.source_packages:
            lines.append(f"deb-src {endpoint.url} {policy.release} {components}")
    return "\n".join(lines) + "\n"


def write_sources_list(
    path: Path,
    ranked: list[tuple[SiteRecord, int]],
    policy: SelectionPolicy,
    options: RenderOptions,
) -> int:
    """Write the rendered list to ``path``. Return the number of mirrors written."""
    text = render(ranked, policy, options)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    count = sum(1 for line in text.splitlines() if line.startswith("deb "))
    logging.info("Wrote %s mirrors to %s", count, path)
    return count
