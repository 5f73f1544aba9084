#!/usr/bin/env python3
"""Build a sources.list from the fastest Debian mirrors matching criteria.

Phases:
A) Load the mirror directory (local file or https://www.debian.org/mirror/list-full).
B) Parse it into site records.
C) Filter sites by architecture/protocols and probe the matches concurrently.
D) Write the best-ranked sites as a sources.list.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import platform
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

import aiohttp
import yaml

from criteria import SelectionPolicy, valid_release
from directory import DIRECTORY_URL, MalformedDirectory, read_directory
from pipeline import PipelineSettings, run_pipeline
from prober import AGGREGATES, ProbeSettings, Prober
from sources_list import RenderOptions, write_sources_list

__version__ = "0.1.0"

CHUNK_SIZE = 64 * 1024

_MACHINE_TO_DEBIAN = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "armhf",
    "armv6l": "armel",
    "i386": "i386",
    "i686": "i386",
    "ppc64le": "ppc64el",
    "s390x": "s390x",
    "mips64": "mips64el",
    "riscv64": "riscv64",
}


@dataclass(slots=True)
class Config:
    """Runtime configuration loaded from config.yaml and CLI flags."""

    directory_url: str = DIRECTORY_URL
    infile: str | None = None
    out_file: str = "./sources.list"
    release: str = "stable"
    architecture: str | None = None
    protocols: tuple[str, ...] = ("https",)
    nonfree: bool = False
    source_packages: bool = False
    concurrency: int = 12
    score_buffer_size: int = 32
    timeout_sec: float = 5.0
    max_retries: int = 0
    samples: int = 3
    aggregate: str = "mean"
    delay_sec: float = 0.0
    deadline_sec: float | None = None
    max_mirrors: int = 3
    include_unreachable: bool = False
    fetch_retries: int = 3

    def policy(self) -> SelectionPolicy:
        return SelectionPolicy(
            release=self.release,
            architecture=self.architecture,
            protocols=frozenset(self.protocols),
            nonfree=self.nonfree,
            source_packages=self.source_packages,
        )

    def probe_settings(self) -> ProbeSettings:
        return ProbeSettings(
            timeout_sec=self.timeout_sec,
            max_retries=self.max_retries,
            samples=self.samples,
            aggregate=self.aggregate,
            delay_sec=self.delay_sec,
        )

    def pipeline_settings(self) -> PipelineSettings:
        return PipelineSettings(
            concurrency=self.concurrency,
            score_buffer_size=self.score_buffer_size,
            deadline_sec=self.deadline_sec,
        )

    def render_options(self) -> RenderOptions:
        return RenderOptions(max_mirrors=self.max_mirrors, include_unreachable=self.include_unreachable)


def parse_protocols(value: Any) -> tuple[str, ...]:
    """Accept "https,ftp" or a YAML list; lowercase and de-duplicate."""
    items = value.split(",") if isinstance(value, str) else list(value or [])
    out: list[str] = []
    for item in items:
        name = str(item).strip().lower()
        if name and name not in out:
            out.append(name)
    if not out:
        raise ValueError("at least one protocol is required")
    return tuple(out)


def load_config(config_path: Path) -> Config:
    """Load config.yaml and apply defaults for missing keys."""
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError("config.yaml must be a mapping")

    defaults = Config()
    known = set(Config.__dataclass_fields__) - {"infile"}
    unknown = sorted(str(k) for k in data if k not in known)
    if unknown:
        logging.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
    deadline = data.get("deadline_sec")
    config = Config(
        directory_url=str(data.get("directory_url", defaults.directory_url)),
        out_file=str(data.get("out_file", defaults.out_file)),
        release=str(data.get("release", defaults.release)),
        architecture=None if data.get("architecture") is None else str(data["architecture"]),
        protocols=parse_protocols(data.get("protocols", defaults.protocols)),
        nonfree=bool(data.get("nonfree", False)),
        source_packages=bool(data.get("source_packages", False)),
        concurrency=int(data.get("concurrency", defaults.concurrency)),
        score_buffer_size=int(data.get("score_buffer_size", defaults.score_buffer_size)),
        timeout_sec=float(data.get("timeout_sec", defaults.timeout_sec)),
        max_retries=int(data.get("max_retries", defaults.max_retries)),
        samples=int(data.get("samples", defaults.samples)),
        aggregate=str(data.get("aggregate", defaults.aggregate)),
        delay_sec=float(data.get("delay_sec", defaults.delay_sec)),
        deadline_sec=None if deadline is None else float(deadline),
        max_mirrors=int(data.get("max_mirrors", defaults.max_mirrors)),
        include_unreachable=bool(data.get("include_unreachable", False)),
        fetch_retries=int(data.get("fetch_retries", defaults.fetch_retries)),
    )
    if config.aggregate not in AGGREGATES:
        raise ValueError(f"aggregate must be one of {sorted(AGGREGATES)}")
    if not valid_release(config.release):
        raise ValueError(f"invalid release: {config.release!r}")
    return config


def detect_architecture() -> str | None:
    """Ask dpkg for the host architecture, else map the machine type."""
    try:
        result = subprocess.run(
            ["dpkg", "--print-architecture"], capture_output=True, text=True, check=True, timeout=10
        )
    except (OSError, subprocess.SubprocessError):
        result = None
    if result is not None and result.stdout.strip():
        return result.stdout.strip()
    return _MACHINE_TO_DEBIAN.get(platform.machine().lower())


async def fetch_bytes(session: aiohttp.ClientSession, url: str, config: Config) -> tuple[int, bytes | None]:
    """Fetch URL with retry/backoff. Return (status, body_or_none)."""
    timeout = aiohttp.ClientTimeout(total=max(30.0, config.timeout_sec))
    for attempt in range(config.fetch_retries + 1):
        try:
            async with session.get(url, timeout=timeout) as resp:
                status = resp.status
                if 200 <= status < 300:
                    return status, await resp.read()
                if status < 500 or attempt == config.fetch_retries:
                    logging.error("HTTP %s for %s", status, url)
                    return status, None
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            if attempt == config.fetch_retries:
                logging.error("Request failed after retries: %s (%s)", url, exc)
                return -1, None
        await asyncio.sleep((2**attempt) * 0.5)
    return -1, None


def iter_file_chunks(path: Path, size: int = CHUNK_SIZE) -> Iterator[str]:
    """Read a local directory document lazily."""
    with path.open("r", encoding="utf-8", errors="replace") as fh:
        while True:
            chunk = fh.read(size)
            if not chunk:
                return
            yield chunk


async def load_document(session: aiohttp.ClientSession, config: Config) -> Iterator[str]:
    """Phase A: return the directory document as text chunks."""
    if config.infile:
        path = Path(config.infile)
        if not path.is_file():
            raise SystemExit(f"mirror list not found: {path}")
        return iter_file_chunks(path)
    _, body = await fetch_bytes(session, config.directory_url, config)
    if body is None:
        raise SystemExit(f"could not download mirror list: {config.directory_url}")
    text = body.decode("utf-8", errors="replace")
    return iter(text[i : i + CHUNK_SIZE] for i in range(0, len(text), CHUNK_SIZE))


async def run(config: Config) -> int:
    """Execute all phases. Return process exit code."""
    logging.info("Starting mirror selection with config: %s", config)
    policy = config.policy()
    connector = aiohttp.TCPConnector(limit=max(8, config.concurrency * 2))

    start = time.monotonic()
    async with aiohttp.ClientSession(connector=connector) as session:
        chunks = await load_document(session, config)
        loaded = time.monotonic()
        try:
            records = read_directory(chunks)
        except MalformedDirectory as exc:
            logging.error("Mirror list is malformed: %s", exc)
            return 2
        parsed = time.monotonic()

        prober = Prober(session, config.probe_settings())

        async def score(record):
            return await prober.score(record, policy.protocols)

        ranked = await run_pipeline(records, policy, score, config.pipeline_settings())
    scored = time.monotonic()

    written = write_sources_list(Path(config.out_file), ranked, policy, config.render_options())
    if not written:
        logging.warning("No mirror matched release=%s architecture=%s protocols=%s",
                        policy.release, policy.architecture, ",".join(config.protocols))

    logging.info("Loading document took %.2fs", loaded - start)
    logging.info("Parsing document took %.2fs", parsed - loaded)
    logging.info("Scoring took %.2fs", scored - parsed)
    logging.info(
        "Summary: sites=%s candidates=%s written=%s out=%s",
        len(records),
        len(ranked),
        written,
        config.out_file,
    )
    return 0 if written else 1


def release_arg(value: str) -> str:
    if not valid_release(value):
        raise argparse.ArgumentTypeError(f"not a Debian suite or code name: {value!r}")
    return value


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """CLI options."""
    parser = argparse.ArgumentParser(
        prog="mirror-selector",
        description="Create a sources.list with the fastest Debian mirrors that fit the given criteria",
    )
    parser.add_argument("infile", nargs="?", help="Mirror list in the format of %s" % DIRECTORY_URL)
    parser.add_argument("-o", "--out-file", help="File to write [default: ./sources.list]")
    parser.add_argument("-n", "--nonfree", action="store_true", default=None, help="Include non-free sections")
    parser.add_argument("-s", "--source-packages", action="store_true", default=None, help="Add deb-src lines")
    parser.add_argument("-p", "--protocols", type=parse_protocols, help="Protocols mirrors must serve on [default: https]")
    parser.add_argument("-a", "--architecture", help="Architecture to look for [default: from dpkg]")
    parser.add_argument("-r", "--release", type=release_arg, help="Release to look for [default: stable]")
    parser.add_argument("-m", "--max-mirrors", type=int, help="How many mirrors to write [default: 3]")
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to config YAML file")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> Config:
    """Load the config file (if any) and apply CLI overrides."""
    config_path = Path(args.config)
    if config_path.exists():
        config = load_config(config_path)
    elif args.config != "config.yaml":
        raise SystemExit(f"config file not found: {config_path}")
    else:
        config = Config()

    if args.infile is not None:
        config.infile = args.infile
    if args.out_file is not None:
        config.out_file = args.out_file
    if args.nonfree:
        config.nonfree = True
    if args.source_packages:
        config.source_packages = True
    if args.protocols is not None:
        config.protocols = args.protocols
    if args.architecture is not None:
        config.architecture = args.architecture
    if args.release is not None:
        config.release = args.release
    if args.max_mirrors is not None:
        config.max_mirrors = args.max_mirrors
    if config.architecture is None:
        config.architecture = detect_architecture()
        if config.architecture is None:
            logging.warning("Could not detect architecture; not filtering on it")
    return config


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = parse_args(argv)
    level = logging.WARNING if args.quiet else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(message)s")
    try:
        config = build_config(args)
    except ValueError as exc:
        raise SystemExit(f"invalid configuration: {exc}")
    raise SystemExit(asyncio.run(run(config)))


if __name__ == "__main__":
    main()
