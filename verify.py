#!/usr/bin/env python3
from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterable

DEFAULT_PATH = Path("sources.list")
ALLOWED_SCHEMES = ("http", "https", "ftp")
LINE_TYPES = ("deb", "deb-src")


def iter_entries(lines: Iterable[str]) -> Iterable[tuple[int, str]]:
    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        yield lineno, line


def check_line(line: str) -> str | None:
    """Return a problem description, or None when the line is well-formed."""
    fields = line.split()
    if fields[0] not in LINE_TYPES:
        return f"unknown line type {fields[0]!r}"
    if len(fields) < 4:
        return "expected: TYPE URL SUITE COMPONENT..."
    scheme, sep, rest = fields[1].partition("://")
    if not sep or not rest:
        return f"not a URL: {fields[1]}"
    if scheme not in ALLOWED_SCHEMES:
        return f"scheme {scheme!r} is not usable by apt"
    return None


def verify(lines: Iterable[str]) -> tuple[int, list[str]]:
    """Check sources.list lines. Return (ok_count, problems)."""
    ok_count = 0
    problems: list[str] = []
    seen: dict[tuple[str, str], int] = {}

    for lineno, line in iter_entries(lines):
        problem = check_line(line)
        if problem is not None:
            problems.append(f"line {lineno}: {problem}")
            continue
        kind, url = line.split()[:2]
        if (kind, url) in seen:
            problems.append(f"line {lineno}: duplicate {kind} {url} (first on line {seen[(kind, url)]})")
            continue
        seen[(kind, url)] = lineno
        ok_count += 1

    deb_urls = {url for kind, url in seen if kind == "deb"}
    src_urls = {url for kind, url in seen if kind == "deb-src"}
    if src_urls:
        for url in sorted(deb_urls - src_urls):
            problems.append(f"no deb-src line for {url}")
    for url in sorted(src_urls - deb_urls):
        problems.append(f"deb-src without deb for {url}")
    if not deb_urls:
        problems.append("no deb lines")

    return ok_count, problems


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    path = Path(args[0]) if args else DEFAULT_PATH

    if not path.is_file():
        print(f"[NG] sources.list not found: {path}")
        print("OK: 0")
        print("NG: 1")
        return 1

    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError) as e:
        print(f"[NG] failed to read {path}: {e}")
        print("OK: 0")
        print("NG: 1")
        return 1

    ok_count, problems = verify(lines)
    for problem in problems:
        print(f"[NG] {problem}")
    if not problems:
        print(f"[OK] {path} looks usable")

    print(f"OK: {ok_count}")
    print(f"NG: {len(problems)}")
    return 1 if problems else 0


if __name__ == "__main__":
    sys.exit(main())
