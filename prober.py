"""Latency probes against mirror endpoints.

A probe is one bounded measurement per required protocol: a timed ``HEAD``
for http/https, a timed TCP connect for anything else. Failures are
recorded as ``WORST_SCORE`` and never escape ``Prober.score``.
"""

from __future__ import annotations

import asyncio
import logging
import statistics
import time
from dataclasses import dataclass
from typing import Callable, Iterable

import aiohttp

from directory import Endpoint, SiteRecord

WORST_SCORE = 2**31 - 1

AGGREGATES: dict[str, Callable[[list[float]], float]] = {
    "mean": statistics.fmean,
    "min": min,
    "max": max,
}


class ProbeFailure(Exception):
    """One probe attempt against one endpoint failed."""

    def __init__(self, endpoint: Endpoint, reason: str) -> None:
        super().__init__(f"{endpoint.url}: {reason}")
        self.endpoint = endpoint
        self.reason = reason


@dataclass(slots=True)
class ProbeSettings:
    """Per-attempt budget and sampling for probes."""

    timeout_sec: float = 5.0
    max_retries: int = 0
    samples: int = 3
    aggregate: str = "mean"
    delay_sec: float = 0.0


class RequestScheduler:
    """Ensure a minimum delay between probe starts."""

    def __init__(self, delay_sec: float) -> None:
        self.delay_sec = max(0.0, delay_sec)
        self._lock = asyncio.Lock()
        self._next_allowed = 0.0

    async def wait_turn(self) -> None:
        """Sleep as needed so probes are spaced by configured delay."""
        if self.delay_sec <= 0:
            return
        async with self._lock:
            now = time.monotonic()
            wait_for = self._next_allowed - now
            if wait_for > 0:
                await asyncio.sleep(wait_for)
                now = time.monotonic()
            self._next_allowed = now + self.delay_sec


class Prober:
    """Measure round-trip latency to a site's endpoints."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        settings: ProbeSettings,
        scheduler: RequestScheduler | None = None,
    ) -> None:
        if settings.aggregate not in AGGREGATES:
            raise ValueError(f"unknown aggregate: {settings.aggregate!r}")
        self.session = session
        self.settings = settings
        self.scheduler = scheduler or RequestScheduler(settings.delay_sec)

    async def _http_attempt(self, endpoint: Endpoint) -> float:
        timeout = aiohttp.ClientTimeout(total=self.settings.timeout_sec)
        start = time.monotonic()
        try:
            async with self.session.head(endpoint.url, timeout=timeout, allow_redirects=False) as resp:
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise ProbeFailure(endpoint, type(exc).__name__) from exc
        elapsed = time.monotonic() - start
        if status >= 400:
            raise ProbeFailure(endpoint, f"HTTP {status}")
        return elapsed

    async def _tcp_attempt(self, endpoint: Endpoint) -> float:
        port = endpoint.effective_port
        if port is None:
            raise ProbeFailure(endpoint, f"no port known for {endpoint.scheme}")
        start = time.monotonic()
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(endpoint.host, port), timeout=self.settings.timeout_sec
            )
        except (asyncio.TimeoutError, OSError) as exc:
            raise ProbeFailure(endpoint, type(exc).__name__) from exc
        elapsed = time.monotonic() - start
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return elapsed

    async def attempt(self, endpoint: Endpoint) -> float:
        """One timed attempt. Return latency in seconds or raise ProbeFailure."""
        await self.scheduler.wait_turn()
        if endpoint.scheme in ("http", "https"):
            return await self._http_attempt(endpoint)
        return await self._tcp_attempt(endpoint)

    async def probe_endpoint(self, endpoint: Endpoint) -> float:
        """Best latency over ``samples`` successful attempts.

        Gives up once more than ``max_retries`` attempts have failed; if no
        attempt succeeded, the last ProbeFailure is raised.
        """
        samples = max(1, self.settings.samples)
        latencies: list[float] = []
        failures = 0
        while len(latencies) < samples:
            try:
                latencies.append(await self.attempt(endpoint))
            except ProbeFailure:
                failures += 1
                if failures <= self.settings.max_retries:
                    continue
                if not latencies:
                    raise
                break
        return min(latencies)

    async def score(self, record: SiteRecord, protocols: Iterable[str]) -> int:
        """Integer score in milliseconds, lower is better."""
        latencies: list[float] = []
        for protocol in sorted(protocols):
            endpoint = record.endpoints.get(protocol)
            if endpoint is None:
                logging.debug("%s has no %s endpoint", record.host, protocol)
                continue
            try:
                latencies.append(await self.probe_endpoint(endpoint))
            except ProbeFailure as exc:
                logging.debug("Probe failed: %s", exc)
        if not latencies:
            return WORST_SCORE
        ms = round(AGGREGATES[self.settings.aggregate](latencies) * 1000)
        return min(int(ms), WORST_SCORE - 1)
