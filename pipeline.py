"""Concurrent scoring pipeline: dispatcher, probe tasks and accumulator.

``run_pipeline`` builds the channels and wires three roles together:

- the dispatcher filters sites and launches one probe task per match,
  announcing each launch to the accumulator and waiting for the
  acknowledgement first, so a site is always counted before its score can
  arrive;
- probe tasks score one site each and deliver it on a bounded queue;
- the accumulator counts launches, folds delivered sites into a best-first
  heap and finishes once no more launches are coming and every launched
  site has come back.
"""

from __future__ import annotations

import asyncio
import contextlib
import heapq
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable

from criteria import SelectionPolicy, matches
from directory import SiteRecord
from prober import WORST_SCORE

ScoreFn = Callable[[SiteRecord], Awaitable[int]]
Ranked = list[tuple[SiteRecord, int]]

_CREATED = "created"
_NO_MORE = "no-more"


class AccumulatorUnderflow(AssertionError):
    """A score arrived with no outstanding launch to match it."""


class State(Enum):
    COLLECTING = "collecting"
    DRAINING = "draining"
    DONE = "done"


@dataclass(slots=True)
class PipelineSettings:
    concurrency: int = 12
    score_buffer_size: int = 32
    deadline_sec: float | None = None


class Channels:
    """Handles shared by the dispatcher, probe tasks and accumulator."""

    def __init__(self, score_buffer_size: int = 32) -> None:
        # Capacity 1 plus join() makes the launch signal an acknowledged send.
        self.control: asyncio.Queue[str] = asyncio.Queue(maxsize=1)
        self.scores: asyncio.Queue[tuple[int, SiteRecord]] = asyncio.Queue(maxsize=max(1, score_buffer_size))

    async def signal_created(self) -> None:
        """Announce one launch and return once the accumulator counted it."""
        await self.control.put(_CREATED)
        await self.control.join()

    async def signal_no_more(self) -> None:
        await self.control.put(_NO_MORE)

    async def deliver(self, record: SiteRecord, seq: int) -> None:
        """Hand back a scored site with the launch number it was dispatched under."""
        await self.scores.put((seq, record))


class Accumulator:
    """Collect scored sites until all launched work has come back."""

    def __init__(self, channels: Channels) -> None:
        self.channels = channels
        self.state = State.COLLECTING
        self.outstanding = 0
        self.more_expected = True
        self._heap: list[tuple[int, int, SiteRecord]] = []

    def on_created(self) -> None:
        self.outstanding += 1

    def on_no_more(self) -> None:
        self.more_expected = False
        self.state = State.DONE if self.outstanding == 0 else State.DRAINING

    def on_score(self, record: SiteRecord, seq: int) -> None:
        if self.outstanding == 0:
            raise AccumulatorUnderflow(f"score for {record.host} with no outstanding launch")
        score = WORST_SCORE if record.score is None else record.score
        heapq.heappush(self._heap, (score, seq, record))
        self.outstanding -= 1
        if not self.more_expected and self.outstanding == 0:
            self.state = State.DONE

    def ranked(self) -> Ranked:
        """Drain the heap, best score first, discovery order on ties."""
        out: Ranked = []
        while self._heap:
            score, _, record = heapq.heappop(self._heap)
            out.append((record, score))
        return out

    async def run(self) -> Ranked:
        control_get: asyncio.Future[str] | None = None
        score_get: asyncio.Future[tuple[int, SiteRecord]] | None = None
        try:
            while self.state is not State.DONE:
                if control_get is None:
                    control_get = asyncio.ensure_future(self.channels.control.get())
                if score_get is None:
                    score_get = asyncio.ensure_future(self.channels.scores.get())
                done, _ = await asyncio.wait({control_get, score_get}, return_when=asyncio.FIRST_COMPLETED)
                # Control first: a launch must be counted before any score.
                if control_get in done:
                    message = control_get.result()
                    control_get = None
                    if message == _CREATED:
                        self.on_created()
                    else:
                        self.on_no_more()
                    self.channels.control.task_done()
                if score_get in done:
                    seq, record = score_get.result()
                    score_get = None
                    self.on_score(record, seq)
        finally:
            for pending in (control_get, score_get):
                if pending is not None and not pending.done():
                    pending.cancel()
        return self.ranked()


async def _iterate(records: Iterable[SiteRecord] | AsyncIterable[SiteRecord]) -> AsyncIterator[SiteRecord]:
    if isinstance(records, AsyncIterable):
        async for record in records:
            yield record
    else:
        for record in records:
            yield record


async def dispatch(
    records: Iterable[SiteRecord] | AsyncIterable[SiteRecord],
    policy: SelectionPolicy,
    channels: Channels,
    launch: Callable[[SiteRecord, int], Awaitable[None]],
) -> int:
    """Filter ``records`` and launch a probe for each match. Return the count.

    Each launch gets the next sequence number, which is the tie-break for
    equal scores. A site yielded twice is rejected.
    """
    launched = 0
    seen: set[int] = set()
    async for record in _iterate(records):
        if not matches(record, policy):
            logging.debug("Filtered out %s", record.host)
            continue
        if record.score is not None:
            raise ValueError(f"{record.host} was already scored")
        if id(record) in seen:
            raise ValueError(f"{record.host} was dispatched twice")
        seen.add(id(record))
        await channels.signal_created()
        await launch(record, launched)
        launched += 1
    await channels.signal_no_more()
    return launched


async def _measure(record: SiteRecord, score_fn: ScoreFn, cancelled: asyncio.Event) -> int:
    if cancelled.is_set():
        return WORST_SCORE
    measure = asyncio.ensure_future(score_fn(record))
    stop = asyncio.ensure_future(cancelled.wait())
    try:
        done, _ = await asyncio.wait({measure, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.cancel()
    if measure not in done:
        measure.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await measure
        logging.debug("Deadline reached before %s was scored", record.host)
        return WORST_SCORE
    try:
        return measure.result()
    except Exception:
        logging.exception("Scoring %s failed", record.host)
        return WORST_SCORE


async def run_pipeline(
    records: Iterable[SiteRecord] | AsyncIterable[SiteRecord],
    policy: SelectionPolicy,
    score_fn: ScoreFn,
    settings: PipelineSettings | None = None,
) -> Ranked:
    """Score every site matching ``policy`` and return them best first."""
    settings = settings or PipelineSettings()
    channels = Channels(settings.score_buffer_size)
    accumulator = Accumulator(channels)
    admission = asyncio.Semaphore(max(1, settings.concurrency))
    cancelled = asyncio.Event()
    probes: set[asyncio.Task[None]] = set()

    async def probe(record: SiteRecord, seq: int) -> None:
        try:
            score = await _measure(record, score_fn, cancelled)
        finally:
            admission.release()
        record.assign_score(score)
        await channels.deliver(record, seq)

    loop = asyncio.get_running_loop()
    # A probe task that dies without delivering would leave the accumulator
    # waiting forever, so its exception fails the run instead.
    crashed: asyncio.Future[None] = loop.create_future()

    def reap(task: asyncio.Task[None]) -> None:
        probes.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not crashed.done():
            crashed.set_exception(error)

    async def launch(record: SiteRecord, seq: int) -> None:
        await admission.acquire()
        task = asyncio.create_task(probe(record, seq))
        probes.add(task)
        task.add_done_callback(reap)

    timer = None
    if settings.deadline_sec is not None:
        timer = loop.call_later(settings.deadline_sec, cancelled.set)

    collector = asyncio.create_task(accumulator.run())
    dispatcher = asyncio.create_task(dispatch(records, policy, channels, launch))
    try:
        watched = {dispatcher, collector, crashed}
        while dispatcher in watched or collector in watched:
            done, watched = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
            for future in done:
                if future.exception() is not None:
                    raise future.exception()
        launched = dispatcher.result()
        ranked = collector.result()
    finally:
        if timer is not None:
            timer.cancel()
        crashed.cancel()
        leftovers = [t for t in (dispatcher, collector, *probes) if not t.done()]
        for task in leftovers:
            task.cancel()
        if leftovers:
            await asyncio.gather(*leftovers, return_exceptions=True)

    logging.info("Scored %s sites", launched)
    return ranked
