"""Tests for pipeline.py: dispatcher, accumulator and the full run."""

import asyncio
import random

import pytest

from conftest import make_site
from criteria import SelectionPolicy
from directory import Endpoint, MalformedDirectory, SiteRecord, Token, TokenKind, assemble_records
from pipeline import (
    Accumulator,
    AccumulatorUnderflow,
    Channels,
    PipelineSettings,
    State,
    dispatch,
    run_pipeline,
)
from prober import WORST_SCORE

POLICY = SelectionPolicy(architecture="amd64", protocols=frozenset({"https"}))


def scored(index, score):
    record = make_site(index, f"m{index}.example")
    record.assign_score(score)
    return record


def fixed_scores(mapping):
    async def score(record):
        await asyncio.sleep(0)
        return mapping[record.host]

    return score


# ── Accumulator state machine ──────────────────────────────────

class TestAccumulatorTransitions:
    def test_starts_collecting(self):
        acc = Accumulator(Channels())
        assert acc.state is State.COLLECTING
        assert acc.outstanding == 0
        assert acc.more_expected

    def test_no_more_with_nothing_outstanding_is_done(self):
        acc = Accumulator(Channels())
        acc.on_no_more()
        assert acc.state is State.DONE

    def test_no_more_with_outstanding_work_drains(self):
        acc = Accumulator(Channels())
        acc.on_created()
        acc.on_no_more()
        assert acc.state is State.DRAINING
        acc.on_score(scored(0, 5), 0)
        assert acc.state is State.DONE

    def test_scores_before_no_more_keep_collecting(self):
        acc = Accumulator(Channels())
        acc.on_created()
        acc.on_score(scored(0, 5), 0)
        assert acc.state is State.COLLECTING
        assert acc.outstanding == 0

    def test_underflow(self):
        acc = Accumulator(Channels())
        with pytest.raises(AccumulatorUnderflow):
            acc.on_score(scored(0, 5), 0)

    def test_underflow_is_an_assertion(self):
        assert issubclass(AccumulatorUnderflow, AssertionError)


class TestAccumulatorOrdering:
    def test_best_first(self):
        acc = Accumulator(Channels())
        for record in (scored(0, 30), scored(1, 10), scored(2, 20)):
            acc.on_created()
            acc.on_score(record, record.index)
        assert [s for _, s in acc.ranked()] == [10, 20, 30]

    def test_ties_keep_launch_order(self):
        acc = Accumulator(Channels())
        for seq, record in ((2, scored(2, 7)), (0, scored(0, 7)), (3, scored(3, 1)), (1, scored(1, 7))):
            acc.on_created()
            acc.on_score(record, seq)
        assert [r.index for r, _ in acc.ranked()] == [3, 0, 1, 2]

    def test_ties_ignore_record_index(self):
        acc = Accumulator(Channels())
        for seq, host in ((1, "late.example"), (0, "early.example")):
            record = SiteRecord(hosts=[host], score=7)
            acc.on_created()
            acc.on_score(record, seq)
        assert [r.host for r, _ in acc.ranked()] == ["early.example", "late.example"]

    def test_ranked_consumes_heap(self):
        acc = Accumulator(Channels())
        acc.on_created()
        acc.on_score(scored(0, 1), 0)
        assert len(acc.ranked()) == 1
        assert acc.ranked() == []


class TestAccumulatorRun:
    @pytest.mark.asyncio
    async def test_done_only_after_every_score(self):
        channels = Channels(score_buffer_size=4)
        acc = Accumulator(channels)
        collector = asyncio.create_task(acc.run())
        for _ in range(3):
            await channels.signal_created()
        await channels.signal_no_more()
        await channels.deliver(scored(0, 3), 0)
        await channels.deliver(scored(1, 1), 1)
        await asyncio.sleep(0.01)
        assert not collector.done()
        await channels.deliver(scored(2, 2), 2)
        result = await asyncio.wait_for(collector, timeout=1)
        assert [s for _, s in result] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_created_is_acknowledged_before_returning(self):
        channels = Channels()
        acc = Accumulator(channels)
        collector = asyncio.create_task(acc.run())
        await channels.signal_created()
        assert acc.outstanding == 1
        await channels.deliver(scored(0, 1), 0)
        await channels.signal_no_more()
        await asyncio.wait_for(collector, timeout=1)

    @pytest.mark.asyncio
    async def test_no_work_at_all(self):
        channels = Channels()
        collector = asyncio.create_task(Accumulator(channels).run())
        await channels.signal_no_more()
        assert await asyncio.wait_for(collector, timeout=1) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", range(5))
    async def test_random_interleavings_terminate(self, seed):
        rng = random.Random(seed)
        channels = Channels(score_buffer_size=2)
        acc = Accumulator(channels)
        collector = asyncio.create_task(acc.run())
        count = rng.randint(0, 12)

        async def worker(i):
            await asyncio.sleep(rng.random() / 100)
            await channels.deliver(scored(i, rng.randint(0, 3)), i)

        workers = []
        for i in range(count):
            await channels.signal_created()
            workers.append(asyncio.create_task(worker(i)))
        await channels.signal_no_more()
        result = await asyncio.wait_for(collector, timeout=2)
        await asyncio.gather(*workers)
        assert len(result) == count
        assert [(s, r.index) for r, s in result] == sorted((s, r.index) for r, s in result)


# ── Dispatcher ─────────────────────────────────────────────────

class TestDispatch:
    @pytest.mark.asyncio
    async def test_launches_only_matching_sites(self):
        channels = Channels()
        acc = Accumulator(channels)
        collector = asyncio.create_task(acc.run())
        launched = []

        async def launch(record, seq):
            launched.append((record.host, seq))
            record.assign_score(1)
            await channels.deliver(record, seq)

        records = [
            make_site(0, "ok.example"),
            make_site(1, "http-only.example", protocols=("http",)),
            make_site(2, "arm.example", architectures=("arm64",)),
        ]
        count = await dispatch(records, POLICY, channels, launch)
        await asyncio.wait_for(collector, timeout=1)
        assert count == 1
        assert launched == [("ok.example", 0)]

    @pytest.mark.asyncio
    async def test_creation_counted_before_launch(self):
        channels = Channels()
        acc = Accumulator(channels)
        collector = asyncio.create_task(acc.run())
        seen = []

        async def launch(record, seq):
            seen.append(acc.outstanding)
            record.assign_score(0)
            await channels.deliver(record, seq)

        await dispatch([make_site(i, f"m{i}.example") for i in range(3)], POLICY, channels, launch)
        await asyncio.wait_for(collector, timeout=1)
        assert all(n >= 1 for n in seen)

    @pytest.mark.asyncio
    async def test_accepts_async_iterables(self):
        async def records():
            for i in range(2):
                await asyncio.sleep(0)
                yield make_site(i, f"m{i}.example")

        result = await run_pipeline(records(), POLICY, fixed_scores({"m0.example": 2, "m1.example": 1}))
        assert [r.host for r, _ in result] == ["m1.example", "m0.example"]

    @pytest.mark.asyncio
    async def test_rejects_already_scored_sites(self):
        with pytest.raises(ValueError):
            await run_pipeline([scored(0, 1)], POLICY, fixed_scores({}))

    @pytest.mark.asyncio
    async def test_rejects_a_site_yielded_twice(self):
        record = make_site(0, "dup.example")

        async def score(record):
            await asyncio.sleep(0.01)
            return 1

        with pytest.raises(ValueError, match="dispatched twice"):
            await asyncio.wait_for(run_pipeline([record, record], POLICY, score), timeout=2)


# ── Full pipeline ──────────────────────────────────────────────

def token_stream(countries):
    """Tokens for ``{country: [host, ...]}``, each site https + amd64."""
    for country, hosts in countries.items():
        yield Token(TokenKind.COUNTRY, country, tag="h3")
        for host in hosts:
            yield Token(TokenKind.SITE_START, "Site:")
            yield Token(TokenKind.PLAIN, host, tag="tt")
            yield Token(TokenKind.PROTOCOL_URL, "Packages over HTTPS:", protocol="https")
            url = f"https://{host}/debian/"
            yield Token(TokenKind.PLAIN, url, tag="tt", href=url)
            yield Token(TokenKind.ARCHITECTURES, "amd64")


class TestRunPipeline:
    @pytest.mark.asyncio
    async def test_three_sites_two_countries(self, monkeypatch):
        records = list(assemble_records(token_stream({"Austria": ["a.example", "b.example"], "Chile": ["c.example"]})))
        probed = []
        events = []
        on_created, on_score = Accumulator.on_created, Accumulator.on_score

        def counting_created(self):
            events.append("created")
            on_created(self)

        def counting_score(self, record, seq):
            events.append(record.host)
            on_score(self, record, seq)

        monkeypatch.setattr(Accumulator, "on_created", counting_created)
        monkeypatch.setattr(Accumulator, "on_score", counting_score)

        async def score(record):
            probed.append(record.host)
            await asyncio.sleep(0.01)
            return {"a.example": 30, "b.example": 10, "c.example": 20}[record.host]

        result = await run_pipeline(records, POLICY, score)
        assert sorted(probed) == ["a.example", "b.example", "c.example"]
        assert events[:3] == ["created"] * 3
        assert sorted(events[3:]) == ["a.example", "b.example", "c.example"]
        assert [(r.host, s) for r, s in result] == [("b.example", 10), ("c.example", 20), ("a.example", 30)]
        assert all(r.score == s for r, s in result)

    @pytest.mark.asyncio
    async def test_site_without_endpoints_is_never_probed(self):
        tokens = [Token(TokenKind.SITE_START, "Site:"), Token(TokenKind.PLAIN, "bare.example", tag="tt"),
                  Token(TokenKind.ARCHITECTURES, "amd64")]
        probed = []

        async def score(record):
            probed.append(record.host)
            return 1

        result = await run_pipeline(assemble_records(tokens), POLICY, score)
        assert result == []
        assert probed == []

    @pytest.mark.asyncio
    async def test_malformed_stream_fails_the_run(self):
        tokens = [Token(TokenKind.PROTOCOL_URL, "Packages over HTTPS:", protocol="https"),
                  Token(TokenKind.PLAIN, "https://x.example/", tag="tt", href="https://x.example/")]
        with pytest.raises(MalformedDirectory):
            await run_pipeline(assemble_records(tokens), POLICY, fixed_scores({}))

    @pytest.mark.asyncio
    async def test_malformed_midway_cancels_probes(self):
        def tokens():
            yield from token_stream({"Austria": ["a.example", "b.example"]})
            yield Token(TokenKind.SITE_START, "Site:")

        async def score(record):
            await asyncio.sleep(10)
            return 1

        with pytest.raises(MalformedDirectory):
            await asyncio.wait_for(run_pipeline(assemble_records(tokens()), POLICY, score), timeout=2)

    @pytest.mark.asyncio
    async def test_all_unreachable_keeps_discovery_order(self):
        records = [make_site(i, f"m{i}.example") for i in range(5)]

        async def score(record):
            await asyncio.sleep(random.random() / 100)
            return WORST_SCORE

        result = await run_pipeline(records, POLICY, score)
        assert [r.index for r, _ in result] == [0, 1, 2, 3, 4]
        assert all(s == WORST_SCORE for _, s in result)

    @pytest.mark.asyncio
    async def test_ties_follow_dispatch_order_for_unnumbered_sites(self):
        records = [
            SiteRecord(
                hosts=[f"m{i}.example"],
                architectures=frozenset({"amd64"}),
                endpoints={"https": Endpoint("https", f"m{i}.example", "/debian/")},
            )
            for i in range(4)
        ]

        async def score(record):
            # Later sites finish first.
            await asyncio.sleep((3 - int(record.host[1])) * 0.01)
            return WORST_SCORE

        result = await run_pipeline(records, POLICY, score)
        assert [r.host for r, _ in result] == ["m0.example", "m1.example", "m2.example", "m3.example"]

    @pytest.mark.asyncio
    async def test_probe_task_crash_fails_the_run(self):
        class ReadOnlyScore(SiteRecord):
            def assign_score(self, score):
                raise RuntimeError(f"cannot score {self.host}")

        record = ReadOnlyScore(
            hosts=["m0.example"],
            architectures=frozenset({"amd64"}),
            endpoints={"https": Endpoint("https", "m0.example", "/debian/")},
        )
        with pytest.raises(RuntimeError, match="cannot score m0.example"):
            await asyncio.wait_for(run_pipeline([record], POLICY, fixed_scores({"m0.example": 1})), timeout=2)

    @pytest.mark.asyncio
    async def test_concurrency_is_capped(self):
        active = 0
        peak = 0

        async def score(record):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return record.index

        records = [make_site(i, f"m{i}.example") for i in range(10)]
        result = await run_pipeline(records, POLICY, score, PipelineSettings(concurrency=3, score_buffer_size=1))
        assert peak <= 3
        assert [s for _, s in result] == list(range(10))

    @pytest.mark.asyncio
    async def test_deadline_scores_remaining_sites_as_worst(self):
        async def score(record):
            if record.index == 0:
                return 5
            await asyncio.sleep(10)
            return 1

        records = [make_site(i, f"m{i}.example") for i in range(3)]
        result = await asyncio.wait_for(
            run_pipeline(records, POLICY, score, PipelineSettings(deadline_sec=0.1)), timeout=2
        )
        assert [(r.index, s) for r, s in result] == [(0, 5), (1, WORST_SCORE), (2, WORST_SCORE)]

    @pytest.mark.asyncio
    async def test_crashing_score_function_counts_as_worst(self, caplog):
        async def score(record):
            raise RuntimeError("boom")

        result = await run_pipeline([make_site(0, "m0.example")], POLICY, score)
        assert [s for _, s in result] == [WORST_SCORE]
        assert "Scoring m0.example failed" in caplog.text
