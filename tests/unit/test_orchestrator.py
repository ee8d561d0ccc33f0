"""Unit tests for BatchOrchestrator (batching, retry rounds, run bookkeeping)."""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest
from scan_fakes import Chunk, QuotaExceeded, ScriptedCaller, canonical_for, number_for, stream_of

from scan_service.errors import ConfigurationError, RunFatalError, RunInProgressError
from scan_service.normalize import NOT_FOUND
from scan_service.scanning.credentials import CredentialPool
from scan_service.scanning.orchestrator import (
    BatchOrchestrator,
    ProgressObserver,
    batch_label,
    create_orchestrator,
    partition,
)
from scan_service.scanning.types import RunStatus


def _orchestrator(cfg, caller, sleeper, observer=None) -> BatchOrchestrator:
    pool = CredentialPool(cfg.api_keys, policy=cfg.key_policy)
    return BatchOrchestrator(cfg=cfg, pool=pool, caller=caller, observer=observer, sleep=sleeper)


class RecordingObserver(ProgressObserver):
    def __init__(self):
        self.events: list[tuple] = []

    def on_batch_start(self, state, label, key_label):
        self.events.append(("start", label, key_label))

    def on_batch_end(self, state, label, ok, error):
        self.events.append(("end", label, ok))

    def on_round_start(self, state, round_no, max_rounds):
        self.events.append(("round", round_no, max_rounds))

    def on_run_end(self, report):
        self.events.append(("run_end", report.status))


class TestPartition:
    def test_last_batch_holds_remainder(self, make_items):
        batches = partition(make_items(12), 5)
        assert [len(b) for b in batches] == [5, 5, 2]

    def test_empty_input(self):
        assert partition([], 5) == []

    def test_invalid_size(self, make_items):
        with pytest.raises(ValueError):
            partition(make_items(1), 0)

    def test_labels(self):
        assert batch_label(0, 5) == "Batch 1 (5 images)"
        assert batch_label(2, 3, retry_round=1) == "Batch 3 (3 images), retry 1"


class TestFirstPass:
    async def test_quota_on_first_batch_rotates_and_completes(self, scan_config, make_items, sleeper):
        items = make_items(12)
        caller = ScriptedCaller([QuotaExceeded()])
        orch = _orchestrator(scan_config, caller, sleeper)

        report = await orch.run(items)

        assert report.status is RunStatus.COMPLETED
        assert [len(names) for names, _ in caller.calls] == [5, 5, 5, 2]
        assert [key for _, key in caller.calls] == ["key-a", "key-b", "key-b", "key-b"]
        assert orch.pool.index == 1
        assert len(report.results) == 12
        assert report.failed_items == ()
        assert report.values == [canonical_for(it.name) for it in items]
        # quota cooldown, then one inter-batch delay between each pair of batches
        assert sleeper.delays == [2.0, 3.0, 3.0]

    async def test_results_keep_item_and_batch(self, scan_config, make_items, sleeper):
        items = make_items(6)
        report = await _orchestrator(scan_config, ScriptedCaller(), sleeper).run(items)

        assert [r.item for r in report.results] == items
        assert report.results[0].batch_label == "Batch 1 (5 images)"
        assert report.results[5].batch_label == "Batch 2 (1 images)"

    async def test_short_response_padded_with_not_found(self, scan_config, make_items, sleeper):
        caller = ScriptedCaller(["081234567800"])
        report = await _orchestrator(scan_config, caller, sleeper).run(make_items(3))

        assert [r.value for r in report.results] == [canonical_for("img0.png"), NOT_FOUND, NOT_FOUND]
        assert report.values == [canonical_for("img0.png")]
        assert report.status is RunStatus.COMPLETED

    async def test_unparseable_answer_kept_verbatim(self, scan_config, make_items, sleeper):
        caller = ScriptedCaller(["nomor tidak jelas\nTIDAK DITEMUKAN"])
        report = await _orchestrator(scan_config, caller, sleeper).run(make_items(2))

        assert [r.value for r in report.results] == ["nomor tidak jelas", NOT_FOUND]

    async def test_empty_input_completes_immediately(self, scan_config, sleeper):
        caller = ScriptedCaller()
        report = await _orchestrator(scan_config, caller, sleeper).run([])

        assert report.status is RunStatus.COMPLETED
        assert report.total == 0
        assert caller.calls == []
        assert sleeper.delays == []

    async def test_state_tracks_progress(self, scan_config, make_items, sleeper):
        orch = _orchestrator(scan_config, ScriptedCaller(), sleeper)
        await orch.run(make_items(7))

        state = orch.state
        assert state.total == 7
        assert state.processed_count == 7
        assert state.pending == []
        assert len(state.results) == 7


class LazyStreamCaller(ScriptedCaller):
    """Returns the stream right away; scripted errors are raised while it is read."""

    async def __call__(self, items, api_key):
        self.calls.append(([it.name for it in items], api_key))
        outcome = self.script.pop(0) if self.script else None
        if isinstance(outcome, BaseException):
            return self._failing_stream(outcome)
        return stream_of("\n".join(number_for(it.name) for it in items))

    @staticmethod
    async def _failing_stream(error):
        yield Chunk("081234567800\n")
        raise error


class TestStreamedAttempts:
    async def test_quota_while_reading_stream_rotates_key(self, scan_config, make_items, sleeper):
        caller = LazyStreamCaller([QuotaExceeded()])
        orch = _orchestrator(scan_config, caller, sleeper)

        report = await orch.run(make_items(2))

        assert report.status is RunStatus.COMPLETED
        assert report.retry_rounds == 0
        assert [key for _, key in caller.calls] == ["key-a", "key-b"]
        assert orch.pool.is_limited("key-a")
        assert orch.pool.stats()[0].error_count == 1
        assert sleeper.delays == [2.0]

    async def test_broken_stream_backs_off_and_retries_batch(self, scan_config, make_items, sleeper):
        caller = LazyStreamCaller([ConnectionError("stream reset")])

        report = await _orchestrator(scan_config, caller, sleeper).run(make_items(2))

        assert report.status is RunStatus.COMPLETED
        assert report.retry_rounds == 0
        assert [key for _, key in caller.calls] == ["key-a", "key-a"]
        # the partial first answer is discarded with the failed attempt
        assert [r.value for r in report.results] == [canonical_for("img0.png"), canonical_for("img1.png")]
        assert sleeper.delays == [3.0]

    async def test_stream_read_counts_against_attempt_timeout(self, scan_config, make_items, sleeper):
        async def stalled_stream():
            yield Chunk("0812")
            await asyncio.sleep(5)

        class Stalling(ScriptedCaller):
            async def __call__(self, items, api_key):
                self.calls.append(([it.name for it in items], api_key))
                return stalled_stream()

        cfg = replace(scan_config, timeout=0.01, max_attempts=2, max_retry_rounds=0)
        caller = Stalling()

        report = await _orchestrator(cfg, caller, sleeper).run(make_items(1))

        assert report.status is RunStatus.COMPLETED_WITH_FAILURES
        assert len(caller.calls) == 2
        assert sleeper.delays == [3.0]


class TestRetryRounds:
    async def test_failed_batch_is_retried_in_next_round(self, scan_config, make_items, sleeper):
        items = make_items(12)
        boom = ConnectionError("connection reset")
        caller = ScriptedCaller([None, boom, boom, boom, None, None])
        observer = RecordingObserver()
        orch = _orchestrator(scan_config, caller, sleeper, observer)

        report = await orch.run(items)

        assert report.status is RunStatus.COMPLETED
        assert report.retry_rounds == 1
        assert report.failed_items == ()
        assert len(report.results) == 12
        # batch 2's images arrive last, after the retry round
        assert [r.item.name for r in report.results[-5:]] == [f"img{i}.png" for i in range(5, 10)]
        assert report.results[-1].batch_label == "Batch 1 (5 images), retry 1"
        # inter-batch, two backoffs, inter-batch, round cooldown
        assert sleeper.delays == [3.0, 3.0, 6.0, 3.0, 5.0]
        assert ("round", 1, 3) in observer.events
        assert ("end", "Batch 2 (5 images)", False) in observer.events

    async def test_persistent_failure_stops_after_max_rounds(self, scan_config, make_items, sleeper):
        items = make_items(3)
        caller = ScriptedCaller([ConnectionError("down")] * 100)

        report = await _orchestrator(scan_config, caller, sleeper).run(items)

        assert report.status is RunStatus.COMPLETED_WITH_FAILURES
        assert report.retry_rounds == 3
        assert report.results == ()
        assert report.failed_items == tuple(items)
        # first pass plus three rounds, max_attempts each
        assert len(caller.calls) == 4 * 3
        assert sleeper.delays.count(5.0) == 3

    async def test_zero_retry_rounds(self, scan_config, make_items, sleeper):
        cfg = replace(scan_config, max_retry_rounds=0)
        caller = ScriptedCaller([ConnectionError("down")] * 3)

        report = await _orchestrator(cfg, caller, sleeper).run(make_items(2))

        assert report.status is RunStatus.COMPLETED_WITH_FAILURES
        assert report.retry_rounds == 0
        assert len(report.failed_items) == 2

    @pytest.mark.parametrize(
        "batch_size,count",
        [
            (1, 0),
            (1, 1),
            (1, 7),
            (2, 2),
            (2, 9),
            (5, 0),
            (5, 5),
            (5, 11),
            (11, 11),
            (11, 23),
            (12, 12),
            (12, 30),
        ],
    )
    async def test_every_item_answered_or_failed(self, scan_config, make_items, sleeper, batch_size, count):
        class FailsOnMultiplesOfThree(ScriptedCaller):
            async def __call__(self, items, api_key):
                if any(int(it.name[3:].split(".")[0]) % 3 == 0 for it in items):
                    self.calls.append(([it.name for it in items], api_key))
                    raise ConnectionError("unreadable image")
                return await super().__call__(items, api_key)

        items = make_items(count)
        cfg = replace(scan_config, batch_size=batch_size)

        report = await _orchestrator(cfg, FailsOnMultiplesOfThree(), sleeper).run(items)

        answered = [r.item.name for r in report.results]
        failed = [it.name for it in report.failed_items]
        assert len(answered) == len(set(answered))
        assert len(failed) == len(set(failed))
        assert set(answered).isdisjoint(failed)
        assert set(answered) | set(failed) == {it.name for it in items}
        assert len(report.results) + len(report.failed_items) == report.total == count
        assert all(r.value == canonical_for(r.item.name) for r in report.results)


class TestRunGuards:
    async def test_second_run_is_rejected_while_first_in_flight(self, scan_config, make_items, sleeper):
        release = asyncio.Event()
        entered = asyncio.Event()

        class Gated(ScriptedCaller):
            async def __call__(self, items, api_key):
                entered.set()
                await release.wait()
                return await super().__call__(items, api_key)

        orch = _orchestrator(scan_config, Gated(), sleeper)
        first = asyncio.create_task(orch.run(make_items(2)))
        await entered.wait()

        assert orch.is_running
        with pytest.raises(RunInProgressError):
            await orch.run(make_items(1))

        release.set()
        report = await first
        assert report.status is RunStatus.COMPLETED
        assert not orch.is_running

    async def test_new_run_starts_with_fresh_key_ledger(self, scan_config, make_items, sleeper):
        orch = _orchestrator(scan_config, ScriptedCaller([QuotaExceeded()]), sleeper)
        await orch.run(make_items(1))
        assert orch.pool.index == 1

        await orch.run(make_items(1))

        assert orch.pool.index == 0
        assert orch.pool.stats()[0].error_count == 0

    async def test_unexpected_failure_aborts_with_partial_report(self, scan_config, make_items, sleeper):
        class Exploding(ProgressObserver):
            def __init__(self):
                self.reports = []

            def on_batch_start(self, state, label, key_label):
                if label.startswith("Batch 2"):
                    raise RuntimeError("observer crashed")

            def on_run_end(self, report):
                self.reports.append(report)

        items = make_items(12)
        observer = Exploding()
        orch = _orchestrator(scan_config, ScriptedCaller(), sleeper, observer)

        with pytest.raises(RunFatalError, match="observer crashed") as exc_info:
            await orch.run(items)

        report = exc_info.value.report
        assert report.status is RunStatus.ABORTED
        assert report.error == "observer crashed"
        assert [r.item for r in report.results] == items[:5]
        assert report.failed_items == tuple(items[5:])
        assert observer.reports == [report]
        assert not orch.is_running


class TestObserver:
    async def test_event_order(self, scan_config, make_items, sleeper):
        observer = RecordingObserver()
        await _orchestrator(scan_config, ScriptedCaller(), sleeper, observer).run(make_items(6))

        assert observer.events == [
            ("start", "Batch 1 (5 images)", "key 1/3"),
            ("end", "Batch 1 (5 images)", True),
            ("start", "Batch 2 (1 images)", "key 1/3"),
            ("end", "Batch 2 (1 images)", True),
            ("run_end", RunStatus.COMPLETED),
        ]


class TestCreateOrchestrator:
    def test_requires_api_keys(self, scan_config):
        with pytest.raises(ConfigurationError, match="No API keys"):
            create_orchestrator(replace(scan_config, api_keys=()))

    def test_wires_pool_from_config(self, scan_config):
        orch = create_orchestrator(replace(scan_config, key_policy="least_used"))
        assert len(orch.pool) == 3
        assert orch.pool.policy == "least_used"
        assert not orch.is_running
