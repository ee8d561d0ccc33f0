from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from scan_service.config import ScanConfig
from scan_service.errors import RunFatalError, RunInProgressError
from scan_service.logging_config import generate_run_id
from scan_service.normalize import normalize
from scan_service.scanning.credentials import CredentialPool
from scan_service.scanning.executor import ResilientCallExecutor, SleepFn
from scan_service.scanning.streaming import aggregate_stream, split_answers
from scan_service.scanning.types import ExtractionResult, RunReport, RunState, RunStatus, WorkItem

logger = logging.getLogger(__name__)

# (batch items, api key) -> awaitable resolving to the streamed response
BatchCaller = Callable[[Sequence[WorkItem], str], Awaitable[Any]]


def partition(items: Sequence[WorkItem], batch_size: int) -> list[list[WorkItem]]:
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    return [list(items[i : i + batch_size]) for i in range(0, len(items), batch_size)]


def batch_label(index: int, size: int, retry_round: int = 0) -> str:
    label = f"Batch {index + 1} ({size} images)"
    if retry_round:
        label += f", retry {retry_round}"
    return label


class ProgressObserver:
    """Progress hooks, called synchronously by the orchestrator.

    Subclass and override what you need; the defaults do nothing.
    """

    def on_batch_start(self, state: RunState, label: str, key_label: str) -> None:
        pass

    def on_batch_end(self, state: RunState, label: str, ok: bool, error: str | None) -> None:
        pass

    def on_round_start(self, state: RunState, round_no: int, max_rounds: int) -> None:
        pass

    def on_run_end(self, report: RunReport) -> None:
        pass


class LoggingObserver(ProgressObserver):
    def on_batch_start(self, state: RunState, label: str, key_label: str) -> None:
        pct = round(state.processed_count / state.total * 100) if state.total else 100
        logger.info(
            "[%s] %d%% (%d/%d) %s | %s | found so far: %d",
            state.run_id,
            pct,
            state.processed_count,
            state.total,
            label,
            key_label,
            sum(1 for r in state.results if r.found),
        )

    def on_batch_end(self, state: RunState, label: str, ok: bool, error: str | None) -> None:
        if ok:
            logger.info("[%s] %s done", state.run_id, label)
        else:
            logger.error("[%s] %s failed: %s", state.run_id, label, error)

    def on_round_start(self, state: RunState, round_no: int, max_rounds: int) -> None:
        logger.info(
            "[%s] Retry round %d/%d for %d failed images (%d results so far)",
            state.run_id,
            round_no,
            max_rounds,
            len(state.failed_items),
            len(state.results),
        )

    def on_run_end(self, report: RunReport) -> None:
        logger.info(
            "[%s] Scan %s: %d images, %d answered, %d numbers, %d failed after %d retry rounds",
            report.run_id,
            report.status.value,
            report.total,
            report.succeeded,
            len(report.values),
            len(report.failed_items),
            report.retry_rounds,
        )


class BatchOrchestrator:
    """Drives one scan: fixed-size batches, then bounded retry rounds over failures.

    A batch succeeds or fails as a unit; per-line answers are only trusted when
    the whole stream completed.  At most one scan runs per orchestrator and a
    second ``run`` while one is in flight is rejected.
    """

    def __init__(
        self,
        *,
        cfg: ScanConfig,
        pool: CredentialPool,
        caller: BatchCaller,
        executor: ResilientCallExecutor | None = None,
        observer: ProgressObserver | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._cfg = cfg
        self._pool = pool
        self._caller = caller
        self._sleep = sleep
        self._executor = executor or ResilientCallExecutor(
            pool,
            quota_cooldown=cfg.quota_cooldown,
            exhausted_cooldown=cfg.exhausted_cooldown,
            sleep=sleep,
        )
        self._observer = observer or ProgressObserver()
        self._state: RunState | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state(self) -> RunState | None:
        return self._state

    @property
    def pool(self) -> CredentialPool:
        return self._pool

    async def run(self, items: Sequence[WorkItem]) -> RunReport:
        """Scan ``items`` and return the outcome.

        Raises:
            RunInProgressError: Another scan is running on this orchestrator.
            RunFatalError: Unexpected failure outside a batch; ``report`` holds
                the partial results.
        """
        if self._running:
            raise RunInProgressError("A scan is already in progress")
        self._running = True
        try:
            return await self._run(list(items))
        finally:
            self._running = False

    async def _run(self, items: list[WorkItem]) -> RunReport:
        self._pool.reset_counters()
        self._executor.consecutive_limit_errors = 0
        state = RunState(run_id=generate_run_id(), total=len(items))
        self._state = state
        logger.info(
            "[%s] Scanning %d images in batches of %d with %d API keys",
            state.run_id,
            len(items),
            self._cfg.batch_size,
            len(self._pool),
        )

        try:
            await self._process_pass(state, items, retry_round=0)

            max_rounds = self._cfg.max_retry_rounds
            round_no = 1
            while state.failed_items and round_no <= max_rounds:
                self._observer.on_round_start(state, round_no, max_rounds)
                await self._sleep(self._cfg.retry_round_cooldown)

                to_retry = state.failed_items
                state.failed_items = []
                state.retry_rounds = round_no
                await self._process_pass(state, to_retry, retry_round=round_no)

                if not state.failed_items:
                    logger.info("[%s] All images processed after %d retry rounds", state.run_id, round_no)
                    break
                round_no += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[%s] Scan aborted", state.run_id)
            report = RunReport.from_state(state, status=RunStatus.ABORTED, error=str(e))
            self._observer.on_run_end(report)
            raise RunFatalError(f"Scan aborted: {e}", report=report) from e

        status = RunStatus.COMPLETED_WITH_FAILURES if state.failed_items else RunStatus.COMPLETED
        report = RunReport.from_state(state, status=status)
        self._observer.on_run_end(report)
        return report

    async def _process_pass(self, state: RunState, items: list[WorkItem], *, retry_round: int) -> None:
        batches = partition(items, self._cfg.batch_size)
        state.pending = list(items)

        for idx, batch in enumerate(batches):
            label = batch_label(idx, len(batch), retry_round)
            self._observer.on_batch_start(state, label, self._pool.label())

            error: str | None = None
            try:
                results = await self._process_batch(batch, label)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = str(e) or type(e).__name__
                state.failed_items.extend(batch)
            else:
                state.results.extend(results)

            del state.pending[: len(batch)]
            if retry_round == 0:
                state.processed_count += len(batch)
            state.consecutive_limit_errors = self._executor.consecutive_limit_errors
            self._observer.on_batch_end(state, label, error is None, error)

            if idx < len(batches) - 1:
                await self._sleep(self._cfg.inter_batch_delay)

    async def _fetch_text(self, batch: list[WorkItem]) -> str:
        # the request is only sent once the stream is iterated, so reading the
        # whole answer belongs to the attempt
        stream = await self._caller(batch, self._pool.current())
        return await aggregate_stream(stream)

    async def _process_batch(self, batch: list[WorkItem], label: str) -> list[ExtractionResult]:
        text = await self._executor.execute(
            lambda: self._fetch_text(batch),
            label,
            max_retries=self._cfg.max_attempts,
            base_delay=self._cfg.base_delay,
            timeout=self._cfg.timeout,
        )
        answers = split_answers(text, len(batch))

        results = []
        for pos, (item, answer) in enumerate(zip(batch, answers)):
            value = normalize(answer)
            logger.debug("%s image %d (%s): %s", label, pos + 1, item.name, value)
            results.append(ExtractionResult(item=item, value=value, batch_label=label))
        return results


def create_orchestrator(
    cfg: ScanConfig, *, observer: ProgressObserver | None = None
) -> BatchOrchestrator:
    """Wire an orchestrator against the real Gemini backend."""
    from scan_service.gemini import GeminiBatchCaller

    cfg.validate()
    pool = CredentialPool(cfg.api_keys, policy=cfg.key_policy)
    caller = GeminiBatchCaller(model=cfg.model, prompt=cfg.prompt)
    return BatchOrchestrator(cfg=cfg, pool=pool, caller=caller, observer=observer)
