"""Retry wrapper around one remote inference call.

Quota failures rotate to the next usable API key after a short cooldown and
do not advance the exponential backoff.  When the whole pool is limited the
executor waits out a long cooldown, resets every key and resumes from the
first one.  Anything else backs off exponentially on the same key.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from scan_service.errors import BatchExhaustedError, QuotaError, TransientError, classify
from scan_service.scanning.credentials import CredentialPool

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]
Classifier = Callable[[BaseException], "QuotaError | TransientError"]


class ResilientCallExecutor:
    def __init__(
        self,
        pool: CredentialPool,
        *,
        quota_cooldown: float = 2.0,
        exhausted_cooldown: float = 30.0,
        sleep: SleepFn = asyncio.sleep,
        classifier: Classifier = classify,
    ) -> None:
        self._pool = pool
        self._quota_cooldown = quota_cooldown
        self._exhausted_cooldown = exhausted_cooldown
        self._sleep = sleep
        self._classify = classifier
        self.limit_errors = 0
        self.consecutive_limit_errors = 0

    async def execute(
        self,
        request_factory: Callable[[], Awaitable[T]],
        label: str,
        max_retries: int = 5,
        base_delay: float = 2.0,
        timeout: float = 20.0,
    ) -> T:
        """Run ``request_factory`` until it succeeds or ``max_retries`` attempts fail.

        Args:
            request_factory: Zero-argument callable issuing exactly one remote
                call.  It is invoked afresh per attempt so it picks up the
                currently selected key.
            label: Human-readable name used in logs and the final error.
            max_retries: Total attempt budget (at least one attempt is made).
            base_delay: First transient backoff in seconds; doubles per attempt.
            timeout: Per-attempt timeout in seconds.

        Raises:
            BatchExhaustedError: Every attempt failed.
        """
        attempts = max(1, max_retries)
        last_error: BaseException | None = None

        for attempt in range(1, attempts + 1):
            key = self._pool.current()
            self._pool.record_usage(key)
            logger.info("Attempt %d/%d for %s using %s", attempt, attempts, label, self._pool.label(key))

            started = time.monotonic()
            try:
                result = await asyncio.wait_for(request_factory(), timeout=timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if isinstance(e, asyncio.TimeoutError):
                    e = TransientError(f"Request timed out after {timeout:g}s", original=e)
                last_error = e
                error = self._classify(e)
                is_last = attempt >= attempts
                logger.warning("Attempt %d/%d failed for %s: %s", attempt, attempts, label, e)

                if isinstance(error, QuotaError):
                    await self._on_quota_error(key, sleep=not is_last)
                elif not is_last:
                    backoff = base_delay * (2 ** (attempt - 1))
                    logger.info("Retrying %s in %.1fs", label, backoff)
                    await self._sleep(backoff)
                continue

            elapsed_ms = (time.monotonic() - started) * 1000
            logger.info("%s succeeded in %.0f ms", label, elapsed_ms)
            self.consecutive_limit_errors = 0
            return result

        raise BatchExhaustedError(label, attempts, last_error) from last_error

    async def _on_quota_error(self, key: str, *, sleep: bool) -> None:
        self.limit_errors += 1
        self.consecutive_limit_errors += 1
        self._pool.record_error(key)
        logger.warning("%s hit its rate limit", self._pool.label(key))

        next_key = self._pool.rotate()
        if next_key is not None:
            logger.info("Switched to %s", self._pool.label(next_key))
            if sleep:
                await self._sleep(self._quota_cooldown)
            return

        # limits are cleared only after the cooldown, even on the final attempt
        logger.warning(
            "All %d API keys are limited; waiting %.0fs before resetting",
            len(self._pool),
            self._exhausted_cooldown,
        )
        await self._sleep(self._exhausted_cooldown)
        self._pool.reset_all()
