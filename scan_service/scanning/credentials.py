"""API key pool with per-key usage, error and rate-limit tracking.

Two selection policies:

- ``round_robin``: walk the pool circularly starting at the current key and
  take the first key that is not limited.  The selected key stays in use until
  it is limited, and once the others are exhausted a single healthy key absorbs
  all traffic.
- ``least_used``: among keys that are not limited, take the one with the
  fewest errors, then the fewest calls; ties are broken randomly so a fresh
  run does not herd onto the first key.

Every read-then-write happens under one lock, so concurrent callers can never
both conclude the pool is exhausted while another caller is resetting it.
"""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Iterable
from dataclasses import dataclass

from scan_service.errors import ConfigurationError

logger = logging.getLogger(__name__)

POLICY_ROUND_ROBIN = "round_robin"
POLICY_LEAST_USED = "least_used"
POLICIES = (POLICY_ROUND_ROBIN, POLICY_LEAST_USED)


@dataclass(frozen=True)
class CredentialStats:
    label: str
    usage_count: int
    error_count: int
    limited: bool


class CredentialPool:
    def __init__(
        self,
        keys: Iterable[str],
        *,
        policy: str = POLICY_ROUND_ROBIN,
        rng: random.Random | None = None,
    ) -> None:
        unique: list[str] = []
        for k in keys:
            k = (k or "").strip()
            if k and k not in unique:
                unique.append(k)
        if not unique:
            raise ConfigurationError("No API keys configured")
        if policy not in POLICIES:
            raise ConfigurationError(f"Unknown key selection policy: {policy!r}")

        self._keys = tuple(unique)
        self._policy = policy
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._index = 0
        self._usage = [0] * len(unique)
        self._errors = [0] * len(unique)
        self._limited = [False] * len(unique)

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def policy(self) -> str:
        return self._policy

    @property
    def index(self) -> int:
        with self._lock:
            return self._index

    def label(self, key: str | None = None) -> str:
        """Log-safe name for a key (``key 2/5``); the secret itself is never logged."""
        with self._lock:
            idx = self._index if key is None else self._keys.index(key)
        return f"key {idx + 1}/{len(self._keys)}"

    def current(self) -> str:
        with self._lock:
            return self._keys[self._index]

    def next(self) -> str | None:
        with self._lock:
            return self._select_next()

    def rotate(self) -> str | None:
        """Mark the current key limited and move to the next usable one."""
        with self._lock:
            self._limited[self._index] = True
            logger.warning("API key %d/%d marked as limited", self._index + 1, len(self._keys))
            return self._select_next()

    def mark_limited(self, key: str) -> None:
        with self._lock:
            self._limited[self._keys.index(key)] = True

    def is_limited(self, key: str) -> bool:
        with self._lock:
            return self._limited[self._keys.index(key)]

    def reset_all(self) -> None:
        with self._lock:
            self._limited = [False] * len(self._keys)
            self._index = 0
        logger.info("All API key limits reset; resuming from key 1/%d", len(self._keys))

    def reset_counters(self) -> None:
        """Fresh ledger for a new scan: counters zeroed, limits cleared, pointer rewound."""
        with self._lock:
            n = len(self._keys)
            self._usage = [0] * n
            self._errors = [0] * n
            self._limited = [False] * n
            self._index = 0

    def record_usage(self, key: str) -> None:
        with self._lock:
            self._usage[self._keys.index(key)] += 1

    def record_error(self, key: str) -> None:
        with self._lock:
            self._errors[self._keys.index(key)] += 1

    def stats(self) -> list[CredentialStats]:
        with self._lock:
            n = len(self._keys)
            return [
                CredentialStats(
                    label=f"key {i + 1}/{n}",
                    usage_count=self._usage[i],
                    error_count=self._errors[i],
                    limited=self._limited[i],
                )
                for i in range(n)
            ]

    # -- selection (caller holds the lock) -------------------------------------

    def _select_next(self) -> str | None:
        if self._policy == POLICY_LEAST_USED:
            idx = self._select_least_used()
        else:
            idx = self._select_round_robin()
        if idx is None:
            return None
        self._index = idx
        logger.info("Using API key %d/%d", idx + 1, len(self._keys))
        return self._keys[idx]

    def _select_round_robin(self) -> int | None:
        n = len(self._keys)
        for step in range(n):
            idx = (self._index + step) % n
            if not self._limited[idx]:
                return idx
        return None

    def _select_least_used(self) -> int | None:
        available = [i for i in range(len(self._keys)) if not self._limited[i]]
        if not available:
            return None
        best = min((self._errors[i], self._usage[i]) for i in available)
        tied = [i for i in available if (self._errors[i], self._usage[i]) == best]
        return self._rng.choice(tied)
