"""Environment-variable-driven configuration for the phone scanner.

API keys come from ``GEMINI_API_KEY``, ``GEMINI_API_KEY_2`` .. ``GEMINI_API_KEY_10``
and the comma-separated ``SCAN_API_KEYS``; everything else has a default.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any

from scan_service.errors import ConfigurationError
from scan_service.scanning.credentials import POLICIES, POLICY_ROUND_ROBIN

MAX_NUMBERED_KEYS = 10

DEFAULT_MODEL = "gemma-3-27b-it"
DEFAULT_PROMPT = (
    "Extract phone number from this image, give me only the number without any explanation"
)


def _get_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    return int(v)


def _get_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    return float(v)


def _env_csv(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def load_api_keys() -> tuple[str, ...]:
    names = ["GEMINI_API_KEY"] + [f"GEMINI_API_KEY_{i}" for i in range(2, MAX_NUMBERED_KEYS + 1)]
    keys: list[str] = []
    for name in names:
        v = (os.getenv(name) or "").strip()
        if v:
            keys.append(v)
    keys.extend(_env_csv("SCAN_API_KEYS"))
    # drop duplicates, keep order
    return tuple(dict.fromkeys(keys))


@dataclass(frozen=True)
class ScanConfig:
    api_keys: tuple[str, ...]
    model: str
    prompt: str
    key_policy: str

    # Batching
    batch_size: int
    inter_batch_delay: float

    # Per-batch call retries
    max_attempts: int
    base_delay: float
    timeout: float
    quota_cooldown: float
    exhausted_cooldown: float

    # Retry rounds over failed batches
    max_retry_rounds: int
    retry_round_cooldown: float

    @classmethod
    def from_env(cls) -> ScanConfig:
        return cls(
            api_keys=load_api_keys(),
            model=os.getenv("SCAN_MODEL", DEFAULT_MODEL),
            prompt=os.getenv("SCAN_PROMPT") or DEFAULT_PROMPT,
            key_policy=os.getenv("SCAN_KEY_POLICY", POLICY_ROUND_ROBIN).strip().lower(),
            batch_size=_get_int("SCAN_BATCH_SIZE", 5),
            inter_batch_delay=_get_float("SCAN_INTER_BATCH_DELAY_SECONDS", 3.0),
            max_attempts=_get_int("SCAN_MAX_ATTEMPTS", 3),
            base_delay=_get_float("SCAN_BASE_DELAY_SECONDS", 3.0),
            timeout=_get_float("SCAN_TIMEOUT_SECONDS", 60.0),
            quota_cooldown=_get_float("SCAN_QUOTA_COOLDOWN_SECONDS", 2.0),
            exhausted_cooldown=_get_float("SCAN_EXHAUSTED_COOLDOWN_SECONDS", 30.0),
            max_retry_rounds=_get_int("SCAN_MAX_RETRY_ROUNDS", 3),
            retry_round_cooldown=_get_float("SCAN_RETRY_ROUND_COOLDOWN_SECONDS", 5.0),
        )

    def with_overrides(self, **overrides: Any) -> ScanConfig:
        """Copy with the given fields replaced; ``None`` values are ignored."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def validate(self) -> None:
        if not self.api_keys:
            raise ConfigurationError(
                "No API keys configured. Set GEMINI_API_KEY (and optionally "
                "GEMINI_API_KEY_2..GEMINI_API_KEY_10 or SCAN_API_KEYS)."
            )
        if self.key_policy not in POLICIES:
            raise ConfigurationError(
                f"SCAN_KEY_POLICY must be one of {', '.join(POLICIES)}, got {self.key_policy!r}"
            )
        if self.batch_size < 1:
            raise ConfigurationError("SCAN_BATCH_SIZE must be >= 1")
        if self.max_attempts < 1:
            raise ConfigurationError("SCAN_MAX_ATTEMPTS must be >= 1")
        if self.max_retry_rounds < 0:
            raise ConfigurationError("SCAN_MAX_RETRY_ROUNDS must be >= 0")
        if self.timeout <= 0:
            raise ConfigurationError("SCAN_TIMEOUT_SECONDS must be > 0")
        for name, value in (
            ("SCAN_BASE_DELAY_SECONDS", self.base_delay),
            ("SCAN_INTER_BATCH_DELAY_SECONDS", self.inter_batch_delay),
            ("SCAN_QUOTA_COOLDOWN_SECONDS", self.quota_cooldown),
            ("SCAN_EXHAUSTED_COOLDOWN_SECONDS", self.exhausted_cooldown),
            ("SCAN_RETRY_ROUND_COOLDOWN_SECONDS", self.retry_round_cooldown),
        ):
            if value < 0:
                raise ConfigurationError(f"{name} must be >= 0")
