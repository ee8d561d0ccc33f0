"""Unit test fixtures; no network or API keys required."""

from __future__ import annotations

import io
import zipfile
from collections.abc import Callable

import pytest
from scan_fakes import SleepRecorder

from scan_service.config import ScanConfig
from scan_service.scanning.types import WorkItem


@pytest.fixture
def make_items() -> Callable[..., list[WorkItem]]:
    def _make(n: int, *, start: int = 0) -> list[WorkItem]:
        return [
            WorkItem(name=f"img{i}.png", data=f"png-{i}".encode(), mime_type="image/png")
            for i in range(start, start + n)
        ]

    return _make


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def scan_config() -> ScanConfig:
    return ScanConfig(
        api_keys=("key-a", "key-b", "key-c"),
        model="gemma-3-27b-it",
        prompt="Extract phone number from this image",
        key_policy="round_robin",
        batch_size=5,
        inter_batch_delay=3.0,
        max_attempts=3,
        base_delay=3.0,
        timeout=5.0,
        quota_cooldown=2.0,
        exhausted_cooldown=30.0,
        max_retry_rounds=3,
        retry_round_cooldown=5.0,
    )


@pytest.fixture
def zip_bytes() -> Callable[[dict[str, bytes]], bytes]:
    """Build a ZIP archive in memory from ``{path: payload}``."""

    def _build(entries: dict[str, bytes]) -> bytes:
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            for path, payload in entries.items():
                if path.endswith("/"):
                    zf.writestr(zipfile.ZipInfo(path), b"")
                else:
                    zf.writestr(path, payload)
        return buf.getvalue()

    return _build
