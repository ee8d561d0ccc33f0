"""Shared test fixtures for the phone-scan test suite."""

from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
def _isolated_scan_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer API keys and scan settings out of the tests."""
    import os

    for name in list(os.environ):
        if name.startswith(("GEMINI_API_KEY", "SCAN_")) or name == "K_SERVICE":
            monkeypatch.delenv(name, raising=False)
