"""Error taxonomy for the scan pipeline.

Per-attempt failures are classified into ``QuotaError`` (rotate the key) or
``TransientError`` (back off and retry).  A batch that runs out of attempts
raises ``BatchExhaustedError``, which the orchestrator turns into failed-item
membership.  Only ``RunFatalError`` ever reaches the caller mid-run, and it
carries whatever results were gathered before the failure.
"""

from __future__ import annotations

import asyncio
import re
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from scan_service.scanning.types import RunReport

_QUOTA_PATTERN = re.compile(
    r"quota|\blimit|\brate\b|rate[\s_-]?limit|\b429\b|resource[_ ]exhausted|too many requests",
    flags=re.IGNORECASE,
)


class ScanError(Exception):
    """Base class for all scan pipeline errors."""


class ConfigurationError(ScanError, ValueError):
    """Scan cannot start (e.g. no API keys configured)."""


class QuotaError(ScanError):
    """The active key hit a quota or rate limit."""

    def __init__(self, message: str, *, original: BaseException | None = None) -> None:
        super().__init__(message)
        self.original = original


class TransientError(ScanError):
    """Network, timeout or any other retryable failure."""

    def __init__(self, message: str, *, original: BaseException | None = None) -> None:
        super().__init__(message)
        self.original = original


class BatchExhaustedError(ScanError):
    def __init__(self, label: str, attempts: int, last_error: BaseException | None) -> None:
        detail = str(last_error) if last_error is not None else "unknown error"
        super().__init__(f"{label} failed after {attempts} attempts. Last error: {detail}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


class RunInProgressError(ScanError):
    """A scan is already running; new submissions are rejected."""


class RunFatalError(ScanError):
    """Unexpected failure outside the per-batch boundary."""

    def __init__(self, message: str, *, report: RunReport) -> None:
        super().__init__(message)
        self.report = report


def _status_code(error: BaseException) -> Any:
    # google.genai.errors.APIError exposes ``code`` (int) and ``status`` (str)
    return getattr(error, "code", None) or getattr(error, "status_code", None)


def classify(error: BaseException) -> QuotaError | TransientError:
    """Map any attempt failure onto the retry taxonomy.

    Structured fields win over message matching; the message tokens are the
    fallback for backends that only surface text.
    """
    if isinstance(error, (QuotaError, TransientError)):
        return error

    message = str(error) or type(error).__name__

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return TransientError(message, original=error)

    code = _status_code(error)
    if code == 429 or str(code) == "429":
        return QuotaError(message, original=error)
    if str(getattr(error, "status", "") or "").upper() == "RESOURCE_EXHAUSTED":
        return QuotaError(message, original=error)

    if _QUOTA_PATTERN.search(message):
        return QuotaError(message, original=error)
    return TransientError(message, original=error)
