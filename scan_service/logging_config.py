"""Log setup shared by the ``phone-scan`` CLI and the scan API.

Local runs get compact text lines.  On Cloud Run (``K_SERVICE``) or with
``SCAN_LOG_JSON`` set, records are emitted as one JSON object per line with a
Cloud Logging ``severity`` and a fixed ``service`` field.  Every scan log line
carries the run id in its message.
"""

from __future__ import annotations

import logging
import os
import uuid

from pythonjsonlogger.json import JsonFormatter

SERVICE_NAME = "phone-scan"

# Python level names Cloud Logging does not know under the same name
_SEVERITY_OVERRIDES = {"NOTSET": "DEFAULT", "WARN": "WARNING", "FATAL": "CRITICAL"}

# google-genai and httpx log every request at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "google_genai")

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s:%(lineno)d  %(message)s"
_JSON_FIELDS = "%(message)s %(name)s %(funcName)s %(lineno)d"


class GCPJsonFormatter(JsonFormatter):
    """JSON formatter emitting a Cloud Logging ``severity`` instead of ``levelname``."""

    def add_fields(
        self,
        log_record: dict[str, object],
        record: logging.LogRecord,
        message_dict: dict[str, object],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["severity"] = _SEVERITY_OVERRIDES.get(record.levelname, record.levelname)
        log_record["service"] = SERVICE_NAME
        log_record.pop("levelname", None)


def _want_json() -> bool:
    if os.getenv("K_SERVICE"):
        return True
    return os.getenv("SCAN_LOG_JSON", "").strip().lower() in {"1", "true", "yes", "on"}


def _build_formatter(json_output: bool) -> logging.Formatter:
    if json_output:
        return GCPJsonFormatter(fmt=_JSON_FIELDS, rename_fields={"name": "logger"})
    return logging.Formatter(_TEXT_FORMAT, datefmt="%H:%M:%S")


def setup_logging(*, level: str = "INFO") -> None:
    """Replace the root handlers with one stderr handler for the scanner."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler()
    handler.setFormatter(_build_formatter(_want_json()))
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def generate_request_id() -> str:
    """ID echoed in ``x-request-id`` for one API call."""
    return uuid.uuid4().hex[:16]


def generate_run_id() -> str:
    """Short ID attached to every log line of one scan run."""
    return uuid.uuid4().hex[:8]
