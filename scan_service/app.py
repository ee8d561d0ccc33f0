"""FastAPI entry point for the phone scan service.

Endpoints:
- POST /v1/scan     : Upload images / ZIP archives and scan them
- GET  /v1/export   : Download numbers of the last scan (txt or xlsx)
- GET  /liveness    : Health check
- GET  /readiness   : API keys configured
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Literal

from fastapi import FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response

from scan_service.config import ScanConfig
from scan_service.errors import ConfigurationError, RunFatalError, RunInProgressError
from scan_service.export import (
    DEFAULT_TEXT_NAME,
    DEFAULT_XLSX_NAME,
    exportable_numbers,
    render_text,
    render_xlsx,
)
from scan_service.logging_config import generate_request_id, setup_logging
from scan_service.models import HealthResponse, ScanResponse
from scan_service.scanning.orchestrator import (
    BatchOrchestrator,
    LoggingObserver,
    create_orchestrator,
)
from scan_service.scanning.planner import items_from_upload, merge_summaries
from scan_service.scanning.types import RunReport, WorkItem

logger = logging.getLogger(__name__)

_XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _build_orchestrator() -> BatchOrchestrator | None:
    try:
        return create_orchestrator(ScanConfig.from_env(), observer=LoggingObserver())
    except ConfigurationError as e:
        logger.error("Scanner not configured: %s", e)
        return None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: build the orchestrator once per process."""
    setup_logging()
    app.state.orchestrator = _build_orchestrator()
    app.state.last_report = None
    logger.info("Phone scan service started")
    yield
    logger.info("Phone scan service stopped")


app = FastAPI(
    title="Phone Scan API",
    version="0.1.0",
    lifespan=lifespan,
)


# -- Body size limit ----------------------------------------------------------

_MAX_BODY_BYTES = 200 * 1024 * 1024  # 200 MB


@app.middleware("http")
async def body_size_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Reject requests with bodies exceeding the size limit."""
    content_length = request.headers.get("content-length")
    if content_length is not None and int(content_length) > _MAX_BODY_BYTES:
        return JSONResponse(status_code=413, content={"detail": "Request body too large"})
    return await call_next(request)


# -- Request ID middleware ----------------------------------------------------


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Attach a unique request ID for trace correlation."""
    request_id = request.headers.get("x-request-id") or generate_request_id()
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["x-request-id"] = request_id
    return response


def _get_orchestrator(request: Request) -> BatchOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="No API keys configured")
    return orchestrator


# -- Health -------------------------------------------------------------------


@app.get("/liveness", response_model=HealthResponse)
async def liveness() -> HealthResponse:
    return HealthResponse(status="ok")


@app.get("/readiness", response_model=HealthResponse)
async def readiness(request: Request) -> HealthResponse:
    if getattr(request.app.state, "orchestrator", None) is None:
        raise HTTPException(status_code=503, detail="No API keys configured")
    return HealthResponse(status="ok")


# -- Scan ---------------------------------------------------------------------


@app.post("/v1/scan", response_model=ScanResponse)
async def scan(
    request: Request,
    files: Annotated[list[UploadFile], File(description="Images and/or ZIP archives")],
) -> ScanResponse:
    """Scan uploaded images (archives are expanded first)."""
    orchestrator = _get_orchestrator(request)
    if orchestrator.is_running:
        raise HTTPException(status_code=409, detail="A scan is already in progress")

    items: list[WorkItem] = []
    summaries = []
    for upload in files:
        data = await upload.read()
        found, summary = items_from_upload(upload.filename or "upload", upload.content_type, data)
        items.extend(found)
        summaries.append(summary)
    summary = merge_summaries(summaries)

    if not items:
        raise HTTPException(
            status_code=400,
            detail="No images found. Supported formats: JPG, PNG, WEBP, GIF, BMP (directly or inside ZIP).",
        )

    report: RunReport
    try:
        report = await orchestrator.run(items)
    except RunInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except RunFatalError as e:
        report = e.report

    request.app.state.last_report = report
    return ScanResponse.from_report(report, summary, exportable_numbers(report.values))


@app.get("/v1/export")
async def export(
    request: Request,
    fmt: Annotated[Literal["txt", "xlsx"], Query(alias="format")] = "txt",
) -> Response:
    """Download the exportable numbers of the most recent scan."""
    report: RunReport | None = getattr(request.app.state, "last_report", None)
    if report is None:
        raise HTTPException(status_code=404, detail="No scan results yet")

    numbers = exportable_numbers(report.values)
    if fmt == "xlsx":
        return Response(
            content=render_xlsx(numbers),
            media_type=_XLSX_MEDIA_TYPE,
            headers={"Content-Disposition": f'attachment; filename="{DEFAULT_XLSX_NAME}"'},
        )
    return Response(
        content=render_text(numbers),
        media_type="text/plain; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{DEFAULT_TEXT_NAME}"'},
    )
