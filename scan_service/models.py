"""Pydantic request/response schemas for the scan API."""

from __future__ import annotations

from pydantic import BaseModel, Field

from scan_service.scanning.types import InputSummary, RunReport


class FailedImage(BaseModel):
    name: str
    source: str | None = Field(None, description="Archive the image was extracted from")


class ScanResponse(BaseModel):
    run_id: str
    status: str  # completed|completed_with_failures|aborted
    total_images: int
    answered: int
    found: int
    values: list[str]
    exportable: list[str]
    failed: list[FailedImage]
    retry_rounds: int
    zip_count: int = 0
    rar_count: int = 0
    skipped: list[str] = Field(default_factory=list)
    error: str | None = None

    @classmethod
    def from_report(
        cls, report: RunReport, summary: InputSummary, exportable: list[str]
    ) -> ScanResponse:
        values = report.values
        return cls(
            run_id=report.run_id,
            status=report.status.value,
            total_images=report.total,
            answered=report.succeeded,
            found=len(values),
            values=values,
            exportable=exportable,
            failed=[FailedImage(name=it.name, source=it.source) for it in report.failed_items],
            retry_rounds=report.retry_rounds,
            zip_count=summary.zip_count,
            rar_count=summary.rar_count,
            skipped=list(summary.skipped),
            error=report.error,
        )


class HealthResponse(BaseModel):
    status: str
    error: str | None = None
