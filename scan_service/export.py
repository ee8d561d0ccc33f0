"""Export of accepted phone numbers as line-delimited text or an XLSX sheet."""

from __future__ import annotations

import io
import logging
from collections.abc import Iterable
from pathlib import Path

import openpyxl
from openpyxl.styles import Font, PatternFill

from scan_service.normalize import NOT_FOUND, canonicalize, is_exportable

logger = logging.getLogger(__name__)

DEFAULT_TEXT_NAME = "nomor_telepon.txt"
DEFAULT_XLSX_NAME = "nomor_telepon.xlsx"

_HEADER_FILL = PatternFill(start_color="70AD47", end_color="70AD47", fill_type="solid")


def exportable_numbers(values: Iterable[str]) -> list[str]:
    """Canonicalize every value and keep only well-formed ``628`` mobile numbers."""
    out: list[str] = []
    for v in values:
        if not v or v == NOT_FOUND:
            continue
        number = canonicalize(v)
        if is_exportable(number):
            out.append(number)
    return out


def render_text(numbers: Iterable[str]) -> str:
    return "\n".join(numbers)


def write_text(path: str | Path, numbers: Iterable[str]) -> Path:
    path = Path(path)
    numbers = list(numbers)
    path.write_text(render_text(numbers), encoding="utf-8")
    logger.info("Wrote %d phone numbers to %s", len(numbers), path)
    return path


def build_workbook(numbers: Iterable[str]) -> openpyxl.Workbook:
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Nomor Telepon"

    ws.append(["No", "Nomor Telepon"])
    for cell in ws[1]:
        cell.font = Font(bold=True)
        cell.fill = _HEADER_FILL

    for i, number in enumerate(numbers, start=1):
        # stored as text so spreadsheet apps keep the full digit string
        ws.append([i, number])
        ws.cell(row=i + 1, column=2).number_format = "@"

    ws.column_dimensions["A"].width = 6
    ws.column_dimensions["B"].width = 20
    return wb


def render_xlsx(numbers: Iterable[str]) -> bytes:
    buf = io.BytesIO()
    build_workbook(numbers).save(buf)
    return buf.getvalue()


def write_xlsx(path: str | Path, numbers: Iterable[str]) -> Path:
    path = Path(path)
    numbers = list(numbers)
    build_workbook(numbers).save(path)
    logger.info("Wrote %d phone numbers to %s", len(numbers), path)
    return path


def write_export(path: str | Path, numbers: Iterable[str]) -> Path:
    """Pick the format from the file extension (``.xlsx`` or text)."""
    if str(path).lower().endswith(".xlsx"):
        return write_xlsx(path, numbers)
    return write_text(path, numbers)
