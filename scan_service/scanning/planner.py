from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from scan_service.scanning.archive import expand_archive, is_archive_name, is_rar_name
from scan_service.scanning.types import InputSummary, WorkItem

logger = logging.getLogger(__name__)

_IMAGE_MIME_TYPES: dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
}

DEFAULT_MIME_TYPE = "application/octet-stream"


def _ext(name: str) -> str:
    base = name.lower()
    for e in _IMAGE_MIME_TYPES:
        if base.endswith(e):
            return e
    return ""


def guess_mime_type(name: str, declared: str | None = None) -> str:
    """Declared type wins; otherwise map the file extension."""
    if declared and declared.strip() and declared != DEFAULT_MIME_TYPE:
        return declared.strip()
    return _IMAGE_MIME_TYPES.get(_ext(name), DEFAULT_MIME_TYPE)


def is_image_name(name: str) -> bool:
    return bool(_ext(name))


def is_image(name: str, declared: str | None = None) -> bool:
    if declared and declared.startswith("image/"):
        return True
    return is_image_name(name)


def items_from_upload(
    name: str, content_type: str | None, data: bytes
) -> tuple[list[WorkItem], InputSummary]:
    """Turn one uploaded file (image or archive) into work items."""
    if is_archive_name(name, content_type):
        items = expand_archive(name, data, content_type=content_type)
        rar = is_rar_name(name, content_type)
        return items, InputSummary(zip_count=0 if rar else 1, rar_count=1 if rar else 0)

    if is_image(name, content_type):
        item = WorkItem(name=name, data=data, mime_type=guess_mime_type(name, content_type))
        return [item], InputSummary(image_count=1)

    logger.info("Skipping unsupported file: %s", name)
    return [], InputSummary(skipped=(name,))


def merge_summaries(summaries: Iterable[InputSummary]) -> InputSummary:
    image_count = zip_count = rar_count = 0
    skipped: list[str] = []
    for s in summaries:
        image_count += s.image_count
        zip_count += s.zip_count
        rar_count += s.rar_count
        skipped.extend(s.skipped)
    return InputSummary(
        image_count=image_count,
        zip_count=zip_count,
        rar_count=rar_count,
        skipped=tuple(skipped),
    )


def _iter_files(paths: Iterable[Path]) -> Iterable[Path]:
    for p in paths:
        if p.is_dir():
            yield from sorted(f for f in p.rglob("*") if f.is_file())
        else:
            yield p


def plan_inputs(paths: Iterable[str | Path]) -> tuple[list[WorkItem], InputSummary]:
    """Collect work items from image files, archives and directories, in order."""
    items: list[WorkItem] = []
    summaries: list[InputSummary] = []
    for f in _iter_files(Path(p) for p in paths):
        if not f.exists():
            logger.warning("Input not found: %s", f)
            summaries.append(InputSummary(skipped=(str(f),)))
            continue
        found, summary = items_from_upload(f.name, None, f.read_bytes())
        items.extend(found)
        summaries.append(summary)

    summary = merge_summaries(summaries)
    logger.info(
        "Planned %d images (%d direct, %d ZIP, %d RAR, %d skipped)",
        len(items),
        summary.image_count,
        summary.zip_count,
        summary.rar_count,
        len(summary.skipped),
    )
    return items, summary
