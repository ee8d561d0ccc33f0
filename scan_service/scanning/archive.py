"""Archive expansion into image work items.

Expansion never raises: a broken archive logs and yields no images, a broken
entry logs and is skipped.
"""

from __future__ import annotations

import io
import logging
import posixpath
import zipfile

from scan_service.scanning.types import WorkItem

logger = logging.getLogger(__name__)

_IMAGE_EXTS = (".jpg", ".jpeg", ".png", ".webp", ".gif", ".bmp")
_ZIP_TYPES = {"application/zip", "application/x-zip-compressed"}
_RAR_TYPES = {"application/vnd.rar", "application/x-rar-compressed"}


def is_zip_name(name: str, content_type: str | None = None) -> bool:
    return name.lower().endswith(".zip") or content_type in _ZIP_TYPES


def is_rar_name(name: str, content_type: str | None = None) -> bool:
    return name.lower().endswith(".rar") or content_type in _RAR_TYPES


def is_archive_name(name: str, content_type: str | None = None) -> bool:
    return is_zip_name(name, content_type) or is_rar_name(name, content_type)


def expand_zip(name: str, data: bytes) -> list[WorkItem]:
    from scan_service.scanning.planner import guess_mime_type

    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, OSError) as e:
        logger.error("ZIP extraction failed for %s: %s", name, e)
        return []

    items: list[WorkItem] = []
    with zf:
        entries = [
            info
            for info in zf.infolist()
            if not info.is_dir() and info.filename.lower().endswith(_IMAGE_EXTS)
        ]
        logger.info("Found %d image files in ZIP %s", len(entries), name)

        for info in entries:
            try:
                payload = zf.read(info)
            except (zipfile.BadZipFile, OSError, RuntimeError, NotImplementedError) as e:
                # RuntimeError: encrypted entry; NotImplementedError: unknown compression
                logger.error("Error extracting %s from %s: %s", info.filename, name, e)
                continue
            items.append(
                WorkItem(
                    name=posixpath.basename(info.filename),
                    data=payload,
                    mime_type=guess_mime_type(info.filename),
                    source=name,
                )
            )

    logger.info("ZIP extraction completed for %s: %d images", name, len(items))
    return items


def expand_archive(name: str, data: bytes, *, content_type: str | None = None) -> list[WorkItem]:
    if is_zip_name(name, content_type):
        return expand_zip(name, data)
    if is_rar_name(name, content_type):
        logger.warning("RAR extraction is not supported (%s); extract it and upload the images", name)
        return []
    logger.warning("Not an archive: %s", name)
    return []
