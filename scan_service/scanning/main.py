from __future__ import annotations

import asyncio
import logging

from scan_service.config import ScanConfig
from scan_service.errors import ConfigurationError, RunFatalError
from scan_service.export import DEFAULT_TEXT_NAME, exportable_numbers, write_export
from scan_service.logging_config import setup_logging
from scan_service.scanning.cli import build_parser
from scan_service.scanning.orchestrator import LoggingObserver, create_orchestrator
from scan_service.scanning.planner import plan_inputs
from scan_service.scanning.types import RunReport, RunStatus

logger = logging.getLogger("scan_service.scanning")

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_PARTIAL = 2


def _export(report: RunReport, output: str) -> None:
    numbers = exportable_numbers(report.values)
    if not numbers:
        logger.warning("No exportable phone numbers; %s not written", output)
        return
    write_export(output, numbers)


def _log_failures(report: RunReport) -> None:
    if not report.failed_items:
        return
    logger.warning(
        "%d images still failing after %d retry rounds:",
        len(report.failed_items),
        report.retry_rounds,
    )
    for it in report.failed_items:
        logger.warning("  - %s", it.name)


async def _amain(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level.upper())

    cfg = ScanConfig.from_env().with_overrides(
        model=args.model,
        prompt=args.prompt,
        batch_size=args.batch_size,
        max_retry_rounds=args.retry_rounds,
        timeout=args.timeout,
        key_policy=args.key_policy,
    )

    items, summary = plan_inputs(args.inputs)
    if not items:
        logger.error(
            "No images found. Supported formats: JPG, PNG, WEBP, GIF, BMP (directly or inside ZIP)."
        )
        return EXIT_ABORTED

    if args.dry_run:
        for it in items:
            logger.info("[DRY-RUN] %s (%s, %d bytes)", it.name, it.mime_type, it.size)
        return EXIT_OK

    try:
        orchestrator = create_orchestrator(cfg, observer=LoggingObserver())
    except ConfigurationError as e:
        logger.error("%s", e)
        return EXIT_ABORTED

    output = args.output or DEFAULT_TEXT_NAME
    try:
        report = await orchestrator.run(items)
    except RunFatalError as e:
        logger.error("%s", e)
        if e.report.values:
            logger.info("Saving %d results gathered before the error", len(e.report.values))
            _export(e.report, output)
        return EXIT_ABORTED

    _export(report, output)
    _log_failures(report)
    logger.info(
        "DONE model=%s images=%d found=%d failed=%d zip=%d rar=%d",
        cfg.model,
        report.total,
        len(report.values),
        len(report.failed_items),
        summary.zip_count,
        summary.rar_count,
    )
    return EXIT_OK if report.status is RunStatus.COMPLETED else EXIT_PARTIAL


def main() -> None:
    raise SystemExit(asyncio.run(_amain()))


if __name__ == "__main__":
    main()
