from __future__ import annotations

import argparse

from scan_service.scanning.credentials import POLICIES


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="phone-scan",
        description="Extract Indonesian phone numbers from images with a Gemini/Gemma model",
    )

    p.add_argument(
        "inputs",
        nargs="+",
        help="Image files, ZIP archives or directories to scan",
    )
    p.add_argument(
        "-o",
        "--output",
        default=None,
        help="Export file (.txt or .xlsx; default nomor_telepon.txt, none on --dry-run)",
    )
    p.add_argument("--model", default=None, help="Override SCAN_MODEL")
    p.add_argument("--prompt", default=None, help="Override SCAN_PROMPT")
    p.add_argument("--batch-size", type=int, default=None, help="Override SCAN_BATCH_SIZE")
    p.add_argument(
        "--retry-rounds",
        type=int,
        default=None,
        help="Override SCAN_MAX_RETRY_ROUNDS",
    )
    p.add_argument("--timeout", type=float, default=None, help="Override SCAN_TIMEOUT_SECONDS")
    p.add_argument(
        "--key-policy",
        choices=POLICIES,
        default=None,
        help="Override SCAN_KEY_POLICY",
    )
    p.add_argument("--dry-run", action="store_true", help="List planned images and exit (no API calls)")
    p.add_argument("--log-level", default="INFO", help="Python logging level (INFO, DEBUG, ...)")
    return p
