from __future__ import annotations

import argparse
import asyncio
import os

from screendiary.config import get_settings
from screendiary.daemon import CaptureService
from screendiary.logging_utils import init_logger


def main() -> None:
    parser = argparse.ArgumentParser(description="screendiary capture service (background daemon)")
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Override DATA_DIR (state file, control socket, screenshots, activity log)",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Override SCREENSHOT_INTERVAL_SECONDS",
    )
    args = parser.parse_args()

    if args.data_dir:
        os.environ["DATA_DIR"] = args.data_dir
    if args.interval:
        os.environ["SCREENSHOT_INTERVAL_SECONDS"] = str(args.interval)

    settings = get_settings()
    logger = init_logger("service", settings.logging.directory, settings.logging.level)
    logger.info(
        "Service configured: interval=%ss model=%s endpoint=%s",
        settings.capture.interval_seconds,
        settings.vision.model,
        settings.vision.api_url,
    )

    service = CaptureService(settings, logger)
    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received; service stopped")


if __name__ == "__main__":
    main()
