from __future__ import annotations

import argparse
from datetime import datetime
from pathlib import Path

from screendiary.config import get_settings
from screendiary.logging_utils import init_logger
from screendiary.models import ActivityLog, LogContext
from screendiary.storage import ActivityLogStore, format_history
from screendiary.utils import write_json_atomic
from screendiary.vision_client import AnalysisError, VisionAnalyzer


def main() -> None:
    parser = argparse.ArgumentParser(description="Re-analyze a day's screenshots with a candidate prompt")
    parser.add_argument("--prompt", required=True, help="Prompt to evaluate")
    parser.add_argument("--date", default=None, help="Day to re-analyze (YYYY-MM-DD, default today)")
    parser.add_argument("--output", default="prompt_test_results.json", help="Where to write the new descriptions")
    parser.add_argument("--history", type=int, default=5, help="Previous entries passed as history")
    args = parser.parse_args()

    settings = get_settings()
    logger = init_logger("retest_prompt", settings.logging.directory, settings.logging.level)
    store = ActivityLogStore(settings.output.activity_log_dir)
    analyzer = VisionAnalyzer(settings.vision, logger)

    day = args.date or datetime.now(tz=settings.timezone).strftime("%Y-%m-%d")
    originals = store.load_day(day)
    if not originals:
        raise SystemExit(f"No activity logged for {day}; nothing to re-test")

    output = Path(args.output).resolve()
    results: list[dict] = []
    write_json_atomic(output, results)
    logger.info("Re-analyzing %s entries from %s with the new prompt", len(originals), day)

    skipped = 0
    for index, original in enumerate(originals):
        image = Path(original.screenshot_path) if original.screenshot_path else None
        if image is None or not image.exists():
            logger.warning("Entry %s/%s has no screenshot on disk; skipped", index + 1, len(originals))
            skipped += 1
            continue

        history = format_history(originals[max(0, index - args.history):index])
        try:
            result = analyzer.analyze(image, args.prompt, _context_text(original.context), history)
        except (AnalysisError, OSError) as exc:
            logger.error("Re-analysis of entry %s/%s failed: %s", index + 1, len(originals), exc)
            skipped += 1
            continue

        retested = ActivityLog(
            timestamp=original.timestamp,
            description=result.description,
            context=original.context,
            screenshot_path=original.screenshot_path,
            model=analyzer.model,
            token_usage=result.token_usage,
        )
        results.append(retested.to_dict())
        write_json_atomic(output, results)
        logger.info("Entry %s/%s re-analyzed", index + 1, len(originals))

    print(f"Re-analyzed {len(results)} entries, skipped {skipped}. Results: {output}")
    by_time = {entry["timestamp"]: entry["description"] for entry in results}
    for original in originals:
        new = by_time.get(original.timestamp.isoformat())
        if new is None:
            continue
        print(f"\n[{original.timestamp.strftime('%H:%M:%S')}]")
        print(f"  before: {original.description.strip()}")
        print(f"  after:  {new.strip()}")


def _context_text(ctx: LogContext | None) -> str | None:
    if ctx is None:
        return None
    return (
        f"User: {ctx.username or ''}\n"
        f"Host: {ctx.hostname or ''}\n"
        f"OS: {ctx.platform or ''}\n"
        f"Foreground app: {ctx.active_app or 'unknown'}\n"
        f"Window title: {ctx.window_title or 'unknown'}\n"
    )


if __name__ == "__main__":
    main()
