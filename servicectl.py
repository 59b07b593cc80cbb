from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime

from screendiary.config import get_settings
from screendiary.control import ControlTimeout, ProtocolError, ServiceController, ServiceNotRunning
from screendiary.models import ServiceCommand, ServiceResponse
from screendiary.storage import ActivityLogStore

EXIT_NOT_RUNNING = 2
EXIT_TIMEOUT = 3
EXIT_FAILED = 1

COMMANDS = {
    "start": ServiceCommand.START,
    "stop": ServiceCommand.STOP,
    "status": ServiceCommand.STATUS,
}


def main() -> None:
    parser = argparse.ArgumentParser(description="Control the screendiary capture service")
    parser.add_argument("action", choices=[*COMMANDS, "logs"])
    parser.add_argument("--data-dir", default=None, help="Override DATA_DIR")
    parser.add_argument("--date", default=None, help="Day to print for 'logs' (YYYY-MM-DD, default today)")
    parser.add_argument("--limit", type=int, default=20, help="Entries to print for 'logs'")
    args = parser.parse_args()

    # The controller never calls the vision API, but AppSettings validation
    # requires a key. Let it load without one.
    os.environ.setdefault("VISION_API_KEY", "unused-by-servicectl")

    if args.data_dir:
        os.environ["DATA_DIR"] = args.data_dir
    settings = get_settings()

    if args.action == "logs":
        day = args.date or datetime.now(tz=settings.timezone).strftime("%Y-%m-%d")
        _print_logs(ActivityLogStore(settings.output.activity_log_dir), day, args.limit)
        return

    controller = ServiceController(settings.service)
    try:
        response = controller.send(COMMANDS[args.action])
    except ServiceNotRunning as exc:
        print(f"Service not running: {exc}", file=sys.stderr)
        sys.exit(EXIT_NOT_RUNNING)
    except ControlTimeout as exc:
        print(f"Service did not answer: {exc}", file=sys.stderr)
        sys.exit(EXIT_TIMEOUT)
    except ProtocolError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(EXIT_FAILED)

    _print_response(response)
    if not response.success:
        sys.exit(EXIT_FAILED)


def _print_response(response: ServiceResponse) -> None:
    print(("OK: " if response.success else "FAILED: ") + response.message)
    state = response.state
    if state is None:
        return
    print(f"  status:            {state.status.value}")
    print(f"  total captures:    {state.total_captures}")
    print(f"  last capture:      {_fmt(state.last_capture_time)}")
    print(f"  last start:        {_fmt(state.last_start_time)}")
    print(f"  last stop:         {_fmt(state.last_stop_time)}")


def _print_logs(store: ActivityLogStore, day: str, limit: int) -> None:
    entries = store.load_day(day)
    if not entries:
        print(f"No activity logged for {day}")
        return
    for entry in entries[-limit:]:
        app = entry.context.active_app if entry.context else None
        print(f"{entry.timestamp.strftime('%H:%M:%S')}  [{app or '-'}]  {entry.description.strip()}")


def _fmt(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


if __name__ == "__main__":
    main()
