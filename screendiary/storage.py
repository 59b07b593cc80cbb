from __future__ import annotations

import json
import threading
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import List, Optional

from .models import ActivityLog
from .utils import ensure_directory, write_json_atomic

NO_HISTORY_TEXT = "No recent activity recorded yet."
HISTORY_HEADER = "[Recent user activity]\n"


class ActivityLogStore:
    """Day-partitioned activity log: one JSON array per day under ``log_dir``."""

    def __init__(self, log_dir: Path):
        self.log_dir = log_dir
        ensure_directory(log_dir)
        self._lock = threading.Lock()

    def daily_path(self, day: str) -> Path:
        return self.log_dir / f"{day}.json"

    def append(self, entry: ActivityLog) -> Path:
        day = entry.timestamp.strftime("%Y-%m-%d")
        path = self.daily_path(day)
        with self._lock:
            entries = self._read_raw(path)
            entries.append(entry.to_dict())
            write_json_atomic(path, entries)
        return path

    def load_day(self, day: str) -> List[ActivityLog]:
        return [ActivityLog.from_dict(item) for item in self._read_raw(self.daily_path(day))]

    def load_recent(self, days: int, today: Optional[date] = None) -> List[ActivityLog]:
        today = today or datetime.now().date()
        entries: List[ActivityLog] = []
        for offset in range(days):
            day = (today - timedelta(days=offset)).strftime("%Y-%m-%d")
            try:
                entries.extend(self.load_day(day))
            except (OSError, ValueError, KeyError):
                continue
        entries.sort(key=lambda entry: entry.timestamp)
        return entries

    def recent_activity_context(self, count: int, days: int = 3, today: Optional[date] = None) -> str:
        return format_history(self.load_recent(days, today)[-count:] if count > 0 else [])

    def _read_raw(self, path: Path) -> list:
        if not path.exists():
            return []
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, list):
            raise ValueError(f"{path} does not hold a JSON array")
        return payload


def format_history(entries: List[ActivityLog]) -> str:
    if not entries:
        return NO_HISTORY_TEXT
    parts = [HISTORY_HEADER]
    for index, entry in enumerate(entries, start=1):
        parts.append(
            f"{index}. Time: {entry.timestamp.strftime('%Y-%m-%d %H:%M:%S')}\n"
            f"   Description: {entry.description.strip()}\n\n"
        )
    return "".join(parts)
