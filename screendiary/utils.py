from __future__ import annotations

import json
import os
import subprocess
import sys
import time
from datetime import datetime
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Optional

from .models import ForegroundWindow, WindowBounds

_MAC_FRONT_WINDOW_SCRIPT = """
tell application "System Events"
    set frontApp to first process whose frontmost is true
    set appName to name of frontApp
    set processId to unix id of frontApp
    try
        set windowTitle to title of front window of frontApp
    on error
        set windowTitle to ""
    end try
    try
        set windowPos to position of front window of frontApp
        set windowSize to size of front window of frontApp
        return appName & "|" & windowTitle & "|" & processId & "|" & (item 1 of windowPos as string) & "," & (item 2 of windowPos as string) & "|" & (item 1 of windowSize as string) & "," & (item 2 of windowSize as string)
    on error
        return appName & "|" & windowTitle & "|" & processId & "||"
    end try
end tell
"""


def ensure_directory(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def timestamp_slug(ts: datetime) -> str:
    return ts.strftime("%Y%m%d_%H%M%S")


def now_ms() -> int:
    return int(time.time() * 1000)


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON to a sibling temp file, then swap it into place."""
    ensure_directory(path.parent)
    with NamedTemporaryFile("w", delete=False, encoding="utf-8", dir=str(path.parent), suffix=".tmp") as tmp:
        tmp.write(json.dumps(payload, ensure_ascii=False, indent=2))
        tmp_path = Path(tmp.name)
    try:
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def get_foreground_window() -> Optional[ForegroundWindow]:
    """Ask the OS which window has input focus. Returns None when unknown."""
    if os.name == "nt":
        return _windows_foreground_window()
    if sys.platform == "darwin":
        return _macos_foreground_window()
    return None


def _windows_foreground_window() -> Optional[ForegroundWindow]:
    import ctypes
    from ctypes import wintypes

    user32 = ctypes.windll.user32

    hwnd = user32.GetForegroundWindow()
    if not hwnd:
        return None

    length = user32.GetWindowTextLengthW(hwnd)
    buffer = ctypes.create_unicode_buffer(length + 1)
    user32.GetWindowTextW(hwnd, buffer, length + 1)
    title = buffer.value or None

    pid = wintypes.DWORD()
    user32.GetWindowThreadProcessId(hwnd, ctypes.byref(pid))
    exe_name = None
    if pid.value:
        import psutil

        try:
            exe_name = psutil.Process(pid.value).name()
        except psutil.Error:
            exe_name = None

    rect = wintypes.RECT()
    bounds = None
    if user32.GetWindowRect(hwnd, ctypes.byref(rect)):
        bounds = WindowBounds(
            x=rect.left,
            y=rect.top,
            width=rect.right - rect.left,
            height=rect.bottom - rect.top,
        )

    if exe_name is None and title is None:
        return None
    return ForegroundWindow(app_name=exe_name, window_title=title, bounds=bounds, process_id=pid.value or None)


def _macos_foreground_window() -> Optional[ForegroundWindow]:
    try:
        result = subprocess.run(
            ["/usr/bin/osascript", "-e", _MAC_FRONT_WINDOW_SCRIPT],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    return parse_osascript_window(result.stdout)


def parse_osascript_window(output: str) -> Optional[ForegroundWindow]:
    parts = output.strip().split("|")
    if len(parts) < 5:
        return None

    app_name = parts[0] or None
    window_title = parts[1] or None
    try:
        process_id: Optional[int] = int(parts[2])
    except ValueError:
        process_id = None

    return ForegroundWindow(
        app_name=app_name,
        window_title=window_title,
        bounds=_parse_bounds(parts[3], parts[4]),
        process_id=process_id,
    )


def _parse_bounds(position: str, size: str) -> Optional[WindowBounds]:
    try:
        x, y = (int(part.strip()) for part in position.split(","))
        width, height = (int(part.strip()) for part in size.split(","))
    except ValueError:
        return None
    return WindowBounds(x=x, y=y, width=width, height=height)
