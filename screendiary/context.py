from __future__ import annotations

import getpass
import platform
import socket
import time
from typing import List, Optional

import psutil

from .models import ActiveWindowContext, ProcessInfo, SystemContext
from .window_tracker import WindowTracker

TOP_PROCESS_COUNT = 10
CPU_SAMPLE_SECONDS = 0.2


def collect_system_context(tracker: WindowTracker) -> SystemContext:
    """Snapshot of the machine and the focused window. Blocking; run it off the event loop."""
    return SystemContext(
        username=_username(),
        hostname=socket.gethostname() or None,
        os_name=platform.system() or None,
        os_version=platform.release() or None,
        processes_top=top_processes(TOP_PROCESS_COUNT),
        active_window=active_window_context(tracker),
    )


def active_window_context(tracker: WindowTracker) -> Optional[ActiveWindowContext]:
    sample = tracker.get_current_window_info()
    if sample is None:
        return None
    return ActiveWindowContext(
        app_name=sample.app_name,
        window_title=sample.window_title,
        bounds=sample.bounds,
        timestamp=sample.timestamp,
        process_id=sample.process_id,
        switch_stats=tracker.get_stats(),
        recent_switches=tracker.get_switch_history(5),
    )


def top_processes(count: int) -> List[ProcessInfo]:
    # cpu_percent needs two samples per process; the first call only primes it.
    procs = list(psutil.process_iter(["name"]))
    for proc in procs:
        try:
            proc.cpu_percent(None)
        except psutil.Error:
            continue
    time.sleep(CPU_SAMPLE_SECONDS)

    infos: List[ProcessInfo] = []
    for proc in procs:
        try:
            infos.append(ProcessInfo(name=proc.info.get("name") or str(proc.pid), cpu_percent=proc.cpu_percent(None)))
        except psutil.Error:
            continue
    infos.sort(key=lambda info: info.cpu_percent, reverse=True)
    return infos[:count]


def format_context_as_text(ctx: SystemContext) -> str:
    lines = [
        f"User: {ctx.username}",
        f"Host: {ctx.hostname or ''}",
        f"OS: {ctx.os_name or ''} {ctx.os_version or ''}".rstrip(),
    ]

    window = ctx.active_window
    if window is None:
        lines.append("Foreground app: [unavailable]")
        lines.append("Window title: [unavailable]")
    else:
        lines.append(f"Foreground app: {window.app_name or 'unknown'}")
        lines.append(f"Window title: {window.window_title or 'unknown'}")

        stats = window.switch_stats
        if stats is not None:
            lines.append("Window switch stats:")
            lines.append(f"  - total switches: {stats.total_switches}")
            lines.append(f"  - current session: {stats.current_session_duration_ms / 60000:.1f} min")
            if stats.most_used_apps:
                lines.append("  - most used apps:")
                for app, duration_ms in stats.most_used_apps[:3]:
                    lines.append(f"    * {app}: {duration_ms / 60000:.1f} min")

        if window.recent_switches:
            lines.append("Recent window switches:")
            for event in list(reversed(window.recent_switches))[:3]:
                lines.append(
                    f"  - {event.from_app or 'unknown'} -> {event.to_app or 'unknown'}"
                    f" (stayed {event.duration_ms / 1000:.1f}s)"
                )

    if ctx.processes_top:
        lines.append("Top processes:")
        for proc in ctx.processes_top:
            lines.append(f"  - {proc.name} | cpu: {proc.cpu_percent:.1f}%")

    return "\n".join(lines) + "\n"


def _username() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"
