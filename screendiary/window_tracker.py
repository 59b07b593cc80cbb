from __future__ import annotations

import threading
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from .models import (
    ForegroundWindow,
    WindowFocusSample,
    WindowSession,
    WindowSwitchEvent,
    WindowSwitchStats,
)
from .utils import get_foreground_window, now_ms

SWITCH_HISTORY_LIMIT = 100
SESSION_HISTORY_LIMIT = 50
TOP_APPS_LIMIT = 5


class WindowTracker:
    """Tracks which window holds input focus and aggregates switches and usage.

    There is no background poller: whoever calls ``get_current_window_info``
    refreshes the tracker. Refreshes are serialized by ``_refresh_lock`` so a
    focus change is applied exactly once; ``_state_lock`` keeps the switch
    history, sessions and usage totals consistent for readers.
    """

    def __init__(
        self,
        query: Callable[[], Optional[ForegroundWindow]] = get_foreground_window,
        clock: Callable[[], int] = now_ms,
        cache_ttl_ms: int = 500,
    ):
        self._query = query
        self._clock = clock
        self._cache_ttl_ms = cache_ttl_ms

        self._refresh_lock = threading.Lock()
        self._state_lock = threading.Lock()

        self._cached: Optional[WindowFocusSample] = None
        self._cached_at: Optional[int] = None
        self._current: Optional[WindowFocusSample] = None

        self._switch_history: Deque[WindowSwitchEvent] = deque(maxlen=SWITCH_HISTORY_LIMIT)
        self._session_history: Deque[WindowSession] = deque(maxlen=SESSION_HISTORY_LIMIT)
        self._app_usage: Dict[str, int] = {}

    def get_current_window_info(self) -> Optional[WindowFocusSample]:
        with self._refresh_lock:
            now = self._clock()
            if self._cached_at is not None and now - self._cached_at < self._cache_ttl_ms:
                return self._cached

            window = self._query()
            now = self._clock()
            sample = None
            if window is not None:
                sample = WindowFocusSample(
                    app_name=window.app_name,
                    window_title=window.window_title,
                    bounds=window.bounds,
                    timestamp=now,
                    process_id=window.process_id,
                )
            self._cached = sample
            self._cached_at = now

            if sample is not None and (self._current is None or self._current.identity != sample.identity):
                self._record_switch(sample, now)
            return sample

    def _record_switch(self, new: WindowFocusSample, now: int) -> None:
        with self._state_lock:
            old = self._current
            duration = max(0, now - old.timestamp) if old is not None else 0
            self._switch_history.append(
                WindowSwitchEvent(
                    from_app=old.app_name if old else None,
                    to_app=new.app_name,
                    from_title=old.window_title if old else None,
                    to_title=new.window_title,
                    timestamp=now,
                    duration_ms=duration,
                )
            )
            if old is not None:
                self._close_session(old, now)
            self._session_history.append(
                WindowSession(app_name=new.app_name, window_title=new.window_title, start_time=now)
            )
            self._current = new

    def _close_session(self, old: WindowFocusSample, end_time: int) -> None:
        if not self._session_history:
            return
        session = self._session_history[-1]
        if session.end_time is not None or (session.app_name, session.window_title) != old.identity:
            return
        session.end_time = end_time
        session.duration_ms = max(0, end_time - session.start_time)
        if session.app_name is not None:
            self._app_usage[session.app_name] = self._app_usage.get(session.app_name, 0) + session.duration_ms

    def get_stats(self) -> WindowSwitchStats:
        now = self._clock()
        with self._state_lock:
            # sorted() is stable, so equal totals keep first-seen order
            ranked = sorted(self._app_usage.items(), key=lambda item: item[1], reverse=True)
            current = 0
            if self._session_history and self._session_history[-1].end_time is None:
                current = max(0, now - self._session_history[-1].start_time)
            return WindowSwitchStats(
                total_switches=len(self._switch_history),
                most_used_apps=ranked[:TOP_APPS_LIMIT],
                current_session_duration_ms=current,
                last_switch_time=self._switch_history[-1].timestamp if self._switch_history else None,
            )

    def get_switch_history(self, limit: Optional[int] = None) -> List[WindowSwitchEvent]:
        """Newest ``limit`` switch events (all when None), oldest first."""
        with self._state_lock:
            events = list(self._switch_history)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def get_session_history(self) -> List[WindowSession]:
        with self._state_lock:
            return [
                WindowSession(s.app_name, s.window_title, s.start_time, s.end_time, s.duration_ms)
                for s in self._session_history
            ]

    def get_app_usage(self) -> Dict[str, int]:
        with self._state_lock:
            return dict(self._app_usage)
