from __future__ import annotations

import asyncio
from datetime import datetime, tzinfo
from typing import Awaitable, Callable, Optional, TypeVar

from .capture import CaptureManager
from .config import CaptureSettings, RetrySettings, VisionSettings
from .context import collect_system_context, format_context_as_text
from .models import ActivityLog, AnalysisResult, LogContext, SystemContext
from .service_state import ServiceStateManager, StatePersistenceError
from .storage import ActivityLogStore
from .vision_client import VisionAnalyzer
from .window_tracker import WindowTracker

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


def retry_delay(policy: RetrySettings, attempt: int) -> float:
    """Delay after the given failed attempt (1-based); the last delay repeats."""
    if not policy.delays:
        return 0.0
    return policy.delays[min(attempt, len(policy.delays)) - 1]


async def call_with_retry(
    attempt: Callable[[], Awaitable[T]],
    policy: RetrySettings,
    log,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run ``attempt`` until it succeeds or the attempt budget is spent.

    Every failure is retried; the last one is re-raised once the budget runs out.
    """
    max_attempts = max(1, policy.max_retries)
    for number in range(1, max_attempts + 1):
        try:
            return await attempt()
        except Exception as exc:
            log.warning("Analysis failed (attempt %s/%s): %s", number, max_attempts, exc)
            if number >= max_attempts:
                log.error("Analysis gave up after %s attempts", max_attempts)
                raise
            delay = retry_delay(policy, number)
            log.info("Retrying analysis in %.0fs", delay)
            await sleep(delay)
    raise AssertionError("unreachable")


class CaptureCycle:
    """One capture round: screenshot, describe it, append it to the activity log."""

    def __init__(
        self,
        capture_settings: CaptureSettings,
        vision_settings: VisionSettings,
        retry_settings: RetrySettings,
        tracker: WindowTracker,
        capture_manager: CaptureManager,
        analyzer: VisionAnalyzer,
        store: ActivityLogStore,
        log,
        timezone: Optional[tzinfo] = None,
        sleep: Sleep = asyncio.sleep,
        context_provider: Callable[[WindowTracker], SystemContext] = collect_system_context,
    ):
        self._capture = capture_settings
        self._vision = vision_settings
        self._retry = retry_settings
        self._tracker = tracker
        self._capture_manager = capture_manager
        self._analyzer = analyzer
        self._store = store
        self._logger = log
        self._timezone = timezone
        self._sleep = sleep
        self._context_provider = context_provider

    async def run_once(self) -> ActivityLog:
        timestamp = datetime.now(tz=self._timezone) if self._timezone else datetime.now().astimezone()
        path = self._capture_manager.screenshot_path(timestamp)
        try:
            focus = await asyncio.to_thread(self._tracker.get_current_window_info)
            await asyncio.to_thread(
                self._capture_manager.capture,
                path,
                self._capture.image_target_width or None,
                self._capture.grayscale,
                focus.bounds if focus is not None else None,
            )
            await self._sleep(self._capture.settle_seconds)

            context = await asyncio.to_thread(self._context_provider, self._tracker)
            context_text = format_context_as_text(context)
            history_text = await self._history_text()

            result: AnalysisResult = await call_with_retry(
                lambda: asyncio.to_thread(
                    self._analyzer.analyze, path, self._vision.prompt, context_text, history_text
                ),
                self._retry,
                self._logger,
                sleep=self._sleep,
            )
            self._logger.info("Analysis done in %.2fs: %s", result.processing_seconds, result.description)
            if result.token_usage is not None:
                self._logger.debug(
                    "Token usage prompt=%s completion=%s total=%s",
                    result.token_usage.prompt_tokens,
                    result.token_usage.completion_tokens,
                    result.token_usage.total_tokens,
                )

            entry = ActivityLog(
                timestamp=timestamp,
                description=result.description,
                context=_log_context(context),
                screenshot_path=str(path) if self._capture.keep_screenshots else None,
                model=self._analyzer.model,
                token_usage=result.token_usage,
            )
            log_path = await asyncio.to_thread(self._store.append, entry)
            self._logger.info("Activity logged to %s", log_path)
            return entry
        finally:
            if not self._capture.keep_screenshots:
                self._capture_manager.discard(path)

    async def _history_text(self) -> Optional[str]:
        try:
            return await asyncio.to_thread(
                self._store.recent_activity_context, self._capture.history_count, self._capture.history_days
            )
        except (OSError, ValueError, KeyError) as exc:
            self._logger.warning("Could not load recent activity history: %s", exc)
            return None


def _log_context(ctx: SystemContext) -> LogContext:
    window = ctx.active_window
    return LogContext(
        active_app=window.app_name if window else None,
        window_title=window.window_title if window else None,
        timestamp=datetime.now().astimezone(),
        hostname=ctx.hostname,
        username=ctx.username,
        platform=ctx.os_name,
    )


async def run_capture_loop(
    cycle: CaptureCycle,
    state_manager: ServiceStateManager,
    settings: CaptureSettings,
    log,
    sleep: Sleep = asyncio.sleep,
    monotonic: Optional[Callable[[], float]] = None,
) -> None:
    """Capture every ``interval_seconds`` while the persisted status says Running.

    The status is only checked between ticks; a failed cycle is logged and the
    loop carries on.
    """
    monotonic = monotonic or asyncio.get_running_loop().time
    log.info("Capture loop starting in %ss (interval %ss)", settings.warmup_seconds, settings.interval_seconds)
    await sleep(settings.warmup_seconds)

    while True:
        if not state_manager.should_capture():
            log.info("Service is not running; capture loop exits")
            return

        started = monotonic()
        try:
            await cycle.run_once()
        except Exception as exc:
            log.exception("Capture cycle failed: %s", exc)
            await sleep(settings.failure_backoff_seconds)
        else:
            try:
                await state_manager.increment_capture_count()
            except StatePersistenceError as exc:
                log.error("Could not update capture count: %s", exc)

        await sleep(max(0.0, settings.interval_seconds - (monotonic() - started)))
