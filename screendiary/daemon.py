from __future__ import annotations

import asyncio
import signal

from .capture import CaptureManager
from .capture_loop import CaptureCycle, run_capture_loop
from .config import AppSettings, config_fingerprint
from .control import ControlServer
from .service_state import ServiceStateManager
from .storage import ActivityLogStore
from .supervisor import CaptureSupervisor
from .vision_client import VisionAnalyzer
from .window_tracker import WindowTracker


class CaptureService:
    """Wires the capture daemon together and runs it until asked to shut down."""

    def __init__(self, settings: AppSettings, log, tracker: WindowTracker | None = None):
        self.settings = settings
        self._logger = log
        self.tracker = tracker or WindowTracker()
        self.state_manager = ServiceStateManager(
            settings.service.state_path, config_fingerprint(settings), log
        )
        self.cycle = CaptureCycle(
            settings.capture,
            settings.vision,
            settings.retry,
            self.tracker,
            CaptureManager(settings.capture.screenshot_dir, log),
            VisionAnalyzer(settings.vision, log),
            ActivityLogStore(settings.output.activity_log_dir),
            log,
            timezone=settings.timezone,
        )
        self.supervisor = CaptureSupervisor(self._capture_loop, log)
        self.server = ControlServer(settings.service, self.state_manager, self.supervisor, log)
        self._shutdown = asyncio.Event()

    def _capture_loop(self):
        return run_capture_loop(self.cycle, self.state_manager, self.settings.capture, self._logger)

    def request_shutdown(self) -> None:
        self._shutdown.set()

    async def run(self) -> None:
        self._logger.info("Starting capture service (state file %s)", self.state_manager.state_path)
        if self.state_manager.should_capture():
            self._logger.info("Service was running before; resuming capture loop")
            await self.supervisor.start()
        else:
            self._logger.info("Service is stopped; waiting for a Start command")

        await self.server.start()
        self._install_signal_handlers()
        try:
            await self._shutdown.wait()
        finally:
            await self.server.close()
            await self.supervisor.stop()
            self._logger.info("Capture service exited")

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._on_signal, signum)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no signal handler support; Ctrl+C still raises.
                pass

    def _on_signal(self, signum) -> None:
        self._logger.info("Received signal %s - shutting down", signum)
        self.request_shutdown()
