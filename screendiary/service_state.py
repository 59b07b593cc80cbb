from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable

from .models import ServiceState, ServiceStatus
from .utils import ensure_directory, write_json_atomic


class StatePersistenceError(RuntimeError):
    pass


def _local_now() -> datetime:
    return datetime.now().astimezone()


class ServiceStateManager:
    """Owns the durable run-state record of the capture service.

    Every mutation builds a new snapshot, writes it to disk and only then
    publishes it, under a single writer lock. Readers see the last published
    snapshot without waiting.
    """

    def __init__(
        self,
        state_path: Path,
        fingerprint: str,
        log,
        clock: Callable[[], datetime] = _local_now,
    ):
        self._path = state_path
        self._logger = log
        self._clock = clock
        self._write_lock = asyncio.Lock()
        ensure_directory(state_path.parent)
        self._state = self._load(fingerprint)

    @property
    def state_path(self) -> Path:
        return self._path

    def _load(self, fingerprint: str) -> ServiceState:
        if self._path.exists():
            try:
                state = ServiceState.from_dict(json.loads(self._path.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                self._logger.warning("Failed to read service state %s (%s); using defaults", self._path, exc)
            else:
                if state.config_fingerprint != fingerprint:
                    self._logger.info("Configuration changed since last run; service state reset to Stopped")
                    state = replace(state, config_fingerprint=fingerprint)
                    if state.status is ServiceStatus.RUNNING:
                        state = replace(state, status=ServiceStatus.STOPPED, last_stop_time=self._clock())
                return state

        return ServiceState(config_fingerprint=fingerprint)

    def get_state(self) -> ServiceState:
        return self._state

    def should_capture(self) -> bool:
        return self._state.status is ServiceStatus.RUNNING

    async def start_service(self) -> bool:
        async with self._write_lock:
            if self._state.status is ServiceStatus.RUNNING:
                return False
            await self._commit(replace(self._state, status=ServiceStatus.RUNNING, last_start_time=self._clock()))
            self._logger.info("Service state -> Running")
            return True

    async def stop_service(self) -> bool:
        async with self._write_lock:
            if self._state.status is ServiceStatus.STOPPED:
                return False
            await self._commit(replace(self._state, status=ServiceStatus.STOPPED, last_stop_time=self._clock()))
            self._logger.info("Service state -> Stopped")
            return True

    async def increment_capture_count(self) -> ServiceState:
        async with self._write_lock:
            await self._commit(
                replace(
                    self._state,
                    total_captures=self._state.total_captures + 1,
                    last_capture_time=self._clock(),
                )
            )
            return self._state

    async def _commit(self, state: ServiceState) -> None:
        try:
            await asyncio.to_thread(write_json_atomic, self._path, state.to_dict())
        except OSError as exc:
            raise StatePersistenceError(f"Failed to persist service state to {self._path}: {exc}") from exc
        self._state = state
