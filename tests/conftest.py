import logging
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from screendiary.config import (
    AppSettings,
    CaptureSettings,
    LoggingSettings,
    OutputSettings,
    RetrySettings,
    ServiceSettings,
    VisionSettings,
)
from screendiary.models import ForegroundWindow, WindowBounds


class FakeClock:
    """Datetime clock that advances one second per reading."""

    def __init__(self, start=datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone.utc)):
        self.current = start
        self.readings = []

    def __call__(self):
        self.current += timedelta(seconds=1)
        self.readings.append(self.current)
        return self.current


class MsClock:
    """Millisecond clock moved by hand."""

    def __init__(self, start=1_700_000_000_000):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class FakeWindowQuery:
    def __init__(self, app="Editor", title="main.py"):
        self.window = ForegroundWindow(app, title, WindowBounds(0, 0, 800, 600), 4242) if app else None
        self.calls = 0

    def focus(self, app, title, bounds=None):
        self.window = ForegroundWindow(app, title, bounds or WindowBounds(0, 0, 800, 600), 4242)

    def blank(self):
        self.window = None

    def __call__(self):
        self.calls += 1
        return self.window


class FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def log():
    logger = logging.getLogger("screendiary.tests")
    logger.setLevel(logging.DEBUG)
    return logger


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def short_dir():
    # AF_UNIX socket paths are limited to ~100 bytes; pytest's tmp_path can exceed that.
    path = Path(tempfile.mkdtemp(prefix="sd"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def settings(tmp_path, short_dir):
    data_dir = tmp_path / "data"
    return AppSettings(
        timezone=timezone.utc,
        vision=VisionSettings(
            api_url="http://127.0.0.1:9/v1/chat/completions",
            api_key="test-key",
            model="test-model",
            prompt="What is the user doing?",
        ),
        capture=CaptureSettings(
            interval_seconds=60,
            screenshot_dir=data_dir / "screenshots",
            failure_backoff_seconds=7.0,
        ),
        retry=RetrySettings(),
        service=ServiceSettings(data_dir=short_dir),
        logging=LoggingSettings(directory=tmp_path / "logs"),
        output=OutputSettings(activity_log_dir=data_dir / "activity"),
    )


@pytest.fixture
def ms_clock():
    return MsClock()


@pytest.fixture
def window_query():
    return FakeWindowQuery()


@pytest.fixture
def fake_sleep():
    return FakeSleep()
