from __future__ import annotations

import hashlib
import json
import os
import sys
from dataclasses import dataclass
from datetime import datetime, tzinfo
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

DEFAULT_PROMPT = "Describe in detail what the user is doing in this screenshot."
DEFAULT_API_URL = "https://api.siliconflow.cn/v1/chat/completions"
DEFAULT_MODEL = "Qwen/Qwen2-VL-7B-Instruct"


@dataclass(frozen=True)
class VisionSettings:
    api_url: str
    api_key: str
    model: str
    prompt: str
    timeout_seconds: float = 120.0
    max_tokens: int = 1024
    temperature: float = 0.4


@dataclass(frozen=True)
class CaptureSettings:
    interval_seconds: int
    screenshot_dir: Path
    warmup_seconds: float = 5.0
    settle_seconds: float = 0.5
    failure_backoff_seconds: float = 5.0
    image_target_width: int = 0
    grayscale: bool = False
    keep_screenshots: bool = True
    history_count: int = 5
    history_days: int = 3


@dataclass(frozen=True)
class RetrySettings:
    max_retries: int = 5
    delays: tuple[float, ...] = (5.0, 15.0, 30.0, 45.0, 60.0)


@dataclass(frozen=True)
class ServiceSettings:
    data_dir: Path
    control_port: int = 38127
    client_timeout_seconds: float = 30.0

    @property
    def state_path(self) -> Path:
        return self.data_dir / "service_state.json"

    @property
    def socket_path(self) -> Path:
        return self.data_dir / "screendiary.sock"

    @property
    def use_unix_socket(self) -> bool:
        return sys.platform != "win32"


@dataclass(frozen=True)
class LoggingSettings:
    directory: Path
    level: str = "INFO"


@dataclass(frozen=True)
class OutputSettings:
    activity_log_dir: Path


@dataclass(frozen=True)
class AppSettings:
    timezone: tzinfo
    vision: VisionSettings
    capture: CaptureSettings
    retry: RetrySettings
    service: ServiceSettings
    logging: LoggingSettings
    output: OutputSettings


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    dotenv_path = Path(__file__).resolve().parents[1] / ".env"
    load_dotenv(dotenv_path=dotenv_path, override=False, encoding="utf-8-sig")

    tz_name = os.getenv("TIMEZONE")
    timezone = ZoneInfo(tz_name) if tz_name else datetime.now().astimezone().tzinfo

    data_dir = Path(os.getenv("DATA_DIR", "data")).resolve()

    vision = VisionSettings(
        api_url=os.getenv("VISION_API_URL", DEFAULT_API_URL),
        api_key=_require("VISION_API_KEY", "SILICONFLOW_API_KEY"),
        model=os.getenv("VISION_MODEL", DEFAULT_MODEL),
        prompt=os.getenv("SCREEN_ANALYSIS_PROMPT", DEFAULT_PROMPT),
        timeout_seconds=float(os.getenv("VISION_TIMEOUT_SECONDS", "120")),
        max_tokens=int(os.getenv("VISION_MAX_TOKENS", "1024")),
        temperature=float(os.getenv("VISION_TEMPERATURE", "0.4")),
    )

    capture = CaptureSettings(
        interval_seconds=int(os.getenv("SCREENSHOT_INTERVAL_SECONDS", "60")),
        screenshot_dir=Path(os.getenv("SCREENSHOT_DIRECTORY", str(data_dir / "screenshots"))).resolve(),
        warmup_seconds=float(os.getenv("CAPTURE_WARMUP_SECONDS", "5")),
        image_target_width=int(os.getenv("IMAGE_TARGET_WIDTH", "0")),
        grayscale=_as_bool(os.getenv("IMAGE_GRAYSCALE"), default=False),
        keep_screenshots=not _as_bool(os.getenv("DELETE_CAPTURE_AFTER_ANALYSIS"), default=False),
        history_count=int(os.getenv("HISTORY_COUNT", "5")),
    )

    retry = RetrySettings(
        max_retries=int(os.getenv("ANALYSIS_MAX_RETRIES", "5")),
        delays=_as_float_tuple(os.getenv("ANALYSIS_RETRY_DELAYS"), RetrySettings.delays),
    )

    service = ServiceSettings(
        data_dir=data_dir,
        control_port=int(os.getenv("CONTROL_PORT", "38127")),
        client_timeout_seconds=float(os.getenv("CONTROL_TIMEOUT_SECONDS", "30")),
    )

    logging_settings = LoggingSettings(
        directory=Path(os.getenv("LOG_DIR", "logs")).resolve(),
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )

    output_settings = OutputSettings(
        activity_log_dir=Path(os.getenv("ACTIVITY_LOG_DIR", str(data_dir / "activity"))).resolve(),
    )

    return AppSettings(
        timezone=timezone,
        vision=vision,
        capture=capture,
        retry=retry,
        service=service,
        logging=logging_settings,
        output=output_settings,
    )


def config_fingerprint(settings: AppSettings) -> str:
    """Stable hash of every setting that changes how captures are taken or analyzed.

    A persisted service state carrying a different fingerprint was produced under
    another configuration and must not be resumed as-is.
    """
    material = {
        "api_url": settings.vision.api_url,
        "model": settings.vision.model,
        "prompt": settings.vision.prompt,
        "timeout_seconds": settings.vision.timeout_seconds,
        "interval_seconds": settings.capture.interval_seconds,
        "warmup_seconds": settings.capture.warmup_seconds,
        "image_target_width": settings.capture.image_target_width,
        "grayscale": settings.capture.grayscale,
        "max_retries": settings.retry.max_retries,
        "retry_delays": list(settings.retry.delays),
    }
    canonical = json.dumps(material, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def _require(*keys: str) -> str:
    for key in keys:
        value = os.getenv(key)
        if value:
            return value
    raise RuntimeError(f"Environment variable '{keys[0]}' is required but missing")


def _as_bool(raw: str | None, default: bool | None = None) -> bool:
    if raw is None:
        if default is None:
            return False
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _as_float_tuple(raw: str | None, default: tuple[float, ...]) -> tuple[float, ...]:
    if not raw:
        return default
    values = tuple(float(part) for part in raw.split(",") if part.strip())
    return values or default
