from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(str(value))


class ServiceStatus(str, Enum):
    RUNNING = "Running"
    STOPPED = "Stopped"


class ServiceCommand(str, Enum):
    START = "Start"
    STOP = "Stop"
    STATUS = "Status"


@dataclass(frozen=True)
class ServiceState:
    status: ServiceStatus = ServiceStatus.STOPPED
    last_start_time: Optional[datetime] = None
    last_stop_time: Optional[datetime] = None
    total_captures: int = 0
    last_capture_time: Optional[datetime] = None
    config_fingerprint: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "last_start_time": _iso(self.last_start_time),
            "last_stop_time": _iso(self.last_stop_time),
            "total_captures": self.total_captures,
            "last_capture_time": _iso(self.last_capture_time),
            "config_fingerprint": self.config_fingerprint,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ServiceState":
        total = int(payload.get("total_captures", 0))
        if total < 0:
            raise ValueError("total_captures must not be negative")
        return cls(
            status=ServiceStatus(payload["status"]),
            last_start_time=_parse_iso(payload.get("last_start_time")),
            last_stop_time=_parse_iso(payload.get("last_stop_time")),
            total_captures=total,
            last_capture_time=_parse_iso(payload.get("last_capture_time")),
            config_fingerprint=str(payload.get("config_fingerprint", "")),
        )


@dataclass
class ServiceResponse:
    success: bool
    message: str
    state: Optional[ServiceState] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "state": self.state.to_dict() if self.state is not None else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ServiceResponse":
        state = payload.get("state")
        return cls(
            success=bool(payload["success"]),
            message=str(payload.get("message", "")),
            state=ServiceState.from_dict(state) if state else None,
        )


@dataclass(frozen=True)
class WindowBounds:
    x: int
    y: int
    width: int
    height: int

    @property
    def center(self) -> tuple[int, int]:
        return self.x + self.width // 2, self.y + self.height // 2


@dataclass(frozen=True)
class ForegroundWindow:
    """Raw answer of the OS foreground-window query."""

    app_name: Optional[str]
    window_title: Optional[str]
    bounds: Optional[WindowBounds] = None
    process_id: Optional[int] = None


@dataclass(frozen=True)
class WindowFocusSample:
    app_name: Optional[str]
    window_title: Optional[str]
    bounds: Optional[WindowBounds]
    timestamp: int  # unix epoch milliseconds
    process_id: Optional[int] = None

    @property
    def identity(self) -> tuple[Optional[str], Optional[str]]:
        return self.app_name, self.window_title


@dataclass(frozen=True)
class WindowSwitchEvent:
    from_app: Optional[str]
    to_app: Optional[str]
    from_title: Optional[str]
    to_title: Optional[str]
    timestamp: int
    duration_ms: int


@dataclass
class WindowSession:
    app_name: Optional[str]
    window_title: Optional[str]
    start_time: int
    end_time: Optional[int] = None
    duration_ms: int = 0


@dataclass(frozen=True)
class WindowSwitchStats:
    total_switches: int
    most_used_apps: List[tuple[str, int]]
    current_session_duration_ms: int
    last_switch_time: Optional[int]


@dataclass
class ActiveWindowContext:
    app_name: Optional[str]
    window_title: Optional[str]
    bounds: Optional[WindowBounds]
    timestamp: Optional[int]
    process_id: Optional[int]
    switch_stats: Optional[WindowSwitchStats] = None
    recent_switches: List[WindowSwitchEvent] = field(default_factory=list)


@dataclass
class ProcessInfo:
    name: str
    cpu_percent: float


@dataclass
class SystemContext:
    username: str
    hostname: Optional[str]
    os_name: Optional[str]
    os_version: Optional[str]
    processes_top: List[ProcessInfo] = field(default_factory=list)
    active_window: Optional[ActiveWindowContext] = None


@dataclass
class TokenUsage:
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


@dataclass
class AnalysisResult:
    description: str
    token_usage: Optional[TokenUsage] = None
    processing_seconds: float = 0.0


@dataclass
class LogContext:
    active_app: Optional[str]
    window_title: Optional[str]
    timestamp: datetime
    hostname: Optional[str] = None
    username: Optional[str] = None
    platform: Optional[str] = None


@dataclass
class ActivityLog:
    timestamp: datetime
    description: str
    context: Optional[LogContext] = None
    screenshot_path: Optional[str] = None
    model: Optional[str] = None
    token_usage: Optional[TokenUsage] = None

    def to_dict(self) -> dict[str, Any]:
        context = None
        if self.context is not None:
            context = {
                "active_app": self.context.active_app,
                "window_title": self.context.window_title,
                "system_info": {
                    "hostname": self.context.hostname,
                    "username": self.context.username,
                    "platform": self.context.platform,
                },
                "timestamp": _iso(self.context.timestamp),
            }
        return {
            "timestamp": _iso(self.timestamp),
            "description": self.description,
            "context": context,
            "screenshot_path": self.screenshot_path,
            "model": self.model,
            "token_usage": asdict(self.token_usage) if self.token_usage is not None else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ActivityLog":
        context = None
        raw_context = payload.get("context")
        if raw_context:
            system_info = raw_context.get("system_info") or {}
            context = LogContext(
                active_app=raw_context.get("active_app"),
                window_title=raw_context.get("window_title"),
                timestamp=_parse_iso(raw_context.get("timestamp")) or _parse_iso(payload["timestamp"]),
                hostname=system_info.get("hostname"),
                username=system_info.get("username"),
                platform=system_info.get("platform"),
            )
        usage = payload.get("token_usage")
        return cls(
            timestamp=_parse_iso(payload["timestamp"]),
            description=str(payload.get("description", "")),
            context=context,
            screenshot_path=payload.get("screenshot_path"),
            model=payload.get("model"),
            token_usage=TokenUsage(**usage) if usage else None,
        )
