from __future__ import annotations

import base64
import time
from pathlib import Path
from typing import Any, Optional

import requests

from .config import VisionSettings
from .models import AnalysisResult, TokenUsage

CONTEXT_PREFIX = "Current system context; read it together with the screenshot:\n"
HISTORY_SUFFIX = (
    "Take the user's recent activity into account and keep the description consistent "
    "with what they were doing before."
)


class AnalysisError(RuntimeError):
    pass


class VisionAnalyzer:
    """Describes screenshots through an OpenAI-compatible chat completions endpoint.

    Works against SiliconFlow as well as local servers such as LM Studio:
    POST {api_url} with the image embedded as a base64 data URL.
    """

    def __init__(self, settings: VisionSettings, log):
        self._settings = settings
        self._logger = log

    @property
    def model(self) -> str:
        return self._settings.model

    def analyze(
        self,
        image_path: Path,
        prompt: str,
        context_text: Optional[str] = None,
        history_text: Optional[str] = None,
    ) -> AnalysisResult:
        if not image_path.exists():
            raise FileNotFoundError(image_path)

        started = time.monotonic()
        payload = build_request(self._settings.model, image_path, prompt, context_text, history_text)
        payload["max_tokens"] = self._settings.max_tokens
        payload["temperature"] = self._settings.temperature

        headers = {
            "Authorization": f"Bearer {self._settings.api_key}",
            "Content-Type": "application/json",
        }
        try:
            res = requests.post(
                self._settings.api_url,
                headers=headers,
                json=payload,
                timeout=self._settings.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise AnalysisError(f"Vision request failed: {exc}") from exc

        if res.status_code >= 400:
            raise AnalysisError(f"Vision API HTTP {res.status_code}: {res.text}")

        try:
            data = res.json()
        except ValueError as exc:
            self._logger.debug("Raw vision response: %s", res.text)
            raise AnalysisError("Failed to parse vision API response") from exc

        return AnalysisResult(
            description=extract_description(data),
            token_usage=extract_usage(data),
            processing_seconds=time.monotonic() - started,
        )


def build_request(
    model: str,
    image_path: Path,
    prompt: str,
    context_text: Optional[str],
    history_text: Optional[str],
) -> dict[str, Any]:
    contents: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
    if context_text:
        contents.append({"type": "text", "text": CONTEXT_PREFIX + context_text})
    if history_text:
        contents.append({"type": "text", "text": history_text + HISTORY_SUFFIX})
    contents.append({"type": "image_url", "image_url": {"url": image_as_data_url(image_path)}})
    return {
        "model": model,
        "messages": [{"role": "user", "content": contents}],
        "stream": False,
    }


def image_as_data_url(image_path: Path) -> str:
    encoded = base64.b64encode(image_path.read_bytes()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def extract_description(data: dict[str, Any]) -> str:
    choices = data.get("choices")
    if not isinstance(choices, list):
        raise AnalysisError("Vision API response has no choices")
    if not choices:
        return "Unable to describe the screenshot"

    content = (choices[0].get("message") or {}).get("content")
    if isinstance(content, list):
        # Some servers return structured content; join the text chunks.
        content = "\n".join(
            str(item.get("text") or "") for item in content if isinstance(item, dict) and item.get("type") == "text"
        )
    if not isinstance(content, str):
        raise AnalysisError("Vision API response has no message content")
    return content.strip()


def extract_usage(data: dict[str, Any]) -> Optional[TokenUsage]:
    usage = data.get("usage")
    if not isinstance(usage, dict):
        return None
    return TokenUsage(
        prompt_tokens=usage.get("prompt_tokens"),
        completion_tokens=usage.get("completion_tokens"),
        total_tokens=usage.get("total_tokens"),
    )
