from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

import mss
from PIL import Image

from .models import WindowBounds
from .utils import ensure_directory, timestamp_slug


class CaptureError(RuntimeError):
    pass


def pick_monitor(monitors: Sequence[dict], hint: Optional[WindowBounds]) -> dict:
    """Pick the monitor holding the centre of ``hint``; fall back to the primary one.

    ``monitors`` follows the mss layout: index 0 is the virtual screen spanning
    every display, real displays start at index 1.
    """
    displays = list(monitors[1:])
    if not displays:
        raise CaptureError("No display found")
    if hint is not None:
        cx, cy = hint.center
        for mon in displays:
            if mon["left"] <= cx < mon["left"] + mon["width"] and mon["top"] <= cy < mon["top"] + mon["height"]:
                return mon
    return displays[0]


def post_process(image: Image.Image, target_width: Optional[int], grayscale: bool) -> Image.Image:
    if target_width and 0 < target_width < image.width:
        height = max(1, round(image.height * target_width / image.width))
        image = image.resize((target_width, height), Image.LANCZOS)
    if grayscale:
        image = image.convert("L")
    return image


class CaptureManager:
    def __init__(self, screenshot_dir: Path, log):
        self._screenshot_dir = ensure_directory(screenshot_dir)
        self._logger = log

    def screenshot_path(self, timestamp: datetime) -> Path:
        ensure_directory(self._screenshot_dir)
        return self._screenshot_dir / f"screenshot_{timestamp_slug(timestamp)}.png"

    def capture(
        self,
        path: Path,
        target_width: Optional[int] = None,
        grayscale: bool = False,
        display_hint: Optional[WindowBounds] = None,
    ) -> Path:
        try:
            with mss.mss() as sct:
                monitor = pick_monitor(sct.monitors, display_hint)
                shot = sct.grab(monitor)
        except mss.exception.ScreenShotError as exc:
            raise CaptureError(f"Screen grab failed: {exc}") from exc

        image = Image.frombytes("RGB", shot.size, shot.bgra, "raw", "BGRX")
        image = post_process(image, target_width, grayscale)
        image.save(path)
        self._logger.info(
            "Captured screenshot %s (%sx%s at %s,%s)",
            path.name,
            monitor["width"],
            monitor["height"],
            monitor["left"],
            monitor["top"],
        )
        return path

    def discard(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
            self._logger.debug("Deleted capture %s", path)
        except OSError as exc:
            self._logger.warning("Failed to delete %s: %s", path, exc)
