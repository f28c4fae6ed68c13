"""Media file information utilities using FFprobe."""

import asyncio
import json
import math
import subprocess
from typing import Optional

from reelcraft.config import get_settings
from reelcraft.exceptions import ProbeError


def _get_settings():
    """Get settings lazily to avoid import issues in tests."""
    return get_settings()


def _run_ffprobe(file_path: str, *args, ffprobe_path: Optional[str] = None) -> dict:
    """Run ffprobe and return parsed JSON."""
    cmd = [
        ffprobe_path or _get_settings().ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        *args,
        file_path,
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise ProbeError(f"ffprobe could not be started: {e}")
    if result.returncode != 0:
        raise ProbeError(f"ffprobe failed for {file_path}: {result.stderr.strip() or result.returncode}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise ProbeError(f"Failed to parse ffprobe output: {e}")


def get_media_duration(file_path: str, ffprobe_path: Optional[str] = None) -> float:
    """
    Get media file duration in seconds.

    Args:
        file_path: Path to media file
        ffprobe_path: Override for the configured ffprobe binary

    Returns:
        Duration in seconds

    Raises:
        ProbeError: If ffprobe fails or the duration is missing or not positive
    """
    data = _run_ffprobe(file_path, "-show_format", ffprobe_path=ffprobe_path)
    format_info = data.get("format", {})

    if "duration" not in format_info:
        raise ProbeError(f"Duration not found in: {file_path}")

    try:
        duration = float(format_info["duration"])
    except (TypeError, ValueError):
        raise ProbeError(f"Invalid duration {format_info['duration']!r} in: {file_path}")
    if not math.isfinite(duration) or duration <= 0:
        raise ProbeError(f"Non-positive duration {duration} in: {file_path}")
    return duration


def get_video_dimensions(file_path: str, ffprobe_path: Optional[str] = None) -> tuple[int, int]:
    """
    Get video width and height.

    Raises:
        ProbeError: If ffprobe fails or video stream not found
    """
    data = _run_ffprobe(
        file_path, "-show_streams", "-select_streams", "v", ffprobe_path=ffprobe_path
    )

    streams = data.get("streams", [])
    if not streams:
        raise ProbeError(f"No video stream found in: {file_path}")

    stream = streams[0]
    width = stream.get("width")
    height = stream.get("height")

    if width is None or height is None:
        raise ProbeError(f"Video dimensions not found in: {file_path}")

    return width, height


class MediaProbe:
    """Async facade over ffprobe; each call runs in a worker thread."""

    def __init__(self, ffprobe_path: Optional[str] = None):
        self.ffprobe_path = ffprobe_path or _get_settings().ffprobe_path

    async def duration(self, file_path: str) -> float:
        return await asyncio.to_thread(get_media_duration, file_path, self.ffprobe_path)

    async def dimensions(self, file_path: str) -> tuple[int, int]:
        return await asyncio.to_thread(get_video_dimensions, file_path, self.ffprobe_path)
