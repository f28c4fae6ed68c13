"""
Duration reconciliation between a silent video and a narration track.

The narration length is fixed, so the video is always the one that changes:

1. Close in length (within 20%, and the factor inside [0.5, 2.0]):
   retime the video by scaling its presentation timestamps.
2. Video longer: cut it to the narration length.
3. Video shorter: repeat it until it covers the narration, then cut.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any

SPEED_ADJUSTMENT_THRESHOLD = 0.2
MIN_SPEED_FACTOR = 0.5
MAX_SPEED_FACTOR = 2.0


class SyncStrategy(Enum):
    """How the video is fitted to the voiceover."""

    SPEED_ADJUSTMENT = "speed_adjustment"
    TRIM = "trim"
    LOOP = "loop"


@dataclass(frozen=True)
class ReconcilePlan:
    """Result of reconciling one video duration against one voiceover duration."""

    strategy: SyncStrategy
    video_duration: float
    voiceover_duration: float
    speed_factor: float
    loop_count: int = 1

    @property
    def target_duration(self) -> float:
        return self.voiceover_duration

    @property
    def pts_multiplier(self) -> float:
        """Factor applied to presentation timestamps (speed adjustment only)."""
        return 1 / self.speed_factor

    def video_filter(self) -> str:
        """ffmpeg video filter expression that applies this plan."""
        if self.strategy is SyncStrategy.SPEED_ADJUSTMENT:
            return f"setpts={self.pts_multiplier:.6f}*PTS"
        return f"trim=duration={self.voiceover_duration:.3f},setpts=PTS-STARTPTS"

    def input_options(self) -> list[str]:
        """Options placed before the video input (``-stream_loop`` when looping)."""
        if self.strategy is SyncStrategy.LOOP and self.loop_count > 1:
            return ["-stream_loop", str(self.loop_count - 1)]
        return []

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "strategy": self.strategy.value,
            "video_duration": self.video_duration,
            "voiceover_duration": self.voiceover_duration,
            "speed_factor": self.speed_factor,
            "loop_count": self.loop_count,
            "filter": self.video_filter(),
        }


def reconcile_durations(video_duration: float, voiceover_duration: float) -> ReconcilePlan:
    """Choose how to fit a silent video of ``video_duration`` seconds to a voiceover.

    Args:
        video_duration: Duration of the concatenated silent video in seconds
        voiceover_duration: Duration of the narration in seconds

    Returns:
        ReconcilePlan describing the chosen strategy

    Raises:
        ValueError: If either duration is not a positive finite number
    """
    for label, value in (("video", video_duration), ("voiceover", voiceover_duration)):
        if not math.isfinite(value) or value <= 0:
            raise ValueError(f"{label} duration must be positive, got {value}")

    speed_factor = video_duration / voiceover_duration

    if (
        MIN_SPEED_FACTOR <= speed_factor <= MAX_SPEED_FACTOR
        and abs(speed_factor - 1) <= SPEED_ADJUSTMENT_THRESHOLD
    ):
        return ReconcilePlan(
            strategy=SyncStrategy.SPEED_ADJUSTMENT,
            video_duration=video_duration,
            voiceover_duration=voiceover_duration,
            speed_factor=speed_factor,
        )

    if video_duration > voiceover_duration:
        return ReconcilePlan(
            strategy=SyncStrategy.TRIM,
            video_duration=video_duration,
            voiceover_duration=voiceover_duration,
            speed_factor=speed_factor,
        )

    return ReconcilePlan(
        strategy=SyncStrategy.LOOP,
        video_duration=video_duration,
        voiceover_duration=voiceover_duration,
        speed_factor=speed_factor,
        loop_count=math.ceil(voiceover_duration / video_duration),
    )
