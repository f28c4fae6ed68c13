"""
Composition render pipeline.

One run turns a list of silent source clips, an optional voiceover and
optional overlays into a single vertical video:

1. Concatenate hook + body + cat into one silent stream
2. Fit the video to the voiceover and mux it as the only audio track
3. Burn in the logo and/or caption overlays

Every stage writes a fresh file in the run's scratch directory. Only the
final file is moved to the output path; the scratch directory is always
removed.
"""

import asyncio
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from PIL import Image, UnidentifiedImageError

from reelcraft.config import get_settings
from reelcraft.exceptions import (
    MediaSourceNotFoundError,
    NoVideoSourcesError,
    ProbeError,
    StageError,
)
from reelcraft.render.reconciler import ReconcilePlan, reconcile_durations
from reelcraft.render.stage_runner import StageInput, StageRunner, StageSpec

logger = logging.getLogger(__name__)

settings = get_settings()


# ============================================================================
# Overlay presets
# ============================================================================

LOGO_POSITIONS = ("top-left", "top-right", "bottom-left", "bottom-right", "center")
LOGO_SIZES = {"small": 0.15, "medium": 0.25, "large": 0.35}
CAPTION_STYLES = ("default", "modern", "bold", "minimal")

# Distance of the caption baseline from the bottom edge
CAPTION_BOTTOM_OFFSET = 40
CAPTION_FALLBACK_TEXT = "Generated Video"


def logo_position_expr(position: str, margin: int) -> str:
    """overlay x:y expression for a named position, ``margin`` px from the edges."""
    positions = {
        "top-left": f"{margin}:{margin}",
        "top-right": f"W-w-{margin}:{margin}",
        "bottom-left": f"{margin}:H-h-{margin}",
        "bottom-right": f"W-w-{margin}:H-h-{margin}",
        "center": "(W-w)/2:(H-h)/2",
    }
    return positions.get(position, positions["bottom-right"])


def caption_style_params(style: str) -> list[str]:
    """drawtext parameters (font, colour, border/box) for a caption style."""
    regular = escape_filter_value(settings.caption_font_path)
    bold = escape_filter_value(settings.caption_bold_font_path)
    styles = {
        "default": [
            f"fontfile='{regular}'",
            "fontsize=24",
            "fontcolor=white",
            "borderw=2",
            "bordercolor=black",
        ],
        "modern": [
            f"fontfile='{regular}'",
            "fontsize=28",
            "fontcolor=white",
            "box=1",
            "boxcolor=black@0.7",
            "boxborderw=5",
        ],
        "bold": [
            f"fontfile='{bold}'",
            "fontsize=32",
            "fontcolor=yellow",
            "borderw=3",
            "bordercolor=black",
        ],
        "minimal": [
            f"fontfile='{regular}'",
            "fontsize=20",
            "fontcolor=white",
            "alpha=0.8",
        ],
    }
    return styles.get(style, styles["default"])


def escape_filter_value(value: str) -> str:
    """Escape a value for use inside a quoted filter option."""
    return value.replace("'", "'\\''").replace(":", "\\:")


def build_caption_text(content: Optional[str], max_chars: Optional[int] = None) -> str:
    """Caption text from script content: at most ``max_chars`` characters.

    Longer content is cut to ``max_chars - 3`` characters plus "...".
    """
    limit = max_chars or settings.caption_max_chars
    text = " ".join((content or "").split())
    if not text:
        return CAPTION_FALLBACK_TEXT
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def _write_text(path: str, text: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)


# ============================================================================
# Dataclasses
# ============================================================================


@dataclass
class LogoOverlay:
    """Logo image burned into the video."""

    path: str
    position: str = "bottom-right"
    opacity: float = 0.8
    size: str = "medium"


@dataclass
class CaptionOverlay:
    """Single caption line drawn near the bottom of the frame."""

    text: str
    style: str = "default"


@dataclass
class PipelineRun:
    """Everything one pipeline execution needs. Discarded afterwards."""

    composition_id: int
    source_paths: list[str]
    output_path: str
    voiceover_path: Optional[str] = None
    logo: Optional[LogoOverlay] = None
    captions: Optional[CaptionOverlay] = None
    # Known clip durations, used for the reported duration without a voiceover
    source_durations: list[float] = field(default_factory=list)


@dataclass
class PipelineResult:
    """Outcome of a successful run."""

    output_path: str
    duration: float
    stages: list[str] = field(default_factory=list)
    sync_plan: Optional[ReconcilePlan] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "output_path": self.output_path,
            "duration": self.duration,
            "stages": self.stages,
            "sync_plan": self.sync_plan.to_dict() if self.sync_plan else None,
        }


class Probe(Protocol):
    async def duration(self, file_path: str) -> float: ...

    async def dimensions(self, file_path: str) -> tuple[int, int]: ...


class Runner(Protocol):
    async def run(self, stage: StageSpec, work_dir: str) -> str: ...


# ============================================================================
# Pipeline
# ============================================================================


class CompositionPipeline:
    """Concatenate, sync audio and apply overlays for one composition."""

    def __init__(
        self,
        runner: Optional[Runner] = None,
        probe: Optional[Probe] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
        fps: Optional[int] = None,
        work_root: Optional[str] = None,
    ):
        if probe is None:
            from reelcraft.utils.media_info import MediaProbe

            probe = MediaProbe()
        self.runner = runner or StageRunner()
        self.probe = probe
        self.width = width or settings.render_output_width
        self.height = height or settings.render_output_height
        self.fps = fps or settings.render_fps
        self.work_root = work_root or settings.render_work_dir or None

    def _video_encode_options(self) -> list[str]:
        return [
            "-c:v", settings.render_video_codec,
            "-preset", settings.render_preset,
            "-crf", str(settings.render_crf),
            "-pix_fmt", "yuv420p",
        ]

    async def run(self, run: PipelineRun) -> PipelineResult:
        """
        Execute all stages for one composition.

        Args:
            run: Source paths, optional voiceover/overlays and the output path

        Returns:
            PipelineResult with the final path and reported duration

        Raises:
            NoVideoSourcesError: If the run has no source clips
            MediaSourceNotFoundError: If a clip, voiceover or logo file is missing
            StageError: If any ffmpeg stage (or a probe inside it) fails
        """
        if not run.source_paths:
            raise NoVideoSourcesError()
        self._check_sources_exist(run)

        work_dir = tempfile.mkdtemp(
            prefix=f"reelcraft_composition_{run.composition_id}_", dir=self.work_root
        )
        stages: list[str] = []
        moved = False
        logger.info(
            f"[COMPOSE] Composition {run.composition_id}: {len(run.source_paths)} clip(s), "
            f"voiceover={'yes' if run.voiceover_path else 'no'}, "
            f"logo={'yes' if run.logo else 'no'}, captions={'yes' if run.captions else 'no'}"
        )

        try:
            current = await self._concatenate(run.source_paths, work_dir)
            stages.append("concat")

            plan: Optional[ReconcilePlan] = None
            if run.voiceover_path:
                current, plan = await self._sync_audio(current, run.voiceover_path, work_dir)
                stages.append("audio_sync")

            if run.logo or run.captions:
                current = await self._apply_overlays(current, run.logo, run.captions, work_dir)
                stages.append("overlay")

            if plan is not None:
                duration = plan.voiceover_duration
            elif run.source_durations:
                duration = sum(run.source_durations)
            else:
                duration = await self._probe_for_stage("concat", current)

            os.makedirs(os.path.dirname(run.output_path) or ".", exist_ok=True)
            moved = True
            await asyncio.to_thread(shutil.move, current, run.output_path)
        except Exception:
            if moved:
                await asyncio.to_thread(self._remove_partial_output, run.output_path)
            raise
        finally:
            await asyncio.to_thread(self._cleanup, work_dir)

        logger.info(
            f"[COMPOSE] Composition {run.composition_id} done: {run.output_path} "
            f"({duration:.2f}s, stages={stages})"
        )
        return PipelineResult(
            output_path=run.output_path, duration=duration, stages=stages, sync_plan=plan
        )

    def _check_sources_exist(self, run: PipelineRun) -> None:
        for path in run.source_paths:
            if not os.path.isfile(path):
                raise MediaSourceNotFoundError(f"Video clip file not found: {path}")
        if run.voiceover_path and not os.path.isfile(run.voiceover_path):
            raise MediaSourceNotFoundError(f"Voiceover file not found: {run.voiceover_path}")
        if run.logo and not os.path.isfile(run.logo.path):
            raise MediaSourceNotFoundError(f"Logo file not found: {run.logo.path}")

    async def _probe_for_stage(self, stage_name: str, file_path: str) -> float:
        try:
            return await self.probe.duration(file_path)
        except ProbeError as e:
            raise StageError(stage_name, f"probe failed: {e.message}")

    # ------------------------------------------------------------------------
    # Stage 1: concatenate
    # ------------------------------------------------------------------------

    def build_concat_stage(self, source_paths: list[str]) -> StageSpec:
        """Concatenate sources into one silent stream.

        A single source is stream-copied. Several sources are first normalised
        to the output frame size and rate so differing clips still concatenate.
        """
        inputs = [StageInput(path) for path in source_paths]
        if len(source_paths) == 1:
            return StageSpec(
                name="concat",
                inputs=inputs,
                maps=["0:v:0"],
                output_options=["-c:v", "copy", "-an"],
            )

        w, h = self.width, self.height
        filters = []
        labels = []
        for index in range(len(source_paths)):
            filters.append(
                f"[{index}:v]scale={w}:{h}:force_original_aspect_ratio=decrease,"
                f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2,setsar=1,fps={self.fps}[v{index}]"
            )
            labels.append(f"[v{index}]")
        filters.append(f"{''.join(labels)}concat=n={len(source_paths)}:v=1:a=0[outv]")

        return StageSpec(
            name="concat",
            inputs=inputs,
            filter_complex=";".join(filters),
            maps=["[outv]"],
            output_options=[*self._video_encode_options(), "-an"],
        )

    async def _concatenate(self, source_paths: list[str], work_dir: str) -> str:
        return await self.runner.run(self.build_concat_stage(source_paths), work_dir)

    # ------------------------------------------------------------------------
    # Stage 2: audio sync
    # ------------------------------------------------------------------------

    def build_audio_sync_stage(
        self, video_path: str, voiceover_path: str, plan: ReconcilePlan
    ) -> StageSpec:
        """Apply the reconcile plan to the video and mux the voiceover as the sole audio."""
        return StageSpec(
            name="audio_sync",
            inputs=[
                StageInput(video_path, plan.input_options()),
                StageInput(voiceover_path),
            ],
            video_filter=plan.video_filter(),
            maps=["0:v:0", "1:a:0"],
            output_options=[
                *self._video_encode_options(),
                "-c:a", settings.render_audio_codec,
                "-b:a", settings.render_audio_bitrate,
                "-movflags", "+faststart",
            ],
        )

    async def _sync_audio(
        self, video_path: str, voiceover_path: str, work_dir: str
    ) -> tuple[str, ReconcilePlan]:
        # Measured from the files, not from stored metadata
        video_duration = await self._probe_for_stage("audio_sync", video_path)
        voiceover_duration = await self._probe_for_stage("audio_sync", voiceover_path)

        plan = reconcile_durations(video_duration, voiceover_duration)
        logger.info(
            f"[SYNC] video={video_duration:.2f}s voiceover={voiceover_duration:.2f}s "
            f"factor={plan.speed_factor:.3f} strategy={plan.strategy.value}"
            + (f" loops={plan.loop_count}" if plan.loop_count > 1 else "")
        )

        stage = self.build_audio_sync_stage(video_path, voiceover_path, plan)
        return await self.runner.run(stage, work_dir), plan

    # ------------------------------------------------------------------------
    # Stage 3: overlays
    # ------------------------------------------------------------------------

    def _logo_scaled_size(self, logo_path: str, size: str, frame_width: int) -> tuple[int, int]:
        """Logo size for a size class, as a fraction of frame width, aspect kept."""
        try:
            with Image.open(logo_path) as img:
                logo_w, logo_h = img.size
        except (UnidentifiedImageError, OSError) as e:
            raise StageError("overlay", f"logo is not a readable image: {e}")

        target_w = max(2, round(frame_width * LOGO_SIZES.get(size, LOGO_SIZES["medium"])))
        target_h = max(2, round(target_w * logo_h / logo_w))
        return target_w, target_h

    def build_overlay_stage(
        self,
        video_path: str,
        logo: Optional[LogoOverlay],
        captions: Optional[CaptionOverlay],
        frame_width: int,
        caption_file: Optional[str] = None,
    ) -> StageSpec:
        """Logo overlay and/or drawtext caption; the audio stream is copied untouched."""
        inputs = [StageInput(video_path)]
        filters: list[str] = []
        current = "[0:v]"

        if logo:
            inputs.append(StageInput(logo.path))
            logo_w, logo_h = self._logo_scaled_size(logo.path, logo.size, frame_width)
            opacity = min(max(logo.opacity, 0.0), 1.0)
            filters.append(
                f"[1:v]scale={logo_w}:{logo_h},format=rgba,colorchannelmixer=aa={opacity}[logo]"
            )
            filters.append(
                f"{current}[logo]overlay={logo_position_expr(logo.position, settings.logo_margin_px)}"
                "[vlogo]"
            )
            current = "[vlogo]"

        if captions:
            if caption_file:
                text_param = f"textfile='{escape_filter_value(caption_file)}'"
            else:
                text_param = f"text='{escape_filter_value(captions.text)}'"
            params = [
                text_param,
                *caption_style_params(captions.style),
                "x=(w-text_w)/2",
                f"y=h-text_h-{CAPTION_BOTTOM_OFFSET}",
            ]
            filters.append(f"{current}drawtext={':'.join(params)}[vcap]")
            current = "[vcap]"

        return StageSpec(
            name="overlay",
            inputs=inputs,
            filter_complex=";".join(filters),
            maps=[current, "0:a?"],
            output_options=[*self._video_encode_options(), "-c:a", "copy"],
        )

    async def _apply_overlays(
        self,
        video_path: str,
        logo: Optional[LogoOverlay],
        captions: Optional[CaptionOverlay],
        work_dir: str,
    ) -> str:
        frame_width = self.width
        if logo:
            try:
                frame_width, _ = await self.probe.dimensions(video_path)
            except ProbeError as e:
                raise StageError("overlay", f"probe failed: {e.message}")

        caption_file = None
        if captions:
            # drawtext reads the text from a file so it needs no filter escaping
            caption_file = os.path.join(work_dir, "caption.txt")
            await asyncio.to_thread(_write_text, caption_file, captions.text)

        stage = self.build_overlay_stage(video_path, logo, captions, frame_width, caption_file)
        return await self.runner.run(stage, work_dir)

    @staticmethod
    def _remove_partial_output(output_path: str) -> None:
        if os.path.exists(output_path):
            os.remove(output_path)

    def _cleanup(self, work_dir: str) -> None:
        """Remove the run's scratch directory."""
        try:
            shutil.rmtree(work_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[COMPOSE] Could not remove work dir {work_dir}: {e}")
