"""
Single ffmpeg stage execution.

A stage is described declaratively (inputs, filters, stream maps, codec
options) and turned into an argv list. The runner executes it once, writes
to a fresh path inside the run's work directory and refuses empty output.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Optional
from uuid import uuid4

from reelcraft.config import get_settings
from reelcraft.exceptions import StageError

logger = logging.getLogger(__name__)

settings = get_settings()

STDERR_TAIL_CHARS = 2000


@dataclass
class StageInput:
    """One ``-i`` input with the options that must precede it."""

    path: str
    options: list[str] = field(default_factory=list)


@dataclass
class StageSpec:
    """Declarative description of one ffmpeg invocation."""

    name: str
    inputs: list[StageInput]
    maps: list[str] = field(default_factory=list)
    filter_complex: Optional[str] = None
    video_filter: Optional[str] = None
    output_options: list[str] = field(default_factory=list)

    def build_command(self, output_path: str, ffmpeg_path: str = "ffmpeg") -> list[str]:
        """Build the ffmpeg argv for this stage without executing it."""
        if not self.inputs:
            raise ValueError(f"Stage {self.name} has no inputs")

        cmd = [ffmpeg_path, "-y", "-hide_banner", "-loglevel", "error"]
        for stage_input in self.inputs:
            cmd.extend(stage_input.options)
            cmd.extend(["-i", stage_input.path])

        if self.filter_complex:
            cmd.extend(["-filter_complex", self.filter_complex])
        if self.video_filter:
            cmd.extend(["-filter:v", self.video_filter])
        for stream in self.maps:
            cmd.extend(["-map", stream])

        cmd.extend(self.output_options)
        cmd.append(output_path)
        return cmd


class StageRunner:
    """Runs StageSpecs through ffmpeg with an optional watchdog timeout."""

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ):
        self.ffmpeg_path = ffmpeg_path or settings.ffmpeg_path
        timeout = settings.render_stage_timeout_s if timeout_s is None else timeout_s
        # 0 disables the watchdog
        self.timeout_s = timeout if timeout and timeout > 0 else None

    @staticmethod
    def new_output_path(work_dir: str, stage_name: str) -> str:
        """Fresh, never-before-used output path inside the work directory."""
        return os.path.join(work_dir, f"{stage_name}_{uuid4().hex[:12]}.mp4")

    async def run(self, stage: StageSpec, work_dir: str) -> str:
        """Execute one stage.

        Args:
            stage: Stage description
            work_dir: Run's scratch directory; the output is written inside it

        Returns:
            Path of the stage's output file

        Raises:
            StageError: On nonzero exit, watchdog timeout, or missing/empty output
        """
        output_path = self.new_output_path(work_dir, stage.name)
        cmd = stage.build_command(output_path, self.ffmpeg_path)
        logger.info(f"[STAGE] {stage.name}: {' '.join(cmd)}")

        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            if self.timeout_s is not None:
                _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_s)
            else:
                _, stderr = await process.communicate()
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error(f"[STAGE] {stage.name} killed after {self.timeout_s}s")
            raise StageError(stage.name, f"timed out after {self.timeout_s}s")

        if process.returncode != 0:
            error = stderr.decode("utf-8", errors="replace")
            logger.error(
                "[STAGE] %s failed (rc=%d). stderr (last %d): %s",
                stage.name,
                process.returncode,
                STDERR_TAIL_CHARS,
                error[-STDERR_TAIL_CHARS:],
            )
            raise StageError(
                stage.name,
                f"ffmpeg exited with code {process.returncode}",
                returncode=process.returncode,
                stderr=error[-500:].strip(),
            )

        if not os.path.exists(output_path):
            raise StageError(stage.name, "no output file was written", returncode=0)
        size = os.path.getsize(output_path)
        if size == 0:
            raise StageError(stage.name, "output file is empty", returncode=0)

        logger.info(f"[STAGE] {stage.name} done: {output_path} ({size / 1024 / 1024:.2f}MB)")
        return output_path
