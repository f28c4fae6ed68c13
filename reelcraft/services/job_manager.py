"""
Composition job manager.

Creates a job with one composition per requested combination and runs one
pipeline per composition in the background, bounded by the shared
ConcurrencyLimiter. Job status is never tracked directly: it is recomputed
from the compositions' statuses every time it is read.
"""

import asyncio
import logging
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Optional
from uuid import UUID

from reelcraft.config import get_settings
from reelcraft.exceptions import (
    JobNotFoundError,
    NoVideoSourcesError,
    UnknownMediaError,
    WorkspaceNotFoundError,
)
from reelcraft.models.composition import CompositionJob, CompositionStatus, JobStatus
from reelcraft.render.limiter import ConcurrencyLimiter
from reelcraft.render.pipeline import (
    CaptionOverlay,
    CompositionPipeline,
    LogoOverlay,
    PipelineRun,
    build_caption_text,
)
from reelcraft.schemas.composition import CombinationRequest
from reelcraft.services.composition_store import CompositionStore, RenderSource
from reelcraft.services.storage_service import LocalStorageService

logger = logging.getLogger(__name__)

settings = get_settings()


def aggregate_job_status(statuses: Iterable[str]) -> JobStatus:
    """Derive a job's status from its compositions' statuses.

    none or all pending -> pending; any pending/processing otherwise ->
    processing; all completed -> completed; all failed -> failed;
    terminal but mixed -> partial.
    """
    counts = Counter(statuses)
    total = sum(counts.values())
    pending = counts[CompositionStatus.PENDING.value]
    processing = counts[CompositionStatus.PROCESSING.value]
    completed = counts[CompositionStatus.COMPLETED.value]
    failed = counts[CompositionStatus.FAILED.value]

    if total == 0 or pending == total:
        return JobStatus.PENDING
    if pending or processing:
        return JobStatus.PROCESSING
    if completed == total:
        return JobStatus.COMPLETED
    if failed == total:
        return JobStatus.FAILED
    return JobStatus.PARTIAL


def combo_clip_ids(combo: CombinationRequest) -> list[int]:
    """Clip IDs of a combination in concatenation order."""
    ids = [combo.hook_clip_id] if combo.hook_clip_id is not None else []
    ids.extend(combo.body_clip_ids)
    if combo.cat_clip_id is not None:
        ids.append(combo.cat_clip_id)
    return ids


def job_summary(job: CompositionJob, statuses: list[str], status: JobStatus) -> dict[str, Any]:
    counts = Counter(statuses)
    return {
        "job_id": job.id,
        "workspace_id": job.workspace_id,
        "status": status.value,
        "total_count": len(statuses),
        "completed_count": counts[CompositionStatus.COMPLETED.value],
        "failed_count": counts[CompositionStatus.FAILED.value],
        "processing_count": counts[CompositionStatus.PROCESSING.value],
        "pending_count": counts[CompositionStatus.PENDING.value],
        "created_at": job.created_at,
        "updated_at": job.updated_at,
    }


class CompositionJobManager:
    """Owns the limiter and every background composition run."""

    def __init__(
        self,
        store: CompositionStore,
        pipeline: CompositionPipeline,
        storage: LocalStorageService,
        limiter: Optional[ConcurrencyLimiter] = None,
        status_write_retries: Optional[int] = None,
        status_write_retry_delay_s: Optional[float] = None,
    ):
        self.store = store
        self.pipeline = pipeline
        self.storage = storage
        self.limiter = limiter or ConcurrencyLimiter(settings.render_max_concurrency)
        self.status_write_retries = max(
            1,
            settings.status_write_retries if status_write_retries is None else status_write_retries,
        )
        self.status_write_retry_delay_s = (
            settings.status_write_retry_delay_s
            if status_write_retry_delay_s is None
            else status_write_retry_delay_s
        )
        self._tasks: set[asyncio.Task] = set()

    @property
    def active_runs(self) -> int:
        return len(self._tasks)

    # ========================================================================
    # Jobs
    # ========================================================================

    async def create_job(
        self,
        workspace_id: UUID,
        user_id: UUID,
        name: str,
        combinations: list[CombinationRequest],
    ) -> dict[str, Any]:
        """
        Persist a job with one pending composition per combination and start rendering.

        Nothing is persisted or scheduled unless every combination is valid.

        Raises:
            WorkspaceNotFoundError: If the workspace does not exist or belongs to someone else
            NoVideoSourcesError: If any combination has no hook, body or cat clip
            UnknownMediaError: If a referenced clip or voiceover is not in the workspace
        """
        if not await self.store.workspace_owned_by(workspace_id, user_id):
            raise WorkspaceNotFoundError()

        for index, combo in enumerate(combinations):
            if not combo.has_video_source:
                raise NoVideoSourcesError(index)

        clip_ids = sorted({clip_id for combo in combinations for clip_id in combo_clip_ids(combo)})
        voiceover_ids = sorted(
            {combo.voiceover_id for combo in combinations if combo.voiceover_id is not None}
        )
        missing_clips, missing_voiceovers = await self.store.find_missing_media(
            workspace_id, clip_ids, voiceover_ids
        )
        if missing_clips or missing_voiceovers:
            raise UnknownMediaError(missing_clips, missing_voiceovers)

        job, composition_ids = await self.store.create_job(workspace_id, name, combinations)
        logger.info(
            f"[JOB] Created job {job.id} with {len(composition_ids)} composition(s) "
            f"in workspace {workspace_id}"
        )

        for composition_id in composition_ids:
            self._schedule(composition_id)

        statuses = [CompositionStatus.PENDING.value] * len(composition_ids)
        return job_summary(job, statuses, JobStatus.PENDING)

    async def get_job_status(self, job_id: UUID, user_id: Optional[UUID] = None) -> dict[str, Any]:
        """Recompute the job's status from its compositions and cache it on the job row.

        Raises:
            JobNotFoundError: If the job does not exist or is not visible to ``user_id``
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if user_id is not None and not await self.store.workspace_owned_by(job.workspace_id, user_id):
            raise JobNotFoundError(job_id)

        statuses = await self.store.composition_statuses(job_id)
        status = aggregate_job_status(statuses)
        if job.status != status.value:
            await self.store.set_job_status(job_id, status.value)
            job.status = status.value
        return job_summary(job, statuses, status)

    # ========================================================================
    # Background runs
    # ========================================================================

    def _schedule(self, composition_id: int) -> asyncio.Task:
        task = asyncio.create_task(
            self.run_composition(composition_id), name=f"composition-{composition_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait until every scheduled run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run_composition(self, composition_id: int) -> None:
        """Render one composition and persist its terminal status. Never raises."""
        try:
            async with self.limiter.permit():
                outcome = await self._render(composition_id)
        except Exception:
            logger.exception(f"[JOB] Unexpected error running composition {composition_id}")
            return

        if outcome is None:
            return
        output_key, duration, error = outcome

        if error is not None:
            await self._write_terminal("failed", self.store.mark_failed, composition_id, error)
            return

        written = await self._write_terminal(
            "completed", self.store.mark_completed, composition_id, output_key, duration
        )
        if not written:
            # Record deleted while rendering (or unwritable): drop the orphaned file
            logger.info(f"[JOB] Composition {composition_id} gone, removing {output_key}")
            await asyncio.to_thread(self.storage.delete_file_quietly, output_key)

    async def _render(self, composition_id: int) -> Optional[tuple[str, float, Optional[str]]]:
        """Run the pipeline while holding a permit.

        Returns None when the composition should not run (deleted or no longer
        pending), otherwise ``(output_key, duration, error_message)``.
        """
        if not await self.store.mark_processing(composition_id):
            logger.info(f"[JOB] Composition {composition_id} is no longer pending, skipping")
            return None

        logger.info(
            f"[JOB] Composition {composition_id} processing "
            f"(permits in use {self.limiter.in_use}/{self.limiter.capacity}, "
            f"waiting {self.limiter.waiting})"
        )
        output_key = ""
        try:
            source = await self.store.load_render_source(composition_id)
            if source is None:
                logger.info(f"[JOB] Composition {composition_id} was deleted before rendering")
                return None
            output_key = self.storage.composition_output_key(source.workspace_id, composition_id)
            run = self.build_run(source, output_key)
            result = await self.pipeline.run(run)
        except Exception as e:
            logger.error(f"[JOB] Composition {composition_id} failed: {e}")
            return output_key, 0.0, str(e) or e.__class__.__name__

        logger.info(f"[JOB] Composition {composition_id} completed ({result.duration:.2f}s)")
        return output_key, result.duration, None

    def build_run(self, source: RenderSource, output_key: str) -> PipelineRun:
        """Turn stored composition inputs into an executable PipelineRun."""
        logo = None
        if source.logo_overlay_path:
            logo = LogoOverlay(
                path=str(self.storage.get_file_path(source.logo_overlay_path)),
                position=source.logo_position,
                opacity=source.logo_opacity,
                size=source.logo_size,
            )

        captions = None
        if source.enable_captions:
            captions = CaptionOverlay(
                text=build_caption_text(source.script_content or source.name),
                style=source.caption_style,
            )

        return PipelineRun(
            composition_id=source.composition_id,
            source_paths=[str(self.storage.get_file_path(p)) for p in source.clip_paths],
            output_path=str(self.storage.prepare_output_path(output_key)),
            voiceover_path=(
                str(self.storage.get_file_path(source.voiceover_path))
                if source.voiceover_path
                else None
            ),
            logo=logo,
            captions=captions,
            source_durations=list(source.clip_durations),
        )

    async def _write_terminal(
        self,
        label: str,
        write: Callable[..., Awaitable[bool]],
        *args: Any,
    ) -> bool:
        """Persist a terminal status, retrying with exponential backoff.

        Returns False when the record no longer accepts the write or every
        attempt failed.
        """
        delay = self.status_write_retry_delay_s
        for attempt in range(1, self.status_write_retries + 1):
            try:
                return await write(*args)
            except Exception as e:
                if attempt == self.status_write_retries:
                    logger.error(
                        f"[JOB] Could not persist status {label} after {attempt} attempt(s): {e}"
                    )
                    return False
                logger.warning(
                    f"[JOB] Status write {label} attempt {attempt} failed: {e}. "
                    f"Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                delay *= 2
        return False
