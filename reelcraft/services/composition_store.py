"""
Persistence for composition jobs and compositions.

The job manager and the HTTP routes only talk to the CompositionStore
protocol. SqlCompositionStore opens one short session per operation so that
background pipeline runs never hold a connection while ffmpeg is running.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reelcraft.exceptions import MediaSourceNotFoundError
from reelcraft.models.clip import VideoClip
from reelcraft.models.composition import (
    TERMINAL_STATUSES,
    Composition,
    CompositionJob,
    CompositionStatus,
    JobStatus,
)
from reelcraft.models.script import Script
from reelcraft.models.voiceover import Voiceover
from reelcraft.models.workspace import Workspace
from reelcraft.schemas.composition import CombinationRequest

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Interrupted by server restart"


@dataclass
class RenderSource:
    """Resolved inputs of one composition, as storage keys."""

    composition_id: int
    workspace_id: UUID
    name: str
    clip_paths: list[str] = field(default_factory=list)
    clip_durations: list[float] = field(default_factory=list)
    voiceover_path: str | None = None
    script_content: str | None = None
    logo_overlay_path: str | None = None
    logo_position: str = "bottom-right"
    logo_opacity: float = 0.8
    logo_size: str = "medium"
    enable_captions: bool = False
    caption_style: str = "default"


def composition_to_dict(
    composition: Composition,
    voice_name: str | None = None,
    voiceover_duration: float | None = None,
    script_title: str | None = None,
) -> dict[str, Any]:
    """Flatten a composition plus its joined voiceover/script fields."""
    return {
        "id": composition.id,
        "job_id": composition.job_id,
        "workspace_id": composition.workspace_id,
        "name": composition.name,
        "hook_clip_id": composition.hook_clip_id,
        "body_clip_ids": list(composition.body_clip_ids or []),
        "cat_clip_id": composition.cat_clip_id,
        "voiceover_id": composition.voiceover_id,
        "logo_overlay_path": composition.logo_overlay_path,
        "logo_position": composition.logo_position,
        "logo_opacity": composition.logo_opacity,
        "logo_size": composition.logo_size,
        "enable_captions": composition.enable_captions,
        "caption_style": composition.caption_style,
        "status": composition.status,
        "file_path": composition.file_path,
        "duration": composition.duration,
        "error_message": composition.error_message,
        "created_at": composition.created_at,
        "updated_at": composition.updated_at,
        "voice_name": voice_name,
        "voiceover_duration": voiceover_duration,
        "script_title": script_title,
    }


def build_composition(
    job_id: UUID, workspace_id: UUID, name: str, index: int, combo: CombinationRequest
) -> Composition:
    """New pending composition for the ``index``-th (0-based) combination of a job."""
    return Composition(
        job_id=job_id,
        workspace_id=workspace_id,
        name=f"{name} - {index + 1}",
        hook_clip_id=combo.hook_clip_id,
        body_clip_ids=list(combo.body_clip_ids),
        cat_clip_id=combo.cat_clip_id,
        voiceover_id=combo.voiceover_id,
        logo_overlay_path=combo.logo_overlay_path,
        logo_position=combo.logo_position,
        logo_opacity=combo.logo_opacity,
        logo_size=combo.logo_size,
        enable_captions=combo.enable_captions,
        caption_style=combo.caption_style,
        status=CompositionStatus.PENDING.value,
    )


class CompositionStore(Protocol):
    async def workspace_owned_by(self, workspace_id: UUID, user_id: UUID) -> bool: ...

    async def find_missing_media(
        self, workspace_id: UUID, clip_ids: list[int], voiceover_ids: list[int]
    ) -> tuple[list[int], list[int]]: ...

    async def create_job(
        self, workspace_id: UUID, name: str, combinations: list[CombinationRequest]
    ) -> tuple[CompositionJob, list[int]]: ...

    async def get_job(self, job_id: UUID) -> CompositionJob | None: ...

    async def composition_statuses(self, job_id: UUID) -> list[str]: ...

    async def set_job_status(self, job_id: UUID, status: str) -> None: ...

    async def load_render_source(self, composition_id: int) -> RenderSource | None: ...

    async def mark_processing(self, composition_id: int) -> bool: ...

    async def mark_completed(self, composition_id: int, file_path: str, duration: float) -> bool: ...

    async def mark_failed(self, composition_id: int, error_message: str) -> bool: ...

    async def list_compositions(self, workspace_id: UUID) -> list[dict[str, Any]]: ...

    async def get_owned_composition(
        self, composition_id: int, user_id: UUID
    ) -> Composition | None: ...

    async def get_compositions(
        self, workspace_id: UUID, composition_ids: list[int]
    ) -> list[Composition]: ...

    async def delete_composition(self, composition_id: int) -> bool: ...

    async def fail_interrupted(self) -> int: ...


class SqlCompositionStore:
    """CompositionStore backed by the async SQLAlchemy session factory."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def workspace_owned_by(self, workspace_id: UUID, user_id: UUID) -> bool:
        async with self.session_maker() as db:
            result = await db.execute(
                select(Workspace.id).where(
                    Workspace.id == workspace_id,
                    Workspace.user_id == user_id,
                )
            )
            return result.scalar_one_or_none() is not None

    async def find_missing_media(
        self, workspace_id: UUID, clip_ids: list[int], voiceover_ids: list[int]
    ) -> tuple[list[int], list[int]]:
        """Clip and voiceover IDs that do not exist in the workspace."""
        async with self.session_maker() as db:
            found_clips: set[int] = set()
            if clip_ids:
                result = await db.execute(
                    select(VideoClip.id).where(
                        VideoClip.workspace_id == workspace_id,
                        VideoClip.id.in_(sorted(set(clip_ids))),
                    )
                )
                found_clips = set(result.scalars().all())

            found_voiceovers: set[int] = set()
            if voiceover_ids:
                result = await db.execute(
                    select(Voiceover.id)
                    .join(Script, Voiceover.script_id == Script.id)
                    .where(
                        Script.workspace_id == workspace_id,
                        Voiceover.id.in_(sorted(set(voiceover_ids))),
                    )
                )
                found_voiceovers = set(result.scalars().all())

        return (
            sorted(set(clip_ids) - found_clips),
            sorted(set(voiceover_ids) - found_voiceovers),
        )

    async def create_job(
        self, workspace_id: UUID, name: str, combinations: list[CombinationRequest]
    ) -> tuple[CompositionJob, list[int]]:
        """Insert the job and all its compositions in one transaction."""
        async with self.session_maker() as db:
            async with db.begin():
                job = CompositionJob(workspace_id=workspace_id, status=JobStatus.PENDING.value)
                db.add(job)
                await db.flush()

                compositions = [
                    build_composition(job.id, workspace_id, name, index, combo)
                    for index, combo in enumerate(combinations)
                ]
                db.add_all(compositions)
                await db.flush()
                composition_ids = [c.id for c in compositions]
            await db.refresh(job)
            return job, composition_ids

    async def get_job(self, job_id: UUID) -> CompositionJob | None:
        async with self.session_maker() as db:
            result = await db.execute(select(CompositionJob).where(CompositionJob.id == job_id))
            return result.scalar_one_or_none()

    async def composition_statuses(self, job_id: UUID) -> list[str]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(Composition.status).where(Composition.job_id == job_id)
            )
            return list(result.scalars().all())

    async def set_job_status(self, job_id: UUID, status: str) -> None:
        async with self.session_maker() as db:
            await db.execute(
                update(CompositionJob)
                .where(CompositionJob.id == job_id, CompositionJob.status != status)
                .values(status=status)
            )
            await db.commit()

    async def load_render_source(self, composition_id: int) -> RenderSource | None:
        async with self.session_maker() as db:
            result = await db.execute(select(Composition).where(Composition.id == composition_id))
            composition = result.scalar_one_or_none()
            if composition is None:
                return None

            clip_ids = composition.source_clip_ids
            clips: dict[int, VideoClip] = {}
            if clip_ids:
                clip_result = await db.execute(
                    select(VideoClip).where(
                        VideoClip.workspace_id == composition.workspace_id,
                        VideoClip.id.in_(clip_ids),
                    )
                )
                clips = {clip.id: clip for clip in clip_result.scalars().all()}
            missing = [clip_id for clip_id in clip_ids if clip_id not in clips]
            if missing:
                raise MediaSourceNotFoundError(f"Video clip(s) not found: {missing}")

            voiceover_path = None
            script_content = None
            if composition.voiceover_id is not None:
                vo_result = await db.execute(
                    select(Voiceover.file_path, Script.content)
                    .join(Script, Voiceover.script_id == Script.id)
                    .where(
                        Voiceover.id == composition.voiceover_id,
                        Script.workspace_id == composition.workspace_id,
                    )
                )
                row = vo_result.one_or_none()
                if row is None:
                    raise MediaSourceNotFoundError(
                        f"Voiceover not found: {composition.voiceover_id}"
                    )
                voiceover_path, script_content = row

            return RenderSource(
                composition_id=composition.id,
                workspace_id=composition.workspace_id,
                name=composition.name,
                clip_paths=[clips[clip_id].file_path for clip_id in clip_ids],
                clip_durations=[clips[clip_id].duration for clip_id in clip_ids],
                voiceover_path=voiceover_path,
                script_content=script_content,
                logo_overlay_path=composition.logo_overlay_path,
                logo_position=composition.logo_position,
                logo_opacity=composition.logo_opacity,
                logo_size=composition.logo_size,
                enable_captions=composition.enable_captions,
                caption_style=composition.caption_style,
            )

    async def _update_status(self, composition_id: int, allowed_from: set[str], **values) -> bool:
        async with self.session_maker() as db:
            result = await db.execute(
                update(Composition)
                .where(
                    Composition.id == composition_id,
                    Composition.status.in_(sorted(allowed_from)),
                )
                .values(**values)
            )
            await db.commit()
            return result.rowcount > 0

    async def mark_processing(self, composition_id: int) -> bool:
        return await self._update_status(
            composition_id,
            {CompositionStatus.PENDING.value},
            status=CompositionStatus.PROCESSING.value,
        )

    async def mark_completed(self, composition_id: int, file_path: str, duration: float) -> bool:
        return await self._update_status(
            composition_id,
            {CompositionStatus.PENDING.value, CompositionStatus.PROCESSING.value},
            status=CompositionStatus.COMPLETED.value,
            file_path=file_path,
            duration=duration,
            error_message=None,
        )

    async def mark_failed(self, composition_id: int, error_message: str) -> bool:
        return await self._update_status(
            composition_id,
            {CompositionStatus.PENDING.value, CompositionStatus.PROCESSING.value},
            status=CompositionStatus.FAILED.value,
            error_message=error_message,
        )

    async def list_compositions(self, workspace_id: UUID) -> list[dict[str, Any]]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(Composition, Voiceover.voice_name, Voiceover.duration, Script.title)
                .outerjoin(Voiceover, Composition.voiceover_id == Voiceover.id)
                .outerjoin(Script, Voiceover.script_id == Script.id)
                .where(Composition.workspace_id == workspace_id)
                .order_by(Composition.created_at.desc(), Composition.id.desc())
            )
            return [
                composition_to_dict(composition, voice_name, voiceover_duration, script_title)
                for composition, voice_name, voiceover_duration, script_title in result.all()
            ]

    async def get_owned_composition(
        self, composition_id: int, user_id: UUID
    ) -> Composition | None:
        async with self.session_maker() as db:
            result = await db.execute(
                select(Composition)
                .join(Workspace, Composition.workspace_id == Workspace.id)
                .where(Composition.id == composition_id, Workspace.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def get_compositions(
        self, workspace_id: UUID, composition_ids: list[int]
    ) -> list[Composition]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(Composition)
                .where(
                    Composition.workspace_id == workspace_id,
                    Composition.id.in_(composition_ids),
                )
                .order_by(Composition.id)
            )
            return list(result.scalars().all())

    async def delete_composition(self, composition_id: int) -> bool:
        async with self.session_maker() as db:
            result = await db.execute(delete(Composition).where(Composition.id == composition_id))
            await db.commit()
            return result.rowcount > 0

    async def fail_interrupted(self) -> int:
        """Fail compositions a previous process left unfinished. Runs are never resumed."""
        async with self.session_maker() as db:
            result = await db.execute(
                update(Composition)
                .where(Composition.status.notin_(sorted(TERMINAL_STATUSES)))
                .values(status=CompositionStatus.FAILED.value, error_message=INTERRUPTED_MESSAGE)
            )
            await db.commit()
            if result.rowcount:
                logger.warning(
                    f"[JOB] Marked {result.rowcount} interrupted composition(s) as failed"
                )
            return result.rowcount
