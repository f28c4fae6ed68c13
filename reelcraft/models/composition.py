import uuid
from enum import Enum

from sqlalchemy import Boolean, Float, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reelcraft.models.base import Base, TimestampMixin, UUIDMixin


class CompositionStatus(Enum):
    """Lifecycle of one composition. completed and failed are terminal."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(Enum):
    """Job status, derived from the job's compositions."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


TERMINAL_STATUSES = frozenset({CompositionStatus.COMPLETED.value, CompositionStatus.FAILED.value})


class CompositionJob(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "composition_jobs"

    workspace_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Cached aggregate of the compositions' statuses, refreshed on every read
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING.value, nullable=False)

    # Relationships
    workspace: Mapped["Workspace"] = relationship(  # noqa: F821
        "Workspace", back_populates="composition_jobs"
    )
    compositions: Mapped[list["Composition"]] = relationship(
        "Composition",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="Composition.id",
    )

    def __repr__(self) -> str:
        return f"<CompositionJob {self.id} ({self.status})>"


class Composition(Base, TimestampMixin):
    __tablename__ = "video_compositions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("composition_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Video sources, concatenated as hook + body + cat
    hook_clip_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("video_clips.id", ondelete="SET NULL"), nullable=True
    )
    body_clip_ids: Mapped[list[int]] = mapped_column(JSONB, default=list, nullable=False)
    cat_clip_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("video_clips.id", ondelete="SET NULL"), nullable=True
    )
    voiceover_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("voiceovers.id", ondelete="CASCADE"), nullable=True
    )

    # Logo overlay (path relative to the storage root)
    logo_overlay_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    logo_position: Mapped[str] = mapped_column(String(20), default="bottom-right", nullable=False)
    logo_opacity: Mapped[float] = mapped_column(Float, default=0.8, nullable=False)
    logo_size: Mapped[str] = mapped_column(String(10), default="medium", nullable=False)

    # Captions
    enable_captions: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    caption_style: Mapped[str] = mapped_column(String(20), default="default", nullable=False)

    # Status: pending, processing, completed, failed
    status: Mapped[str] = mapped_column(
        String(20), default=CompositionStatus.PENDING.value, nullable=False, index=True
    )

    # Output (completed only)
    file_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    duration: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Error handling (failed only)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    job: Mapped["CompositionJob"] = relationship("CompositionJob", back_populates="compositions")
    voiceover: Mapped["Voiceover | None"] = relationship("Voiceover")  # noqa: F821

    @property
    def source_clip_ids(self) -> list[int]:
        """Clip IDs in concatenation order: hook, body..., cat."""
        ids: list[int] = []
        if self.hook_clip_id is not None:
            ids.append(self.hook_clip_id)
        ids.extend(self.body_clip_ids or [])
        if self.cat_clip_id is not None:
            ids.append(self.cat_clip_id)
        return ids

    def __repr__(self) -> str:
        return f"<Composition {self.id} {self.name} ({self.status})>"
