from datetime import datetime
from pathlib import PurePosixPath
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

LogoPosition = Literal["top-left", "top-right", "bottom-left", "bottom-right", "center"]
LogoSize = Literal["small", "medium", "large"]
CaptionStyle = Literal["default", "modern", "bold", "minimal"]


class CombinationRequest(BaseModel):
    """One requested composition: which clips, which voiceover, which overlays."""

    hook_clip_id: int | None = None
    body_clip_ids: list[int] = Field(default_factory=list)
    cat_clip_id: int | None = None
    voiceover_id: int | None = None

    logo_overlay_path: str | None = None
    logo_position: LogoPosition = "bottom-right"
    logo_opacity: float = Field(default=0.8, ge=0.0, le=1.0)
    logo_size: LogoSize = "medium"

    enable_captions: bool = False
    caption_style: CaptionStyle = "default"

    @field_validator("logo_overlay_path")
    @classmethod
    def validate_logo_overlay_path(cls, v: str | None) -> str | None:
        """Logo paths are storage keys: relative, without ".." parts."""
        if not v:
            return None
        parts = PurePosixPath(v.replace("\\", "/")).parts
        if not parts or v.startswith(("/", "\\")) or ".." in parts or ":" in parts[0]:
            raise ValueError("logo_overlay_path must be a relative storage path")
        return v

    @property
    def has_video_source(self) -> bool:
        return self.hook_clip_id is not None or bool(self.body_clip_ids) or self.cat_clip_id is not None


class CompositionJobCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    combinations: list[CombinationRequest] = Field(..., min_length=1)


class CompositionJobResponse(BaseModel):
    job_id: UUID
    workspace_id: UUID
    status: str
    total_count: int
    completed_count: int
    failed_count: int
    processing_count: int = 0
    pending_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CompositionResponse(BaseModel):
    id: int
    job_id: UUID
    workspace_id: UUID
    name: str
    hook_clip_id: int | None
    body_clip_ids: list[int]
    cat_clip_id: int | None
    voiceover_id: int | None
    logo_overlay_path: str | None
    logo_position: str
    logo_opacity: float
    logo_size: str
    enable_captions: bool
    caption_style: str
    status: str
    file_path: str | None
    duration: float | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime

    # Joined from the voiceover and its script
    voice_name: str | None = None
    voiceover_duration: float | None = None
    script_title: str | None = None

    model_config = ConfigDict(from_attributes=True)


class BulkDeleteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    composition_ids: list[int] = Field(default_factory=list, alias="compositionIds")


class BulkDeleteResponse(BaseModel):
    message: str
    deleted_count: int
    errors: list[str] | None = None


class DeleteResponse(BaseModel):
    message: str


class GenerateCombinationsRequest(BaseModel):
    hook_clip_ids: list[int] = Field(default_factory=list)
    body_clip_ids: list[int] = Field(default_factory=list)
    cat_clip_ids: list[int] = Field(default_factory=list)
    voiceover_ids: list[int] = Field(default_factory=list)
    max_combinations: int = Field(default=20, ge=1, le=500)


class GeneratedCombination(BaseModel):
    hook_clip_id: int | None
    body_clip_ids: list[int]
    cat_clip_id: int | None
    voiceover_id: int | None
