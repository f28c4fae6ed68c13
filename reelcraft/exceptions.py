"""Custom exceptions for the reelcraft backend.

Every error carries a machine-readable code and the HTTP status it maps to.
Pipeline errors (stage, probe, missing source) never reach an HTTP client
directly: they are caught per composition and stored as its error message.
"""

from typing import Any


class ReelcraftError(Exception):
    """Base exception for all reelcraft application errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for an API error response."""
        return {"detail": self.message, "code": self.code}


# =============================================================================
# Resource Not Found Errors (404)
# =============================================================================


class ResourceNotFoundError(ReelcraftError):
    """Base class for resource not found errors."""

    status_code = 404


class WorkspaceNotFoundError(ResourceNotFoundError):
    """Workspace not found, or not owned by the caller."""

    code = "WORKSPACE_NOT_FOUND"
    message = "Workspace not found"


class JobNotFoundError(ResourceNotFoundError):
    """Composition job not found."""

    code = "JOB_NOT_FOUND"
    message = "Job not found"

    def __init__(self, job_id: Any = None):
        message = f"Job not found: {job_id}" if job_id else self.message
        super().__init__(message)


class CompositionNotFoundError(ResourceNotFoundError):
    """Composition not found."""

    code = "COMPOSITION_NOT_FOUND"
    message = "Composition not found"

    def __init__(self, composition_id: int | None = None):
        message = (
            f"Composition not found: {composition_id}" if composition_id is not None else self.message
        )
        super().__init__(message)


# =============================================================================
# Validation Errors (400)
# =============================================================================


class ValidationError(ReelcraftError):
    """Base class for validation errors."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NoVideoSourcesError(ValidationError):
    """A combination selects no hook, body or call-to-action clip."""

    code = "NO_VIDEO_SOURCES"
    message = "No video clips provided"

    def __init__(self, index: int | None = None):
        message = (
            f"Combination {index + 1} has no video clips (hook, body or cat required)"
            if index is not None
            else self.message
        )
        super().__init__(message)


class InvalidCompositionIdsError(ValidationError):
    """Bulk request carried no usable composition IDs."""

    code = "INVALID_COMPOSITION_IDS"
    message = "Invalid composition IDs"


class UnknownMediaError(ValidationError):
    """A combination references clips or voiceovers that are not in the workspace."""

    code = "UNKNOWN_MEDIA"
    message = "Referenced media not found in workspace"

    def __init__(self, clip_ids: list[int] | None = None, voiceover_ids: list[int] | None = None):
        parts = []
        if clip_ids:
            parts.append(f"video clip(s) {sorted(clip_ids)}")
        if voiceover_ids:
            parts.append(f"voiceover(s) {sorted(voiceover_ids)}")
        message = f"Not found in workspace: {', '.join(parts)}" if parts else self.message
        super().__init__(message)


class InvalidStorageKeyError(ValidationError):
    """A storage key is absolute or escapes the storage root."""

    code = "INVALID_STORAGE_KEY"
    message = "Invalid storage path"

    def __init__(self, storage_key: str | None = None):
        message = f"Invalid storage path: {storage_key}" if storage_key else self.message
        super().__init__(message)


# =============================================================================
# Pipeline Errors (recorded on the composition, never raised to clients)
# =============================================================================


class PipelineError(ReelcraftError):
    """Base class for errors raised while rendering a composition."""

    code = "PIPELINE_ERROR"
    message = "Composition pipeline failed"


class StageError(PipelineError):
    """One ffmpeg stage failed: nonzero exit, timeout, or empty output."""

    code = "STAGE_FAILED"

    def __init__(
        self,
        stage: str,
        reason: str,
        *,
        returncode: int | None = None,
        stderr: str = "",
    ):
        self.stage = stage
        self.reason = reason
        self.returncode = returncode
        self.stderr = stderr
        message = f"{stage} stage failed: {reason}"
        if stderr:
            message += f"\n{stderr}"
        super().__init__(message)


class ProbeError(PipelineError):
    """ffprobe could not read a file's duration or dimensions."""

    code = "PROBE_FAILED"
    message = "Media probe failed"


class MediaSourceNotFoundError(PipelineError):
    """A clip, voiceover or logo referenced by a composition is missing."""

    code = "MEDIA_SOURCE_NOT_FOUND"
    message = "Media source not found"
