import asyncio
import logging
from uuid import UUID

from fastapi import APIRouter, status

from reelcraft.api.access import ensure_workspace_access
from reelcraft.api.deps import CurrentUser, JobManager
from reelcraft.exceptions import CompositionNotFoundError, InvalidCompositionIdsError
from reelcraft.schemas.composition import (
    BulkDeleteRequest,
    BulkDeleteResponse,
    CompositionJobCreate,
    CompositionJobResponse,
    CompositionResponse,
    DeleteResponse,
    GenerateCombinationsRequest,
    GeneratedCombination,
)
from reelcraft.services.combinations import generate_combinations

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/workspace/{workspace_id}", response_model=list[CompositionResponse])
async def list_compositions(
    workspace_id: UUID,
    current_user: CurrentUser,
    manager: JobManager,
) -> list[CompositionResponse]:
    """List a workspace's compositions, newest first."""
    await ensure_workspace_access(manager.store, workspace_id, current_user.id)
    rows = await manager.store.list_compositions(workspace_id)
    return [CompositionResponse.model_validate(row) for row in rows]


@router.get("/job/{job_id}", response_model=CompositionJobResponse)
async def get_job_status(
    job_id: UUID,
    current_user: CurrentUser,
    manager: JobManager,
) -> CompositionJobResponse:
    """Aggregated job status, recomputed from the job's compositions."""
    summary = await manager.get_job_status(job_id, current_user.id)
    return CompositionJobResponse(**summary)


@router.post(
    "/workspace/{workspace_id}/generate-combinations",
    response_model=list[GeneratedCombination],
)
async def generate_workspace_combinations(
    workspace_id: UUID,
    request: GenerateCombinationsRequest,
    current_user: CurrentUser,
    manager: JobManager,
) -> list[GeneratedCombination]:
    """Suggest combinations of the selected clips and voiceovers."""
    await ensure_workspace_access(manager.store, workspace_id, current_user.id)
    return generate_combinations(
        request.hook_clip_ids,
        request.body_clip_ids,
        request.cat_clip_ids,
        request.voiceover_ids,
        request.max_combinations,
    )


@router.post(
    "/workspace/{workspace_id}",
    response_model=CompositionJobResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_compositions(
    workspace_id: UUID,
    request: CompositionJobCreate,
    current_user: CurrentUser,
    manager: JobManager,
) -> CompositionJobResponse:
    """
    Create a composition job.

    Every combination becomes one pending composition named "{name} - {n}".
    Rendering happens in the background; poll GET /job/{job_id} for progress.
    """
    summary = await manager.create_job(
        workspace_id, current_user.id, request.name, request.combinations
    )
    return CompositionJobResponse(**summary)


@router.delete("/bulk/{workspace_id}", response_model=BulkDeleteResponse)
async def bulk_delete_compositions(
    workspace_id: UUID,
    request: BulkDeleteRequest,
    current_user: CurrentUser,
    manager: JobManager,
) -> BulkDeleteResponse:
    """Delete several compositions. File deletion failures never block record deletion."""
    if not request.composition_ids:
        raise InvalidCompositionIdsError()

    await ensure_workspace_access(manager.store, workspace_id, current_user.id)

    compositions = await manager.store.get_compositions(workspace_id, request.composition_ids)
    if not compositions:
        raise CompositionNotFoundError()

    deleted_count = 0
    errors: list[str] = []
    for composition in compositions:
        await asyncio.to_thread(manager.storage.delete_file_quietly, composition.file_path)
        try:
            if await manager.store.delete_composition(composition.id):
                deleted_count += 1
        except Exception as e:
            logger.error(f"Error deleting composition {composition.id}: {e}")
            errors.append(f"Failed to delete composition {composition.id}")

    return BulkDeleteResponse(
        message=f"Successfully deleted {deleted_count} composition(s)",
        deleted_count=deleted_count,
        errors=errors or None,
    )


@router.delete("/{composition_id}", response_model=DeleteResponse)
async def delete_composition(
    composition_id: int,
    current_user: CurrentUser,
    manager: JobManager,
) -> DeleteResponse:
    """Delete a composition and, best-effort, its rendered file.

    A composition that is still rendering is not interrupted; its output is
    removed when the run finishes.
    """
    composition = await manager.store.get_owned_composition(composition_id, current_user.id)
    if composition is None:
        raise CompositionNotFoundError(composition_id)

    await asyncio.to_thread(manager.storage.delete_file_quietly, composition.file_path)
    await manager.store.delete_composition(composition_id)

    return DeleteResponse(message="Composition deleted successfully")
