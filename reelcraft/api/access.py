"""Workspace ownership checks shared by the composition routes."""

from uuid import UUID

from reelcraft.exceptions import WorkspaceNotFoundError
from reelcraft.services.composition_store import CompositionStore


async def ensure_workspace_access(
    store: CompositionStore,
    workspace_id: UUID,
    user_id: UUID,
) -> None:
    """Allow access only to the workspace owner.

    Raises:
        WorkspaceNotFoundError: If the workspace does not exist or is owned by
            someone else (both are reported as 404)
    """
    if not await store.workspace_owned_by(workspace_id, user_id):
        raise WorkspaceNotFoundError()
