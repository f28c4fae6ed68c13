from reelcraft.schemas.composition import (
    BulkDeleteRequest,
    BulkDeleteResponse,
    CombinationRequest,
    CompositionJobCreate,
    CompositionJobResponse,
    CompositionResponse,
    DeleteResponse,
    GenerateCombinationsRequest,
    GeneratedCombination,
)

__all__ = [
    "CombinationRequest",
    "CompositionJobCreate",
    "CompositionJobResponse",
    "CompositionResponse",
    "BulkDeleteRequest",
    "BulkDeleteResponse",
    "DeleteResponse",
    "GenerateCombinationsRequest",
    "GeneratedCombination",
]
