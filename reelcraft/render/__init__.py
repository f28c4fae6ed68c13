from reelcraft.render.limiter import ConcurrencyLimiter
from reelcraft.render.pipeline import (
    CaptionOverlay,
    CompositionPipeline,
    LogoOverlay,
    PipelineResult,
    PipelineRun,
)
from reelcraft.render.reconciler import ReconcilePlan, SyncStrategy, reconcile_durations
from reelcraft.render.stage_runner import StageInput, StageRunner, StageSpec

__all__ = [
    "ConcurrencyLimiter",
    "CompositionPipeline",
    "PipelineRun",
    "PipelineResult",
    "LogoOverlay",
    "CaptionOverlay",
    "ReconcilePlan",
    "SyncStrategy",
    "reconcile_durations",
    "StageRunner",
    "StageSpec",
    "StageInput",
]
