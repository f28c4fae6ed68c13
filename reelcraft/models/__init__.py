from reelcraft.models.base import Base
from reelcraft.models.clip import VideoClip
from reelcraft.models.composition import (
    Composition,
    CompositionJob,
    CompositionStatus,
    JobStatus,
)
from reelcraft.models.script import Script
from reelcraft.models.user import User
from reelcraft.models.voiceover import Voiceover
from reelcraft.models.workspace import Workspace

__all__ = [
    "Base",
    "User",
    "Workspace",
    "VideoClip",
    "Script",
    "Voiceover",
    "CompositionJob",
    "Composition",
    "CompositionStatus",
    "JobStatus",
]
