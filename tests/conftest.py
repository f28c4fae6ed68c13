"""
Pytest fixtures for reelcraft tests.

Most tests run against fakes: an in-memory CompositionStore, a stage runner
that writes deterministic files instead of calling ffmpeg, and a probe with
scripted durations. Tests that need the real binaries are marked
@pytest.mark.requires_ffmpeg; their fixtures skip when ffmpeg/ffprobe are missing.
"""

import asyncio
import hashlib
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import pytest
from PIL import Image

from reelcraft.exceptions import MediaSourceNotFoundError, ProbeError, StageError
from reelcraft.models.composition import (
    TERMINAL_STATUSES,
    Composition,
    CompositionJob,
    CompositionStatus,
    JobStatus,
)
from reelcraft.render.pipeline import CompositionPipeline
from reelcraft.render.stage_runner import StageRunner, StageSpec
from reelcraft.schemas.composition import CombinationRequest
from reelcraft.services.composition_store import (
    INTERRUPTED_MESSAGE,
    RenderSource,
    build_composition,
    composition_to_dict,
)
from reelcraft.services.storage_service import LocalStorageService


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: test runs the real ffmpeg binary (skipped when it is not installed)",
    )


def _ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


def file_hash(path: str | Path) -> str:
    return hashlib.sha256(Path(path).read_bytes()).hexdigest()


# =============================================================================
# Fake stage runner
# =============================================================================


@dataclass
class RecordedStage:
    spec: StageSpec
    output_path: str
    input_hashes: list[str]
    output_hash: str


class FakeStageRunner:
    """Writes a small deterministic file per stage instead of running ffmpeg.

    The output content is derived from the stage name and the hashes of its
    inputs, so stage chaining can be checked by comparing hashes.
    """

    def __init__(self) -> None:
        self.calls: list[RecordedStage] = []
        self.fail_stages: set[str] = set()
        self.delay_s: float = 0.0
        self.on_stage: Optional[Callable[[StageSpec], Awaitable[None]]] = None
        self.active = 0
        self.max_active = 0

    @property
    def stage_names(self) -> list[str]:
        return [call.spec.name for call in self.calls]

    def call(self, name: str) -> RecordedStage:
        return next(c for c in self.calls if c.spec.name == name)

    async def run(self, stage: StageSpec, work_dir: str) -> str:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.on_stage is not None:
                await self.on_stage(stage)
            if self.delay_s:
                await asyncio.sleep(self.delay_s)

            output_path = StageRunner.new_output_path(work_dir, stage.name)
            input_hashes = [file_hash(i.path) for i in stage.inputs if Path(i.path).is_file()]
            if stage.name in self.fail_stages:
                # Leave a partial file behind, as a crashed ffmpeg would
                Path(output_path).write_bytes(b"partial")
                raise StageError(stage.name, "ffmpeg exited with code 1", returncode=1, stderr="boom")

            content = f"{stage.name}:{','.join(input_hashes)}".encode()
            Path(output_path).write_bytes(content)
            self.calls.append(
                RecordedStage(
                    spec=stage,
                    output_path=output_path,
                    input_hashes=input_hashes,
                    output_hash=hashlib.sha256(content).hexdigest(),
                )
            )
            return output_path
        finally:
            self.active -= 1


class FakeProbe:
    """Scripted durations: exact path first, then stage-name prefix, then a default."""

    def __init__(self, default_duration: float = 10.0, dimensions: tuple[int, int] = (1080, 1920)):
        self.default_duration = default_duration
        self.durations: dict[str, float] = {}
        self.stage_durations: dict[str, float] = {}
        self.failing_paths: set[str] = set()
        self.fail_all = False
        self._dimensions = dimensions
        self.probed: list[str] = []

    async def duration(self, file_path: str) -> float:
        self.probed.append(file_path)
        if self.fail_all or file_path in self.failing_paths:
            raise ProbeError(f"ffprobe failed for {file_path}")
        if file_path in self.durations:
            return self.durations[file_path]
        name = Path(file_path).name
        for prefix, duration in self.stage_durations.items():
            if name.startswith(f"{prefix}_"):
                return duration
        return self.default_duration

    async def dimensions(self, file_path: str) -> tuple[int, int]:
        if self.fail_all or file_path in self.failing_paths:
            raise ProbeError(f"ffprobe failed for {file_path}")
        return self._dimensions


# =============================================================================
# In-memory store
# =============================================================================


@dataclass
class StoredVoiceover:
    file_path: str
    workspace_id: uuid.UUID | None = None
    duration: float | None = None
    voice_name: str = "Rachel"
    script_title: str = "Launch script"
    script_content: str | None = "Meet the bottle that keeps drinks cold for 24 hours."


@dataclass
class StoredClip:
    file_path: str
    duration: float
    workspace_id: uuid.UUID | None = None


class InMemoryCompositionStore:
    """CompositionStore over plain dicts, holding unattached ORM instances."""

    def __init__(self) -> None:
        self.workspaces: dict[uuid.UUID, uuid.UUID] = {}
        self.jobs: dict[uuid.UUID, CompositionJob] = {}
        self.compositions: dict[int, Composition] = {}
        self.clips: dict[int, StoredClip] = {}
        self.voiceovers: dict[int, StoredVoiceover] = {}
        self.failing_terminal_writes = 0
        self.terminal_write_attempts = 0
        self.status_history: dict[int, list[str]] = {}
        self._next_id = 1
        self._clock = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def _now(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    # Seeding helpers

    def add_workspace(self, owner_id: uuid.UUID) -> uuid.UUID:
        workspace_id = uuid.uuid4()
        self.workspaces[workspace_id] = owner_id
        return workspace_id

    def add_clip(
        self, clip_id: int, file_path: str, duration: float, workspace_id: uuid.UUID | None = None
    ) -> None:
        self.clips[clip_id] = StoredClip(file_path, duration, workspace_id)

    def add_voiceover(
        self, voiceover_id: int, file_path: str, workspace_id: uuid.UUID | None = None, **kwargs: Any
    ) -> None:
        self.voiceovers[voiceover_id] = StoredVoiceover(file_path, workspace_id, **kwargs)

    def _set_status(self, composition: Composition, status: str) -> None:
        composition.status = status
        composition.updated_at = self._now()
        self.status_history.setdefault(composition.id, []).append(status)

    # CompositionStore protocol

    async def workspace_owned_by(self, workspace_id, user_id) -> bool:
        return self.workspaces.get(workspace_id) == user_id

    async def find_missing_media(self, workspace_id, clip_ids, voiceover_ids):
        missing_clips = [
            i for i in clip_ids if i not in self.clips or self.clips[i].workspace_id != workspace_id
        ]
        missing_voiceovers = [
            i
            for i in voiceover_ids
            if i not in self.voiceovers or self.voiceovers[i].workspace_id != workspace_id
        ]
        return sorted(set(missing_clips)), sorted(set(missing_voiceovers))

    async def create_job(self, workspace_id, name, combinations: list[CombinationRequest]):
        now = self._now()
        job = CompositionJob(
            id=uuid.uuid4(),
            workspace_id=workspace_id,
            status=JobStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        self.jobs[job.id] = job
        ids = []
        for index, combo in enumerate(combinations):
            composition = build_composition(job.id, workspace_id, name, index, combo)
            composition.id = self._next_id
            composition.created_at = self._now()
            composition.updated_at = composition.created_at
            self._next_id += 1
            self.compositions[composition.id] = composition
            self.status_history[composition.id] = [composition.status]
            ids.append(composition.id)
        return job, ids

    async def get_job(self, job_id):
        return self.jobs.get(job_id)

    async def composition_statuses(self, job_id) -> list[str]:
        return [c.status for c in self.compositions.values() if c.job_id == job_id]

    async def set_job_status(self, job_id, status: str) -> None:
        self.jobs[job_id].status = status

    async def load_render_source(self, composition_id: int) -> RenderSource | None:
        composition = self.compositions.get(composition_id)
        if composition is None:
            return None
        clip_ids = composition.source_clip_ids
        missing = [
            clip_id
            for clip_id in clip_ids
            if clip_id not in self.clips
            or self.clips[clip_id].workspace_id != composition.workspace_id
        ]
        if missing:
            raise MediaSourceNotFoundError(f"Video clip(s) not found: {missing}")

        voiceover = None
        if composition.voiceover_id is not None:
            voiceover = self.voiceovers.get(composition.voiceover_id)
            if voiceover is None or voiceover.workspace_id != composition.workspace_id:
                raise MediaSourceNotFoundError(f"Voiceover not found: {composition.voiceover_id}")

        return RenderSource(
            composition_id=composition.id,
            workspace_id=composition.workspace_id,
            name=composition.name,
            clip_paths=[self.clips[i].file_path for i in clip_ids],
            clip_durations=[self.clips[i].duration for i in clip_ids],
            voiceover_path=voiceover.file_path if voiceover else None,
            script_content=voiceover.script_content if voiceover else None,
            logo_overlay_path=composition.logo_overlay_path,
            logo_position=composition.logo_position,
            logo_opacity=composition.logo_opacity,
            logo_size=composition.logo_size,
            enable_captions=composition.enable_captions,
            caption_style=composition.caption_style,
        )

    async def mark_processing(self, composition_id: int) -> bool:
        composition = self.compositions.get(composition_id)
        if composition is None or composition.status != CompositionStatus.PENDING.value:
            return False
        self._set_status(composition, CompositionStatus.PROCESSING.value)
        return True

    async def _terminal_write(self, composition_id: int, status: str, **values: Any) -> bool:
        self.terminal_write_attempts += 1
        if self.failing_terminal_writes > 0:
            self.failing_terminal_writes -= 1
            raise ConnectionError("database unavailable")
        composition = self.compositions.get(composition_id)
        if composition is None or composition.status in TERMINAL_STATUSES:
            return False
        for key, value in values.items():
            setattr(composition, key, value)
        self._set_status(composition, status)
        return True

    async def mark_completed(self, composition_id: int, file_path: str, duration: float) -> bool:
        return await self._terminal_write(
            composition_id,
            CompositionStatus.COMPLETED.value,
            file_path=file_path,
            duration=duration,
            error_message=None,
        )

    async def mark_failed(self, composition_id: int, error_message: str) -> bool:
        return await self._terminal_write(
            composition_id, CompositionStatus.FAILED.value, error_message=error_message
        )

    async def list_compositions(self, workspace_id) -> list[dict[str, Any]]:
        rows = []
        for composition in sorted(
            self.compositions.values(), key=lambda c: (c.created_at, c.id), reverse=True
        ):
            if composition.workspace_id != workspace_id:
                continue
            voiceover = self.voiceovers.get(composition.voiceover_id)
            rows.append(
                composition_to_dict(
                    composition,
                    voiceover.voice_name if voiceover else None,
                    voiceover.duration if voiceover else None,
                    voiceover.script_title if voiceover else None,
                )
            )
        return rows

    async def get_owned_composition(self, composition_id: int, user_id):
        composition = self.compositions.get(composition_id)
        if composition is None or self.workspaces.get(composition.workspace_id) != user_id:
            return None
        return composition

    async def get_compositions(self, workspace_id, composition_ids: list[int]):
        return [
            self.compositions[i]
            for i in sorted(set(composition_ids))
            if i in self.compositions and self.compositions[i].workspace_id == workspace_id
        ]

    async def delete_composition(self, composition_id: int) -> bool:
        return self.compositions.pop(composition_id, None) is not None

    async def fail_interrupted(self) -> int:
        count = 0
        for composition in self.compositions.values():
            if composition.status not in TERMINAL_STATUSES:
                composition.error_message = INTERRUPTED_MESSAGE
                self._set_status(composition, CompositionStatus.FAILED.value)
                count += 1
        return count


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_output_dir():
    """Temporary directory for test outputs."""
    with tempfile.TemporaryDirectory(prefix="reelcraft_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def work_root(temp_output_dir) -> Path:
    """Parent of the pipeline's per-run scratch directories."""
    path = temp_output_dir / "work"
    path.mkdir()
    return path


@pytest.fixture
def storage(temp_output_dir) -> LocalStorageService:
    return LocalStorageService(temp_output_dir / "storage")


@pytest.fixture
def fake_runner() -> FakeStageRunner:
    return FakeStageRunner()


@pytest.fixture
def fake_probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def pipeline(fake_runner, fake_probe, work_root) -> CompositionPipeline:
    return CompositionPipeline(
        runner=fake_runner,
        probe=fake_probe,
        width=1080,
        height=1920,
        fps=30,
        work_root=str(work_root),
    )


@pytest.fixture
def store() -> InMemoryCompositionStore:
    return InMemoryCompositionStore()


@pytest.fixture
def make_media(storage) -> Callable[[str, bytes], str]:
    """Write a file under the storage root and return its storage key."""

    def _make(storage_key: str, content: bytes = b"media") -> str:
        path = storage.prepare_output_path(storage_key)
        path.write_bytes(content)
        return storage_key

    return _make


@pytest.fixture
def logo_key(storage) -> str:
    """A 200x100 semi-transparent PNG logo stored under the storage root."""
    key = "uploads/logos/logo.png"
    img = Image.new("RGBA", (200, 100), (255, 0, 0, 128))
    img.save(storage.prepare_output_path(key))
    return key


@pytest.fixture
def owner_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def seeded_store(store, make_media, owner_id):
    """Store with one workspace, three clips (hook/body/cat) and one voiceover."""
    workspace_id = store.add_workspace(owner_id)
    store.add_clip(1, make_media("uploads/clips/hook.mp4", b"hook"), 3.0, workspace_id)
    store.add_clip(2, make_media("uploads/clips/body.mp4", b"body"), 5.0, workspace_id)
    store.add_clip(3, make_media("uploads/clips/cat.mp4", b"cat"), 2.0, workspace_id)
    store.add_voiceover(
        10, make_media("uploads/voiceovers/vo.mp3", b"voice"), workspace_id, duration=9.5
    )
    store.workspace_id = workspace_id
    return store


@pytest.fixture
def real_clips(temp_output_dir) -> list[Path]:
    """Two short silent test-pattern clips with different sizes (real ffmpeg)."""
    if not _ffmpeg_available():
        pytest.skip("ffmpeg/ffprobe not installed")

    import subprocess

    clips = []
    for index, (size, duration) in enumerate([("320x240", 1.0), ("240x320", 1.5)]):
        path = temp_output_dir / f"clip_{index}.mp4"
        subprocess.run(
            [
                "ffmpeg", "-y",
                "-f", "lavfi",
                "-i", f"testsrc=size={size}:rate=30:duration={duration}",
                "-c:v", "libx264",
                "-pix_fmt", "yuv420p",
                str(path),
            ],
            capture_output=True,
            check=True,
        )
        clips.append(path)
    return clips


@pytest.fixture
def real_voiceover(temp_output_dir) -> Path:
    """A 2 second sine tone standing in for a voiceover (real ffmpeg)."""
    if not _ffmpeg_available():
        pytest.skip("ffmpeg/ffprobe not installed")

    import subprocess

    path = temp_output_dir / "voiceover.m4a"
    subprocess.run(
        [
            "ffmpeg", "-y",
            "-f", "lavfi",
            "-i", "sine=frequency=440:duration=2",
            "-c:a", "aac",
            str(path),
        ],
        capture_output=True,
        check=True,
    )
    return path
