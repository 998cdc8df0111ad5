from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from render_service.clients.ffmpeg import FFmpegRunner
from render_service.clients.library import JsonFileAssetLibrary
from render_service.config import Settings
from render_service.queue.worker import WorkerScheduler
from render_service.render.compiler import ProcessPlan
from render_service.services.job_service import JobService
from render_service.services.resolver import ResourceResolver
from render_service.storage.repository import JobStore


class FakeRunner(FFmpegRunner):
    """Stands in for ffmpeg: records plans, reports progress, writes the output."""

    def __init__(self) -> None:
        super().__init__(ffmpeg_path="ffmpeg", ffprobe_path="ffprobe")
        self.plans: List[ProcessPlan] = []
        self.progress: List[int] = []
        self.error: Optional[Exception] = None
        self.durations: Dict[str, Optional[float]] = {}
        self.gate: Optional[threading.Event] = None
        self.started = threading.Event()
        self.before_finish: Optional[Callable[[ProcessPlan], None]] = None

    def run(self, plan: ProcessPlan, on_progress=None) -> None:
        self.plans.append(plan)
        for percent in self.progress:
            if on_progress is not None:
                on_progress(percent)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.before_finish is not None:
            self.before_finish(plan)
        if self.error is not None:
            raise self.error
        plan.output_path.parent.mkdir(parents=True, exist_ok=True)
        plan.output_path.write_bytes(b"rendered")

    def probe_duration(self, location: str) -> Optional[float]:
        return self.durations.get(location, 10.0)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=str(tmp_path / "data"),
        output_dir=str(tmp_path / "outputs"),
        library_file=str(tmp_path / "library.json"),
        library_url="",
        worker_enabled=False,
        poll_interval_seconds=0.05,
        progress_interval_seconds=0.0,
    )


@pytest.fixture
def media(tmp_path: Path) -> Dict[str, str]:
    files = {}
    for name in ("bg.mp4", "voice.mp3", "music.mp3", "intro.mp3", "outro.mp3"):
        path = tmp_path / "media" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\x00" * 64)
        files[name.split(".")[0]] = str(path)
    return files


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def store(settings: Settings) -> JobStore:
    return JobStore(settings.jobs_path, retention=settings.job_retention)


@pytest.fixture
def resolver(settings: Settings) -> ResourceResolver:
    settings.output_path.mkdir(parents=True, exist_ok=True)
    library = JsonFileAssetLibrary(settings.library_file)
    return ResourceResolver.from_settings(settings, library=library)


@pytest.fixture
def scheduler(settings: Settings, store: JobStore, resolver: ResourceResolver, runner: FakeRunner) -> WorkerScheduler:
    worker = WorkerScheduler.from_settings(settings, store=store, resolver=resolver, runner=runner)
    yield worker
    worker.stop(timeout=5)


@pytest.fixture
def service(store: JobStore, resolver: ResourceResolver, runner: FakeRunner, scheduler: WorkerScheduler) -> JobService:
    return JobService(store=store, resolver=resolver, runner=runner, scheduler=scheduler)
