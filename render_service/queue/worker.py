from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from render_service.clients.ffmpeg import FFmpegError, FFmpegRunner
from render_service.models.api import (
    AudioMergeRequest,
    AudioProcessRequest,
    AudioTimelineRequest,
    JobRequest,
    TimelinePreviewRequest,
    parse_job_request,
)
from render_service.models.domain import Job, JobStatus, utcnow
from render_service.render.compiler import EncoderOptions, ProcessPlan, ResolvedSources, compile_plan
from render_service.services.resolver import ResourceResolver
from render_service.storage.repository import JobStore


class WorkerScheduler:
    """Single-flight executor over the job store.

    At most one job runs at a time. The active job id and the in-memory
    progress of that job live here and nowhere else; the store only sees
    progress again when the job finishes.
    """

    def __init__(
        self,
        store: JobStore,
        resolver: ResourceResolver,
        runner: FFmpegRunner,
        options: EncoderOptions,
        output_dir: str | Path,
        public_prefix: str = "/outputs",
        poll_interval: float = 1.0,
        stale_after: float = 3600.0,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.runner = runner
        self.options = options
        self.output_dir = Path(output_dir)
        self.public_prefix = public_prefix.rstrip("/")
        self.poll_interval = poll_interval
        self.stale_after = stale_after
        self.log = logger or logging.getLogger(__name__)
        self._clock = clock

        self._lock = threading.RLock()
        self._active_id: Optional[str] = None
        self._progress: Dict[str, int] = {}
        self._exec_thread: Optional[threading.Thread] = None
        self._poller: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._wake = threading.Event()

    @property
    def active_job_id(self) -> Optional[str]:
        with self._lock:
            return self._active_id

    def tick(self) -> Optional[str]:
        """Claim and start the oldest queued job unless one is already running."""
        with self._lock:
            if self._active_id is not None:
                return None
            claimed = self.store.update(self._claim)
            if claimed is None:
                self.reap_stale()
                return None
            self._active_id = claimed.id
            self._progress[claimed.id] = 0
            thread = threading.Thread(target=self._execute, args=(claimed,), name=f"render-{claimed.id}", daemon=True)
            self._exec_thread = thread
        self.log.info("job claimed", extra={"job_id": claimed.id, "type": claimed.type.value})
        thread.start()
        return claimed.id

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the currently executing job, if any."""
        with self._lock:
            thread = self._exec_thread
        if thread is not None:
            thread.join(timeout)

    def _claim(self, jobs: List[Job]) -> Optional[Job]:
        for job in jobs:
            if job.status == JobStatus.QUEUED:
                job.status = JobStatus.RUNNING
                job.started_at = self._clock()
                job.progress = 0
                return job.model_copy(deep=True)
        return None

    def _execute(self, job: Job) -> None:
        try:
            plan = self._run(job)
        except Exception as exc:
            self._finish_failed(job.id, exc)
        else:
            self._finish_done(job.id, plan)
        finally:
            with self._lock:
                self._active_id = None
                self._progress.pop(job.id, None)
                self._exec_thread = None
            self._wake.set()

    def _run(self, job: Job) -> ProcessPlan:
        request = parse_job_request(job.type, job.payload)
        sources = self.resolver.resolve_request(request)
        sources.media_durations = self._probe_durations(request, sources)
        plan = compile_plan(request, sources, self.options, self.output_dir)
        self.log.info(
            "job compiled",
            extra={"job_id": job.id, "output": str(plan.output_path), "duration": plan.total_duration_sec},
        )
        self.runner.run(plan, on_progress=lambda percent: self._record_progress(job.id, percent))
        return plan

    def _probe_durations(self, request: JobRequest, sources: ResolvedSources) -> List[Optional[float]]:
        if isinstance(request, AudioMergeRequest):
            locations = sources.inputs
        elif isinstance(request, (AudioTimelineRequest, TimelinePreviewRequest)):
            locations = sources.clips
        elif isinstance(request, AudioProcessRequest):
            locations = [sources.audio] if sources.audio else []
        else:
            return []
        durations: List[Optional[float]] = []
        for location in locations:
            try:
                durations.append(self.runner.probe_duration(location))
            except FFmpegError as exc:
                self.log.warning("duration probe failed", extra={"location": location, "error": str(exc)})
                durations.append(None)
        return durations

    def _record_progress(self, job_id: str, percent: int) -> None:
        with self._lock:
            if job_id in self._progress and percent > self._progress[job_id]:
                self._progress[job_id] = min(99, percent)

    def merge_progress(self, job: Job) -> Job:
        """Overlay the live progress of the running job onto a stored record."""
        with self._lock:
            live = self._progress.get(job.id)
        if live is None or job.status != JobStatus.RUNNING or live <= job.progress:
            return job
        return job.model_copy(update={"progress": live})

    def _finish_done(self, job_id: str, plan: ProcessPlan) -> None:
        result = {
            "outFile": str(plan.output_path.resolve()),
            "url": f"{self.public_prefix}/{plan.output_path.name}",
        }

        def apply(jobs: List[Job]) -> None:
            for job in jobs:
                if job.id == job_id and not job.status.is_terminal:
                    job.status = JobStatus.DONE
                    job.progress = 100
                    job.finished_at = self._clock()
                    job.result = result
                    job.error = None

        try:
            self.store.update(apply)
        except Exception:
            self.log.exception("could not persist finished job", extra={"job_id": job_id})
            return
        self.log.info("job done", extra={"job_id": job_id, "output": result["outFile"]})

    def _finish_failed(self, job_id: str, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        if isinstance(exc, (FFmpegError, ValueError)):
            self.log.warning("job failed", extra={"job_id": job_id, "error": message.splitlines()[0]})
        else:
            self.log.error("job crashed", extra={"job_id": job_id}, exc_info=exc)
        with self._lock:
            last_progress = self._progress.get(job_id, 0)

        def apply(jobs: List[Job]) -> None:
            for job in jobs:
                if job.id == job_id and not job.status.is_terminal:
                    job.status = JobStatus.FAILED
                    job.progress = max(job.progress, last_progress)
                    job.finished_at = self._clock()
                    job.error = message

        try:
            self.store.update(apply)
        except Exception:
            self.log.exception("could not persist failed job", extra={"job_id": job_id})

    def reap_stale(self) -> List[str]:
        """Fail ``running`` jobs nobody is executing that outlived the stale threshold."""
        now = self._clock()
        with self._lock:
            active = self._active_id

        def apply(jobs: List[Job]) -> List[str]:
            reaped: List[str] = []
            for job in jobs:
                if job.status != JobStatus.RUNNING or job.id == active:
                    continue
                since = job.started_at or job.created_at
                if (now - since).total_seconds() <= self.stale_after:
                    continue
                job.status = JobStatus.FAILED
                job.finished_at = now
                job.error = (
                    f"Reaped: job was still running after {self.stale_after:g}s "
                    "with no worker attached (service restarted?)"
                )
                reaped.append(job.id)
            return reaped

        try:
            reaped = self.store.update(apply)
        except Exception:
            self.log.exception("stale job sweep failed")
            return []
        for job_id in reaped:
            self.log.warning("stale job reaped", extra={"job_id": job_id})
        return reaped

    def start(self) -> None:
        with self._lock:
            if self._poller is not None and self._poller.is_alive():
                return
            self._stop.clear()
            self._poller = threading.Thread(target=self._loop, name="render-worker", daemon=True)
        self.reap_stale()
        self._poller.start()
        self.log.info("worker started", extra={"poll_interval": self.poll_interval})

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        self._wake.set()
        poller = self._poller
        if poller is not None:
            poller.join(timeout)
        self.join(timeout)
        self.log.info("worker stopped")

    def wake(self) -> None:
        self._wake.set()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                self.log.exception("worker tick failed")
            self._wake.wait(self.poll_interval)
            self._wake.clear()

    @classmethod
    def from_settings(
        cls,
        settings,
        store: JobStore,
        resolver: ResourceResolver,
        runner: FFmpegRunner,
        logger: logging.Logger | None = None,
    ) -> "WorkerScheduler":
        return cls(
            store=store,
            resolver=resolver,
            runner=runner,
            options=EncoderOptions.from_settings(settings),
            output_dir=settings.output_path,
            public_prefix=settings.output_public_prefix,
            poll_interval=settings.poll_interval_seconds,
            stale_after=settings.stale_job_seconds,
            logger=logger,
        )
