from __future__ import annotations

import logging
from typing import List, Optional
from uuid import uuid4

from render_service.clients.ffmpeg import FFmpegRunner
from render_service.models.api import JobRequest
from render_service.models.domain import Job, JobType
from render_service.queue.worker import WorkerScheduler
from render_service.render.compiler import validate_request
from render_service.services.resolver import ResourceResolver
from render_service.storage.repository import JobStore


class JobService:
    def __init__(
        self,
        store: JobStore,
        resolver: ResourceResolver,
        runner: FFmpegRunner,
        scheduler: Optional[WorkerScheduler] = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.runner = runner
        self.scheduler = scheduler
        self.log = logger or logging.getLogger(__name__)

    def submit(self, request: JobRequest) -> Job:
        """Validate and resolve up front, then enqueue. Nothing is stored on failure."""
        validate_request(request)
        self.resolver.resolve_request(request)
        job = Job(
            id=f"job_{uuid4()}",
            type=JobType(request.type),
            payload=request.payload.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
        self.store.append(job)
        self.log.info("job queued", extra={"job_id": job.id, "type": job.type.value})
        if self.scheduler is not None:
            self.scheduler.wake()
        return job

    def list_jobs(self) -> List[Job]:
        return [self._with_progress(job) for job in reversed(self.store.load())]

    def get_job(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise ValueError("Job not found")
        return self._with_progress(job)

    def probe(self, reference: str) -> Optional[float]:
        resolved = self.resolver.resolve(reference, field="path", required=True)
        return self.runner.probe_duration(resolved.location)

    @property
    def active_job_id(self) -> Optional[str]:
        return self.scheduler.active_job_id if self.scheduler is not None else None

    def _with_progress(self, job: Job) -> Job:
        if self.scheduler is None:
            return job
        return self.scheduler.merge_progress(job)
