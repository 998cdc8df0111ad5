from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.staticfiles import StaticFiles

from render_service.clients.ffmpeg import FFmpegError, FFmpegRunner
from render_service.clients.library import build_asset_library
from render_service.config import Settings, get_settings
from render_service.models.api import JobListResponse, JobResponse, JobSubmission, MediaInfoResponse
from render_service.queue.worker import WorkerScheduler
from render_service.services.job_service import JobService
from render_service.services.resolver import ResourceResolver
from render_service.storage.repository import JobStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

app = FastAPI()

_service: JobService | None = None


def get_job_service(settings: Settings = Depends(get_settings)) -> JobService:
    global _service
    if _service is None:
        _service = build_job_service(settings)
    return _service


def build_job_service(settings: Settings) -> JobService:
    settings.output_path.mkdir(parents=True, exist_ok=True)
    store = JobStore(settings.jobs_path, retention=settings.job_retention)
    resolver = ResourceResolver.from_settings(settings, library=build_asset_library(settings))
    runner = FFmpegRunner.from_settings(settings)
    scheduler = WorkerScheduler.from_settings(settings, store=store, resolver=resolver, runner=runner)
    if settings.worker_enabled:
        scheduler.start()
    return JobService(store=store, resolver=resolver, runner=runner, scheduler=scheduler)


@app.post("/jobs", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
def create_job(
    submission: JobSubmission,
    service: JobService = Depends(get_job_service),
) -> JobResponse:
    try:
        job = service.submit(submission.root)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return JobResponse(job=job)


@app.get("/jobs", response_model=JobListResponse)
def list_jobs(service: JobService = Depends(get_job_service)) -> JobListResponse:
    return JobListResponse(items=service.list_jobs())


@app.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobResponse:
    try:
        job = service.get_job(job_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return JobResponse(job=job)


@app.get("/media/info", response_model=MediaInfoResponse)
def media_info(
    path: str = Query(..., description="Local path, outputs alias, URL or library asset id"),
    service: JobService = Depends(get_job_service),
) -> MediaInfoResponse:
    try:
        duration = service.probe(path)
    except (ValueError, FFmpegError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return MediaInfoResponse(path=path, duration_sec=duration)


@app.get("/health")
def health(
    settings: Settings = Depends(get_settings),
    service: JobService = Depends(get_job_service),
) -> dict:
    return {
        "status": "ok",
        "ffmpeg": settings.ffmpeg_path,
        "activeJobId": service.active_job_id,
    }


_settings = get_settings()
app.mount(
    _settings.output_public_prefix,
    StaticFiles(directory=_settings.output_dir, check_dir=False),
    name="outputs",
)
