from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.FAILED)


class JobType(str, Enum):
    RENDER_VIDEO = "render_video"
    RENDER_WAVEFORM = "render_waveform"
    AUDIO_MERGE = "audio_merge"
    AUDIO_TIMELINE = "audio_timeline"
    TIMELINE_PREVIEW = "timeline_preview"
    AUDIO_PROCESS = "audio_process"
    WAVEFORM_IMAGE = "waveform_image"


class Job(BaseModel):
    """A unit of asynchronous work as persisted in the job store.

    ``type`` and ``payload`` are fixed at submission. Everything else is
    owned by the worker (and the stale-job reaper for orphaned runs).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    type: JobType
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.QUEUED
    progress: int = Field(default=0, ge=0, le=100)
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
