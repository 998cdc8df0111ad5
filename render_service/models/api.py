from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, RootModel, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

from .domain import Job, JobType


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AspectPreset(str, Enum):
    PORTRAIT = "portrait"
    LANDSCAPE = "landscape"
    SQUARE = "square"


class Fades(ApiModel):
    in_ms: float = Field(default=0, ge=0)
    out_ms: float = Field(default=0, ge=0)


class DeEss(ApiModel):
    enabled: bool = False
    amount: float = 0.5


class Mastering(ApiModel):
    normalize_lufs: Optional[float] = Field(default=None, ge=-70, le=-5, alias="normalizeLUFS")
    fades: Optional[Fades] = None
    deess: Optional[DeEss] = None


def _clean_reference(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class CaptionedRender(Mastering):
    background_path: Optional[str] = None
    audio_path: Optional[str] = None
    music_path: Optional[str] = None
    lines: List[str] = Field(default_factory=list)
    duration_sec: Optional[float] = None
    aspect: AspectPreset = AspectPreset.PORTRAIT
    caption_width_pct: float = 90
    music_volume: float = Field(default=0.3, ge=0, le=2)
    auto_duck: bool = True

    @field_validator("background_path", "audio_path", "music_path", mode="before")
    @classmethod
    def clean_reference(cls, value: Any) -> Optional[str]:
        return _clean_reference(value)

    @field_validator("lines", mode="before")
    @classmethod
    def coerce_lines(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return value.splitlines()
        return [str(item) for item in value]


class RenderVideoPayload(CaptionedRender):
    pass


class RenderWaveformPayload(CaptionedRender):
    pass


class TimelineClip(ApiModel):
    path: str
    start_sec: Optional[float] = None
    duration_sec: Optional[float] = None

    @field_validator("path", mode="before")
    @classmethod
    def clean_path(cls, value: Any) -> str:
        return _clean_reference(value) or ""


class AudioMergePayload(Mastering):
    inputs: List[str] = Field(default_factory=list)

    @field_validator("inputs", mode="before")
    @classmethod
    def clean_inputs(cls, value: Any) -> list[str]:
        if value is None:
            return []
        return [ref for ref in (_clean_reference(item) for item in value) if ref]


class AudioTimelinePayload(Mastering):
    clips: List[TimelineClip] = Field(default_factory=list)


class TimelinePreviewPayload(Mastering):
    background_path: Optional[str] = None
    clips: List[TimelineClip] = Field(default_factory=list)
    aspect: AspectPreset = AspectPreset.PORTRAIT
    duration_sec: Optional[float] = None

    @field_validator("background_path", mode="before")
    @classmethod
    def clean_reference(cls, value: Any) -> Optional[str]:
        return _clean_reference(value)


class VoicePreset(str, Enum):
    RAW = "raw"
    CLEAN_VOICE = "clean_voice"
    PODCAST = "podcast"
    WARM = "warm"


class TrimRange(ApiModel):
    start_sec: Optional[float] = Field(default=None, ge=0)
    duration_sec: Optional[float] = Field(default=None, gt=0)


class Normalize(ApiModel):
    target_lufs: Optional[float] = Field(default=None, ge=-70, le=-5, alias="targetLUFS")


class Denoise(ApiModel):
    strength: Optional[float] = None


class Gate(ApiModel):
    threshold_db: Optional[float] = None


class BandLimits(ApiModel):
    highpass_hz: Optional[float] = Field(default=None, ge=0)
    lowpass_hz: Optional[float] = Field(default=None, ge=0)


class Compressor(ApiModel):
    ratio: Optional[float] = Field(default=None, ge=1, le=20)
    threshold_db: Optional[float] = None
    attack_ms: Optional[float] = None
    release_ms: Optional[float] = None


class SilenceRemove(ApiModel):
    enabled: bool = False


class DeEsser(ApiModel):
    amount: Optional[float] = None


class Limiter(ApiModel):
    ceiling_db: Optional[float] = None


class Presence(ApiModel):
    freq_hz: float = Field(default=4000, gt=0)
    gain_db: Optional[float] = None
    width_q: float = Field(default=1.0, gt=0)


class CleanupStages(ApiModel):
    """Cleanup stages a voice preset can supply; None means "not set"."""

    normalize: Optional[Normalize] = None
    denoise: Optional[Denoise] = None
    gate: Optional[Gate] = None
    eq: Optional[BandLimits] = None
    compressor: Optional[Compressor] = None
    silence_remove: Optional[SilenceRemove] = None


class AudioProcessPayload(CleanupStages):
    input_path: Optional[str] = None
    preset: VoicePreset = VoicePreset.CLEAN_VOICE
    trim: Optional[TrimRange] = None
    deesser: Optional[DeEsser] = None
    limiter: Optional[Limiter] = None
    presence: Optional[Presence] = None

    @field_validator("input_path", mode="before")
    @classmethod
    def clean_reference(cls, value: Any) -> Optional[str]:
        return _clean_reference(value)

    @field_validator("preset", mode="before")
    @classmethod
    def known_preset(cls, value: Any) -> VoicePreset:
        if isinstance(value, VoicePreset):
            return value
        try:
            return VoicePreset(str(value or "").strip().lower())
        except ValueError:
            return VoicePreset.CLEAN_VOICE


class WaveformImagePayload(ApiModel):
    audio_path: Optional[str] = None
    width: int = 1200
    height: int = 300

    @field_validator("audio_path", mode="before")
    @classmethod
    def clean_reference(cls, value: Any) -> Optional[str]:
        return _clean_reference(value)


class RenderVideoRequest(ApiModel):
    type: Literal["render_video"]
    payload: RenderVideoPayload


class RenderWaveformRequest(ApiModel):
    type: Literal["render_waveform"]
    payload: RenderWaveformPayload


class AudioMergeRequest(ApiModel):
    type: Literal["audio_merge"]
    payload: AudioMergePayload


class AudioTimelineRequest(ApiModel):
    type: Literal["audio_timeline"]
    payload: AudioTimelinePayload


class TimelinePreviewRequest(ApiModel):
    type: Literal["timeline_preview"]
    payload: TimelinePreviewPayload


class AudioProcessRequest(ApiModel):
    type: Literal["audio_process"]
    payload: AudioProcessPayload


class WaveformImageRequest(ApiModel):
    type: Literal["waveform_image"]
    payload: WaveformImagePayload


JobRequest = Annotated[
    Union[
        RenderVideoRequest,
        RenderWaveformRequest,
        AudioMergeRequest,
        AudioTimelineRequest,
        TimelinePreviewRequest,
        AudioProcessRequest,
        WaveformImageRequest,
    ],
    Field(discriminator="type"),
]

_job_request_adapter: TypeAdapter[JobRequest] = TypeAdapter(JobRequest)


class JobSubmission(RootModel[JobRequest]):
    """Request body of POST /jobs: {"type": ..., "payload": {...}}."""


def parse_job_request(job_type: JobType | str, payload: dict[str, Any]) -> JobRequest:
    """Rebuild the typed request for a stored job (type + raw payload)."""
    type_value = job_type.value if isinstance(job_type, JobType) else str(job_type)
    return _job_request_adapter.validate_python({"type": type_value, "payload": payload})


class JobResponse(BaseModel):
    job: Job


class JobListResponse(BaseModel):
    items: List[Job]


class MediaInfoResponse(ApiModel):
    path: str
    duration_sec: Optional[float] = None
