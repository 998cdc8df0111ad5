from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RENDER_SERVICE_", env_file=".env", env_file_encoding="utf-8")

    app_name: str = "render-service"
    host: str = "0.0.0.0"
    port: int = 5051

    # Storage layout
    data_dir: str = "data"
    output_dir: str = "outputs"
    jobs_file: str = "jobs.json"
    output_public_prefix: str = "/outputs"
    output_alias_prefixes: list[str] = Field(default_factory=lambda: ["/outputs/", "outputs/", "outputs:"])

    # Asset library collaborator: a JSON file, or a lookup service when library_url is set
    library_file: str = "data/library.json"
    library_url: str = ""
    library_timeout: float = 10.0

    # Transcoding engine
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    ffmpeg_preset: str = "fast"
    ffmpeg_hwaccel: str = ""
    ffmpeg_threads: int = 0
    video_crf: int = 22
    video_fps: int = 30

    # Defensive limits
    default_duration_sec: float = 20.0
    max_render_seconds: float = 180.0
    max_input_mb: float = 1024.0
    render_timeout_seconds: float = 1800.0
    kill_grace_seconds: float = 5.0
    probe_timeout_seconds: float = 30.0
    stderr_tail_bytes: int = 8192
    progress_interval_seconds: float = 1.0

    # Job engine
    worker_enabled: bool = True
    poll_interval_seconds: float = 1.0
    job_retention: int = 500
    stale_job_seconds: float = 3600.0

    @property
    def jobs_path(self) -> Path:
        return Path(self.data_dir) / self.jobs_file

    @property
    def output_path(self) -> Path:
        return Path(self.output_dir).resolve()

    @property
    def max_input_bytes(self) -> int:
        return int(self.max_input_mb * 1024 * 1024)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
