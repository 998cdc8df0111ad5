from __future__ import annotations

import codecs
import logging
import os
import re
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Optional, Sequence

from render_service.render.compiler import ProcessPlan
from render_service.render.progress import ProgressParser, ProgressThrottle, percent_of

ProgressCallback = Callable[[int], None]

_FFMPEG_BINARIES = {"ffmpeg", "ffmpeg.exe"}
_NOISE = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^ffmpeg version\b",
        r"^built with\b",
        r"^configuration:",
        r"^(libav(util|codec|format|device|filter)|libswscale|libswresample|libpostproc)\b",
        r"^Press \[q\] to stop",
        r"^(frame|size)=",
    )
]


@dataclass(eq=False)
class FFmpegError(Exception):
    """
    Typed ffmpeg failure.
    - message: short text safe for job.error
    - stderr: bounded tail of the diagnostic stream
    - cmd: the command executed
    """

    message: str
    stderr: str = ""
    returncode: Optional[int] = None
    cmd: Optional[list[str]] = None

    def __str__(self) -> str:
        return self.message


class FFmpegSpawnError(FFmpegError):
    """The process could not be started at all."""


class FFmpegExitError(FFmpegError):
    """The process ran and exited non-zero."""


class FFmpegTimeoutError(FFmpegError):
    """The wall-clock limit expired and the process was terminated."""


def sanitize_stderr(stderr: str, max_lines: int = 25, max_chars: int = 2000) -> str:
    """
    Keep the error understandable but short:
    - take the last N lines (ffmpeg prints the real reason near the end)
    - drop banner and progress noise
    - trim overly long lines and total size
    """
    if not stderr:
        return ""
    text = stderr.replace("\r\n", "\n").replace("\r", "\n")
    lines = [ln.strip() for ln in text.split("\n") if ln.strip()]
    cleaned: list[str] = []
    for ln in lines:
        if any(pattern.match(ln) for pattern in _NOISE):
            continue
        if len(ln) > 500:
            ln = ln[:500] + "…"
        cleaned.append(ln)
    out = "\n".join(cleaned[-max_lines:]).strip()
    if len(out) > max_chars:
        out = out[-max_chars:]
    return out


class StderrTail:
    """Keeps only the last ``limit`` bytes written to it."""

    def __init__(self, limit: int) -> None:
        self.limit = max(1, limit)
        self._buf = bytearray()
        self._lock = threading.Lock()

    def write(self, chunk: bytes) -> None:
        with self._lock:
            self._buf += chunk
            if len(self._buf) > self.limit:
                del self._buf[: len(self._buf) - self.limit]

    def text(self) -> str:
        with self._lock:
            return bytes(self._buf).decode("utf-8", errors="replace")


class FFmpegRunner:
    """Runs one ffmpeg process per plan, reporting progress and enforcing a timeout."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        timeout: float = 1800.0,
        kill_grace: float = 5.0,
        progress_interval: float = 1.0,
        tail_bytes: int = 8192,
        threads: int = 0,
        probe_timeout: float = 30.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout
        self.kill_grace = kill_grace
        self.progress_interval = progress_interval
        self.tail_bytes = tail_bytes
        self.threads = threads
        self.probe_timeout = probe_timeout
        self.log = logger or logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings, logger: Optional[logging.Logger] = None) -> "FFmpegRunner":
        return cls(
            ffmpeg_path=settings.ffmpeg_path,
            ffprobe_path=settings.ffprobe_path,
            timeout=settings.render_timeout_seconds,
            kill_grace=settings.kill_grace_seconds,
            progress_interval=settings.progress_interval_seconds,
            tail_bytes=settings.stderr_tail_bytes,
            threads=settings.ffmpeg_threads,
            probe_timeout=settings.probe_timeout_seconds,
            logger=logger,
        )

    def build_command(self, args: Sequence[str]) -> list[str]:
        cmd = [self.ffmpeg_path, *args]
        if os.path.basename(self.ffmpeg_path).lower() not in _FFMPEG_BINARIES:
            return cmd
        # Never let ffmpeg wait on stdin; optionally bound its thread usage.
        defaults = [flag for flag in ("-nostdin", "-hide_banner") if flag not in args]
        if self.threads > 0 and "-threads" not in args:
            defaults += ["-threads", str(self.threads)]
        return [cmd[0], *defaults, *cmd[1:]]

    def run(self, plan: ProcessPlan, on_progress: Optional[ProgressCallback] = None) -> None:
        cmd = self.build_command(plan.args)
        try:
            self._write_aux_files(plan)
            plan.output_path.parent.mkdir(parents=True, exist_ok=True)
            self._supervise(plan, cmd, on_progress)
        except BaseException:
            self._discard(plan.output_path)
            raise
        finally:
            for path in plan.aux_files:
                self._discard(path)

    def _supervise(self, plan: ProcessPlan, cmd: list[str], on_progress: Optional[ProgressCallback]) -> None:
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise FFmpegSpawnError(
                message=f"ffmpeg could not be started: {exc}",
                cmd=cmd,
            ) from exc

        tail = StderrTail(self.tail_bytes)
        reader = threading.Thread(
            target=self._drain,
            args=(proc.stderr, tail, plan.total_duration_sec, on_progress),
            name="ffmpeg-stderr",
            daemon=True,
        )
        reader.start()
        self.log.info("ffmpeg started", extra={"pid": proc.pid, "output": str(plan.output_path)})

        timed_out = False
        try:
            proc.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            self._terminate(proc)
        except BaseException:
            self._terminate(proc)
            raise
        finally:
            reader.join(timeout=max(1.0, self.kill_grace))

        diagnostics = sanitize_stderr(tail.text())
        if timed_out:
            message = f"ffmpeg timed out after {self.timeout:g}s and was terminated"
            if diagnostics:
                message = f"{message}\n{diagnostics}"
            raise FFmpegTimeoutError(message=message, stderr=tail.text(), returncode=proc.returncode, cmd=cmd)
        if proc.returncode != 0:
            message = f"ffmpeg failed (exit {proc.returncode})"
            if diagnostics:
                message = f"{message}:\n{diagnostics}"
            raise FFmpegExitError(message=message, stderr=tail.text(), returncode=proc.returncode, cmd=cmd)
        self.log.info("ffmpeg finished", extra={"output": str(plan.output_path)})

    def _drain(
        self,
        stream: IO[bytes],
        tail: StderrTail,
        total_sec: float,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        parser = ProgressParser()
        throttle = ProgressThrottle(self.progress_interval)
        try:
            for chunk in iter(lambda: stream.read1(4096), b""):
                tail.write(chunk)
                if on_progress is None or total_sec <= 0:
                    continue
                for elapsed in parser.feed(decoder.decode(chunk)):
                    percent = percent_of(elapsed, total_sec)
                    if percent is not None and throttle.offer(percent):
                        self._report(on_progress, percent)
        finally:
            stream.close()

    def _report(self, on_progress: ProgressCallback, percent: int) -> None:
        try:
            on_progress(percent)
        except Exception:
            # A failing listener must not stop the stderr pipe from draining.
            self.log.warning("progress callback failed", extra={"percent": percent}, exc_info=True)

    def _terminate(self, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        self.log.warning("terminating ffmpeg", extra={"pid": proc.pid})
        proc.terminate()
        try:
            proc.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            self.log.warning("ffmpeg ignored terminate, killing", extra={"pid": proc.pid})
            proc.kill()
            proc.wait()

    def _write_aux_files(self, plan: ProcessPlan) -> None:
        for path, content in plan.aux_files.items():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")

    def _discard(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            self.log.warning("could not remove file", extra={"path": str(path)}, exc_info=True)

    def probe_duration(self, location: str) -> Optional[float]:
        """Media duration in seconds via ffprobe, None when it reports none."""
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            location,
        ]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.probe_timeout, check=False)
        except subprocess.TimeoutExpired as exc:
            raise FFmpegTimeoutError(
                message=f"ffprobe timed out after {self.probe_timeout:g}s",
                stderr=str(exc.stderr or ""),
                cmd=cmd,
            ) from exc
        except OSError as exc:
            raise FFmpegSpawnError(message=f"ffprobe could not be started: {exc}", cmd=cmd) from exc
        if proc.returncode != 0:
            raise FFmpegExitError(
                message=f"ffprobe failed (exit {proc.returncode}):\n{sanitize_stderr(proc.stderr)}".rstrip(),
                stderr=proc.stderr or "",
                returncode=proc.returncode,
                cmd=cmd,
            )
        try:
            value = float((proc.stdout or "").strip().splitlines()[0])
        except (IndexError, ValueError):
            return None
        return value if value >= 0 else None
