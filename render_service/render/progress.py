"""Progress extraction from ffmpeg's diagnostic stream.

ffmpeg rewrites its status line with carriage returns, so markers such as
``time=00:00:05.12`` may arrive split across read chunks and without a
trailing newline. :class:`ProgressParser` buffers the incomplete tail
between calls and only inspects complete segments.
"""

from __future__ import annotations

import math
import re
import time
from typing import Callable, Optional

TIME_MARKER = re.compile(r"time=\s*(-?\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
MAX_RUNNING_PERCENT = 99
_SEGMENT_SPLIT = re.compile(r"[\r\n]")
_MAX_PENDING_CHARS = 4096


def parse_time_marker(segment: str) -> Optional[float]:
    """Return the last ``time=HH:MM:SS.xx`` in ``segment`` as seconds."""
    matches = TIME_MARKER.findall(segment)
    if not matches:
        return None
    hours, minutes, seconds = matches[-1]
    value = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
    return max(0.0, value)


def percent_of(elapsed_sec: float, total_sec: float) -> Optional[int]:
    if total_sec <= 0 or math.isnan(elapsed_sec):
        return None
    pct = math.floor(elapsed_sec / total_sec * 100)
    return max(0, min(MAX_RUNNING_PERCENT, pct))


class ProgressParser:
    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> list[float]:
        """Consume a chunk of stderr text; return elapsed seconds seen in it."""
        data = self._pending + chunk
        segments = _SEGMENT_SPLIT.split(data)
        self._pending = segments.pop()[-_MAX_PENDING_CHARS:]
        found: list[float] = []
        for segment in segments:
            value = parse_time_marker(segment)
            if value is not None:
                found.append(value)
        return found

    def flush(self) -> list[float]:
        rest, self._pending = self._pending, ""
        value = parse_time_marker(rest)
        return [value] if value is not None else []


class ProgressThrottle:
    """Lets a percentage through only if it grew and the interval has passed."""

    def __init__(
        self,
        min_interval: float,
        start_percent: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_interval = min_interval
        self.last_percent = start_percent
        self._clock = clock
        self._last_emit: Optional[float] = None

    def offer(self, percent: int) -> bool:
        if percent <= self.last_percent:
            return False
        now = self._clock()
        if self._last_emit is not None and now - self._last_emit < self.min_interval:
            return False
        self.last_percent = percent
        self._last_emit = now
        return True
