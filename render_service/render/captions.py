from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

MAX_CAPTION_LINES = 6
MAX_SOURCE_LINE_CHARS = 140
MIN_WIDTH_PCT = 30.0
MAX_WIDTH_PCT = 100.0
# Average glyph advance of the default drawtext font, relative to font size.
GLYPH_WIDTH_RATIO = 0.55


class CaptionOverflow(str, Enum):
    """What happens to wrapped lines beyond MAX_CAPTION_LINES."""

    DROP = "drop"


@dataclass(frozen=True)
class CaptionLayout:
    lines: tuple[str, ...]
    chars_per_line: int
    dropped: int = 0


def clamp_width_pct(value: float | None) -> float:
    if value is None or math.isnan(value):
        return 90.0
    return max(MIN_WIDTH_PCT, min(MAX_WIDTH_PCT, float(value)))


def chars_per_line(frame_width: int, font_size: int, width_pct: float | None) -> int:
    usable = frame_width * clamp_width_pct(width_pct) / 100.0
    return max(1, int(usable // (font_size * GLYPH_WIDTH_RATIO)))


def wrap_words(text: str, budget: int) -> list[str]:
    """Greedy word wrap. A word longer than the budget gets a line of its own."""
    lines: list[str] = []
    current = ""
    for word in text.split():
        if not current:
            current = word
        elif len(current) + 1 + len(word) <= budget:
            current = f"{current} {word}"
        else:
            lines.append(current)
            current = word
    if current:
        lines.append(current)
    return lines


def layout_captions(
    source_lines: Iterable[str],
    frame_width: int,
    font_size: int,
    width_pct: float | None,
    max_lines: int = MAX_CAPTION_LINES,
    overflow: CaptionOverflow = CaptionOverflow.DROP,
) -> CaptionLayout:
    budget = chars_per_line(frame_width, font_size, width_pct)
    wrapped: list[str] = []
    for raw in source_lines:
        text = " ".join(str(raw).split())[:MAX_SOURCE_LINE_CHARS]
        wrapped.extend(wrap_words(text, budget))
    dropped = 0
    if len(wrapped) > max_lines and overflow is CaptionOverflow.DROP:
        dropped = len(wrapped) - max_lines
        wrapped = wrapped[:max_lines]
    return CaptionLayout(lines=tuple(wrapped), chars_per_line=budget, dropped=dropped)
