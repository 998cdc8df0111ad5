"""Translate typed render/merge requests into ffmpeg process plans.

Everything in this module is pure: the same request, resolved sources and
options always yield the same argument list (apart from the generated output
filename, which callers can pin with ``output_name``).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence
from uuid import uuid4

from render_service.models.api import (
    AspectPreset,
    AudioMergeRequest,
    AudioProcessPayload,
    AudioProcessRequest,
    AudioTimelineRequest,
    BandLimits,
    CaptionedRender,
    CleanupStages,
    Compressor,
    Denoise,
    Gate,
    JobRequest,
    Mastering,
    Normalize,
    RenderVideoRequest,
    RenderWaveformRequest,
    SilenceRemove,
    TimelineClip,
    TimelinePreviewRequest,
    TrimRange,
    VoicePreset,
    WaveformImageRequest,
)
from render_service.render.captions import CaptionLayout, layout_captions
from render_service.render.filtergraph import Filter, FilterGraph, format_number

FRAME_SIZES: dict[AspectPreset, tuple[int, int]] = {
    AspectPreset.PORTRAIT: (1080, 1920),
    AspectPreset.LANDSCAPE: (1920, 1080),
    AspectPreset.SQUARE: (1080, 1080),
}
# Caption and overlay geometry is authored against a 1920px tall frame.
REFERENCE_HEIGHT = 1920

LOUDNORM_TRUE_PEAK = -1.5
LOUDNORM_RANGE = 11
AUDIO_BITRATE = "192k"
DUCK_THRESHOLD = 0.03
DUCK_RATIO = 8
DUCK_ATTACK_MS = 20
DUCK_RELEASE_MS = 400

COMPRESSOR_RATIO = 3
COMPRESSOR_THRESHOLD_DB = -18
COMPRESSOR_ATTACK_MS = 12
COMPRESSOR_RELEASE_MS = 150
COMPRESSOR_MAKEUP = 8
SILENCE_THRESHOLD = "-40dB"
WAVEFORM_IMAGE_WIDTH = (400, 2000)
WAVEFORM_IMAGE_HEIGHT = (200, 800)

VOICE_PRESETS: dict[VoicePreset, CleanupStages] = {
    VoicePreset.RAW: CleanupStages(),
    VoicePreset.CLEAN_VOICE: CleanupStages(
        normalize=Normalize(target_lufs=-16),
        denoise=Denoise(strength=0.45),
        gate=Gate(threshold_db=-38),
        eq=BandLimits(highpass_hz=80, lowpass_hz=12000),
        compressor=Compressor(ratio=3, threshold_db=-18, attack_ms=8, release_ms=120),
        silence_remove=SilenceRemove(enabled=True),
    ),
    VoicePreset.PODCAST: CleanupStages(
        normalize=Normalize(target_lufs=-14),
        denoise=Denoise(strength=0.35),
        gate=Gate(threshold_db=-40),
        eq=BandLimits(highpass_hz=70, lowpass_hz=14000),
        compressor=Compressor(ratio=4, threshold_db=-20, attack_ms=6, release_ms=160),
        silence_remove=SilenceRemove(enabled=True),
    ),
    VoicePreset.WARM: CleanupStages(
        normalize=Normalize(target_lufs=-16),
        denoise=Denoise(strength=0.30),
        gate=Gate(threshold_db=-42),
        eq=BandLimits(highpass_hz=70, lowpass_hz=10000),
        compressor=Compressor(ratio=2.6, threshold_db=-19, attack_ms=10, release_ms=180),
        silence_remove=SilenceRemove(enabled=False),
    ),
}


class PlanValidationError(ValueError):
    """The request is structurally unusable for its job type."""


@dataclass(frozen=True)
class CaptionStyle:
    font_size: int
    first_line_y: int
    line_gap: int
    box_border: int


VIDEO_CAPTIONS = CaptionStyle(font_size=64, first_line_y=420, line_gap=110, box_border=18)
WAVEFORM_CAPTIONS = CaptionStyle(font_size=60, first_line_y=360, line_gap=100, box_border=18)
WAVEFORM_BAND_HEIGHT = 420
WAVEFORM_BOTTOM_MARGIN = 80


@dataclass
class ResolvedSources:
    """Concrete local paths / URLs for the references in a request."""

    background: Optional[str] = None
    audio: Optional[str] = None
    music: Optional[str] = None
    inputs: list[str] = field(default_factory=list)
    clips: list[str] = field(default_factory=list)
    # Probed media lengths, aligned with ``inputs`` or ``clips``; None when unknown.
    media_durations: list[Optional[float]] = field(default_factory=list)


@dataclass(frozen=True)
class EncoderOptions:
    preset: str = "fast"
    hwaccel: str = ""
    crf: int = 22
    fps: int = 30
    default_duration_sec: float = 20.0
    max_duration_sec: float = 180.0

    @classmethod
    def from_settings(cls, settings) -> "EncoderOptions":
        return cls(
            preset=settings.ffmpeg_preset,
            hwaccel=settings.ffmpeg_hwaccel,
            crf=settings.video_crf,
            fps=settings.video_fps,
            default_duration_sec=settings.default_duration_sec,
            max_duration_sec=settings.max_render_seconds,
        )

    @property
    def video_codec(self) -> str:
        accel = (self.hwaccel or "").strip().lower()
        if accel == "nvenc":
            return "h264_nvenc"
        if accel == "qsv":
            return "h264_qsv"
        return "libx264"


@dataclass
class ProcessPlan:
    args: list[str]
    total_duration_sec: float
    output_path: Path
    graph: Optional[FilterGraph] = None
    aux_files: dict[Path, str] = field(default_factory=dict)


def clamp_duration(requested: Optional[float], options: EncoderOptions) -> float:
    value = options.default_duration_sec if requested is None else float(requested)
    if math.isnan(value):
        value = options.default_duration_sec
    return max(1.0, min(float(options.max_duration_sec), value))


def frame_size(aspect: AspectPreset) -> tuple[int, int]:
    return FRAME_SIZES[aspect]


def scaled(height: int, reference_px: int) -> int:
    return max(1, round(height * reference_px / REFERENCE_HEIGHT))


def caption_layout(payload: CaptionedRender, style: CaptionStyle) -> CaptionLayout:
    width, height = frame_size(payload.aspect)
    return layout_captions(payload.lines, width, scaled(height, style.font_size), payload.caption_width_pct)


def validate_request(request: JobRequest) -> None:
    """Structural checks that need no filesystem access."""
    if isinstance(request, RenderVideoRequest):
        if not request.payload.background_path:
            raise PlanValidationError("backgroundPath is required")
        if not caption_layout(request.payload, VIDEO_CAPTIONS).lines:
            raise PlanValidationError("lines[] must contain at least one non-empty caption line")
    elif isinstance(request, RenderWaveformRequest):
        if not request.payload.audio_path:
            raise PlanValidationError("audioPath is required")
    elif isinstance(request, AudioMergeRequest):
        if len(request.payload.inputs) < 2:
            raise PlanValidationError("inputs[] needs at least 2 paths")
    elif isinstance(request, AudioTimelineRequest):
        _require_clips(request.payload.clips)
    elif isinstance(request, TimelinePreviewRequest):
        if not request.payload.background_path:
            raise PlanValidationError("backgroundPath is required")
        _require_clips(request.payload.clips)
    elif isinstance(request, AudioProcessRequest):
        if not request.payload.input_path:
            raise PlanValidationError("inputPath is required")
    elif isinstance(request, WaveformImageRequest):
        if not request.payload.audio_path:
            raise PlanValidationError("audioPath is required")
    else:
        raise PlanValidationError(f"unsupported job type: {getattr(request, 'type', request)!r}")


def _require_clips(clips: Sequence[TimelineClip]) -> None:
    if not clips:
        raise PlanValidationError("clips[] required")
    if any(not clip.path for clip in clips):
        raise PlanValidationError("every clip needs a path")


def compile_plan(
    request: JobRequest,
    sources: ResolvedSources,
    options: EncoderOptions,
    output_dir: Path,
    output_name: Optional[str] = None,
) -> ProcessPlan:
    validate_request(request)
    builder = _BUILDERS.get(type(request))
    if builder is None:
        raise PlanValidationError(f"unsupported job type: {request.type!r}")
    return builder(request, sources, options, Path(output_dir), output_name)


def _output_path(output_dir: Path, prefix: str, ext: str, output_name: Optional[str]) -> Path:
    name = output_name or f"{prefix}-{uuid4().hex}.{ext}"
    return output_dir / name


def _map_arg(label: str) -> str:
    # Raw input streams ("1:a") are mapped directly, graph pads need brackets.
    return label if ":" in label else f"[{label}]"


def _video_base(width: int, height: int) -> list[Filter]:
    return [
        Filter.of("scale", w=width, h=height, force_original_aspect_ratio="increase"),
        Filter.of("crop", w=width, h=height),
        Filter.of("setsar", sar=1),
        Filter.of("format", pix_fmts="yuv420p"),
    ]


def _drawtext_filters(lines: Sequence[str], height: int, style: CaptionStyle) -> list[Filter]:
    font_size = scaled(height, style.font_size)
    first = scaled(height, style.first_line_y)
    gap = scaled(height, style.line_gap)
    border = scaled(height, style.box_border)
    return [
        Filter.of(
            "drawtext",
            expansion="none",
            text=line,
            x="(w-text_w)/2",
            y=first + index * gap,
            fontsize=font_size,
            fontcolor="white",
            box=1,
            boxcolor="black@0.35",
            boxborderw=border,
        )
        for index, line in enumerate(lines)
    ]


def mastering_filters(mastering: Mastering, total_sec: float) -> list[Filter]:
    """Post-mix audio chain. Loudness normalization is always the last stage."""
    filters: list[Filter] = []
    if mastering.deess and mastering.deess.enabled:
        amount = min(1.0, max(0.1, float(mastering.deess.amount)))
        filters.append(Filter.of("deesser", i=amount, f=0.5))
    fades = mastering.fades
    if fades and fades.in_ms > 0:
        filters.append(Filter.of("afade", t="in", st=0, d=fades.in_ms / 1000))
    if fades and fades.out_ms > 0 and total_sec > 0:
        fade = min(fades.out_ms / 1000, total_sec)
        filters.append(Filter.of("afade", t="out", st=max(0.0, total_sec - fade), d=fade))
    if mastering.normalize_lufs is not None:
        filters.append(
            Filter.of("loudnorm", I=mastering.normalize_lufs, TP=LOUDNORM_TRUE_PEAK, LRA=LOUDNORM_RANGE)
        )
    return filters


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _db_to_linear(db: float) -> float:
    return 10 ** (db / 20)


def cleanup_stages(payload: AudioProcessPayload) -> CleanupStages:
    """Preset defaults, with every stage set on the payload replacing the preset's."""
    overrides = {
        name: getattr(payload, name)
        for name in CleanupStages.model_fields
        if getattr(payload, name) is not None
    }
    return VOICE_PRESETS[payload.preset].model_copy(update=overrides)


def voice_cleanup_filters(payload: AudioProcessPayload) -> list[Filter]:
    stages = cleanup_stages(payload)
    filters: list[Filter] = []
    if stages.eq and stages.eq.highpass_hz:
        filters.append(Filter.of("highpass", f=stages.eq.highpass_hz))
    if stages.eq and stages.eq.lowpass_hz:
        filters.append(Filter.of("lowpass", f=stages.eq.lowpass_hz))
    if stages.denoise and stages.denoise.strength is not None:
        strength = _clamp(stages.denoise.strength, 0.0, 1.0)
        filters.append(Filter.of("afftdn", nr=round(6 + strength * 18, 1)))
    if stages.gate and stages.gate.threshold_db is not None:
        threshold = round(_db_to_linear(stages.gate.threshold_db), 6)
        filters.append(Filter.of("agate", threshold=threshold, attack=10, release=200))
    comp = stages.compressor
    if comp and (comp.ratio is not None or comp.threshold_db is not None):
        threshold_db = COMPRESSOR_THRESHOLD_DB if comp.threshold_db is None else comp.threshold_db
        attack_ms = COMPRESSOR_ATTACK_MS if comp.attack_ms is None else comp.attack_ms
        release_ms = COMPRESSOR_RELEASE_MS if comp.release_ms is None else comp.release_ms
        filters.append(
            Filter.of(
                "acompressor",
                threshold=round(_db_to_linear(threshold_db), 6),
                ratio=COMPRESSOR_RATIO if comp.ratio is None else comp.ratio,
                # acompressor rejects attack below 10 ms and release below 50 ms.
                attack=max(0.01, attack_ms / 1000),
                release=max(0.05, release_ms / 1000),
                makeup=COMPRESSOR_MAKEUP,
            )
        )
    if payload.deesser and payload.deesser.amount is not None:
        filters.append(Filter.of("deesser", i=_clamp(payload.deesser.amount, 0.1, 1.0), f=0.5))
    presence = payload.presence
    if presence and presence.gain_db:
        filters.append(
            Filter.of("equalizer", f=presence.freq_hz, width_type="q", width=presence.width_q, g=presence.gain_db)
        )
    if stages.silence_remove and stages.silence_remove.enabled:
        filters.append(
            Filter.of(
                "silenceremove",
                start_periods=1,
                start_duration=0.15,
                start_threshold=SILENCE_THRESHOLD,
                stop_periods=1,
                stop_duration=0.25,
                stop_threshold=SILENCE_THRESHOLD,
            )
        )
    if stages.normalize and stages.normalize.target_lufs is not None:
        filters.append(
            Filter.of("loudnorm", I=stages.normalize.target_lufs, TP=LOUDNORM_TRUE_PEAK, LRA=LOUDNORM_RANGE)
        )
    if payload.limiter and payload.limiter.ceiling_db is not None:
        limit = _clamp(_db_to_linear(payload.limiter.ceiling_db), 0.1, 1.0)
        filters.append(Filter.of("alimiter", limit=round(limit, 3)))
    return filters


def _mix_voice_and_music(
    graph: FilterGraph,
    voice: Optional[str],
    music: Optional[str],
    music_volume: float,
    auto_duck: bool,
) -> Optional[str]:
    if music is None:
        return voice
    graph.add(Filter.of("volume", volume=music_volume), inputs=[music], outputs=["bgm"])
    if voice is None:
        return "bgm"
    mix = Filter.of("amix", inputs=2, duration="first", dropout_transition=0, normalize=0)
    if auto_duck:
        graph.add(Filter.of("asplit", outputs=2), inputs=[voice], outputs=["voice", "duckkey"])
        graph.add(
            Filter.of(
                "sidechaincompress",
                threshold=DUCK_THRESHOLD,
                ratio=DUCK_RATIO,
                attack=DUCK_ATTACK_MS,
                release=DUCK_RELEASE_MS,
            ),
            inputs=["bgm", "duckkey"],
            outputs=["ducked"],
        )
        graph.add(mix, inputs=["voice", "ducked"], outputs=["mixed"])
    else:
        graph.add(mix, inputs=[voice, "bgm"], outputs=["mixed"])
    return "mixed"


def _master(graph: FilterGraph, label: Optional[str], mastering: Mastering, total_sec: float) -> Optional[str]:
    if label is None:
        return None
    filters = mastering_filters(mastering, total_sec)
    if not filters:
        return label
    graph.add(filters, inputs=[label], outputs=["afinal"])
    return "afinal"


def _video_encode_args(options: EncoderOptions) -> list[str]:
    return [
        "-r", str(options.fps),
        "-c:v", options.video_codec,
        "-preset", options.preset,
        "-crf", str(options.crf),
        "-pix_fmt", "yuv420p",
    ]


def _build_render_video(
    request: RenderVideoRequest,
    sources: ResolvedSources,
    options: EncoderOptions,
    output_dir: Path,
    output_name: Optional[str],
) -> ProcessPlan:
    payload = request.payload
    if not sources.background:
        raise PlanValidationError("backgroundPath missing or not found")
    width, height = frame_size(payload.aspect)
    duration = clamp_duration(payload.duration_sec, options)
    layout = caption_layout(payload, VIDEO_CAPTIONS)
    output = _output_path(output_dir, "video", "mp4", output_name)

    args = ["-y", "-stream_loop", "-1", "-i", sources.background]
    next_input = 1
    voice = music = None
    if sources.audio:
        args += ["-i", sources.audio]
        voice = f"{next_input}:a"
        next_input += 1
    if sources.music:
        args += ["-stream_loop", "-1", "-i", sources.music]
        music = f"{next_input}:a"

    graph = FilterGraph()
    graph.add(
        _video_base(width, height) + _drawtext_filters(layout.lines, height, VIDEO_CAPTIONS),
        inputs=["0:v"],
        outputs=["vout"],
    )
    audio = _mix_voice_and_music(graph, voice, music, payload.music_volume, payload.auto_duck)
    audio = _master(graph, audio, payload, duration)

    args += ["-filter_complex", graph.render(), "-map", "[vout]"]
    if audio:
        args += ["-map", _map_arg(audio)]
    args += ["-t", format_number(duration)] + _video_encode_args(options)
    if audio:
        args += ["-c:a", "aac", "-b:a", AUDIO_BITRATE, "-shortest"]
    else:
        args.append("-an")
    args.append(str(output))
    return ProcessPlan(args=args, total_duration_sec=duration, output_path=output, graph=graph)


def _build_render_waveform(
    request: RenderWaveformRequest,
    sources: ResolvedSources,
    options: EncoderOptions,
    output_dir: Path,
    output_name: Optional[str],
) -> ProcessPlan:
    payload = request.payload
    if not sources.audio:
        raise PlanValidationError("audioPath missing or not found")
    width, height = frame_size(payload.aspect)
    duration = clamp_duration(payload.duration_sec, options)
    layout = caption_layout(payload, WAVEFORM_CAPTIONS)
    output = _output_path(output_dir, "waveform", "mp4", output_name)
    band_height = scaled(height, WAVEFORM_BAND_HEIGHT)
    band_y = height - band_height - scaled(height, WAVEFORM_BOTTOM_MARGIN)

    args = ["-y"]
    graph = FilterGraph()
    base = _video_base(width, height)
    if sources.background:
        args += ["-stream_loop", "-1", "-i", sources.background]
        graph.add(base, inputs=["0:v"], outputs=["base"])
        audio_input = 1
    else:
        graph.add(Filter.of("color", c="black", s=f"{width}x{height}", r=options.fps), outputs=["base"])
        audio_input = 0
    args += ["-i", sources.audio]
    music = None
    if sources.music:
        args += ["-stream_loop", "-1", "-i", sources.music]
        music = f"{audio_input + 1}:a"

    graph.add(Filter.of("asplit", outputs=2), inputs=[f"{audio_input}:a"], outputs=["wsrc", "narration"])
    graph.add(
        [
            Filter.of("aformat", channel_layouts="stereo"),
            Filter.of("showwaves", s=f"{width}x{band_height}", mode="line", rate=options.fps, colors="White"),
            Filter.of("format", pix_fmts="rgba"),
            Filter.of("colorchannelmixer", aa=0.75),
        ],
        inputs=["wsrc"],
        outputs=["wave"],
    )
    video_label = "withwave"
    graph.add(Filter.of("overlay", x=0, y=band_y, shortest=1), inputs=["base", "wave"], outputs=[video_label])
    if layout.lines:
        graph.add(_drawtext_filters(layout.lines, height, WAVEFORM_CAPTIONS), inputs=[video_label], outputs=["vout"])
        video_label = "vout"

    audio = _mix_voice_and_music(graph, "narration", music, payload.music_volume, payload.auto_duck)
    audio = _master(graph, audio, payload, duration)

    args += [
        "-t", format_number(duration),
        "-filter_complex", graph.render(),
        "-map", f"[{video_label}]",
        "-map", _map_arg(audio),
    ]
    args += _video_encode_args(options)
    args += ["-c:a", "aac", "-b:a", AUDIO_BITRATE, "-shortest", str(output)]
    return ProcessPlan(args=args, total_duration_sec=duration, output_path=output, graph=graph)


def _clip_length(clip: Optional[TimelineClip | TrimRange], media_sec: Optional[float]) -> Optional[float]:
    start = max(0.0, clip.start_sec or 0.0) if clip else 0.0
    requested = clip.duration_sec if clip and clip.duration_sec and clip.duration_sec > 0 else None
    remaining = max(0.0, media_sec - start) if media_sec is not None else None
    if requested is not None:
        return min(requested, remaining) if remaining is not None else requested
    return remaining


def _total_length(lengths: Sequence[Optional[float]], cap: float) -> float:
    if not lengths or any(length is None for length in lengths):
        return 0.0
    return min(cap, sum(lengths))


def _media_duration(sources: ResolvedSources, index: int) -> Optional[float]:
    if index < len(sources.media_durations):
        return sources.media_durations[index]
    return None


def _concat_clips(graph: FilterGraph, clips: Sequence[TimelineClip], first_input: int) -> str:
    for index, clip in enumerate(clips):
        trim = {}
        if clip.start_sec is not None:
            trim["start"] = max(0.0, clip.start_sec)
        if clip.duration_sec is not None and clip.duration_sec > 0:
            trim["duration"] = clip.duration_sec
        chain = [Filter.of("aformat", sample_rates=44100, channel_layouts="stereo")]
        if trim:
            chain.append(Filter.of("atrim", trim))
        chain.append(Filter.of("asetpts", expr="N/SR/TB"))
        graph.add(chain, inputs=[f"{first_input + index}:a"], outputs=[f"a{index}"])
    graph.add(
        Filter.of("concat", n=len(clips), v=0, a=1),
        inputs=[f"a{index}" for index in range(len(clips))],
        outputs=["aout"],
    )
    return "aout"


def _audio_encode_args(options: EncoderOptions, output: Path, limit: Optional[float] = None) -> list[str]:
    cap = options.max_duration_sec if limit is None else min(limit, options.max_duration_sec)
    return [
        "-t", format_number(cap),
        "-vn", "-c:a", "libmp3lame", "-b:a", AUDIO_BITRATE,
        str(output),
    ]


def _concat_list_entry(location: str) -> str:
    if location.startswith(("http://", "https://")):
        return f"file '{location}'"
    escaped = str(Path(location).resolve()).replace("'", "'\\''")
    return f"file '{escaped}'"


def _build_audio_merge(
    request: AudioMergeRequest,
    sources: ResolvedSources,
    options: EncoderOptions,
    output_dir: Path,
    output_name: Optional[str],
) -> ProcessPlan:
    if len(sources.inputs) < 2:
        raise PlanValidationError("inputs[] needs at least 2 resolved paths")
    output = _output_path(output_dir, "audio-merged", "mp3", output_name)
    list_file = output.with_name(f"{output.stem}.concat.txt")
    lengths = [_clip_length(None, _media_duration(sources, i)) for i in range(len(sources.inputs))]
    total = _total_length(lengths, options.max_duration_sec)

    args = ["-y", "-f", "concat", "-safe", "0"]
    if any(src.startswith(("http://", "https://")) for src in sources.inputs):
        args += ["-protocol_whitelist", "file,http,https,tcp,tls,crypto"]
    args += ["-i", str(list_file)]
    graph = FilterGraph()
    filters = mastering_filters(request.payload, total)
    if filters:
        graph.add(filters)
        args += ["-af", graph.render()]
    args += _audio_encode_args(options, output)
    content = "\n".join(_concat_list_entry(src) for src in sources.inputs) + "\n"
    return ProcessPlan(
        args=args,
        total_duration_sec=total,
        output_path=output,
        graph=graph,
        aux_files={list_file: content},
    )


def _build_audio_timeline(
    request: AudioTimelineRequest,
    sources: ResolvedSources,
    options: EncoderOptions,
    output_dir: Path,
    output_name: Optional[str],
) -> ProcessPlan:
    clips = request.payload.clips
    if len(sources.clips) != len(clips):
        raise PlanValidationError("every clip must be resolved before compiling")
    output = _output_path(output_dir, "audio-timeline", "mp3", output_name)
    lengths = [_clip_length(clip, _media_duration(sources, i)) for i, clip in enumerate(clips)]
    total = _total_length(lengths, options.max_duration_sec)

    args = ["-y"]
    for location in sources.clips:
        args += ["-i", location]
    graph = FilterGraph()
    audio = _concat_clips(graph, clips, first_input=0)
    audio = _master(graph, audio, request.payload, total)
    args += ["-filter_complex", graph.render(), "-map", _map_arg(audio)]
    args += _audio_encode_args(options, output)
    return ProcessPlan(args=args, total_duration_sec=total, output_path=output, graph=graph)


def _build_timeline_preview(
    request: TimelinePreviewRequest,
    sources: ResolvedSources,
    options: EncoderOptions,
    output_dir: Path,
    output_name: Optional[str],
) -> ProcessPlan:
    payload = request.payload
    if not sources.background:
        raise PlanValidationError("backgroundPath missing or not found")
    if len(sources.clips) != len(payload.clips):
        raise PlanValidationError("every clip must be resolved before compiling")
    width, height = frame_size(payload.aspect)
    lengths = [_clip_length(clip, _media_duration(sources, i)) for i, clip in enumerate(payload.clips)]
    audio_total = _total_length(lengths, options.max_duration_sec)
    if payload.duration_sec is not None:
        duration = clamp_duration(payload.duration_sec, options)
    elif audio_total > 0:
        duration = clamp_duration(audio_total, options)
    else:
        duration = float(options.max_duration_sec)
    output = _output_path(output_dir, "timeline-preview", "mp4", output_name)

    args = ["-y", "-stream_loop", "-1", "-i", sources.background]
    for location in sources.clips:
        args += ["-i", location]
    graph = FilterGraph()
    graph.add(_video_base(width, height), inputs=["0:v"], outputs=["vout"])
    audio = _concat_clips(graph, payload.clips, first_input=1)
    audio = _master(graph, audio, payload, min(duration, audio_total) if audio_total else 0.0)
    args += [
        "-filter_complex", graph.render(),
        "-map", "[vout]",
        "-map", _map_arg(audio),
        "-t", format_number(duration),
        "-shortest",
    ]
    args += _video_encode_args(options)
    args += ["-c:a", "aac", "-b:a", AUDIO_BITRATE, str(output)]
    return ProcessPlan(args=args, total_duration_sec=duration, output_path=output, graph=graph)


def _build_audio_process(
    request: AudioProcessRequest,
    sources: ResolvedSources,
    options: EncoderOptions,
    output_dir: Path,
    output_name: Optional[str],
) -> ProcessPlan:
    payload = request.payload
    if not sources.audio:
        raise PlanValidationError("inputPath missing or not found")
    output = _output_path(output_dir, "audio-processed", "mp3", output_name)
    trim = payload.trim
    total = _total_length([_clip_length(trim, _media_duration(sources, 0))], options.max_duration_sec)

    args = ["-y"]
    if trim and trim.start_sec is not None:
        args += ["-ss", format_number(trim.start_sec)]
    args += ["-i", sources.audio]
    graph = FilterGraph()
    filters = voice_cleanup_filters(payload)
    if filters:
        graph.add(filters)
        args += ["-af", graph.render()]
    args += _audio_encode_args(options, output, trim.duration_sec if trim else None)
    return ProcessPlan(args=args, total_duration_sec=total, output_path=output, graph=graph)


def _build_waveform_image(
    request: WaveformImageRequest,
    sources: ResolvedSources,
    options: EncoderOptions,
    output_dir: Path,
    output_name: Optional[str],
) -> ProcessPlan:
    payload = request.payload
    if not sources.audio:
        raise PlanValidationError("audioPath missing or not found")
    width = int(_clamp(payload.width, *WAVEFORM_IMAGE_WIDTH))
    height = int(_clamp(payload.height, *WAVEFORM_IMAGE_HEIGHT))
    output = _output_path(output_dir, "waveform", "png", output_name)
    graph = FilterGraph()
    graph.add(Filter.of("showwavespic", s=f"{width}x{height}", colors="White"))
    args = ["-y", "-i", sources.audio, "-filter_complex", graph.render(), "-frames:v", "1", str(output)]
    return ProcessPlan(args=args, total_duration_sec=0.0, output_path=output, graph=graph)


_BUILDERS: dict[type, Callable[..., ProcessPlan]] = {
    RenderVideoRequest: _build_render_video,
    RenderWaveformRequest: _build_render_waveform,
    AudioMergeRequest: _build_audio_merge,
    AudioTimelineRequest: _build_audio_timeline,
    TimelinePreviewRequest: _build_timeline_preview,
    AudioProcessRequest: _build_audio_process,
    WaveformImageRequest: _build_waveform_image,
}
