from pathlib import Path

import pytest

from render_service.models.api import (
    AudioMergeRequest,
    AudioProcessRequest,
    AudioTimelineRequest,
    RenderVideoRequest,
    RenderWaveformRequest,
    TimelinePreviewRequest,
    VoicePreset,
    WaveformImageRequest,
)
from render_service.models.domain import JobType
from render_service.render.compiler import (
    EncoderOptions,
    PlanValidationError,
    ResolvedSources,
    compile_plan,
    mastering_filters,
    validate_request,
    voice_cleanup_filters,
)

OUT = Path("/srv/outputs")
OPTIONS = EncoderOptions()


def _arg(args, flag):
    return args[args.index(flag) + 1]


def _video(**payload):
    base = {"backgroundPath": "bg.mp4", "lines": ["Hello world"]}
    base.update(payload)
    return RenderVideoRequest(type="render_video", payload=base)


def test_render_video_defaults():
    plan = compile_plan(_video(), ResolvedSources(background="/m/bg.mp4"), OPTIONS, OUT, "video-x.mp4")

    assert plan.output_path == OUT / "video-x.mp4"
    assert plan.args[:5] == ["-y", "-stream_loop", "-1", "-i", "/m/bg.mp4"]
    assert plan.args[-1] == str(OUT / "video-x.mp4")
    assert _arg(plan.args, "-t") == "20"
    assert _arg(plan.args, "-c:v") == "libx264"
    assert _arg(plan.args, "-preset") == "fast"
    assert _arg(plan.args, "-crf") == "22"
    assert _arg(plan.args, "-r") == "30"
    assert "-an" in plan.args
    graph = _arg(plan.args, "-filter_complex")
    assert graph.startswith("[0:v]scale=w=1080:h=1920:force_original_aspect_ratio=increase,crop=w=1080:h=1920")
    assert "drawtext=expansion=none:text=Hello world" in graph
    assert graph.endswith("[vout]")
    assert plan.total_duration_sec == 20


def test_render_video_duration_is_clamped():
    long_plan = compile_plan(_video(durationSec=999), ResolvedSources(background="bg"), OPTIONS, OUT)
    short_plan = compile_plan(_video(durationSec=0), ResolvedSources(background="bg"), OPTIONS, OUT)
    assert _arg(long_plan.args, "-t") == "180"
    assert _arg(short_plan.args, "-t") == "1"


def test_render_video_with_narration_music_and_ducking():
    request = _video(audioPath="voice.mp3", musicPath="music.mp3", musicVolume=0.5, normalizeLUFS=-14)
    sources = ResolvedSources(background="bg", audio="voice", music="music")
    plan = compile_plan(request, sources, OPTIONS, OUT)

    assert plan.args.count("-stream_loop") == 2
    names = plan.graph.filter_names()
    assert names.index("sidechaincompress") < names.index("amix") < names.index("loudnorm")
    assert names[-1] == "loudnorm"
    assert plan.graph.find("volume")[0].param("volume") == 0.5
    graph = _arg(plan.args, "-filter_complex")
    assert "[2:a]volume=volume=0.5[bgm]" in graph
    assert "[1:a]asplit=outputs=2[voice][duckkey]" in graph
    assert "loudnorm=I=-14:TP=-1.5:LRA=11[afinal]" in graph
    assert plan.args[plan.args.index("[vout]") + 1 : plan.args.index("[vout]") + 3] == ["-map", "[afinal]"]
    assert _arg(plan.args, "-b:a") == "192k"
    assert "-shortest" in plan.args


def test_render_video_without_auto_duck_mixes_directly():
    request = _video(audioPath="voice.mp3", musicPath="music.mp3", autoDuck=False)
    plan = compile_plan(request, ResolvedSources(background="bg", audio="v", music="m"), OPTIONS, OUT)
    assert "sidechaincompress" not in plan.graph.filter_names()
    assert "[1:a][bgm]amix=inputs=2:duration=first:dropout_transition=0:normalize=0[mixed]" in _arg(
        plan.args, "-filter_complex"
    )
    assert _arg(plan.args, "-map") == "[vout]"


def test_caption_text_is_escaped():
    plan = compile_plan(_video(lines=["It's 50% off: now"]), ResolvedSources(background="bg"), OPTIONS, OUT)
    assert plan.graph.find("drawtext")[0].param("text") == "It's 50% off: now"
    assert "text=It\\\\\\'s 50% off\\\\: now" in _arg(plan.args, "-filter_complex")


def test_landscape_geometry_and_hwaccel():
    options = EncoderOptions(hwaccel="nvenc", preset="slow")
    plan = compile_plan(_video(aspect="landscape"), ResolvedSources(background="bg"), options, OUT)
    assert plan.graph.find("scale")[0].param("w") == 1920
    assert plan.graph.find("drawtext")[0].param("fontsize") == 36
    assert _arg(plan.args, "-c:v") == "h264_nvenc"
    assert _arg(plan.args, "-preset") == "slow"


def test_waveform_without_background_uses_color_source():
    request = RenderWaveformRequest(type="render_waveform", payload={"audioPath": "voice.mp3"})
    plan = compile_plan(request, ResolvedSources(audio="/m/voice.mp3"), OPTIONS, OUT, "w.mp4")

    assert plan.args[:3] == ["-y", "-i", "/m/voice.mp3"]
    graph = _arg(plan.args, "-filter_complex")
    assert graph.startswith("color=c=black:s=1080x1920:r=30[base]")
    assert "[0:a]asplit=outputs=2[wsrc][narration]" in graph
    assert "showwaves=s=1080x420:mode=line" in graph
    assert "colorchannelmixer=aa=0.75[wave]" in graph
    assert "[base][wave]overlay=x=0:y=1420:shortest=1[withwave]" in graph
    assert "drawtext" not in graph
    assert _arg(plan.args, "-map") == "[withwave]"
    assert "[narration]" in plan.args


def test_waveform_with_background_and_captions():
    request = RenderWaveformRequest(
        type="render_waveform",
        payload={"audioPath": "voice.mp3", "backgroundPath": "bg.mp4", "lines": ["Listen up"]},
    )
    plan = compile_plan(request, ResolvedSources(audio="v", background="bg"), OPTIONS, OUT)
    assert plan.args[:5] == ["-y", "-stream_loop", "-1", "-i", "bg"]
    assert "[1:a]asplit" in _arg(plan.args, "-filter_complex")
    drawtext = plan.graph.find("drawtext")[0]
    assert (drawtext.param("fontsize"), drawtext.param("y")) == (60, 360)
    assert _arg(plan.args, "-map") == "[vout]"


def test_audio_merge_writes_concat_list():
    request = AudioMergeRequest(type="audio_merge", payload={"inputs": ["a.mp3", "https://x/b.mp3"]})
    sources = ResolvedSources(inputs=["/m/a.mp3", "https://x/b.mp3"])
    plan = compile_plan(request, sources, OPTIONS, OUT, "audio-merged-x.mp3")

    list_file = OUT / "audio-merged-x.concat.txt"
    assert plan.aux_files == {list_file: "file '/m/a.mp3'\nfile 'https://x/b.mp3'\n"}
    assert plan.args[:5] == ["-y", "-f", "concat", "-safe", "0"]
    assert "-protocol_whitelist" in plan.args
    assert _arg(plan.args, "-i") == str(list_file)
    assert "-af" not in plan.args
    assert _arg(plan.args, "-c:a") == "libmp3lame"
    assert plan.total_duration_sec == 0.0


def test_mastering_chain_order_and_clamps():
    request = AudioMergeRequest(
        type="audio_merge",
        payload={
            "inputs": ["a", "b"],
            "normalizeLUFS": -16,
            "fades": {"inMs": 500, "outMs": 3000},
            "deess": {"enabled": True, "amount": 5},
        },
    )
    filters = mastering_filters(request.payload, total_sec=10)
    assert [f.name for f in filters] == ["deesser", "afade", "afade", "loudnorm"]
    assert filters[0].param("i") == 1.0
    assert filters[1].render() == "afade=t=in:st=0:d=0.5"
    assert filters[2].render() == "afade=t=out:st=7:d=3"

    unknown_length = mastering_filters(request.payload, total_sec=0)
    assert [f.name for f in unknown_length] == ["deesser", "afade", "loudnorm"]


def test_normalize_lufs_range_is_enforced():
    with pytest.raises(ValueError):
        AudioMergeRequest(type="audio_merge", payload={"inputs": ["a", "b"], "normalizeLUFS": -2})


def test_audio_timeline_trims_and_concatenates():
    request = AudioTimelineRequest(
        type="audio_timeline",
        payload={"clips": [{"path": "a", "startSec": 1.5, "durationSec": 4}, {"path": "b"}]},
    )
    sources = ResolvedSources(clips=["/m/a", "/m/b"], media_durations=[10.0, 6.0])
    plan = compile_plan(request, sources, OPTIONS, OUT)

    graph = _arg(plan.args, "-filter_complex")
    assert "[0:a]aformat=sample_rates=44100:channel_layouts=stereo,atrim=start=1.5:duration=4,asetpts=expr=N/SR/TB[a0]" in graph
    assert "[a0][a1]concat=n=2:v=0:a=1[aout]" in graph
    assert _arg(plan.args, "-map") == "[aout]"
    assert plan.total_duration_sec == 10.0
    assert plan.output_path.name.startswith("audio-timeline-")


def test_timeline_preview_duration_follows_audio():
    request = TimelinePreviewRequest(
        type="timeline_preview",
        payload={"backgroundPath": "bg", "clips": [{"path": "a"}, {"path": "b"}]},
    )
    sources = ResolvedSources(background="bg", clips=["a", "b"], media_durations=[3.0, 4.5])
    plan = compile_plan(request, sources, OPTIONS, OUT)
    assert plan.total_duration_sec == 7.5
    assert _arg(plan.args, "-t") == "7.5"
    assert "[1:a]aformat" in _arg(plan.args, "-filter_complex")


@pytest.mark.parametrize(
    "request_obj, message",
    [
        (RenderVideoRequest(type="render_video", payload={"backgroundPath": "bg", "lines": ["   "]}), "lines"),
        (RenderVideoRequest(type="render_video", payload={"lines": ["x"]}), "backgroundPath"),
        (RenderWaveformRequest(type="render_waveform", payload={}), "audioPath"),
        (AudioMergeRequest(type="audio_merge", payload={"inputs": ["a", " "]}), "at least 2"),
        (AudioTimelineRequest(type="audio_timeline", payload={"clips": []}), "clips"),
        (AudioProcessRequest(type="audio_process", payload={"preset": "podcast"}), "inputPath"),
        (WaveformImageRequest(type="waveform_image", payload={}), "audioPath"),
    ],
)
def test_validate_request_rejects(request_obj, message):
    with pytest.raises(PlanValidationError, match=message):
        validate_request(request_obj)


def test_compile_needs_resolved_background():
    with pytest.raises(PlanValidationError, match="backgroundPath"):
        compile_plan(_video(), ResolvedSources(), OPTIONS, OUT)


def _process(**payload):
    base = {"inputPath": "voice.wav"}
    base.update(payload)
    return AudioProcessRequest(type="audio_process", payload=base)


def test_clean_voice_is_the_default_preset_chain():
    request = _process()
    assert request.payload.preset == VoicePreset.CLEAN_VOICE
    plan = compile_plan(request, ResolvedSources(audio="/m/voice.wav"), OPTIONS, OUT, "audio-processed-x.mp3")

    assert plan.graph.filter_names() == [
        "highpass", "lowpass", "afftdn", "agate", "acompressor", "silenceremove", "loudnorm",
    ]
    chain = _arg(plan.args, "-af")
    assert chain.startswith("highpass=f=80,lowpass=f=12000,afftdn=nr=14.1,")
    assert "agate=threshold=0.012589:attack=10:release=200" in chain
    assert "acompressor=threshold=0.125893:ratio=3:attack=0.01:release=0.12:makeup=8" in chain
    assert (
        "silenceremove=start_periods=1:start_duration=0.15:start_threshold=-40dB"
        ":stop_periods=1:stop_duration=0.25:stop_threshold=-40dB"
    ) in chain
    assert chain.endswith("loudnorm=I=-16:TP=-1.5:LRA=11")
    assert plan.args[:3] == ["-y", "-i", "/m/voice.wav"]
    assert plan.args[-8:] == ["-t", "180", "-vn", "-c:a", "libmp3lame", "-b:a", "192k", str(OUT / "audio-processed-x.mp3")]


@pytest.mark.parametrize("preset", ["", "studio", None])
def test_unknown_preset_falls_back_to_clean_voice(preset):
    assert _process(preset=preset).payload.preset == VoicePreset.CLEAN_VOICE


def test_preset_tables_differ():
    podcast = voice_cleanup_filters(_process(preset="podcast").payload)
    warm = voice_cleanup_filters(_process(preset="warm").payload)

    assert podcast[1].render() == "lowpass=f=14000"
    assert podcast[-1].render() == "loudnorm=I=-14:TP=-1.5:LRA=11"
    assert "silenceremove" not in [f.name for f in warm]
    assert warm[1].render() == "lowpass=f=10000"


def test_raw_preset_without_stages_only_reencodes():
    plan = compile_plan(_process(preset="raw"), ResolvedSources(audio="/m/voice.wav"), OPTIONS, OUT, "p.mp3")
    assert "-af" not in plan.args
    assert plan.args == [
        "-y", "-i", "/m/voice.wav", "-t", "180", "-vn", "-c:a", "libmp3lame", "-b:a", "192k", str(OUT / "p.mp3"),
    ]


def test_payload_stage_replaces_the_preset_stage():
    filters = voice_cleanup_filters(_process(eq={"highpassHz": 120}, denoise={"strength": 3}).payload)
    names = [f.name for f in filters]

    assert filters[0].render() == "highpass=f=120"
    assert "lowpass" not in names
    assert filters[1].render() == "afftdn=nr=24"


def test_extra_stages_are_clamped_and_ordered():
    request = _process(
        preset="raw",
        eq={"highpassHz": 100},
        compressor={"ratio": 2, "releaseMs": 10},
        deesser={"amount": 0.05},
        presence={"gainDb": 3},
        limiter={"ceilingDb": -1},
    )
    filters = voice_cleanup_filters(request.payload)

    assert [f.name for f in filters] == ["highpass", "acompressor", "deesser", "equalizer", "alimiter"]
    assert filters[1].render() == "acompressor=threshold=0.125893:ratio=2:attack=0.012:release=0.05:makeup=8"
    assert filters[2].render() == "deesser=i=0.1:f=0.5"
    assert filters[3].render() == "equalizer=f=4000:width_type=q:width=1:g=3"
    assert filters[4].render() == "alimiter=limit=0.891"


def test_presence_without_gain_is_skipped():
    filters = voice_cleanup_filters(_process(preset="raw", presence={"freqHz": 5000, "gainDb": 0}).payload)
    assert filters == []


def test_audio_process_trim():
    request = _process(preset="raw", trim={"startSec": 2, "durationSec": 5})
    plan = compile_plan(request, ResolvedSources(audio="/m/voice.wav", media_durations=[60.0]), OPTIONS, OUT)

    assert plan.args[:5] == ["-y", "-ss", "2", "-i", "/m/voice.wav"]
    assert _arg(plan.args, "-t") == "5"
    assert plan.total_duration_sec == 5.0
    assert plan.output_path.name.startswith("audio-processed-")

    open_ended = compile_plan(
        _process(preset="raw", trim={"startSec": 2}),
        ResolvedSources(audio="/m/voice.wav", media_durations=[60.0]),
        OPTIONS,
        OUT,
    )
    assert _arg(open_ended.args, "-t") == "180"
    assert open_ended.total_duration_sec == 58.0

    capped = compile_plan(_process(trim={"durationSec": 900}), ResolvedSources(audio="/m/voice.wav"), OPTIONS, OUT)
    assert _arg(capped.args, "-t") == "180"
    assert capped.total_duration_sec == 180.0


def test_audio_process_needs_resolved_input():
    with pytest.raises(PlanValidationError, match="inputPath"):
        compile_plan(_process(), ResolvedSources(), OPTIONS, OUT)


def test_waveform_image_defaults():
    request = WaveformImageRequest(type="waveform_image", payload={"audioPath": "voice.wav"})
    plan = compile_plan(request, ResolvedSources(audio="/m/voice.wav"), OPTIONS, OUT, "waveform-x.png")

    assert plan.args == [
        "-y", "-i", "/m/voice.wav",
        "-filter_complex", "showwavespic=s=1200x300:colors=White",
        "-frames:v", "1",
        str(OUT / "waveform-x.png"),
    ]
    assert plan.total_duration_sec == 0.0


@pytest.mark.parametrize(
    "width, height, size",
    [(50, 5000, "400x800"), (9000, 10, "2000x200"), (640, 480, "640x480")],
)
def test_waveform_image_size_is_clamped(width, height, size):
    request = WaveformImageRequest(
        type="waveform_image", payload={"audioPath": "voice.wav", "width": width, "height": height}
    )
    plan = compile_plan(request, ResolvedSources(audio="/m/voice.wav"), OPTIONS, OUT)

    assert _arg(plan.args, "-filter_complex") == f"showwavespic=s={size}:colors=White"
    assert plan.output_path.suffix == ".png"
    assert plan.output_path.name.startswith("waveform-")


EVERY_JOB_TYPE = [
    pytest.param(
        _video(audioPath="v.mp3", musicPath="m.mp3", fades={"inMs": 200, "outMs": 800}),
        ResolvedSources(background="/m/bg.mp4", audio="/m/v.mp3", music="/m/m.mp3"),
        id="render_video",
    ),
    pytest.param(
        RenderWaveformRequest(type="render_waveform", payload={"audioPath": "v.mp3", "lines": ["Hi"]}),
        ResolvedSources(audio="/m/v.mp3"),
        id="render_waveform",
    ),
    pytest.param(
        AudioMergeRequest(type="audio_merge", payload={"inputs": ["a.mp3", "b.mp3"], "normalizeLUFS": -16}),
        ResolvedSources(inputs=["/m/a.mp3", "/m/b.mp3"], media_durations=[3.0, 4.0]),
        id="audio_merge",
    ),
    pytest.param(
        AudioTimelineRequest(
            type="audio_timeline", payload={"clips": [{"path": "a", "startSec": 1}, {"path": "b"}]}
        ),
        ResolvedSources(clips=["/m/a", "/m/b"], media_durations=[5.0, None]),
        id="audio_timeline",
    ),
    pytest.param(
        TimelinePreviewRequest(
            type="timeline_preview", payload={"backgroundPath": "bg", "clips": [{"path": "a", "durationSec": 2}]}
        ),
        ResolvedSources(background="/m/bg.mp4", clips=["/m/a"], media_durations=[6.0]),
        id="timeline_preview",
    ),
    pytest.param(
        _process(preset="podcast", trim={"startSec": 1}, limiter={"ceilingDb": -2}),
        ResolvedSources(audio="/m/v.mp3", media_durations=[9.0]),
        id="audio_process",
    ),
    pytest.param(
        WaveformImageRequest(type="waveform_image", payload={"audioPath": "v.mp3", "width": 800}),
        ResolvedSources(audio="/m/v.mp3"),
        id="waveform_image",
    ),
]


def test_every_job_type_has_a_compilation_case():
    assert {param.values[0].type for param in EVERY_JOB_TYPE} == {job_type.value for job_type in JobType}


@pytest.mark.parametrize("request_obj, sources", EVERY_JOB_TYPE)
def test_compilation_with_pinned_output_name_is_repeatable(request_obj, sources):
    first = compile_plan(request_obj, sources, OPTIONS, OUT, "pinned.out")
    second = compile_plan(request_obj, sources, OPTIONS, OUT, "pinned.out")

    assert first.args == second.args
    assert first.aux_files == second.aux_files
    assert first.total_duration_sec == second.total_duration_sec
    assert first.output_path == second.output_path == OUT / "pinned.out"
