"""Tests for frame pacing, composition and export assembly."""

from __future__ import annotations

import io
import logging
from pathlib import Path
import shutil
import subprocess
import threading

import pytest
from PIL import Image

from domain.captions import (
    AnimationStyle,
    Caption,
    CaptionFormat,
    ContainerFormat,
    ExportSpec,
    StyleSpec,
    TextStyle,
)
from service.audio_sync import AudioSynchronizer
from service.caption_renderer import FontResolver
from service.caption_track import read_caption_track
from service.export_pipeline import (
    ENCODING_SPECS,
    GREEN_SCREEN_RGBA,
    EncoderSession,
    EncoderSessionGate,
    ExportError,
    PlaybackTick,
    assemble_output,
    build_mux_command,
    compose_frame,
    compute_audio_bitrate,
    compute_export_dimensions,
    compute_total_frames,
    compute_video_bitrate,
    drive_export_frames,
    export_captioned_video,
    list_ffmpeg_encoders,
    parse_frame_rate,
    probe_source,
    select_encoding_spec,
    select_pixel_format,
)

SMALL_SIZE = (320, 180)
FFMPEG_AVAILABLE = shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


class FakeStdin:
    """Collects bytes written to the encoder."""

    def __init__(self) -> None:
        self.chunks: list[bytes] = []
        self.closed = False

    def write(self, data: bytes) -> int:
        self.chunks.append(data)
        return len(data)

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    """Stands in for the ffmpeg child process."""

    def __init__(self, return_code: int) -> None:
        self.stdin = FakeStdin()
        self.stdout = None
        self.stderr = io.BytesIO(b"encoder exploded" if return_code else b"")
        self.return_code = return_code

    def poll(self) -> int:
        return self.return_code

    def wait(self) -> int:
        return self.return_code

    def kill(self) -> None:
        return None


class FakeEncoderSession(EncoderSession):
    """Encoder session that records frames instead of spawning ffmpeg."""

    process_return_code = 0

    def open(self) -> None:
        self.process = FakeProcess(self.process_return_code)
        self._process = self.process


def make_session(frame_rate: int = 30, size: tuple[int, int] = (4, 4)) -> FakeEncoderSession:
    """Build a fake session for the H.264 variant."""
    return FakeEncoderSession(
        Path("unused.mp4"),
        size,
        frame_rate,
        ENCODING_SPECS[ContainerFormat.MP4][0],
        10_000_000,
        "ffmpeg",
    )


def test_compute_export_dimensions() -> None:
    """Clamp height to [1080, 2160], keep aspect and even out dimensions."""
    assert compute_export_dimensions(640, 360) == (1920, 1080)
    assert compute_export_dimensions(720, 480) == (1620, 1080)
    assert compute_export_dimensions(3840, 2160) == (3840, 2160)
    assert compute_export_dimensions(4096, 4096) == (2160, 2160)
    assert compute_export_dimensions(1081, 1081) == (1082, 1082)
    with pytest.raises(ExportError):
        compute_export_dimensions(0, 720)


def test_bitrate_tiers() -> None:
    """Pick bitrates by pixel count and container."""
    assert compute_video_bitrate(3840, 2160) == 80_000_000
    assert compute_video_bitrate(1920, 1080) == 30_000_000
    assert compute_video_bitrate(1280, 720) == 10_000_000
    assert compute_audio_bitrate(ContainerFormat.MP4) == 320_000
    assert compute_audio_bitrate(ContainerFormat.WEBM) == 256_000


def test_compute_total_frames() -> None:
    """Round the duration to whole output frames."""
    assert compute_total_frames(2.0, 30) == 60
    assert compute_total_frames(0.01, 24) == 1


def test_select_encoding_spec_prefers_primary() -> None:
    """Use the preferred encoders when ffmpeg has them."""
    encoding = select_encoding_spec(ContainerFormat.MP4, frozenset({"libx264", "aac"}), True)
    assert encoding.video_codec == "libx264"
    assert "baseline" in encoding.args_builder(1000)
    webm = select_encoding_spec(
        ContainerFormat.WEBM, frozenset({"libvpx-vp9", "libopus"}), True
    )
    assert webm.mime_type == 'video/webm; codecs="vp9, opus"'


def test_select_encoding_spec_falls_back(caplog: pytest.LogCaptureFixture) -> None:
    """Fall back to the generic codec and log it."""
    encoding = select_encoding_spec(ContainerFormat.MP4, frozenset({"mpeg4", "aac"}), True)
    assert encoding.video_codec == "mpeg4"
    assert "caption_video.ffmpeg.unsupported" in caplog.text


def test_select_encoding_spec_requires_audio_codec() -> None:
    """Audio codecs only matter when audio is included."""
    encoders = frozenset({"libx264"})
    assert select_encoding_spec(ContainerFormat.MP4, encoders, False).video_codec == "libx264"
    with pytest.raises(ExportError) as exc_info:
        select_encoding_spec(ContainerFormat.MP4, encoders, True)
    assert exc_info.value.code == "caption_video.ffmpeg.unsupported"


def test_parse_frame_rate() -> None:
    """Parse ffprobe rationals and reject degenerate ones."""
    assert parse_frame_rate("30000/1001") == pytest.approx(29.97, abs=0.01)
    assert parse_frame_rate("25") == 25.0
    assert parse_frame_rate("0/0") == 0.0
    assert parse_frame_rate(None) == 0.0
    assert parse_frame_rate("abc") == 0.0


def test_submit_paces_frames_by_position() -> None:
    """Repeat frames to catch up and drop frames whose slot is written."""
    frame = Image.new("RGBA", (4, 4), (1, 2, 3, 255))
    with make_session() as session:
        repeats = [session.submit(frame, position) for position in (0.0, 0.1, 0.1, 0.2)]
        assert repeats == [1, 3, 0, 3]
        assert session.frames_written == 7
        assert len(session.process.stdin.chunks) == 7


def test_finalize_pads_with_last_frame() -> None:
    """Pad to the requested frame count with the last submitted frame."""
    first = Image.new("RGBA", (4, 4), (1, 1, 1, 255))
    last = Image.new("RGBA", (4, 4), (9, 9, 9, 255))
    with make_session() as session:
        session.submit(first, 0.0)
        session.submit(last, 1 / 30)
        assert session.finalize(total_frames=5) == 5
        chunks = session.process.stdin.chunks
        assert chunks[-3:] == [last.tobytes()] * 3
        assert session.process.stdin.closed


def test_finalize_without_frames_pads_transparent() -> None:
    """An encoder that got no frames is padded with transparent frames."""
    with make_session() as session:
        session.finalize(total_frames=2)
        assert session.process.stdin.chunks == [bytes(4 * 4 * 4)] * 2


def test_finalize_reports_encoder_failure() -> None:
    """A non-zero ffmpeg exit surfaces as a process error."""

    class FailingSession(FakeEncoderSession):
        process_return_code = 1

    session = FailingSession(
        Path("unused.mp4"), (4, 4), 30, ENCODING_SPECS[ContainerFormat.MP4][0], 1000, "ffmpeg"
    )
    with session:
        session.submit(Image.new("RGBA", (4, 4)), 0.0)
        with pytest.raises(ExportError) as exc_info:
            session.finalize()
    assert exc_info.value.code == "caption_video.ffmpeg.process_failed"
    assert "encoder exploded" in str(exc_info.value)


def test_encoder_command_streams_rgba() -> None:
    """Feed raw RGBA on stdin and encode to yuv420p."""
    command = make_session(size=(1920, 1080)).build_command()
    assert command[command.index("-pix_fmt") + 1] == "rgba"
    assert command[command.index("-s") + 1] == "1920x1080"
    assert command[command.index("-c:v") + 1] == "libx264"
    assert command[-3:-1] == ["-pix_fmt", "yuv420p"]


def test_encoder_gate_allows_one_session() -> None:
    """A second acquire fails while the gate is held."""
    gate = EncoderSessionGate()
    with gate.acquire():
        assert gate.active
        with pytest.raises(ExportError) as exc_info:
            with gate.acquire():
                pass
        assert exc_info.value.code == "caption_video.export.encoder_busy"
    assert not gate.active


def test_compose_frame_backgrounds() -> None:
    """Choose green, transparent or source backgrounds."""
    fonts = FontResolver(None)
    captions = (Caption(1, 5.0, 6.0, "later"),)
    green, count = compose_frame(SMALL_SIZE, None, captions, 0.0, StyleSpec(), ExportSpec(), fonts)
    assert count is None
    assert green.getpixel((0, 0)) == GREEN_SCREEN_RGBA

    clear, _ = compose_frame(
        SMALL_SIZE, None, captions, 0.0, StyleSpec(), ExportSpec(green_screen=False), fonts
    )
    assert clear.getpixel((0, 0)) == (0, 0, 0, 0)

    source = Image.new("RGB", SMALL_SIZE, (200, 10, 10))
    embedded, _ = compose_frame(
        SMALL_SIZE, source, captions, 0.0, StyleSpec(), ExportSpec(embed_on_original=True), fonts
    )
    assert embedded.getpixel((0, 0)) == (200, 10, 10, 255)


def test_compose_frame_reports_typed_count() -> None:
    """Return the typewriter count of the active caption."""
    style = StyleSpec(animation_style=AnimationStyle.TYPEWRITER)
    _, count = compose_frame(
        SMALL_SIZE,
        None,
        (Caption(1, 0.0, 1.0, "abc"),),
        1.0,
        style,
        ExportSpec(),
        FontResolver(None),
    )
    assert count == 3


def test_drive_export_frames_records_clicks_and_progress() -> None:
    """Render each tick once, record clicks and report progress."""
    style = StyleSpec(
        text_style=TextStyle(typewriter_sound=True),
        animation_style=AnimationStyle.TYPEWRITER,
    )
    captions = (Caption(1, 0.0, 0.6, "abcdef"),)
    positions = [index_value * 0.05 for index_value in range(20)]
    ticks = iter(
        [PlaybackTick(0.0, None), PlaybackTick(0.001, None)]
        + [PlaybackTick(position, None) for position in positions[1:]]
    )
    synchronizer = AudioSynchronizer(sound_enabled=True, has_audio_graph=True)
    progress: list[float] = []
    with make_session(size=SMALL_SIZE) as session:
        frames_rendered, stopped_early = drive_export_frames(
            ticks,
            session,
            synchronizer,
            captions,
            style,
            ExportSpec(),
            FontResolver(None),
            1.0,
            progress.append,
        )
        assert session.finalize(total_frames=30) == 30
    assert frames_rendered == 20
    assert not stopped_early
    assert synchronizer.click_times[0] == 0.0
    assert 1 < len(synchronizer.click_times) <= 7
    assert list(synchronizer.click_times) == sorted(synchronizer.click_times)
    assert progress == sorted(progress)
    assert progress[-1] == pytest.approx(95.0)


def test_drive_export_frames_stops_on_cancel() -> None:
    """Stop before rendering once cancellation is requested."""
    cancel_event = threading.Event()
    cancel_event.set()
    with make_session(size=SMALL_SIZE) as session:
        frames_rendered, stopped_early = drive_export_frames(
            iter([PlaybackTick(0.0, None), PlaybackTick(0.1, None)]),
            session,
            AudioSynchronizer(False, True),
            (Caption(1, 0.0, 1.0, "x"),),
            StyleSpec(),
            ExportSpec(),
            FontResolver(None),
            1.0,
            cancel_event=cancel_event,
        )
        assert session.frames_written == 0
    assert (frames_rendered, stopped_early) == (0, True)


def test_mux_command_mixes_source_audio_and_clicks() -> None:
    """Mix both audio inputs and copy the encoded video."""
    encoding = ENCODING_SPECS[ContainerFormat.MP4][0]
    command = build_mux_command(
        "ffmpeg",
        Path("video.mp4"),
        Path("out.mp4"),
        encoding,
        320_000,
        ContainerFormat.MP4,
        Path("source.mp4"),
        Path("clicks.wav"),
    )
    assert "[1:a:0][2:a:0]amix=inputs=2:duration=first:normalize=0[aout]" in command
    assert command[command.index("-c:v") + 1] == "copy"
    assert command[command.index("-c:a") + 1] == "aac"
    assert "+faststart" in command
    assert command[-1] == "out.mp4"


def test_mux_command_single_audio_input() -> None:
    """Map the only audio input directly."""
    encoding = ENCODING_SPECS[ContainerFormat.WEBM][0]
    command = build_mux_command(
        "ffmpeg",
        Path("video.webm"),
        Path("out.webm"),
        encoding,
        256_000,
        ContainerFormat.WEBM,
        None,
        Path("clicks.wav"),
    )
    assert "-filter_complex" not in command
    assert command[command.index("-map", command.index("0:v:0")) + 1] == "1:a:0"
    assert "+faststart" not in command


def test_export_without_captions_fails_first(tmp_path: Path) -> None:
    """Fail before touching the source or ffmpeg when there are no captions."""
    with pytest.raises(ExportError) as exc_info:
        export_captioned_video(
            tmp_path / "missing.mp4",
            (),
            StyleSpec(),
            ExportSpec(),
            tmp_path,
            FontResolver(None),
            ffmpeg_path="ffmpeg-that-does-not-exist",
        )
    assert exc_info.value.code == "caption_video.export.no_captions"
    assert str(exc_info.value) == "No captions available to generate video."


def test_export_requires_source_file(tmp_path: Path) -> None:
    """Report a missing source video."""
    with pytest.raises(ExportError) as exc_info:
        export_captioned_video(
            tmp_path / "missing.mp4",
            (Caption(1, 0.0, 1.0, "x"),),
            StyleSpec(),
            ExportSpec(),
            tmp_path,
            FontResolver(None),
        )
    assert exc_info.value.code == "caption_video.export.source_missing"


def make_source_video(output_path: Path, with_audio: bool) -> Path:
    """Generate a one-second test clip with ffmpeg."""
    command = [
        "ffmpeg",
        "-y",
        "-v",
        "error",
        "-f",
        "lavfi",
        "-i",
        "testsrc=size=320x240:rate=24:duration=1",
    ]
    if with_audio:
        command.extend(["-f", "lavfi", "-i", "sine=frequency=440:duration=1"])
    command.extend(["-pix_fmt", "yuv420p", "-shortest", str(output_path)])
    subprocess.run(command, check=True)
    return output_path


@pytest.mark.skipif(not FFMPEG_AVAILABLE, reason="ffmpeg not installed")
def test_export_green_screen_with_clicks(tmp_path: Path) -> None:
    """Export a green-screen video with mixed audio and a caption sidecar."""
    source_path = make_source_video(tmp_path / "clip.mp4", with_audio=True)
    output_dir = tmp_path / "out"
    output_dir.mkdir()
    captions = (Caption(1, 0.0, 0.8, "typed words"),)
    style = StyleSpec(
        text_style=TextStyle(typewriter_sound=True),
        animation_style=AnimationStyle.TYPEWRITER,
    )
    result = export_captioned_video(
        source_path,
        captions,
        style,
        ExportSpec(caption_format=CaptionFormat.VTT),
        output_dir,
        FontResolver(None),
        gate=EncoderSessionGate(),
    )
    assert result.video_path == output_dir / "clip_captioned.mp4"
    assert result.video_path.is_file()
    assert (result.width, result.height) == (1440, 1080)
    source_duration = probe_source(source_path, "ffprobe").duration_seconds
    assert result.frames_written == compute_total_frames(source_duration, 30)
    assert result.click_count > 0
    assert not result.stopped_early
    assert read_caption_track(result.caption_path) == captions
    metadata = probe_source(result.video_path, "ffprobe")
    assert (metadata.width, metadata.height) == (1440, 1080)
    assert metadata.has_audio


@pytest.mark.skipif(not FFMPEG_AVAILABLE, reason="ffmpeg not installed")
def test_export_embedded_on_original_without_audio(tmp_path: Path) -> None:
    """Embed captions over decoded source frames."""
    source_path = make_source_video(tmp_path / "clip.mp4", with_audio=False)
    progress: list[float] = []
    result = export_captioned_video(
        source_path,
        (Caption(1, 0.2, 0.9, "over the source"),),
        StyleSpec(),
        ExportSpec(frame_rate=24, embed_on_original=True, include_audio=False),
        tmp_path,
        FontResolver(None),
        progress_callback=progress.append,
        gate=EncoderSessionGate(),
    )
    assert result.frames_rendered >= 24
    source_duration = probe_source(source_path, "ffprobe").duration_seconds
    assert result.frames_written == compute_total_frames(source_duration, 24)
    assert not result.has_audio
    assert progress[-1] == 100.0
    assert result.caption_path == tmp_path / "clip.srt"
    assert result.caption_mime_type == "text/plain;charset=utf-8"


ENCODERS_OUTPUT = """Encoders:
 V..... = Video
 A..... = Audio
 S..... = Subtitle
 .F.... = Frame-level multithreading
 ------
 V....D libx264              libx264 H.264 / AVC / MPEG-4 AVC (codec h264)
 V....D libvpx-vp9           libvpx VP9 (codec vp9)
 A....D aac                  AAC (Advanced Audio Coding)
 S..... srt                  SubRip subtitle
"""


def fake_run_result(
    monkeypatch: pytest.MonkeyPatch,
    returncode: int,
    stdout: str = "",
    stderr: str = "",
) -> list[list[str]]:
    """Replace subprocess.run with a canned result and record the commands."""
    commands: list[list[str]] = []

    def fake_run(command: list[str], **_kwargs: object) -> subprocess.CompletedProcess[str]:
        commands.append(list(command))
        return subprocess.CompletedProcess(command, returncode, stdout, stderr)

    monkeypatch.setattr(subprocess, "run", fake_run)
    return commands


def test_list_ffmpeg_encoders_reads_table(monkeypatch: pytest.MonkeyPatch) -> None:
    """Collect encoder names below the separator and skip the legend."""
    commands = fake_run_result(monkeypatch, 0, stdout=ENCODERS_OUTPUT)
    names = list_ffmpeg_encoders("/opt/ffmpeg")
    assert names == frozenset({"libx264", "libvpx-vp9", "aac", "srt"})
    assert commands == [["/opt/ffmpeg", "-hide_banner", "-encoders"]]
    encoding = select_encoding_spec(ContainerFormat.WEBM, names, needs_audio=False)
    assert encoding.video_codec == "libvpx-vp9"


def test_list_ffmpeg_encoders_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    """A failing ffmpeg run reports the exec code with stderr."""
    fake_run_result(monkeypatch, 1, stderr="bad option")
    with pytest.raises(ExportError) as exc_info:
        list_ffmpeg_encoders("ffmpeg")
    assert exc_info.value.code == "caption_video.ffmpeg.exec_error"
    assert "bad option" in str(exc_info.value)


def test_assemble_output_keeps_video_when_mux_fails(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    """An audio mux failure logs a warning and keeps the video-only file."""
    video_file = tmp_path / "video.mp4"
    video_file.write_bytes(b"video stream")
    click_track = tmp_path / "clicks.wav"
    click_track.write_bytes(b"wav")
    output_path = tmp_path / "clip_captioned.mp4"
    commands = fake_run_result(monkeypatch, 1, stderr="Error initializing filter 'amix'")

    with caplog.at_level(logging.WARNING, logger="export_pipeline"):
        has_audio = assemble_output(
            "ffmpeg",
            video_file,
            output_path,
            ENCODING_SPECS[ContainerFormat.MP4][0],
            ExportSpec(),
            tmp_path / "source.mp4",
            click_track,
        )

    assert not has_audio
    assert output_path.read_bytes() == b"video stream"
    assert not video_file.exists()
    assert "amix" in " ".join(commands[0])
    assert "caption_video.export.audio_graph_failed" in caplog.text
    assert "Error initializing filter" in caplog.text


def test_assemble_output_muxes_audio(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A successful mux reports audio and leaves the output to ffmpeg."""
    video_file = tmp_path / "video.webm"
    video_file.write_bytes(b"video stream")
    output_path = tmp_path / "clip_captioned.webm"
    commands = fake_run_result(monkeypatch, 0)
    has_audio = assemble_output(
        "ffmpeg",
        video_file,
        output_path,
        ENCODING_SPECS[ContainerFormat.WEBM][0],
        ExportSpec(container_format=ContainerFormat.WEBM),
        tmp_path / "source.webm",
        None,
    )
    assert has_audio
    assert commands[0][-1] == str(output_path)
    assert "libopus" in commands[0]


def test_assemble_output_without_audio_moves_video(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """With no audio inputs the encoded video becomes the output directly."""
    video_file = tmp_path / "video.mp4"
    video_file.write_bytes(b"video stream")
    output_path = tmp_path / "clip_captioned.mp4"
    commands = fake_run_result(monkeypatch, 0)
    has_audio = assemble_output(
        "ffmpeg",
        video_file,
        output_path,
        ENCODING_SPECS[ContainerFormat.MP4][0],
        ExportSpec(include_audio=False),
        None,
        None,
    )
    assert not has_audio
    assert commands == []
    assert output_path.read_bytes() == b"video stream"


def test_pixel_format_keeps_alpha_for_vp9() -> None:
    """Transparent WebM exports encode yuva420p."""
    transparent = ExportSpec(container_format=ContainerFormat.WEBM, green_screen=False)
    assert transparent.transparent_background
    vp9 = ENCODING_SPECS[ContainerFormat.WEBM][0]
    assert select_pixel_format(transparent, vp9) == "yuva420p"
    assert select_pixel_format(ExportSpec(container_format=ContainerFormat.WEBM), vp9) == "yuv420p"
    session = FakeEncoderSession(
        Path("unused.webm"), (4, 4), 30, vp9, 1000, "ffmpeg", pixel_format="yuva420p"
    )
    assert session.build_command()[-3:-1] == ["-pix_fmt", "yuva420p"]


def test_pixel_format_flattens_alpha_for_h264(caplog: pytest.LogCaptureFixture) -> None:
    """Transparent MP4 exports log that alpha is dropped."""
    transparent = ExportSpec(green_screen=False)
    with caplog.at_level(logging.WARNING, logger="export_pipeline"):
        pixel_format = select_pixel_format(transparent, ENCODING_SPECS[ContainerFormat.MP4][0])
    assert pixel_format == "yuv420p"
    assert "caption_video.export.alpha_flattened" in caplog.text
    assert not ExportSpec(embed_on_original=True).transparent_background
