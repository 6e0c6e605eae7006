"""Frame driver, ffmpeg encoder session and container assembly for exports."""

from __future__ import annotations

import contextlib
from dataclasses import dataclass
import json
import logging
import math
from pathlib import Path
import shutil
import subprocess
import tempfile
import threading
from typing import Callable, Iterator, Sequence, Tuple

from PIL import Image

from domain.captions import (
    Caption,
    ContainerFormat,
    ExportSpec,
    StyleSpec,
    find_active_caption,
    find_overlapping_captions,
)
from service.audio_sync import AudioSynchronizer, write_click_track
from service.caption_renderer import FontResolver, render_caption
from service.caption_track import (
    CAPTION_MIME_TYPES,
    caption_output_name,
    video_output_name,
    write_caption_track,
)

LOGGER = logging.getLogger("export_pipeline")

FFMPEG_NOT_FOUND_CODE = "caption_video.ffmpeg.not_found"
FFMPEG_EXEC_CODE = "caption_video.ffmpeg.exec_error"
FFMPEG_UNSUPPORTED_CODE = "caption_video.ffmpeg.unsupported"
FFMPEG_PROCESS_CODE = "caption_video.ffmpeg.process_failed"
FFMPEG_PROBE_CODE = "caption_video.ffmpeg.probe_error"
FFMPEG_DECODE_CODE = "caption_video.ffmpeg.decode_failed"
NO_CAPTIONS_CODE = "caption_video.export.no_captions"
SOURCE_MISSING_CODE = "caption_video.export.source_missing"
OUTPUT_DIR_CODE = "caption_video.export.output_dir"
ENCODER_BUSY_CODE = "caption_video.export.encoder_busy"
AUDIO_GRAPH_CODE = "caption_video.export.audio_graph_failed"
OVERLAP_CODE = "caption_video.export.overlapping_captions"
SILENCE_SKIP_CODE = "caption_video.export.silence_skip_unavailable"
ALPHA_FLATTENED_CODE = "caption_video.export.alpha_flattened"

NO_CAPTIONS_MESSAGE = "No captions available to generate video."
MIN_OUTPUT_HEIGHT = 1080
MAX_OUTPUT_HEIGHT = 2160
HIGH_BITRATE_PIXELS = 1920 * 1080 * 1.5
MEDIUM_BITRATE_PIXELS = 1280 * 720 * 1.5
HIGH_VIDEO_BITRATE = 80_000_000
MEDIUM_VIDEO_BITRATE = 30_000_000
LOW_VIDEO_BITRATE = 10_000_000
AUDIO_BITRATES = {
    ContainerFormat.MP4: 320_000,
    ContainerFormat.WEBM: 256_000,
}
GREEN_SCREEN_RGBA = (0, 255, 0, 255)
TRANSPARENT_RGBA = (0, 0, 0, 0)
OUTPUT_PIXEL_FORMAT = "yuv420p"
ALPHA_PIXEL_FORMAT = "yuva420p"
ALPHA_VIDEO_CODECS = frozenset({"libvpx-vp9", "libvpx"})
DEFAULT_SOURCE_FRAME_RATE = 30.0


class ExportError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class VideoEncodingSpec:
    """Encoder pair for one container variant."""

    video_codec: str
    audio_codec: str
    args_builder: Callable[[int], Tuple[str, ...]]
    mime_type: str


@dataclass(frozen=True)
class SourceMetadata:
    """Probed properties of the source media."""

    width: int
    height: int
    duration_seconds: float
    frame_rate: float
    has_audio: bool


@dataclass(frozen=True)
class PlaybackTick:
    """One scheduling tick: a source position and, when decoded, its frame."""

    position_seconds: float
    frame: Image.Image | None


@dataclass(frozen=True)
class ExportResult:
    """Outputs of a finished (or cancelled) export."""

    video_path: Path
    caption_path: Path
    width: int
    height: int
    mime_type: str
    caption_mime_type: str
    frames_rendered: int
    frames_written: int
    click_count: int
    has_audio: bool
    stopped_early: bool


def compute_export_dimensions(width: int, height: int) -> Tuple[int, int]:
    """Clamp the output height to [1080, 2160] keeping aspect, then even-out."""
    if width <= 0 or height <= 0:
        raise ExportError(
            FFMPEG_PROBE_CODE, f"source dimensions must be positive: {width}x{height}"
        )
    output_width, output_height = width, height
    if height < MIN_OUTPUT_HEIGHT:
        output_width = int(round(width * MIN_OUTPUT_HEIGHT / height))
        output_height = MIN_OUTPUT_HEIGHT
    elif height > MAX_OUTPUT_HEIGHT:
        output_width = int(round(width * MAX_OUTPUT_HEIGHT / height))
        output_height = MAX_OUTPUT_HEIGHT
    if output_width % 2:
        output_width += 1
    if output_height % 2:
        output_height += 1
    return output_width, output_height


def compute_video_bitrate(width: int, height: int) -> int:
    """Select the video bitrate for an output pixel count."""
    pixel_count = width * height
    if pixel_count > HIGH_BITRATE_PIXELS:
        return HIGH_VIDEO_BITRATE
    if pixel_count > MEDIUM_BITRATE_PIXELS:
        return MEDIUM_VIDEO_BITRATE
    return LOW_VIDEO_BITRATE


def compute_audio_bitrate(container_format: ContainerFormat) -> int:
    """Select the audio bitrate for a container."""
    return AUDIO_BITRATES[container_format]


def compute_total_frames(duration_seconds: float, frame_rate: int) -> int:
    """Compute the output frame count for a duration."""
    return max(1, int(round(duration_seconds * frame_rate)))


def build_h264_args(video_bitrate: int) -> Tuple[str, ...]:
    """Build H.264 baseline arguments."""
    return (
        "-profile:v",
        "baseline",
        "-preset",
        "veryfast",
        "-b:v",
        str(video_bitrate),
        "-maxrate",
        str(video_bitrate),
        "-bufsize",
        str(video_bitrate * 2),
    )


def build_vp9_args(video_bitrate: int) -> Tuple[str, ...]:
    """Build VP9 realtime arguments."""
    return (
        "-b:v",
        str(video_bitrate),
        "-deadline",
        "realtime",
        "-cpu-used",
        "8",
        "-row-mt",
        "1",
    )


def build_generic_args(video_bitrate: int) -> Tuple[str, ...]:
    """Build arguments for the generic fallback encoders."""
    return ("-b:v", str(video_bitrate))


ENCODING_SPECS = {
    ContainerFormat.MP4: (
        VideoEncodingSpec(
            video_codec="libx264",
            audio_codec="aac",
            args_builder=build_h264_args,
            mime_type='video/mp4; codecs="avc1.42e01e, mp4a.40.2"',
        ),
        VideoEncodingSpec(
            video_codec="mpeg4",
            audio_codec="aac",
            args_builder=build_generic_args,
            mime_type="video/mp4",
        ),
    ),
    ContainerFormat.WEBM: (
        VideoEncodingSpec(
            video_codec="libvpx-vp9",
            audio_codec="libopus",
            args_builder=build_vp9_args,
            mime_type='video/webm; codecs="vp9, opus"',
        ),
        VideoEncodingSpec(
            video_codec="libvpx",
            audio_codec="libvorbis",
            args_builder=build_generic_args,
            mime_type="video/webm",
        ),
    ),
}


def ensure_tool_available(tool_path: str) -> str:
    """Ensure an ffmpeg-family tool is installed and executable."""
    resolved_path = shutil.which(tool_path)
    if not resolved_path:
        raise ExportError(FFMPEG_NOT_FOUND_CODE, f"{tool_path} not on PATH")
    try:
        subprocess.run(
            [resolved_path, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        raise ExportError(
            FFMPEG_EXEC_CODE, f"{tool_path} exists but could not be executed"
        ) from exc
    return resolved_path


def list_ffmpeg_encoders(ffmpeg_path: str) -> frozenset[str]:
    """Return the encoder names ffmpeg reports."""
    result = subprocess.run(
        [ffmpeg_path, "-hide_banner", "-encoders"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        raise ExportError(
            FFMPEG_EXEC_CODE, f"ffmpeg -encoders failed: {result.stderr.strip()}"
        )
    names: set[str] = set()
    in_table = False
    for line in result.stdout.splitlines():
        parts = line.split()
        if not in_table:
            # legend rows like "V..... = Video" precede the separator
            in_table = bool(parts) and set(parts[0]) == {"-"}
            continue
        if len(parts) >= 2 and len(parts[0]) == 6 and parts[0][0] in "VAS":
            names.add(parts[1])
    return frozenset(names)


def select_encoding_spec(
    container_format: ContainerFormat, encoders: frozenset[str], needs_audio: bool
) -> VideoEncodingSpec:
    """Pick the preferred encoder pair for a container, falling back to generic."""
    variants = ENCODING_SPECS[container_format]
    for variant in variants:
        if variant.video_codec not in encoders:
            continue
        if needs_audio and variant.audio_codec not in encoders:
            continue
        if variant is not variants[0]:
            LOGGER.warning(
                "%s: %s unavailable, using %s",
                FFMPEG_UNSUPPORTED_CODE,
                variants[0].video_codec,
                variant.video_codec,
            )
        return variant
    raise ExportError(
        FFMPEG_UNSUPPORTED_CODE,
        f"ffmpeg has no supported encoder for {container_format.value}",
    )


def select_pixel_format(export_spec: ExportSpec, encoding: VideoEncodingSpec) -> str:
    """Keep alpha for transparent exports when the encoder can carry it."""
    if not export_spec.transparent_background:
        return OUTPUT_PIXEL_FORMAT
    if encoding.video_codec in ALPHA_VIDEO_CODECS:
        return ALPHA_PIXEL_FORMAT
    LOGGER.warning(
        "%s: %s has no alpha channel; the transparent background is flattened to black",
        ALPHA_FLATTENED_CODE,
        encoding.video_codec,
    )
    return OUTPUT_PIXEL_FORMAT


def parse_frame_rate(raw_value: str | None) -> float:
    """Parse an ffprobe rational frame rate such as ``30000/1001``."""
    if not raw_value:
        return 0.0
    numerator_text, _, denominator_text = raw_value.partition("/")
    try:
        numerator = float(numerator_text)
        denominator = float(denominator_text) if denominator_text else 1.0
    except ValueError:
        return 0.0
    if denominator == 0:
        return 0.0
    return numerator / denominator


def probe_source(source_path: Path, ffprobe_path: str) -> SourceMetadata:
    """Read dimensions, duration, frame rate and audio presence with ffprobe."""
    try:
        result = subprocess.run(
            [
                ffprobe_path,
                "-v",
                "error",
                "-print_format",
                "json",
                "-show_streams",
                "-show_format",
                str(source_path),
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise ExportError(FFMPEG_NOT_FOUND_CODE, f"{ffprobe_path} not found") from exc
    if result.returncode != 0:
        raise ExportError(
            FFMPEG_PROBE_CODE, f"ffprobe failed for source: {result.stderr.strip()}"
        )
    try:
        payload = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise ExportError(FFMPEG_PROBE_CODE, "ffprobe returned invalid JSON") from exc

    streams = payload.get("streams", [])
    video_stream = next(
        (stream for stream in streams if stream.get("codec_type") == "video"), None
    )
    if video_stream is None:
        raise ExportError(FFMPEG_PROBE_CODE, f"no video stream in {source_path}")
    has_audio = any(stream.get("codec_type") == "audio" for stream in streams)

    duration_text = payload.get("format", {}).get("duration") or video_stream.get(
        "duration"
    )
    try:
        duration_seconds = float(duration_text)
    except (TypeError, ValueError) as exc:
        raise ExportError(
            FFMPEG_PROBE_CODE, f"source duration unavailable: {source_path}"
        ) from exc
    if not math.isfinite(duration_seconds) or duration_seconds <= 0:
        raise ExportError(
            FFMPEG_PROBE_CODE, f"source duration invalid: {source_path}"
        )

    frame_rate = parse_frame_rate(video_stream.get("r_frame_rate")) or parse_frame_rate(
        video_stream.get("avg_frame_rate")
    )
    return SourceMetadata(
        width=int(video_stream.get("width", 0)),
        height=int(video_stream.get("height", 0)),
        duration_seconds=duration_seconds,
        frame_rate=frame_rate or DEFAULT_SOURCE_FRAME_RATE,
        has_audio=has_audio,
    )


def terminate_process(process: subprocess.Popen[bytes] | None) -> None:
    """Close pipes and kill a child process that is still running."""
    if process is None:
        return
    for stream in (process.stdin, process.stdout):
        if stream is not None and not stream.closed:
            with contextlib.suppress(OSError):
                stream.close()
    if process.poll() is None:
        process.kill()
    process.wait()
    if process.stderr is not None and not process.stderr.closed:
        process.stderr.close()


class FfmpegPlaybackSource:
    """Source playback as a stream of position ticks at the native frame rate.

    Frames are only decoded (scaled to the output size) when they are needed
    as the background layer.
    """

    def __init__(
        self,
        source_path: Path,
        metadata: SourceMetadata,
        output_size: Tuple[int, int],
        ffmpeg_path: str,
        decode_frames: bool,
    ) -> None:
        self.source_path = source_path
        self.metadata = metadata
        self.output_size = output_size
        self.ffmpeg_path = ffmpeg_path
        self.decode_frames = decode_frames
        self._process: subprocess.Popen[bytes] | None = None

    def __enter__(self) -> "FfmpegPlaybackSource":
        if self.decode_frames:
            self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def open(self) -> None:
        """Start the decoder process."""
        width, height = self.output_size
        decode_cmd = [
            self.ffmpeg_path,
            "-v",
            "error",
            "-i",
            str(self.source_path),
            "-map",
            "0:v:0",
            "-vf",
            f"scale={width}:{height},fps={self.metadata.frame_rate!r}",
            "-f",
            "rawvideo",
            "-pix_fmt",
            "rgba",
            "-",
        ]
        try:
            self._process = subprocess.Popen(
                decode_cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ExportError(FFMPEG_NOT_FOUND_CODE, "ffmpeg not found") from exc

    def close(self) -> None:
        """Release the decoder process."""
        terminate_process(self._process)
        self._process = None

    def ticks(self) -> Iterator[PlaybackTick]:
        """Yield playback ticks in non-decreasing position order."""
        if not self.decode_frames:
            tick_count = int(
                math.ceil(self.metadata.duration_seconds * self.metadata.frame_rate)
            )
            for index_value in range(tick_count):
                yield PlaybackTick(index_value / self.metadata.frame_rate, None)
            return

        process = self._process
        if process is None or process.stdout is None:
            raise ExportError(FFMPEG_DECODE_CODE, "decoder is not running")
        frame_size = self.output_size[0] * self.output_size[1] * 4
        index_value = 0
        while True:
            chunk = process.stdout.read(frame_size)
            if len(chunk) < frame_size:
                break
            yield PlaybackTick(
                index_value / self.metadata.frame_rate,
                Image.frombytes("RGBA", self.output_size, chunk),
            )
            index_value += 1
        stderr_bytes = process.stderr.read() if process.stderr else b""
        return_code = process.wait()
        if return_code != 0:
            stderr_text = stderr_bytes.decode("utf-8", errors="replace").strip()
            raise ExportError(
                FFMPEG_DECODE_CODE,
                f"ffmpeg decode failed with exit code {return_code}. {stderr_text}",
            )


class EncoderSession:
    """ffmpeg process fed with raw RGBA frames paced by source position."""

    def __init__(
        self,
        output_path: Path,
        size: Tuple[int, int],
        frame_rate: int,
        encoding: VideoEncodingSpec,
        video_bitrate: int,
        ffmpeg_path: str,
        pixel_format: str = OUTPUT_PIXEL_FORMAT,
    ) -> None:
        self.output_path = output_path
        self.size = size
        self.frame_rate = frame_rate
        self.encoding = encoding
        self.video_bitrate = video_bitrate
        self.ffmpeg_path = ffmpeg_path
        self.pixel_format = pixel_format
        self.frames_written = 0
        self._last_frame_bytes: bytes | None = None
        self._process: subprocess.Popen[bytes] | None = None

    def __enter__(self) -> "EncoderSession":
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def build_command(self) -> list[str]:
        """Build the ffmpeg command for the raw frame stream."""
        width, height = self.size
        return [
            self.ffmpeg_path,
            "-y",
            "-v",
            "error",
            "-f",
            "rawvideo",
            "-pix_fmt",
            "rgba",
            "-s",
            f"{width}x{height}",
            "-r",
            str(self.frame_rate),
            "-i",
            "-",
            "-an",
            "-c:v",
            self.encoding.video_codec,
            *self.encoding.args_builder(self.video_bitrate),
            "-pix_fmt",
            self.pixel_format,
            str(self.output_path),
        ]

    def open(self) -> None:
        """Start the encoder process."""
        try:
            self._process = subprocess.Popen(
                self.build_command(),
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ExportError(FFMPEG_NOT_FOUND_CODE, "ffmpeg not found") from exc

    def close(self) -> None:
        """Release the encoder process."""
        terminate_process(self._process)
        self._process = None

    def _write(self, frame_bytes: bytes, repeat: int) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise ExportError(FFMPEG_PROCESS_CODE, "ffmpeg stdin unavailable")
        try:
            for _ in range(repeat):
                process.stdin.write(frame_bytes)
        except BrokenPipeError as exc:
            stderr_bytes = process.stderr.read() if process.stderr else b""
            stderr_text = stderr_bytes.decode("utf-8", errors="replace").strip()
            raise ExportError(
                FFMPEG_PROCESS_CODE, f"ffmpeg closed its input. {stderr_text}"
            ) from exc
        self.frames_written += repeat

    def submit(self, frame: Image.Image, position_seconds: float) -> int:
        """Write a frame for a source position; return how many slots it filled.

        The frame fills every output slot up to the one containing the
        position, so it is repeated when the source advanced more than one
        slot and dropped when its slot is already written.
        """
        frame_bytes = frame.tobytes()
        self._last_frame_bytes = frame_bytes
        target_frames = int(math.floor(position_seconds * self.frame_rate + 0.5)) + 1
        repeat = max(0, target_frames - self.frames_written)
        if repeat:
            self._write(frame_bytes, repeat)
        return repeat

    def finalize(self, total_frames: int | None = None) -> int:
        """Pad to ``total_frames`` with the last frame, close input and wait."""
        if total_frames is not None and total_frames > self.frames_written:
            padding_bytes = self._last_frame_bytes
            if padding_bytes is None:
                padding_bytes = Image.new("RGBA", self.size, TRANSPARENT_RGBA).tobytes()
            self._write(padding_bytes, total_frames - self.frames_written)
        process = self._process
        if process is None or process.stdin is None:
            raise ExportError(FFMPEG_PROCESS_CODE, "ffmpeg stdin unavailable")
        process.stdin.close()
        stderr_bytes = process.stderr.read() if process.stderr else b""
        return_code = process.wait()
        if return_code != 0:
            stderr_text = stderr_bytes.decode("utf-8", errors="replace").strip()
            raise ExportError(
                FFMPEG_PROCESS_CODE,
                f"ffmpeg failed with exit code {return_code}. {stderr_text}",
            )
        return self.frames_written


class EncoderSessionGate:
    """Capacity-one gate around encoder sessions."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        """Return True while a session holds the gate."""
        return self._lock.locked()

    @contextlib.contextmanager
    def acquire(self, blocking: bool = False) -> Iterator[None]:
        """Hold the gate for the duration of one encoder session."""
        if not self._lock.acquire(blocking=blocking):
            raise ExportError(ENCODER_BUSY_CODE, "another encoder session is active")
        try:
            yield
        finally:
            self._lock.release()


DEFAULT_ENCODER_GATE = EncoderSessionGate()


def compose_frame(
    size: Tuple[int, int],
    source_frame: Image.Image | None,
    captions: Sequence[Caption],
    position_seconds: float,
    style: StyleSpec,
    export_spec: ExportSpec,
    fonts: FontResolver,
) -> Tuple[Image.Image, int | None]:
    """Paint the background layer and the active caption for one position.

    Returns the surface and the typed count, or None when no caption is active.
    """
    if export_spec.embed_on_original and source_frame is not None:
        surface = source_frame.convert("RGBA")
    elif export_spec.green_screen:
        surface = Image.new("RGBA", size, GREEN_SCREEN_RGBA)
    else:
        surface = Image.new("RGBA", size, TRANSPARENT_RGBA)
    active_caption = find_active_caption(captions, position_seconds)
    if active_caption is None:
        return surface, None
    char_count = render_caption(
        surface, active_caption, position_seconds, style, fonts, is_export_pass=True
    )
    return surface, char_count


def drive_export_frames(
    ticks: Iterator[PlaybackTick],
    session: EncoderSession,
    synchronizer: AudioSynchronizer,
    captions: Sequence[Caption],
    style: StyleSpec,
    export_spec: ExportSpec,
    fonts: FontResolver,
    duration_seconds: float,
    progress_callback: Callable[[float], None] | None = None,
    cancel_event: threading.Event | None = None,
) -> Tuple[int, bool]:
    """Render and submit one frame per tick; return (frames rendered, stopped early)."""
    min_step = 1.0 / (export_spec.frame_rate * 2)
    last_position: float | None = None
    frames_rendered = 0
    for tick in ticks:
        if cancel_event is not None and cancel_event.is_set():
            LOGGER.info("export_pipeline.cancelled at %.3fs", tick.position_seconds)
            return frames_rendered, True
        if last_position is not None and abs(tick.position_seconds - last_position) < min_step:
            continue
        last_position = tick.position_seconds
        surface, char_count = compose_frame(
            session.size,
            tick.frame,
            captions,
            tick.position_seconds,
            style,
            export_spec,
            fonts,
        )
        if char_count is None:
            synchronizer.reset()
        else:
            synchronizer.observe(char_count, tick.position_seconds)
        session.submit(surface, tick.position_seconds)
        frames_rendered += 1
        if progress_callback is not None:
            progress_callback(min(100.0, tick.position_seconds / duration_seconds * 100.0))
    return frames_rendered, False


def build_mux_command(
    ffmpeg_path: str,
    video_file: Path,
    output_path: Path,
    encoding: VideoEncodingSpec,
    audio_bitrate: int,
    container_format: ContainerFormat,
    source_audio: Path | None,
    click_track: Path | None,
) -> list[str]:
    """Build the ffmpeg command that mixes audio into the encoded video."""
    mux_cmd = [ffmpeg_path, "-y", "-v", "error", "-i", str(video_file)]
    audio_inputs = [path for path in (source_audio, click_track) if path is not None]
    for audio_input in audio_inputs:
        mux_cmd.extend(["-i", str(audio_input)])
    mux_cmd.extend(["-map", "0:v:0"])
    if len(audio_inputs) == 2:
        mux_cmd.extend(
            [
                "-filter_complex",
                "[1:a:0][2:a:0]amix=inputs=2:duration=first:normalize=0[aout]",
                "-map",
                "[aout]",
            ]
        )
    else:
        mux_cmd.extend(["-map", "1:a:0"])
    mux_cmd.extend(
        [
            "-c:v",
            "copy",
            "-c:a",
            encoding.audio_codec,
            "-b:a",
            str(audio_bitrate),
            "-shortest",
        ]
    )
    if container_format == ContainerFormat.MP4:
        mux_cmd.extend(["-movflags", "+faststart"])
    mux_cmd.append(str(output_path))
    return mux_cmd


def assemble_output(
    ffmpeg_path: str,
    video_file: Path,
    output_path: Path,
    encoding: VideoEncodingSpec,
    export_spec: ExportSpec,
    source_audio: Path | None,
    click_track: Path | None,
) -> bool:
    """Mux audio into the final container; return False when it fell back to video only."""
    if source_audio is None and click_track is None:
        shutil.move(str(video_file), str(output_path))
        return False
    mux_cmd = build_mux_command(
        ffmpeg_path,
        video_file,
        output_path,
        encoding,
        compute_audio_bitrate(export_spec.container_format),
        export_spec.container_format,
        source_audio,
        click_track,
    )
    result = subprocess.run(
        mux_cmd,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.PIPE,
        text=True,
        check=False,
    )
    if result.returncode == 0:
        return True
    LOGGER.warning(
        "%s: audio mux failed, writing video only. %s",
        AUDIO_GRAPH_CODE,
        result.stderr.strip(),
    )
    shutil.move(str(video_file), str(output_path))
    return False


def export_captioned_video(
    source_path: Path,
    captions: Sequence[Caption],
    style: StyleSpec,
    export_spec: ExportSpec,
    output_dir: Path,
    fonts: FontResolver,
    ffmpeg_path: str = "ffmpeg",
    ffprobe_path: str = "ffprobe",
    progress_callback: Callable[[float], None] | None = None,
    cancel_event: threading.Event | None = None,
    gate: EncoderSessionGate = DEFAULT_ENCODER_GATE,
) -> ExportResult:
    """Render captions over a source video and write the video and caption files."""
    if not captions:
        raise ExportError(NO_CAPTIONS_CODE, NO_CAPTIONS_MESSAGE)
    if not source_path.is_file():
        raise ExportError(SOURCE_MISSING_CODE, f"source video not found: {source_path}")
    if not output_dir.is_dir():
        raise ExportError(OUTPUT_DIR_CODE, f"output directory does not exist: {output_dir}")

    for current, following in find_overlapping_captions(captions):
        LOGGER.warning(
            "%s: caption %d overlaps caption %d; the first listed wins",
            OVERLAP_CODE,
            current.caption_id,
            following.caption_id,
        )
    if export_spec.apply_silence_skip:
        LOGGER.warning(
            "%s: silence skip (%.1f dB) is not applied",
            SILENCE_SKIP_CODE,
            export_spec.silence_threshold_db,
        )

    ffmpeg_path = ensure_tool_available(ffmpeg_path)
    ffprobe_path = ensure_tool_available(ffprobe_path)
    metadata = probe_source(source_path, ffprobe_path)
    width, height = compute_export_dimensions(metadata.width, metadata.height)
    encoding = select_encoding_spec(
        export_spec.container_format,
        list_ffmpeg_encoders(ffmpeg_path),
        export_spec.include_audio,
    )
    video_bitrate = compute_video_bitrate(width, height)
    video_path = output_dir / video_output_name(source_path.stem, export_spec.container_format)
    caption_path = output_dir / caption_output_name(source_path.stem, export_spec.caption_format)
    LOGGER.info(
        "export_pipeline.start: %s -> %s (%dx%d @ %dfps, %s, %d bps)",
        source_path,
        video_path,
        width,
        height,
        export_spec.frame_rate,
        encoding.video_codec,
        video_bitrate,
    )

    synchronizer = AudioSynchronizer(
        style.text_style.typewriter_sound, export_spec.include_audio
    )
    with gate.acquire(), tempfile.TemporaryDirectory(prefix="caption_video_") as temp_dir:
        temp_video = Path(temp_dir) / f"video.{export_spec.container_format.value}"
        session = EncoderSession(
            temp_video,
            (width, height),
            export_spec.frame_rate,
            encoding,
            video_bitrate,
            ffmpeg_path,
            select_pixel_format(export_spec, encoding),
        )
        playback = FfmpegPlaybackSource(
            source_path,
            metadata,
            (width, height),
            ffmpeg_path,
            decode_frames=export_spec.embed_on_original,
        )
        with session, playback:
            frames_rendered, stopped_early = drive_export_frames(
                playback.ticks(),
                session,
                synchronizer,
                captions,
                style,
                export_spec,
                fonts,
                metadata.duration_seconds,
                progress_callback,
                cancel_event,
            )
            playback.close()
            total_frames = None
            if not stopped_early:
                total_frames = compute_total_frames(
                    metadata.duration_seconds, export_spec.frame_rate
                )
            frames_written = session.finalize(total_frames)

        source_audio = source_path if export_spec.include_audio and metadata.has_audio else None
        click_track = None
        if synchronizer.click_times:
            click_track = write_click_track(
                Path(temp_dir) / "clicks.wav",
                synchronizer.click_times,
                metadata.duration_seconds,
            )
        has_audio = assemble_output(
            ffmpeg_path,
            temp_video,
            video_path,
            encoding,
            export_spec,
            source_audio,
            click_track,
        )

    write_caption_track(caption_path, captions, export_spec.caption_format)
    if progress_callback is not None and not stopped_early:
        progress_callback(100.0)
    LOGGER.info(
        "export_pipeline.done: %s (%d rendered, %d written, %d clicks%s)",
        video_path,
        frames_rendered,
        frames_written,
        len(synchronizer.click_times),
        ", stopped early" if stopped_early else "",
    )
    return ExportResult(
        video_path=video_path,
        caption_path=caption_path,
        width=width,
        height=height,
        mime_type=encoding.mime_type,
        caption_mime_type=CAPTION_MIME_TYPES[export_spec.caption_format],
        frames_rendered=frames_rendered,
        frames_written=frames_written,
        click_count=len(synchronizer.click_times),
        has_audio=has_audio,
        stopped_early=stopped_early,
    )
