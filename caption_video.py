#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "numpy>=1.26",
#   "pillow>=10.1"
# ]
# ///
"""Burn animated captions into a video and write the caption sidecar."""

from __future__ import annotations

import argparse
from dataclasses import dataclass, replace
import json
import logging
import os
from pathlib import Path
import signal
import sys
import threading
from typing import Sequence, Tuple

from domain.captions import (
    INPUT_FILE_CODE,
    INVALID_PRESET_CODE,
    Caption,
    CaptionValidationError,
    ExportSpec,
    StyleSpec,
    parse_animation_style,
    parse_caption_format,
    parse_caption_records,
    parse_container_format,
    replace_caption_text,
    style_from_mapping,
)
from service.caption_renderer import FontResolver, render_preview_frame
from service.caption_track import read_caption_track
from service.export_pipeline import (
    ExportError,
    compute_export_dimensions,
    ensure_tool_available,
    export_captioned_video,
    probe_source,
)
from service.presets import JsonFilePresetStore, add_preset, find_preset, remove_preset
from service.runtime_config import (
    RuntimeConfig,
    add_runtime_arguments,
    configure_logging,
    load_config,
)
from service.transcription import (
    TranscriptionError,
    build_transcriber,
    build_transcription_request,
)

LOGGER = logging.getLogger("caption_video")


@dataclass(frozen=True)
class CaptionVideoRequest:
    """Parsed CLI request."""

    input_video: Path | None
    captions_file: Path | None
    output_dir: Path | None
    style: StyleSpec
    export_spec: ExportSpec
    caption_edits: Tuple[Tuple[int, str], ...]
    preview_at: float | None
    preview_output: Path
    save_preset: str | None
    delete_preset: str | None


def add_style_arguments(parser: argparse.ArgumentParser) -> None:
    """Register caption style options."""
    parser.add_argument("--style-file", default=None, help="JSON style (camelCase keys)")
    parser.add_argument("--preset", default=None, help="apply a saved preset by name")
    parser.add_argument("--animation-style", default=None)
    parser.add_argument("--font-family", default=None)
    parser.add_argument("--font-size", type=float, default=None)
    parser.add_argument("--text-color", default=None)
    parser.add_argument("--typewriter-sound", action="store_true")


def add_export_arguments(parser: argparse.ArgumentParser) -> None:
    """Register export options."""
    parser.add_argument("--fps", type=int, default=30)
    parser.add_argument("--format", default="mp4", help="mp4, webm or a video/* MIME type")
    parser.add_argument("--caption-format", default="srt")
    parser.add_argument("--no-audio", action="store_true")
    parser.add_argument("--no-green-screen", action="store_true")
    parser.add_argument("--embed-on-original", action="store_true")
    parser.add_argument("--apply-silence-skip", action="store_true")
    parser.add_argument("--silence-threshold-db", type=float, default=-20.0)


def open_preset_store(config: RuntimeConfig) -> JsonFilePresetStore:
    """Open the configured preset file."""
    if config.presets_file is None:
        raise CaptionValidationError(
            INVALID_PRESET_CODE, "presets require --presets-file or CAPTION_VIDEO_PRESETS_FILE"
        )
    return JsonFilePresetStore(config.presets_file)


def read_style_file(file_path: str) -> StyleSpec:
    """Read a camelCase style JSON file."""
    try:
        payload = json.loads(Path(file_path).read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CaptionValidationError(
            INPUT_FILE_CODE, f"failed to read style file: {file_path}"
        ) from exc
    if not isinstance(payload, dict):
        raise CaptionValidationError(INPUT_FILE_CODE, "style file must hold an object")
    return style_from_mapping(payload)


def resolve_style(parsed: argparse.Namespace, config: RuntimeConfig) -> StyleSpec:
    """Build the style from a preset or style file plus flag overrides."""
    style = StyleSpec()
    if parsed.style_file:
        style = read_style_file(parsed.style_file)
    if parsed.preset:
        preset = find_preset(open_preset_store(config).load(), parsed.preset)
        if preset is None:
            raise CaptionValidationError(
                INVALID_PRESET_CODE, f"unknown preset: {parsed.preset}"
            )
        style = preset.options

    text_changes: dict[str, object] = {}
    if parsed.font_family:
        text_changes["font_family"] = parsed.font_family
    if parsed.font_size is not None:
        text_changes["font_size"] = parsed.font_size
    if parsed.text_color:
        text_changes["text_color"] = parsed.text_color
    if parsed.typewriter_sound:
        text_changes["typewriter_sound"] = True
    if text_changes:
        style = replace(style, text_style=replace(style.text_style, **text_changes))
    if parsed.animation_style:
        style = replace(
            style, animation_style=parse_animation_style(parsed.animation_style)
        )
    return style


def build_export_spec(parsed: argparse.Namespace) -> ExportSpec:
    """Build export options from parsed flags."""
    export_spec = ExportSpec(
        frame_rate=parsed.fps,
        container_format=parse_container_format(parsed.format),
        caption_format=parse_caption_format(parsed.caption_format),
        include_audio=not parsed.no_audio,
        green_screen=not parsed.no_green_screen,
        apply_silence_skip=parsed.apply_silence_skip,
        silence_threshold_db=parsed.silence_threshold_db,
    )
    if parsed.embed_on_original:
        export_spec = export_spec.with_embed_on_original(True)
    return export_spec


def parse_caption_edit(raw_value: str) -> Tuple[int, str]:
    """Parse an ``ID=TEXT`` caption edit."""
    id_text, separator, text_value = raw_value.partition("=")
    if not separator or not id_text.strip().isdigit():
        raise CaptionValidationError(
            INPUT_FILE_CODE, f"caption edit must be ID=TEXT: {raw_value!r}"
        )
    return int(id_text.strip()), text_value


def parse_args(
    argv: Sequence[str], env: dict[str, str]
) -> Tuple[CaptionVideoRequest, RuntimeConfig]:
    """Parse CLI arguments into a request and runtime configuration."""
    parser = argparse.ArgumentParser(prog="caption_video.py", add_help=True)
    parser.add_argument("input_video", nargs="?", default=None)
    parser.add_argument(
        "--captions-file", default=None, help=".json, .srt or .vtt; transcribes when omitted"
    )
    parser.add_argument("--output-dir", default=None)
    parser.add_argument("--edit-caption", action="append", default=[], metavar="ID=TEXT")
    parser.add_argument("--preview-at", type=float, default=None)
    parser.add_argument("--preview-output", default="preview.png")
    parser.add_argument("--save-preset", default=None)
    parser.add_argument("--delete-preset", default=None)
    add_style_arguments(parser)
    add_export_arguments(parser)
    add_runtime_arguments(parser)

    parsed = parser.parse_args(argv)
    config = load_config(parsed, env)
    if parsed.input_video is None and not (parsed.save_preset or parsed.delete_preset):
        raise CaptionValidationError(INPUT_FILE_CODE, "input video is required")
    if parsed.preview_at is not None and parsed.preview_at < 0:
        raise CaptionValidationError(INPUT_FILE_CODE, "preview-at must be non-negative")
    request = CaptionVideoRequest(
        input_video=Path(parsed.input_video) if parsed.input_video else None,
        captions_file=Path(parsed.captions_file) if parsed.captions_file else None,
        output_dir=Path(parsed.output_dir) if parsed.output_dir else None,
        style=resolve_style(parsed, config),
        export_spec=build_export_spec(parsed),
        caption_edits=tuple(parse_caption_edit(value) for value in parsed.edit_caption),
        preview_at=parsed.preview_at,
        preview_output=Path(parsed.preview_output),
        save_preset=parsed.save_preset,
        delete_preset=parsed.delete_preset,
    )
    return request, config


def load_captions_file(file_path: Path) -> Tuple[Caption, ...]:
    """Load captions from a JSON record list or an SRT/VTT file."""
    if file_path.suffix.lower() != ".json":
        return read_caption_track(file_path)
    try:
        payload = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CaptionValidationError(
            INPUT_FILE_CODE, f"failed to read captions file: {file_path}"
        ) from exc
    return parse_caption_records(payload)


def obtain_captions(
    request: CaptionVideoRequest, config: RuntimeConfig
) -> Tuple[Caption, ...]:
    """Load or transcribe captions, then apply text edits."""
    if request.captions_file is not None:
        captions = load_captions_file(request.captions_file)
    else:
        transcriber = build_transcriber(config)
        captions = transcriber(build_transcription_request(request.input_video))
    for caption_id, text_value in request.caption_edits:
        captions = replace_caption_text(captions, caption_id, text_value)
    return captions


def manage_presets(request: CaptionVideoRequest, config: RuntimeConfig) -> None:
    """Apply preset save and delete requests."""
    store = open_preset_store(config)
    presets = store.load()
    if request.delete_preset:
        presets = remove_preset(presets, request.delete_preset)
        LOGGER.info("caption_video.preset.deleted: %s", request.delete_preset)
    if request.save_preset:
        presets = add_preset(presets, request.save_preset, request.style)
        LOGGER.info("caption_video.preset.saved: %s", request.save_preset.strip())
    store.save(presets)


def write_preview(
    request: CaptionVideoRequest,
    config: RuntimeConfig,
    captions: Sequence[Caption],
    fonts: FontResolver,
) -> Path:
    """Render the caption overlay at one playback position to a PNG."""
    metadata = probe_source(request.input_video, ensure_tool_available(config.ffprobe_path))
    size = compute_export_dimensions(metadata.width, metadata.height)
    overlay = render_preview_frame(captions, request.preview_at, size, request.style, fonts)
    overlay.save(request.preview_output, format="PNG")
    LOGGER.info("caption_video.preview: %s at %.3fs", request.preview_output, request.preview_at)
    return request.preview_output


def install_cancel_handlers(cancel_event: threading.Event) -> None:
    """Finalize the partial output on SIGINT or SIGTERM; a second signal interrupts."""

    def request_cancel(signum: int, _frame: object) -> None:
        if cancel_event.is_set():
            raise KeyboardInterrupt
        LOGGER.warning("caption_video.cancel: signal %d, finalizing partial output", signum)
        cancel_event.set()

    signal.signal(signal.SIGINT, request_cancel)
    signal.signal(signal.SIGTERM, request_cancel)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint."""
    env = dict(os.environ)
    configure_logging(env)

    try:
        request, config = parse_args(sys.argv[1:] if argv is None else argv, env)
        if request.save_preset or request.delete_preset:
            manage_presets(request, config)
        if request.input_video is None:
            return 0
        captions = obtain_captions(request, config)
        fonts = FontResolver(config.fonts_dir)
        if request.preview_at is not None:
            write_preview(request, config, captions, fonts)
            return 0
        cancel_event = threading.Event()
        install_cancel_handlers(cancel_event)
        result = export_captioned_video(
            request.input_video,
            captions,
            request.style,
            request.export_spec,
            request.output_dir or request.input_video.resolve().parent,
            fonts,
            ffmpeg_path=config.ffmpeg_path,
            ffprobe_path=config.ffprobe_path,
            cancel_event=cancel_event,
        )
        sys.stdout.write(
            json.dumps(
                {
                    "video": str(result.video_path),
                    "captions": str(result.caption_path),
                    "width": result.width,
                    "height": result.height,
                    "mimeType": result.mime_type,
                    "captionMimeType": result.caption_mime_type,
                    "framesRendered": result.frames_rendered,
                    "framesWritten": result.frames_written,
                    "clicks": result.click_count,
                    "hasAudio": result.has_audio,
                    "stoppedEarly": result.stopped_early,
                }
            )
            + "\n"
        )
        return 0
    except CaptionValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except TranscriptionError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except ExportError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except KeyboardInterrupt:
        LOGGER.error("caption_video.cancelled: interrupted")
        return 1
    except Exception as exc:
        LOGGER.error("caption_video.unhandled_error: %s", str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
