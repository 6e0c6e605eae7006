"""SRT and WebVTT caption track serialization."""

from __future__ import annotations

import logging
from pathlib import Path
import re
from typing import Sequence, Tuple

from domain.captions import (
    INPUT_FILE_CODE,
    INVALID_TRACK_CODE,
    Caption,
    CaptionFormat,
    CaptionValidationError,
    ContainerFormat,
)

LOGGER = logging.getLogger("caption_track")

VTT_HEADER = "WEBVTT"
CAPTION_MIME_TYPES = {
    CaptionFormat.SRT: "text/plain;charset=utf-8",
    CaptionFormat.VTT: "text/vtt;charset=utf-8",
}
CAPTIONED_VIDEO_SUFFIX = "_captioned"
TIME_RANGE_PATTERN = re.compile(
    r"^(?P<start>(?:\d{2,}:)?\d{2}:\d{2}[,.]\d{3})\s*-->\s*"
    r"(?P<end>(?:\d{2,}:)?\d{2}:\d{2}[,.]\d{3})(?:\s+.*)?$"
)
TIMESTAMP_PATTERN = re.compile(
    r"^(?:(?P<hours>\d{2,}):)?(?P<minutes>\d{2}):(?P<seconds>\d{2})[,.](?P<millis>\d{3})$"
)


def seconds_to_milliseconds(seconds: float) -> int:
    """Round a time in seconds to whole milliseconds."""
    if seconds < 0:
        raise CaptionValidationError(
            INVALID_TRACK_CODE, "timestamp seconds must be non-negative"
        )
    return int(round(seconds * 1000))


def format_timestamp(seconds: float, caption_format: CaptionFormat) -> str:
    """Format seconds as ``HH:MM:SS,mmm`` (SRT) or ``HH:MM:SS.mmm`` (VTT)."""
    total_seconds, millis = divmod(seconds_to_milliseconds(seconds), 1000)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, whole_seconds = divmod(remainder, 60)
    separator = "," if caption_format == CaptionFormat.SRT else "."
    return f"{hours:02d}:{minutes:02d}:{whole_seconds:02d}{separator}{millis:03d}"


def parse_timestamp(value: str) -> float:
    """Parse an SRT or VTT timestamp into seconds."""
    match_value = TIMESTAMP_PATTERN.fullmatch(value.strip())
    if not match_value:
        raise CaptionValidationError(
            INVALID_TRACK_CODE, f"invalid timestamp: {value!r}"
        )
    hours = int(match_value.group("hours") or 0)
    minutes = int(match_value.group("minutes"))
    seconds = int(match_value.group("seconds"))
    millis = int(match_value.group("millis"))
    total_millis = ((hours * 60 + minutes) * 60 + seconds) * 1000 + millis
    return total_millis / 1000.0


def serialize_captions(captions: Sequence[Caption], caption_format: CaptionFormat) -> str:
    """Serialize captions into an SRT or WebVTT document."""
    blocks: list[str] = []
    for caption in captions:
        lines: list[str] = []
        if caption_format == CaptionFormat.SRT:
            lines.append(str(caption.caption_id))
        lines.append(
            f"{format_timestamp(caption.start_seconds, caption_format)} --> "
            f"{format_timestamp(caption.end_seconds, caption_format)}"
        )
        lines.append(caption.text)
        blocks.append("\n".join(lines) + "\n")
    content = "\n".join(blocks)
    if caption_format == CaptionFormat.VTT:
        return f"{VTT_HEADER}\n\n{content}"
    return content


def split_blocks(text_value: str) -> list[list[str]]:
    """Split a caption document into blank-line separated blocks."""
    blocks: list[list[str]] = []
    current: list[str] = []
    for raw_line in text_value.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        line = raw_line.rstrip()
        if line.strip():
            current.append(line)
            continue
        if current:
            blocks.append(current)
            current = []
    if current:
        blocks.append(current)
    return blocks


def parse_caption_track(text_value: str) -> Tuple[Caption, ...]:
    """Parse an SRT or WebVTT document into captions.

    SRT numeric ids are kept; VTT cues (and SRT blocks without ids) are
    numbered by position starting at 1.
    """
    content = text_value.lstrip("\ufeff")
    blocks = split_blocks(content)
    if blocks and blocks[0][0].startswith(VTT_HEADER):
        blocks = blocks[1:]
    captions: list[Caption] = []
    for block_index, block in enumerate(blocks, start=1):
        if block[0].startswith(("NOTE", "STYLE", "REGION")):
            continue
        timing_index = next(
            (
                index_value
                for index_value, line in enumerate(block)
                if TIME_RANGE_PATTERN.match(line.strip())
            ),
            None,
        )
        if timing_index is None:
            raise CaptionValidationError(
                INVALID_TRACK_CODE, f"caption block {block_index} has no time range"
            )
        caption_id = len(captions) + 1
        if timing_index > 0 and block[timing_index - 1].strip().isdigit():
            caption_id = int(block[timing_index - 1].strip())
        match_value = TIME_RANGE_PATTERN.match(block[timing_index].strip())
        captions.append(
            Caption(
                caption_id=caption_id,
                start_seconds=parse_timestamp(match_value.group("start")),
                end_seconds=parse_timestamp(match_value.group("end")),
                text="\n".join(block[timing_index + 1 :]),
            )
        )
    return tuple(captions)


def caption_output_name(base_name: str, caption_format: CaptionFormat) -> str:
    """Return the sidecar file name for a source base name."""
    return f"{base_name}.{caption_format.value}"


def video_output_name(base_name: str, container_format: ContainerFormat) -> str:
    """Return the captioned video file name for a source base name."""
    return f"{base_name}{CAPTIONED_VIDEO_SUFFIX}.{container_format.value}"


def write_caption_track(
    file_path: Path, captions: Sequence[Caption], caption_format: CaptionFormat
) -> Path:
    """Serialize captions and write them as UTF-8."""
    if not file_path.parent.exists():
        raise CaptionValidationError(
            INPUT_FILE_CODE, f"output directory does not exist: {file_path.parent}"
        )
    try:
        file_path.write_text(serialize_captions(captions, caption_format), encoding="utf-8")
    except OSError as exc:
        raise CaptionValidationError(
            INPUT_FILE_CODE, f"failed to write caption file: {file_path}"
        ) from exc
    LOGGER.info("caption_track.write: %s (%d captions)", file_path, len(captions))
    return file_path


def read_caption_track(file_path: Path) -> Tuple[Caption, ...]:
    """Read and parse an SRT or WebVTT file."""
    try:
        content = file_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise CaptionValidationError(
            INPUT_FILE_CODE, f"failed to read caption file: {file_path}"
        ) from exc
    return parse_caption_track(content)
