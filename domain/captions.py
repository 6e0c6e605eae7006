"""Domain types and parsing for caption_video."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
import math
import re
from typing import Mapping, Sequence, Tuple

INVALID_COLOR_CODE = "caption_video.input.invalid_color"
INVALID_CAPTION_CODE = "caption_video.input.invalid_caption"
INVALID_STYLE_CODE = "caption_video.input.invalid_style"
INVALID_EXPORT_CODE = "caption_video.input.invalid_export"
INVALID_PRESET_CODE = "caption_video.input.invalid_preset"
INVALID_TRACK_CODE = "caption_video.input.invalid_track"
INPUT_FILE_CODE = "caption_video.input.file_error"

HEX_COLOR_PATTERN = re.compile(r"#([0-9a-fA-F]{6})")
RTL_PATTERN = re.compile(r"[\u0600-\u06FF]")
SUPPORTED_FRAME_RATES = (24, 30, 60)


class CaptionValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class AnimationStyle(str, Enum):
    """Supported caption animation styles."""

    NONE = "none"
    FADE = "fade"
    SLIDE = "slide"
    POP = "pop"
    TYPEWRITER = "typewriter"
    GLOW = "glow"


class ContainerFormat(str, Enum):
    """Supported output containers."""

    MP4 = "mp4"
    WEBM = "webm"


class CaptionFormat(str, Enum):
    """Supported caption sidecar formats."""

    SRT = "srt"
    VTT = "vtt"


@dataclass(frozen=True)
class Caption:
    """Timed caption text."""

    caption_id: int
    start_seconds: float
    end_seconds: float
    text: str

    def __post_init__(self) -> None:
        if not math.isfinite(self.start_seconds) or not math.isfinite(
            self.end_seconds
        ):
            raise CaptionValidationError(
                INVALID_CAPTION_CODE, "caption times must be finite"
            )
        if self.start_seconds < 0:
            raise CaptionValidationError(
                INVALID_CAPTION_CODE, "caption start time must be non-negative"
            )
        if self.end_seconds <= self.start_seconds:
            raise CaptionValidationError(
                INVALID_CAPTION_CODE,
                f"caption {self.caption_id} end time must be after start time",
            )

    @property
    def duration_seconds(self) -> float:
        """Return the caption duration in seconds."""
        return self.end_seconds - self.start_seconds

    def contains(self, time_seconds: float) -> bool:
        """Return True when the time falls inside the closed caption window."""
        return self.start_seconds <= time_seconds <= self.end_seconds


@dataclass(frozen=True)
class BorderStyle:
    """Caption box border."""

    width: float = 2.0
    color: str = "#FFFFFF"
    radius: float = 20.0

    def __post_init__(self) -> None:
        if self.width < 0:
            raise CaptionValidationError(
                INVALID_STYLE_CODE, "border width must be non-negative"
            )
        if self.radius < 0:
            raise CaptionValidationError(
                INVALID_STYLE_CODE, "border radius must be non-negative"
            )
        parse_hex_color_to_rgba(self.color)


@dataclass(frozen=True)
class TextStyle:
    """Caption typography."""

    font_family: str = "Cairo, sans-serif"
    font_size: float = 51.0
    font_weight: str = "700"
    text_color: str = "#FFFFFF"
    line_height: float = 1.5
    typewriter_sound: bool = False

    def __post_init__(self) -> None:
        if not self.font_family.strip():
            raise CaptionValidationError(
                INVALID_STYLE_CODE, "font_family must be non-empty"
            )
        if self.font_size <= 0:
            raise CaptionValidationError(
                INVALID_STYLE_CODE, "font_size must be positive"
            )
        if self.line_height <= 0:
            raise CaptionValidationError(
                INVALID_STYLE_CODE, "line_height must be positive"
            )
        parse_font_weight(self.font_weight)
        parse_hex_color_to_rgba(self.text_color)


@dataclass(frozen=True)
class BoxStyle:
    """Caption background box geometry and colour."""

    background_color: str = "#000000"
    background_opacity: float = 0.6
    padding: float = 10.0
    vertical_margin: float = 85.0
    horizontal_margin: float = 0.0
    border: BorderStyle = field(default_factory=BorderStyle)

    def __post_init__(self) -> None:
        if not 0.0 <= self.background_opacity <= 1.0:
            raise CaptionValidationError(
                INVALID_STYLE_CODE, "background_opacity must be between 0 and 1"
            )
        if not 0.0 <= self.padding <= 20.0:
            raise CaptionValidationError(
                INVALID_STYLE_CODE, "padding must be between 0 and 20"
            )
        if not 0.0 <= self.vertical_margin <= 100.0:
            raise CaptionValidationError(
                INVALID_STYLE_CODE, "vertical_margin must be between 0 and 100"
            )
        if not -50.0 <= self.horizontal_margin <= 50.0:
            raise CaptionValidationError(
                INVALID_STYLE_CODE, "horizontal_margin must be between -50 and 50"
            )
        parse_hex_color_to_rgba(self.background_color)


@dataclass(frozen=True)
class StyleSpec:
    """Full visual and animation configuration for caption rendering."""

    text_style: TextStyle = field(default_factory=TextStyle)
    box_style: BoxStyle = field(default_factory=BoxStyle)
    animation_style: AnimationStyle = AnimationStyle.NONE

    def __post_init__(self) -> None:
        if not isinstance(self.animation_style, AnimationStyle):
            raise CaptionValidationError(
                INVALID_STYLE_CODE, "animation_style is invalid"
            )


@dataclass(frozen=True)
class Preset:
    """Named style preset."""

    name: str
    options: StyleSpec

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise CaptionValidationError(
                INVALID_PRESET_CODE, "preset name must be non-empty"
            )


@dataclass(frozen=True)
class ExportSpec:
    """Validated export options.

    ``embed_on_original`` and ``green_screen`` select the background layer and
    are mutually exclusive; embedding wins and clears the green screen.
    """

    frame_rate: int = 30
    container_format: ContainerFormat = ContainerFormat.MP4
    caption_format: CaptionFormat = CaptionFormat.SRT
    include_audio: bool = True
    green_screen: bool = True
    embed_on_original: bool = False
    apply_silence_skip: bool = False
    silence_threshold_db: float = -20.0

    def __post_init__(self) -> None:
        if self.frame_rate not in SUPPORTED_FRAME_RATES:
            raise CaptionValidationError(
                INVALID_EXPORT_CODE,
                f"frame_rate must be one of {SUPPORTED_FRAME_RATES}",
            )
        if not isinstance(self.container_format, ContainerFormat):
            raise CaptionValidationError(
                INVALID_EXPORT_CODE, "container_format is invalid"
            )
        if not isinstance(self.caption_format, CaptionFormat):
            raise CaptionValidationError(
                INVALID_EXPORT_CODE, "caption_format is invalid"
            )
        if self.silence_threshold_db > 0:
            raise CaptionValidationError(
                INVALID_EXPORT_CODE, "silence_threshold_db must not be positive"
            )
        if self.embed_on_original and self.green_screen:
            object.__setattr__(self, "green_screen", False)

    @property
    def transparent_background(self) -> bool:
        """Return True when neither the source nor the green screen backs the captions."""
        return not self.embed_on_original and not self.green_screen

    def with_embed_on_original(self, enabled: bool) -> "ExportSpec":
        """Toggle embedding on the source video; enabling clears green screen."""
        return replace(
            self,
            embed_on_original=enabled,
            green_screen=False if enabled else self.green_screen,
        )

    def with_green_screen(self, enabled: bool) -> "ExportSpec":
        """Toggle the chroma-key background."""
        if enabled and self.embed_on_original:
            raise CaptionValidationError(
                INVALID_EXPORT_CODE,
                "green_screen cannot be enabled while embedding on the original",
            )
        return replace(self, green_screen=enabled)


def parse_hex_color_to_rgba(
    color_value: str, opacity: float = 1.0
) -> Tuple[int, int, int, int]:
    """Parse a #RRGGBB colour into an RGBA tuple scaled by opacity."""
    match_value = HEX_COLOR_PATTERN.fullmatch(color_value.strip())
    if not match_value:
        raise CaptionValidationError(
            INVALID_COLOR_CODE,
            f"invalid color value: {color_value!r}",
        )

    rgb_hex = match_value.group(1)
    red_value = int(rgb_hex[0:2], 16)
    green_value = int(rgb_hex[2:4], 16)
    blue_value = int(rgb_hex[4:6], 16)
    alpha_value = int(round(255 * min(1.0, max(0.0, opacity))))
    return (red_value, green_value, blue_value, alpha_value)


def parse_font_weight(weight_value: str) -> int:
    """Parse a CSS font weight into its numeric value."""
    normalized = str(weight_value).strip().lower()
    if normalized == "normal":
        return 400
    if normalized == "bold":
        return 700
    if not normalized.isdigit():
        raise CaptionValidationError(
            INVALID_STYLE_CODE, f"invalid font weight: {weight_value!r}"
        )
    return int(normalized)


def parse_animation_style(value: str) -> AnimationStyle:
    """Parse an animation style name."""
    normalized = value.strip().lower()
    try:
        return AnimationStyle(normalized)
    except ValueError as exc:
        raise CaptionValidationError(
            INVALID_STYLE_CODE, f"invalid animation style: {value!r}"
        ) from exc


def parse_container_format(value: str) -> ContainerFormat:
    """Parse a container name or MIME type such as ``video/mp4``."""
    normalized = value.strip().lower()
    if normalized.startswith("video/"):
        normalized = normalized[len("video/") :].split(";", 1)[0]
    try:
        return ContainerFormat(normalized)
    except ValueError as exc:
        raise CaptionValidationError(
            INVALID_EXPORT_CODE, f"invalid container format: {value!r}"
        ) from exc


def parse_caption_format(value: str) -> CaptionFormat:
    """Parse a caption sidecar format name."""
    normalized = value.strip().lower().lstrip(".")
    try:
        return CaptionFormat(normalized)
    except ValueError as exc:
        raise CaptionValidationError(
            INVALID_EXPORT_CODE, f"invalid caption format: {value!r}"
        ) from exc


def is_rtl_text(text_value: str) -> bool:
    """Return True when the text contains Arabic-range codepoints."""
    return RTL_PATTERN.search(text_value) is not None


def parse_caption_records(payload: object) -> Tuple[Caption, ...]:
    """Parse a transcription payload (list of id/start/end/text objects)."""
    if not isinstance(payload, list):
        raise CaptionValidationError(
            INVALID_CAPTION_CODE, "caption payload must be a JSON array"
        )
    captions: list[Caption] = []
    for index_value, record in enumerate(payload):
        if not isinstance(record, dict):
            raise CaptionValidationError(
                INVALID_CAPTION_CODE, f"caption record {index_value} is not an object"
            )
        missing = [key for key in ("id", "start", "end", "text") if key not in record]
        if missing:
            raise CaptionValidationError(
                INVALID_CAPTION_CODE,
                f"caption record {index_value} missing {', '.join(missing)}",
            )
        caption_id, start_value, end_value, text_value = (
            record["id"],
            record["start"],
            record["end"],
            record["text"],
        )
        for label, number in (("id", caption_id), ("start", start_value), ("end", end_value)):
            if isinstance(number, bool) or not isinstance(number, (int, float)):
                raise CaptionValidationError(
                    INVALID_CAPTION_CODE,
                    f"caption record {index_value} {label} must be a number",
                )
        if not isinstance(text_value, str):
            raise CaptionValidationError(
                INVALID_CAPTION_CODE,
                f"caption record {index_value} text must be a string",
            )
        if float(caption_id) != int(caption_id):
            raise CaptionValidationError(
                INVALID_CAPTION_CODE,
                f"caption record {index_value} id must be an integer",
            )
        captions.append(
            Caption(
                caption_id=int(caption_id),
                start_seconds=float(start_value),
                end_seconds=float(end_value),
                text=text_value,
            )
        )
    ids = [caption.caption_id for caption in captions]
    if len(set(ids)) != len(ids):
        raise CaptionValidationError(INVALID_CAPTION_CODE, "caption ids must be unique")
    return tuple(captions)


def replace_caption_text(
    captions: Sequence[Caption], caption_id: int, text_value: str
) -> Tuple[Caption, ...]:
    """Return captions with the text of one caption replaced, keeping its id."""
    if not any(caption.caption_id == caption_id for caption in captions):
        raise CaptionValidationError(
            INVALID_CAPTION_CODE, f"unknown caption id: {caption_id}"
        )
    return tuple(
        replace(caption, text=text_value) if caption.caption_id == caption_id else caption
        for caption in captions
    )


def sort_captions(captions: Sequence[Caption]) -> Tuple[Caption, ...]:
    """Sort captions by start time, keeping list order for equal starts."""
    return tuple(sorted(captions, key=lambda caption: caption.start_seconds))


def find_overlapping_captions(
    captions: Sequence[Caption],
) -> Tuple[Tuple[Caption, Caption], ...]:
    """Return consecutive caption pairs (by start time) whose windows overlap."""
    ordered = sort_captions(captions)
    return tuple(
        (current, following)
        for current, following in zip(ordered, ordered[1:])
        if following.start_seconds < current.end_seconds
    )


def find_active_caption(
    captions: Sequence[Caption], time_seconds: float
) -> Caption | None:
    """Return the first caption in list order whose window contains the time."""
    for caption in captions:
        if caption.contains(time_seconds):
            return caption
    return None


def style_from_mapping(payload: Mapping[str, object]) -> StyleSpec:
    """Build a StyleSpec from the camelCase interchange mapping."""
    try:
        text_payload = payload.get("textStyle", {})
        box_payload = payload.get("boxStyle", {})
        if not isinstance(text_payload, Mapping) or not isinstance(box_payload, Mapping):
            raise CaptionValidationError(
                INVALID_STYLE_CODE, "textStyle and boxStyle must be objects"
            )
        border_payload = box_payload.get("border", {})
        if not isinstance(border_payload, Mapping):
            raise CaptionValidationError(INVALID_STYLE_CODE, "border must be an object")
        defaults_text = TextStyle()
        defaults_box = BoxStyle()
        defaults_border = defaults_box.border
        border = BorderStyle(
            width=float(border_payload.get("width", defaults_border.width)),
            color=str(border_payload.get("color", defaults_border.color)),
            radius=float(border_payload.get("radius", defaults_border.radius)),
        )
        text_style = TextStyle(
            font_family=str(text_payload.get("fontFamily", defaults_text.font_family)),
            font_size=float(text_payload.get("fontSize", defaults_text.font_size)),
            font_weight=str(text_payload.get("fontWeight", defaults_text.font_weight)),
            text_color=str(text_payload.get("textColor", defaults_text.text_color)),
            line_height=float(text_payload.get("lineHeight", defaults_text.line_height)),
            typewriter_sound=bool(
                text_payload.get("typewriterSound", defaults_text.typewriter_sound)
            ),
        )
        box_style = BoxStyle(
            background_color=str(
                box_payload.get("backgroundColor", defaults_box.background_color)
            ),
            background_opacity=float(
                box_payload.get("backgroundOpacity", defaults_box.background_opacity)
            ),
            padding=float(box_payload.get("padding", defaults_box.padding)),
            vertical_margin=float(
                box_payload.get("verticalMargin", defaults_box.vertical_margin)
            ),
            horizontal_margin=float(
                box_payload.get("horizontalMargin", defaults_box.horizontal_margin)
            ),
            border=border,
        )
        animation_style = parse_animation_style(
            str(payload.get("animationStyle", AnimationStyle.NONE.value))
        )
    except (TypeError, ValueError) as exc:
        if isinstance(exc, CaptionValidationError):
            raise
        raise CaptionValidationError(
            INVALID_STYLE_CODE, f"invalid style value: {exc}"
        ) from exc
    return StyleSpec(
        text_style=text_style, box_style=box_style, animation_style=animation_style
    )


def style_to_mapping(style: StyleSpec) -> dict[str, object]:
    """Convert a StyleSpec to the camelCase interchange mapping."""
    text_style = style.text_style
    box_style = style.box_style
    return {
        "textStyle": {
            "fontFamily": text_style.font_family,
            "fontSize": text_style.font_size,
            "fontWeight": text_style.font_weight,
            "textColor": text_style.text_color,
            "lineHeight": text_style.line_height,
            "typewriterSound": text_style.typewriter_sound,
        },
        "boxStyle": {
            "backgroundColor": box_style.background_color,
            "backgroundOpacity": box_style.background_opacity,
            "padding": box_style.padding,
            "verticalMargin": box_style.vertical_margin,
            "horizontalMargin": box_style.horizontal_margin,
            "border": {
                "width": box_style.border.width,
                "color": box_style.border.color,
                "radius": box_style.border.radius,
            },
        },
        "animationStyle": style.animation_style.value,
    }
