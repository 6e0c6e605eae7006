"""Caption layout and animated compositing onto RGBA surfaces."""

from __future__ import annotations

from dataclasses import dataclass
import functools
import logging
import os
import re
from typing import Callable, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFilter, ImageFont, features

from domain.captions import (
    Caption,
    CaptionValidationError,
    StyleSpec,
    find_active_caption,
    is_rtl_text,
    parse_font_weight,
    parse_hex_color_to_rgba,
)
from service.animation import AnimationState, compute_animation_state, reveal_lines

LOGGER = logging.getLogger("caption_renderer")

FONT_LOAD_CODE = "caption_video.input.fonts_unloadable"
SURFACE_MODE_CODE = "caption_video.render.surface_mode"
REFERENCE_WIDTH = 1280.0
MAX_LINE_WIDTH_RATIO = 0.8
H_PADDING_DIVISOR = 10.0
V_PADDING_DIVISOR = 20.0
BOLD_WEIGHT_THRESHOLD = 600
GENERIC_FAMILIES = {"serif", "sans-serif", "monospace", "cursive", "fantasy", "system-ui"}
FONT_EXTENSIONS = (".ttf", ".otf")


@functools.lru_cache(maxsize=1)
def supports_text_direction() -> bool:
    """Return True when Pillow can shape text with an explicit direction."""
    return bool(features.check_feature("raqm"))


def normalize_font_name(value: str) -> str:
    """Lowercase a family or file name and drop everything but letters and digits."""
    return re.sub(r"[^0-9a-z]", "", value.lower())


def split_font_families(font_family: str) -> Tuple[str, ...]:
    """Split a CSS-style family list into concrete family names."""
    families: list[str] = []
    for token in font_family.split(","):
        name = token.strip().strip("\"'").strip()
        if name and name.lower() not in GENERIC_FAMILIES:
            families.append(name)
    return tuple(families)


class FontResolver:
    """Resolve CSS-style font families to FreeType fonts from a directory."""

    def __init__(self, fonts_dir: str | None) -> None:
        self.fonts_dir = fonts_dir
        self.font_files = self._list_font_files(fonts_dir)
        self._cache: dict[Tuple[str | None, int], ImageFont.FreeTypeFont] = {}

    @staticmethod
    def _list_font_files(fonts_dir: str | None) -> Tuple[str, ...]:
        if not fonts_dir:
            return ()
        if not os.path.isdir(fonts_dir):
            LOGGER.warning(
                "%s: fonts directory does not exist: %s", FONT_LOAD_CODE, fonts_dir
            )
            return ()
        return tuple(
            os.path.join(fonts_dir, entry_name)
            for entry_name in sorted(os.listdir(fonts_dir))
            if entry_name.lower().endswith(FONT_EXTENSIONS)
        )

    def resolve_path(self, font_family: str, font_weight: str) -> str | None:
        """Return the best font file for a family list and weight."""
        if not self.font_files:
            return None
        wants_bold = parse_font_weight(font_weight) >= BOLD_WEIGHT_THRESHOLD
        for family in split_font_families(font_family):
            family_key = normalize_font_name(family)
            candidates = [
                path
                for path in self.font_files
                if normalize_font_name(os.path.splitext(os.path.basename(path))[0]).startswith(
                    family_key
                )
            ]
            if not candidates:
                continue
            bold = [path for path in candidates if "bold" in os.path.basename(path).lower()]
            regular = [path for path in candidates if "bold" not in os.path.basename(path).lower()]
            preferred = (bold or regular) if wants_bold else (regular or bold)
            return preferred[0]
        return self.font_files[0]

    def load(
        self, font_family: str, font_weight: str, font_size: int
    ) -> ImageFont.FreeTypeFont:
        """Load a font for the family list, caching by file and size."""
        font_path = self.resolve_path(font_family, font_weight)
        cache_key = (font_path, font_size)
        cached_font = self._cache.get(cache_key)
        if cached_font is not None:
            return cached_font
        if font_path is None:
            font = ImageFont.load_default(size=font_size)
        else:
            layout_engine = (
                ImageFont.Layout.RAQM if supports_text_direction() else ImageFont.Layout.BASIC
            )
            try:
                font = ImageFont.truetype(
                    font_path, size=font_size, layout_engine=layout_engine
                )
            except OSError as exc:
                raise CaptionValidationError(
                    FONT_LOAD_CODE, f"failed to load font {font_path} at size {font_size}"
                ) from exc
        self._cache[cache_key] = font
        return font


@dataclass(frozen=True)
class CaptionLayout:
    """Wrapped lines and box geometry for one caption on one surface."""

    font: ImageFont.FreeTypeFont
    lines: Tuple[str, ...]
    line_widths: Tuple[float, ...]
    base_font_size: float
    line_height: float
    h_padding: float
    v_padding: float
    max_line_width: float
    box_x: float
    box_y: float
    box_width: float
    box_height: float
    text_center_x: float
    direction: str

    @property
    def box_center(self) -> Tuple[float, float]:
        """Return the centre of the caption box."""
        return (self.box_x + self.box_width / 2.0, self.box_y + self.box_height / 2.0)

    def line_center_y(self, line_index: int) -> float:
        """Return the vertical centre of a wrapped line."""
        return (
            self.box_y
            + self.v_padding
            + self.line_height / 2.0
            + line_index * self.line_height
        )


def measure_text_width(
    draw_context: ImageDraw.ImageDraw,
    text_value: str,
    font: ImageFont.FreeTypeFont,
    direction: str,
) -> float:
    """Measure the advance width of a line of text."""
    if not text_value:
        return 0.0
    if supports_text_direction():
        return float(draw_context.textlength(text_value, font=font, direction=direction))
    return float(draw_context.textlength(text_value, font=font))


def wrap_words(
    words: Sequence[str], measure: Callable[[str], float], max_width: float
) -> Tuple[str, ...]:
    """Greedy word wrap; a single word wider than the limit stays on its own line."""
    if not words:
        return ("",)
    lines: list[str] = []
    current_line = words[0]
    for word in words[1:]:
        candidate = f"{current_line} {word}"
        if measure(candidate) < max_width:
            current_line = candidate
        else:
            lines.append(current_line)
            current_line = word
    lines.append(current_line)
    return tuple(lines)


def layout_caption(
    text_value: str,
    surface_width: int,
    surface_height: int,
    style: StyleSpec,
    fonts: FontResolver,
) -> CaptionLayout:
    """Compute resolution-independent layout for caption text."""
    text_style = style.text_style
    box_style = style.box_style
    base_font_size = text_style.font_size * surface_width / REFERENCE_WIDTH
    font = fonts.load(
        text_style.font_family,
        text_style.font_weight,
        max(1, int(round(base_font_size))),
    )
    direction = "rtl" if is_rtl_text(text_value) else "ltr"
    h_padding = base_font_size * (box_style.padding / H_PADDING_DIVISOR)
    v_padding = base_font_size * (box_style.padding / V_PADDING_DIVISOR)
    max_line_width = surface_width * MAX_LINE_WIDTH_RATIO - 2 * h_padding

    draw_context = ImageDraw.Draw(Image.new("RGBA", (1, 1)))

    def measure(line: str) -> float:
        return measure_text_width(draw_context, line, font, direction)

    lines = wrap_words(text_value.split(), measure, max_line_width)
    line_widths = tuple(measure(line) for line in lines)
    line_height = base_font_size * text_style.line_height
    box_height = len(lines) * line_height + 2 * v_padding
    box_width = max(line_widths) + 2 * h_padding
    horizontal_shift = surface_width * (box_style.horizontal_margin / 100.0)
    box_x = (surface_width - box_width) / 2.0 + horizontal_shift
    box_y = surface_height * (box_style.vertical_margin / 100.0) - box_height / 2.0

    return CaptionLayout(
        font=font,
        lines=lines,
        line_widths=line_widths,
        base_font_size=base_font_size,
        line_height=line_height,
        h_padding=h_padding,
        v_padding=v_padding,
        max_line_width=max_line_width,
        box_x=box_x,
        box_y=box_y,
        box_width=box_width,
        box_height=box_height,
        text_center_x=surface_width / 2.0 + horizontal_shift,
        direction=direction,
    )


def draw_caption_text(
    layer: Image.Image,
    layout: CaptionLayout,
    lines: Sequence[str],
    fill_rgba: Tuple[int, int, int, int],
) -> None:
    """Draw centred caption lines onto a layer."""
    draw_context = ImageDraw.Draw(layer)
    for line_index, line in enumerate(lines):
        if not line:
            continue
        position = (layout.text_center_x, layout.line_center_y(line_index))
        if supports_text_direction():
            draw_context.text(
                position,
                line,
                font=layout.font,
                fill=fill_rgba,
                anchor="mm",
                direction=layout.direction,
            )
        else:
            draw_context.text(position, line, font=layout.font, fill=fill_rgba, anchor="mm")


def apply_transform(
    layer: Image.Image, state: AnimationState, center: Tuple[float, float]
) -> Image.Image:
    """Scale and offset a layer around a centre point, then apply opacity."""
    result = layer
    if state.scale != 1.0 or state.offset_x or state.offset_y:
        center_x, center_y = center
        inverse = 1.0 / state.scale
        result = result.transform(
            result.size,
            Image.Transform.AFFINE,
            (
                inverse,
                0.0,
                center_x - (center_x + state.offset_x) * inverse,
                0.0,
                inverse,
                center_y - (center_y + state.offset_y) * inverse,
            ),
            resample=Image.Resampling.BICUBIC,
        )
    if state.opacity < 1.0:
        opacity = max(0.0, state.opacity)
        alpha = result.getchannel("A").point(lambda value: int(round(value * opacity)))
        result.putalpha(alpha)
    return result


def render_caption(
    surface: Image.Image,
    caption: Caption,
    time_seconds: float,
    style: StyleSpec,
    fonts: FontResolver,
    is_export_pass: bool = False,
) -> int:
    """Composite an animated caption onto an RGBA surface.

    Returns the typewriter character count, or -1 for other animation styles.
    """
    if surface.mode != "RGBA":
        raise CaptionValidationError(
            SURFACE_MODE_CODE, f"surface must be RGBA, got {surface.mode}"
        )
    surface_width, surface_height = surface.size
    layout = layout_caption(caption.text, surface_width, surface_height, style, fonts)
    state = compute_animation_state(caption, time_seconds, style.animation_style)
    if state.opacity <= 0.0:
        return state.typed_chars

    box_style = style.box_style
    border = box_style.border
    layer = Image.new("RGBA", surface.size, (0, 0, 0, 0))
    draw_context = ImageDraw.Draw(layer)
    box_rect = (
        int(round(layout.box_x)),
        int(round(layout.box_y)),
        int(round(layout.box_x + layout.box_width)),
        int(round(layout.box_y + layout.box_height)),
    )
    radius = int(min(border.radius, layout.box_width / 2.0, layout.box_height / 2.0))
    if box_style.background_opacity > 0 or is_export_pass:
        draw_context.rounded_rectangle(
            box_rect,
            radius=radius,
            fill=parse_hex_color_to_rgba(
                box_style.background_color, box_style.background_opacity
            ),
        )
    if border.width > 0:
        draw_context.rounded_rectangle(
            box_rect,
            radius=radius,
            outline=parse_hex_color_to_rgba(border.color),
            width=max(1, int(round(border.width))),
        )

    text_rgba = parse_hex_color_to_rgba(style.text_style.text_color)
    text_layer = Image.new("RGBA", surface.size, (0, 0, 0, 0))
    draw_caption_text(
        text_layer, layout, reveal_lines(layout.lines, state.typed_chars), text_rgba
    )
    if state.has_glow:
        glow_layer = text_layer.filter(ImageFilter.GaussianBlur(radius=state.glow_radius / 2.0))
        layer.alpha_composite(glow_layer)
    layer.alpha_composite(text_layer)

    surface.alpha_composite(apply_transform(layer, state, layout.box_center))
    return state.typed_chars


def render_preview_frame(
    captions: Sequence[Caption],
    time_seconds: float,
    size: Tuple[int, int],
    style: StyleSpec,
    fonts: FontResolver,
) -> Image.Image:
    """Render the transparent caption overlay shown over playback at a time."""
    overlay = Image.new("RGBA", size, (0, 0, 0, 0))
    active_caption = find_active_caption(captions, time_seconds)
    if active_caption is not None:
        render_caption(overlay, active_caption, time_seconds, style, fonts)
    return overlay
