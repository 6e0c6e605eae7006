"""Time-derived caption animation state."""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Sequence, Tuple

from domain.captions import AnimationStyle, Caption

FADE_WINDOW_MAX_SECONDS = 0.2
FADE_WINDOW_RATIO = 0.25
SLIDE_DISTANCE_PIXELS = 50.0
POP_START_SCALE = 0.8
GLOW_START_RADIUS = 20.0
TYPEWRITER_PAUSE_MAX_SECONDS = 0.5
TYPEWRITER_PAUSE_RATIO = 0.4
NOT_TYPEWRITER = -1


@dataclass(frozen=True)
class AnimationState:
    """Transform and reveal values for one caption at one instant."""

    opacity: float = 1.0
    scale: float = 1.0
    offset_x: float = 0.0
    offset_y: float = 0.0
    glow_radius: float = 0.0
    typed_chars: int = NOT_TYPEWRITER

    @property
    def has_glow(self) -> bool:
        """Return True when a glow shadow should be painted."""
        return self.glow_radius > 0.0


def ease_out_cubic(progress: float) -> float:
    """Cubic ease-out curve on [0, 1]."""
    return 1.0 - math.pow(1.0 - progress, 3)


def compute_fade_window(duration_seconds: float) -> float:
    """Length of the entry and exit windows for a caption duration."""
    return min(FADE_WINDOW_MAX_SECONDS, duration_seconds * FADE_WINDOW_RATIO)


def compute_typewriter_pause(duration_seconds: float) -> float:
    """Hold time at the end of a typewriter caption."""
    return min(TYPEWRITER_PAUSE_MAX_SECONDS, duration_seconds * TYPEWRITER_PAUSE_RATIO)


def compute_typed_chars(
    text_length: int, time_into_caption: float, duration_seconds: float
) -> int:
    """Number of characters revealed by the typewriter at a caption offset."""
    typing_seconds = duration_seconds - compute_typewriter_pause(duration_seconds)
    progress = min(1.0, max(0.0, time_into_caption / typing_seconds))
    return int(math.floor(progress * text_length))


def compute_animation_state(
    caption: Caption, time_seconds: float, animation_style: AnimationStyle
) -> AnimationState:
    """Compute the animation state of a caption at an absolute time.

    The exit ramp is evaluated after the entry ramp so that, for captions
    shorter than twice the fade window, the exit value wins.
    """
    duration = caption.duration_seconds
    time_into_caption = time_seconds - caption.start_seconds
    fade_window = compute_fade_window(duration)
    fade_out_start = duration - fade_window

    opacity = 1.0
    scale = 1.0
    offset_y = 0.0
    glow_radius = 0.0

    if time_into_caption < fade_window:
        entry = ease_out_cubic(max(0.0, time_into_caption) / fade_window)
        if animation_style == AnimationStyle.FADE:
            opacity = entry
        elif animation_style == AnimationStyle.SLIDE:
            offset_y = SLIDE_DISTANCE_PIXELS * (1.0 - entry)
        elif animation_style == AnimationStyle.POP:
            scale = POP_START_SCALE + (1.0 - POP_START_SCALE) * entry
        elif animation_style == AnimationStyle.GLOW:
            opacity = entry
            glow_radius = (1.0 - entry) * GLOW_START_RADIUS

    if time_into_caption > fade_out_start and animation_style != AnimationStyle.TYPEWRITER:
        exit_progress = min(1.0, (time_into_caption - fade_out_start) / fade_window)
        if animation_style == AnimationStyle.FADE:
            opacity = 1.0 - ease_out_cubic(exit_progress)
        elif animation_style == AnimationStyle.SLIDE:
            offset_y = SLIDE_DISTANCE_PIXELS * ease_out_cubic(exit_progress)

    typed_chars = NOT_TYPEWRITER
    if animation_style == AnimationStyle.TYPEWRITER:
        typed_chars = compute_typed_chars(len(caption.text), time_into_caption, duration)

    return AnimationState(
        opacity=opacity,
        scale=scale,
        offset_y=offset_y,
        glow_radius=glow_radius,
        typed_chars=typed_chars,
    )


def reveal_lines(lines: Sequence[str], typed_chars: int) -> Tuple[str, ...]:
    """Slice wrapped lines to the typewriter reveal count.

    Counts accumulate across lines with one separator per line boundary.
    """
    if typed_chars < 0:
        return tuple(lines)
    revealed: list[str] = []
    chars_rendered = 0
    for line in lines:
        if chars_rendered > typed_chars:
            revealed.append("")
        elif chars_rendered + len(line) > typed_chars:
            revealed.append(line[: typed_chars - chars_rendered])
        else:
            revealed.append(line)
        chars_rendered += len(line) + 1
    return tuple(revealed)
