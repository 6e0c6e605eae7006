"""Typewriter click events and their rendered audio track."""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Sequence, Tuple
import wave

import numpy as np

LOGGER = logging.getLogger("audio_sync")

CLICK_SAMPLE_RATE = 48000
CLICK_DURATION_SECONDS = 0.05
CLICK_DECAY_SECONDS = 0.04
CLICK_START_GAIN = 0.4
CLICK_END_GAIN = 0.0001
PCM_MAX = 32767


class AudioSynchronizer:
    """Turn per-frame typewriter counts into timed click events.

    A click is recorded when the revealed count grows compared to the previous
    rendered frame. Frames with no active caption reset the comparison.
    """

    def __init__(self, sound_enabled: bool, has_audio_graph: bool) -> None:
        self.sound_enabled = sound_enabled
        self.has_audio_graph = has_audio_graph
        self._last_char_count = -1
        self._click_times: list[float] = []

    @property
    def enabled(self) -> bool:
        """Return True when clicks will be recorded."""
        return self.sound_enabled and self.has_audio_graph

    @property
    def click_times(self) -> Tuple[float, ...]:
        """Return recorded click positions in seconds."""
        return tuple(self._click_times)

    def observe(self, char_count: int, position_seconds: float) -> bool:
        """Record a rendered frame's typed count; return True when a click fired."""
        fired = char_count > -1 and char_count > self._last_char_count and self.enabled
        if fired:
            self._click_times.append(position_seconds)
        self._last_char_count = char_count
        return fired

    def reset(self) -> None:
        """Forget the previous count after a frame with no active caption."""
        self._last_char_count = -1


def click_gain(offset_seconds: float) -> float:
    """Exponential decay envelope of a click at an offset from its start."""
    if offset_seconds >= CLICK_DECAY_SECONDS:
        return CLICK_END_GAIN
    ratio = CLICK_END_GAIN / CLICK_START_GAIN
    return CLICK_START_GAIN * math.pow(ratio, offset_seconds / CLICK_DECAY_SECONDS)


def click_envelope(sample_rate: int) -> np.ndarray:
    """Return the decay envelope sampled over one click."""
    sample_count = int(sample_rate * CLICK_DURATION_SECONDS)
    offsets = np.arange(sample_count, dtype=np.float32) / np.float32(sample_rate)
    ratio = CLICK_END_GAIN / CLICK_START_GAIN
    envelope = CLICK_START_GAIN * np.power(ratio, offsets / CLICK_DECAY_SECONDS)
    envelope[offsets >= CLICK_DECAY_SECONDS] = CLICK_END_GAIN
    return envelope.astype(np.float32)


def synthesize_click(sample_rate: int, rng: np.random.Generator) -> np.ndarray:
    """Return one white-noise click shaped by the decay envelope."""
    envelope = click_envelope(sample_rate)
    noise = rng.uniform(-1.0, 1.0, size=envelope.shape[0]).astype(np.float32)
    return noise * envelope


def render_click_samples(
    click_times: Sequence[float],
    duration_seconds: float,
    sample_rate: int = CLICK_SAMPLE_RATE,
    seed: int | None = None,
) -> np.ndarray:
    """Mix clicks at their positions into a 16-bit mono sample buffer."""
    total_samples = max(1, int(math.ceil(duration_seconds * sample_rate)))
    mixed = np.zeros(total_samples, dtype=np.float32)
    rng = np.random.default_rng(seed)
    for click_time in click_times:
        start_index = int(round(click_time * sample_rate))
        if start_index >= total_samples or start_index < 0:
            continue
        click = synthesize_click(sample_rate, rng)
        end_index = min(total_samples, start_index + click.shape[0])
        mixed[start_index:end_index] += click[: end_index - start_index]
    np.clip(mixed, -1.0, 1.0, out=mixed)
    return np.round(mixed * PCM_MAX).astype(np.int16)


def write_click_track(
    file_path: Path,
    click_times: Sequence[float],
    duration_seconds: float,
    sample_rate: int = CLICK_SAMPLE_RATE,
    seed: int | None = None,
) -> Path:
    """Write the click events as a mono 16-bit PCM WAV of the given duration."""
    samples = render_click_samples(click_times, duration_seconds, sample_rate, seed)
    with wave.open(str(file_path), "wb") as wav_file:
        wav_file.setnchannels(1)
        wav_file.setsampwidth(2)
        wav_file.setframerate(sample_rate)
        wav_file.writeframes(samples.astype("<i2").tobytes())
    LOGGER.info(
        "audio_sync.click_track: %s (%d clicks, %.3fs)",
        file_path,
        len(click_times),
        duration_seconds,
    )
    return file_path
