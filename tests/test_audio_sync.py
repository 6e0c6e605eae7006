"""Unit tests for typewriter click synchronization."""

from __future__ import annotations

from pathlib import Path
import wave

import numpy as np
import pytest

from service.audio_sync import (
    CLICK_DURATION_SECONDS,
    CLICK_END_GAIN,
    CLICK_SAMPLE_RATE,
    CLICK_START_GAIN,
    PCM_MAX,
    AudioSynchronizer,
    click_gain,
    render_click_samples,
    write_click_track,
)


def test_clicks_fire_only_when_count_grows() -> None:
    """Record one click per frame whose count increased."""
    synchronizer = AudioSynchronizer(sound_enabled=True, has_audio_graph=True)
    fired = [
        synchronizer.observe(count, index_value / 30.0)
        for index_value, count in enumerate([0, 0, 1, 1, 3, 3, 3, 5])
    ]
    assert fired == [True, False, True, False, True, False, False, True]
    assert synchronizer.click_times == pytest.approx((0.0, 2 / 30.0, 4 / 30.0, 7 / 30.0))


def test_minus_one_never_clicks() -> None:
    """Non-typewriter frames report -1 and stay silent."""
    synchronizer = AudioSynchronizer(sound_enabled=True, has_audio_graph=True)
    assert not synchronizer.observe(-1, 0.0)
    assert synchronizer.observe(0, 0.1)
    assert synchronizer.click_times == (0.1,)


def test_reset_rearms_after_gap() -> None:
    """A frame with no caption lets the next caption click again."""
    synchronizer = AudioSynchronizer(sound_enabled=True, has_audio_graph=True)
    synchronizer.observe(4, 0.0)
    assert not synchronizer.observe(2, 0.1)
    synchronizer.reset()
    assert synchronizer.observe(2, 0.2)


def test_next_caption_with_lower_count_waits_without_reset() -> None:
    """Without a gap, a new caption clicks once its count passes the previous one."""
    synchronizer = AudioSynchronizer(sound_enabled=True, has_audio_graph=True)
    synchronizer.observe(9, 0.0)
    assert not synchronizer.observe(0, 0.1)
    assert synchronizer.observe(1, 0.2)


@pytest.mark.parametrize(
    ("sound_enabled", "has_audio_graph"),
    [(False, True), (True, False), (False, False)],
)
def test_disabled_synchronizer_is_silent(sound_enabled: bool, has_audio_graph: bool) -> None:
    """Skip clicks when sound is off or no audio graph exists."""
    synchronizer = AudioSynchronizer(sound_enabled, has_audio_graph)
    assert not synchronizer.enabled
    for index_value in range(5):
        assert not synchronizer.observe(index_value, index_value / 10.0)
    assert synchronizer.click_times == ()


def test_click_gain_envelope() -> None:
    """Decay from 0.4 to 0.0001 over 40 milliseconds."""
    assert click_gain(0.0) == pytest.approx(CLICK_START_GAIN)
    assert click_gain(0.04) == pytest.approx(CLICK_END_GAIN)
    assert click_gain(0.045) == pytest.approx(CLICK_END_GAIN)
    assert click_gain(0.01) < click_gain(0.0)


def test_render_click_samples_places_clicks() -> None:
    """Silence between clicks and noise at click positions."""
    samples = render_click_samples([0.5], 1.0, sample_rate=8000, seed=7)
    assert samples.dtype == np.int16
    assert samples.shape == (8000,)
    assert not samples[:4000].any()
    assert samples[4000:4400].any()
    assert not samples[4400:].any()


def test_render_click_samples_is_seeded() -> None:
    """The same seed yields the same buffer."""
    first = render_click_samples([0.0, 0.2], 0.5, sample_rate=8000, seed=3)
    second = render_click_samples([0.0, 0.2], 0.5, sample_rate=8000, seed=3)
    assert np.array_equal(first, second)


def test_click_past_end_is_dropped() -> None:
    """Clicks outside the track duration are ignored."""
    samples = render_click_samples([2.0], 1.0, sample_rate=8000, seed=1)
    assert not samples.any()


def test_click_at_end_is_truncated() -> None:
    """A click starting near the end is cut at the track length."""
    samples = render_click_samples([0.99], 1.0, sample_rate=8000, seed=2)
    assert samples.shape == (8000,)
    assert samples[7920:].any()


def test_long_source_with_one_click() -> None:
    """A ten-minute track with one click stays silent outside that click."""
    samples = render_click_samples([1.0], 600.0, seed=4)
    assert samples.shape == (600 * CLICK_SAMPLE_RATE,)
    click_end = CLICK_SAMPLE_RATE + int(CLICK_SAMPLE_RATE * CLICK_DURATION_SECONDS)
    assert np.count_nonzero(samples[:CLICK_SAMPLE_RATE]) == 0
    assert np.count_nonzero(samples[CLICK_SAMPLE_RATE:click_end]) > 0
    assert np.count_nonzero(samples[click_end:]) == 0
    assert int(np.abs(samples).max()) <= int(CLICK_START_GAIN * PCM_MAX) + 1


def test_overlapping_clicks_are_clipped() -> None:
    """Stacked clicks never exceed the 16-bit range."""
    samples = render_click_samples([0.0] * 10, 0.1, sample_rate=8000, seed=9)
    assert int(samples.max()) <= PCM_MAX
    assert int(samples.min()) >= -PCM_MAX


def test_write_click_track_wav(tmp_path: Path) -> None:
    """Write a mono 16-bit WAV spanning the requested duration."""
    output_path = write_click_track(
        tmp_path / "clicks.wav", [0.1, 0.3], 0.5, sample_rate=16000, seed=5
    )
    with wave.open(str(output_path), "rb") as wav_file:
        assert wav_file.getnchannels() == 1
        assert wav_file.getsampwidth() == 2
        assert wav_file.getframerate() == 16000
        assert wav_file.getnframes() == 8000
        frames = wav_file.readframes(wav_file.getnframes())
    assert any(frames)
