"""
Tests for chord_app/features.py: FFT, windows, chroma, bass, tempo.
"""

from __future__ import annotations

import numpy as np
import pytest

from chord_app.errors import AnalysisCancelled
from chord_app.features import (
    FeatureConfig,
    estimate_tempo,
    extract_features,
    fft_radix2,
    find_intro_frame,
    hann_window,
    ifft_radix2,
    resample_linear,
)
from chord_app.synth import chord_tone

SR = 22050


# ---------------------------------------------------------------------------
# FFT / window
# ---------------------------------------------------------------------------


class TestFFT:
    def test_matches_numpy_power_of_two(self) -> None:
        rng = np.random.default_rng(0)
        x = rng.standard_normal(256)
        np.testing.assert_allclose(fft_radix2(x), np.fft.fft(x), atol=1e-9)

    def test_zero_pads_to_next_power_of_two(self) -> None:
        rng = np.random.default_rng(1)
        x = rng.standard_normal(1000)
        out = fft_radix2(x)
        assert out.shape == (1024,)
        np.testing.assert_allclose(out, np.fft.fft(x, 1024), atol=1e-8)

    def test_batched_rows(self) -> None:
        rng = np.random.default_rng(2)
        x = rng.standard_normal((3, 64))
        np.testing.assert_allclose(fft_radix2(x), np.fft.fft(x, axis=1), atol=1e-9)

    def test_inverse_round_trip(self) -> None:
        rng = np.random.default_rng(3)
        x = rng.standard_normal(128)
        np.testing.assert_allclose(np.real(ifft_radix2(fft_radix2(x))), x, atol=1e-9)


class TestHannWindow:
    def test_cached_and_read_only(self) -> None:
        w1 = hann_window(4096)
        w2 = hann_window(4096)
        assert w1 is w2
        assert not w1.flags.writeable

    def test_shape_and_endpoints(self) -> None:
        w = hann_window(16)
        assert w[0] == pytest.approx(0.0)
        assert w[-1] == pytest.approx(0.0)
        assert w.max() <= 1.0


# ---------------------------------------------------------------------------
# Resampling
# ---------------------------------------------------------------------------


class TestResample:
    def test_same_rate_is_copy(self) -> None:
        x = np.arange(10, dtype=np.float64)
        y = resample_linear(x, SR, SR)
        np.testing.assert_array_equal(x, y)
        assert y is not x

    def test_downsample_length(self) -> None:
        x = np.zeros(44100)
        assert len(resample_linear(x, 44100, 22050)) == 22050

    def test_linear_ramp_preserved(self) -> None:
        x = np.arange(100, dtype=np.float64)
        y = resample_linear(x, 200, 100)
        np.testing.assert_allclose(y, np.arange(0, 100, 2, dtype=np.float64))

    def test_empty(self) -> None:
        assert len(resample_linear(np.zeros(0), 44100, 22050)) == 0


# ---------------------------------------------------------------------------
# Feature set
# ---------------------------------------------------------------------------


class TestExtractFeatures:
    def test_chroma_rows_sum_to_one_or_zero(self, c_major_features) -> None:
        sums = c_major_features.chroma.sum(axis=1)
        assert np.all(np.isclose(sums, 1.0) | np.isclose(sums, 0.0))
        assert np.all(c_major_features.chroma >= 0)

    def test_c_major_chroma_peaks(self, c_major_features) -> None:
        agg = c_major_features.chroma.mean(axis=0)
        top = set(np.argsort(agg)[-3:].tolist())
        assert top == {0, 4, 7}

    def test_frame_layout(self, c_major_features) -> None:
        f = c_major_features
        assert f.hop == 2205
        assert f.hop_seconds == pytest.approx(0.1)
        assert f.sample_rate == SR
        assert f.duration == pytest.approx(5.0, abs=1e-3)
        assert f.n_frames == 1 + (5 * SR - 4096) // 2205

    def test_arrays_are_read_only(self, c_major_features) -> None:
        with pytest.raises(ValueError):
            c_major_features.chroma[0, 0] = 1.0

    def test_bass_values_in_range(self, a_minor_features) -> None:
        bass = a_minor_features.bass
        assert np.all((bass == -1) | ((bass >= 0) & (bass <= 11)))

    def test_bass_finds_a(self, a_minor_features) -> None:
        bass = a_minor_features.bass
        detected = bass[bass >= 0]
        assert len(detected) >= 0.4 * len(bass)
        assert np.bincount(detected, minlength=12).argmax() == 9

    def test_no_bass_above_band(self, c_major_features) -> None:
        # C4 and up lie above the bass band
        assert np.sum(c_major_features.bass >= 0) <= 2

    def test_resamples_other_rates(self) -> None:
        x = chord_tone([60, 64, 67], 2.0, 44100)
        f = extract_features(x, 44100)
        assert f.sample_rate == SR
        assert f.duration == pytest.approx(2.0, abs=1e-3)

    def test_silence_defaults(self) -> None:
        f = extract_features(np.zeros(3 * SR), SR)
        assert f.bpm == 120.0
        assert np.all(f.chroma == 0)
        assert np.all(f.bass == -1)

    def test_too_short_gives_empty_set(self) -> None:
        f = extract_features(np.zeros(1000), SR)
        assert f.n_frames == 0
        assert f.bpm == 120.0

    def test_rejects_bad_input(self) -> None:
        with pytest.raises(ValueError):
            extract_features(np.zeros((2, 100)), SR)
        with pytest.raises(ValueError):
            extract_features(np.zeros(100), 0)

    def test_cancellation(self, c_major_signal) -> None:
        with pytest.raises(AnalysisCancelled):
            extract_features(c_major_signal, SR, cancel_check=lambda: True)

    def test_input_not_modified(self, c_major_signal) -> None:
        before = c_major_signal.copy()
        extract_features(c_major_signal, SR)
        np.testing.assert_array_equal(before, c_major_signal)


# ---------------------------------------------------------------------------
# Tempo / intro
# ---------------------------------------------------------------------------


class TestTempo:
    def test_too_few_frames(self) -> None:
        assert estimate_tempo(np.ones(3), 0.1) == 120.0

    def test_flat_energy_defaults(self) -> None:
        assert estimate_tempo(np.ones(100), 0.1) == 120.0

    def test_pulse_train(self) -> None:
        # one pulse every 5 frames at 0.1 s hop -> 0.5 s -> 120 BPM
        e = np.zeros(200)
        e[::5] = 1.0
        assert estimate_tempo(e, 0.1) == pytest.approx(120.0)

    def test_clamped_to_range(self) -> None:
        e = np.zeros(200)
        e[::8] = 1.0  # 0.8 s -> 75 BPM
        bpm = estimate_tempo(e, 0.1)
        assert FeatureConfig().min_bpm <= bpm <= FeatureConfig().max_bpm
        assert bpm == pytest.approx(75.0)


class TestIntro:
    def test_starts_at_first_sustained_run(self) -> None:
        e = np.concatenate([np.full(20, 0.01), np.ones(80)])
        assert find_intro_frame(e, 0.1) == 20

    def test_capped(self) -> None:
        e = np.concatenate([np.full(90, 0.01), np.ones(110)])
        assert find_intro_frame(e, 0.1) == int(np.floor(8.0 / 0.1))

    def test_silent(self) -> None:
        assert find_intro_frame(np.zeros(50), 0.1) == 0
