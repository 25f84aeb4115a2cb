"""
Tests for chord_app/synth.py: test-signal and preview synthesis.
"""

from __future__ import annotations

from pathlib import Path

import numpy as np
import soundfile as sf

from chord_app.harmony.chords import MAJOR
from chord_app.midi_io import NoteEvent
from chord_app.synth import chord_sequence, chord_tone, midi_to_freq, render_previews, synthesize_harmonic

SR = 22050


class TestChordTone:
    def test_a4(self) -> None:
        assert midi_to_freq(69) == 440.0

    def test_length_and_peak(self) -> None:
        y = chord_tone([60, 64, 67], 1.0, SR, amplitude=0.3)
        assert len(y) == SR
        assert np.max(np.abs(y)) <= 0.3 + 1e-6
        assert y[0] == 0.0

    def test_sequence(self) -> None:
        y = chord_sequence([([60], 0.5), ([67], 0.25)], SR)
        assert len(y) == int(round(0.5 * SR)) + int(round(0.25 * SR))
        assert len(chord_sequence([], SR)) == 0


class TestPreview:
    def test_synthesize_harmonic(self) -> None:
        y = synthesize_harmonic([NoteEvent(60, 0.0, 0.5, 100)], SR, total_len=1.0)
        assert len(y) == SR
        assert np.abs(y[: SR // 2]).max() > 0
        assert np.all(y[SR // 2 + 10 :] == 0)

    def test_render_previews(self, tmp_path: Path, timeline_factory) -> None:
        audio = np.zeros(2 * SR, dtype=np.float32)
        chords = timeline_factory([(0, MAJOR, 1.0), (7, MAJOR, 1.0)])
        out_ch, out_mix = render_previews(audio, SR, chords, out_dir=tmp_path)
        assert out_ch.name == "03_preview_chords.wav"
        assert out_mix.name == "03_preview_mix.wav"
        data, sr = sf.read(str(out_mix))
        assert sr == SR
        assert len(data) == 2 * SR
