"""
Shared fixtures for the test suite.

Synthetic signals are built with chord_app.synth (pure sine partials), so
no audio files are needed.
"""

from __future__ import annotations

import numpy as np
import pytest

from chord_app.features import FeatureSet, extract_features
from chord_app.harmony.chords import ChordEvent
from chord_app.key import make_key
from chord_app.synth import chord_sequence, chord_tone

SR = 22050

# MIDI pitches
C3, G2 = 48, 43
A3, C4, E4, G4, B4, D5 = 57, 60, 64, 67, 71, 74


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def c_major_signal() -> np.ndarray:
    """Sustained C4+E4+G4 for 5 s."""
    return chord_tone([C4, E4, G4], 5.0, SR)


@pytest.fixture(scope="session")
def a_minor_signal() -> np.ndarray:
    """Sustained A3+C4+E4 for 5 s."""
    return chord_tone([A3, C4, E4], 5.0, SR)


@pytest.fixture(scope="session")
def silence_signal() -> np.ndarray:
    return np.zeros(10 * SR, dtype=np.float32)


@pytest.fixture(scope="session")
def g_c_loop_signal() -> np.ndarray:
    """G -> C alternating, 1 s each, 8 times (bass an octave or two below)."""
    g_chord = [G2, G4, B4, D5]
    c_chord = [C3, C4, E4, G4]
    return chord_sequence([(g_chord, 1.0), (c_chord, 1.0)] * 8, SR)


@pytest.fixture(scope="session")
def c_major_features(c_major_signal):
    return extract_features(c_major_signal, SR)


@pytest.fixture(scope="session")
def a_minor_features(a_minor_signal):
    return extract_features(a_minor_signal, SR)


@pytest.fixture(scope="session")
def g_c_loop_features(g_c_loop_signal):
    return extract_features(g_c_loop_signal, SR)


# ---------------------------------------------------------------------------
# Timeline helpers
# ---------------------------------------------------------------------------


def make_features(
    n_frames: int,
    chroma=None,
    energy=None,
    bass=None,
    bpm: float = 120.0,
    hop_seconds: float = 0.1,
) -> FeatureSet:
    """Hand-built FeatureSet (defaults: silent chroma, flat energy, no bass)."""
    chroma = np.zeros((n_frames, 12)) if chroma is None else np.asarray(chroma, dtype=np.float64)
    energy = np.ones(n_frames) if energy is None else np.asarray(energy, dtype=np.float64)
    bass = np.full(n_frames, -1, dtype=np.int64) if bass is None else np.asarray(bass, dtype=np.int64)
    return FeatureSet(
        chroma=chroma,
        bass=bass,
        energy=energy,
        hop=int(round(hop_seconds * SR)),
        hop_seconds=hop_seconds,
        sample_rate=SR,
        duration=n_frames * hop_seconds,
        bpm=bpm,
    )


def make_timeline(chords, start: float = 0.0, hop_seconds: float = 0.1):
    """Build ChordEvents from [(root, quality, seconds), ...]."""
    events = []
    t = start
    for root, quality, seconds in chords:
        events.append(
            ChordEvent(
                start=t,
                end=t + seconds,
                root=root,
                quality=quality,
                frame=int(round(t / hop_seconds)),
            )
        )
        t += seconds
    return events


@pytest.fixture()
def c_major_key():
    return make_key(0, "major", 0.9)


@pytest.fixture()
def g_major_key():
    return make_key(7, "major", 0.6)


@pytest.fixture()
def timeline_factory():
    return make_timeline


@pytest.fixture()
def features_factory():
    return make_features
