from __future__ import annotations

from pathlib import Path
from typing import List, Sequence, Tuple

import numpy as np

from .audio import write_audio_mono
from .harmony.chords import ChordEvent, chords_to_notes
from .midi_io import NoteEvent


# ------------------------------------------------------------
# Utils
# ------------------------------------------------------------
def midi_to_freq(pitch: float) -> float:
    return 440.0 * (2.0 ** ((pitch - 69) / 12.0))


def _envelope(n: int, sr: int, attack_s: float = 0.008, release_s: float = 0.03) -> np.ndarray:
    env = np.ones(n, dtype=np.float32)
    attack = int(attack_s * sr)
    release = int(release_s * sr)
    if attack > 0 and n > attack:
        env[:attack] *= np.linspace(0.0, 1.0, attack, dtype=np.float32)
    if release > 0 and n > release:
        env[-release:] *= np.linspace(1.0, 0.0, release, dtype=np.float32)
    return env


# ------------------------------------------------------------
# Simple harmonic synth
# ------------------------------------------------------------
def synthesize_harmonic(
    notes: Sequence[NoteEvent],
    sr: int,
    total_len: float,
    *,
    n_harmonics: int = 6,
) -> np.ndarray:
    """
    Lightweight harmonic synthesizer for previews.

    Notes
    -----
    - Only for "did we get the chords right?" listening.
    - Each note is peak-normalised and enveloped before mixing.
    """
    n = int(np.ceil(total_len * sr))
    y = np.zeros(n, dtype=np.float32)

    for note in notes:
        f0 = midi_to_freq(note.pitch)
        s = int(max(0, np.floor(note.start * sr)))
        e = int(min(n, np.ceil(note.end * sr)))
        if e <= s + 2:
            continue

        t = np.arange(e - s, dtype=np.float32) / sr
        amp = min(1.0, max(0.05, note.velocity / 127.0)) * 0.22

        sig = np.zeros_like(t, dtype=np.float32)
        for k in range(1, n_harmonics + 1):
            if f0 * k >= sr / 2:
                break
            sig += (1.0 / k) * np.sin(2.0 * np.pi * (f0 * k) * t)

        peak = max(1e-6, float(np.max(np.abs(sig))))
        sig *= amp / peak
        y[s:e] += sig * _envelope(e - s, sr)

    return np.clip(y, -1.0, 1.0)


def chord_tone(
    pitches: Sequence[int],
    seconds: float,
    sr: int = 22050,
    *,
    amplitude: float = 0.3,
    n_harmonics: int = 1,
) -> np.ndarray:
    """Sustained block chord (sum of sine partials) with a short fade in / out."""
    n = int(round(seconds * sr))
    t = np.arange(n, dtype=np.float64) / sr
    y = np.zeros(n, dtype=np.float64)
    for p in pitches:
        f0 = midi_to_freq(p)
        for k in range(1, n_harmonics + 1):
            if f0 * k >= sr / 2:
                break
            y += (1.0 / k) * np.sin(2.0 * np.pi * f0 * k * t)
    peak = float(np.max(np.abs(y))) if n else 0.0
    if peak > 0:
        y *= amplitude / peak
    return (y * _envelope(n, sr, attack_s=0.005, release_s=0.005)).astype(np.float32)


def chord_sequence(
    chords: Sequence[Tuple[Sequence[int], float]],
    sr: int = 22050,
    **kwargs,
) -> np.ndarray:
    """Concatenate (pitches, seconds) blocks into one signal."""
    parts: List[np.ndarray] = [chord_tone(p, d, sr, **kwargs) for p, d in chords]
    if not parts:
        return np.zeros(0, dtype=np.float32)
    return np.concatenate(parts)


# ------------------------------------------------------------
# Preview rendering
# ------------------------------------------------------------
def render_previews(
    audio: np.ndarray,
    sr: int,
    chords: Sequence[ChordEvent],
    out_dir: Path,
) -> Tuple[Path, Path]:
    """
    Render preview WAVs:
      - chords only
      - original + chords mix

    Buffer lengths are aligned before mixing.
    """
    orig = np.asarray(audio, dtype=np.float32)
    total_len = len(orig) / sr

    ch = synthesize_harmonic(chords_to_notes(chords), sr=sr, total_len=total_len, n_harmonics=4)

    n = min(len(orig), len(ch))
    orig = orig[:n]
    ch = ch[:n]

    out_ch = out_dir / "03_preview_chords.wav"
    out_mix = out_dir / "03_preview_mix.wav"
    write_audio_mono(out_ch, sr, ch)
    write_audio_mono(out_mix, sr, np.clip(orig * 0.55 + ch * 0.8, -1.0, 1.0))
    return out_ch, out_mix
