from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Callable, Dict, Optional, Tuple

import numpy as np

from .errors import check_cancelled

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureConfig:
    """Frame analysis settings (defaults follow the 22.05 kHz / 4096 / 100 ms layout)."""

    target_sr: int = 22050
    window: int = 4096
    hop_seconds: float = 0.10

    # chroma band
    fmin: float = 80.0
    fmax: float = 5000.0

    # bass f0 search band
    bass_fmin: float = 40.0
    bass_fmax: float = 250.0
    bass_quality_floor: float = 0.30
    bass_min_peak_ratio: float = 0.10
    bass_energy_percentile: float = 40.0

    # tempo
    min_bpm: float = 60.0
    max_bpm: float = 200.0
    default_bpm: float = 120.0

    # intro skip
    intro_percentile: float = 70.0
    intro_min_run_seconds: float = 0.5
    intro_max_seconds: float = 8.0

    # frames per FFT batch (cancellation is polled between batches)
    block_frames: int = 64


PERCENTILES: Tuple[int, ...] = (30, 40, 50, 70, 75, 80)


def _readonly(a: np.ndarray) -> np.ndarray:
    a.setflags(write=False)
    return a


@dataclass(frozen=True, eq=False)
class FeatureSet:
    chroma: np.ndarray        # (M, 12), rows sum to 1 or are all zero
    bass: np.ndarray          # (M,), pitch class or -1
    energy: np.ndarray        # (M,), mean square of each raw frame
    hop: int                  # samples
    hop_seconds: float
    sample_rate: int
    duration: float           # seconds of (resampled) audio
    bpm: float
    intro_frame: int = 0
    percentiles: Dict[int, float] = field(default_factory=dict)

    @property
    def n_frames(self) -> int:
        return int(self.chroma.shape[0])

    def frame_time(self, i: int) -> float:
        return float(i * self.hop_seconds)

    def percentile(self, p: int) -> float:
        if p in self.percentiles:
            return float(self.percentiles[p])
        return _energy_percentile(self.energy, p)


# ------------------------------------------------------------
# Resampling / windows
# ------------------------------------------------------------
def resample_linear(x: np.ndarray, sr_in: int, sr_out: int) -> np.ndarray:
    """Linear-interpolation resampler. Output length is floor(len(x) * sr_out / sr_in)."""
    x = np.asarray(x, dtype=np.float64)
    if sr_in == sr_out or len(x) == 0:
        return x.copy()

    ratio = float(sr_in) / float(sr_out)
    n_out = int(np.floor(len(x) / ratio))
    if n_out <= 0:
        return np.zeros(0, dtype=np.float64)

    src = np.arange(n_out, dtype=np.float64) * ratio
    i0 = np.floor(src).astype(np.int64)
    i1 = np.minimum(i0 + 1, len(x) - 1)
    t = src - i0
    return x[i0] * (1.0 - t) + x[i1] * t


@lru_cache(maxsize=None)
def hann_window(n: int) -> np.ndarray:
    """Symmetric Hann window 0.5 * (1 - cos(2*pi*i/(n-1))), cached per length (read-only)."""
    if n <= 1:
        return _readonly(np.ones(max(n, 0), dtype=np.float64))
    i = np.arange(n, dtype=np.float64)
    return _readonly(0.5 * (1.0 - np.cos(2.0 * np.pi * i / (n - 1))))


# ------------------------------------------------------------
# FFT (iterative radix-2)
# ------------------------------------------------------------
def next_pow2(n: int) -> int:
    size = 1
    while size < n:
        size <<= 1
    return size


@lru_cache(maxsize=None)
def _bit_reversal(n: int) -> np.ndarray:
    bits = n.bit_length() - 1
    idx = np.arange(n, dtype=np.int64)
    rev = np.zeros(n, dtype=np.int64)
    for b in range(bits):
        rev |= ((idx >> b) & 1) << (bits - 1 - b)
    return _readonly(rev)


def fft_radix2(x: np.ndarray) -> np.ndarray:
    """Iterative Cooley-Tukey FFT over the last axis.

    Input is zero-padded to the next power of two. Accepts a 1-D signal or a
    2-D batch of frames (one frame per row).
    """
    a = np.asarray(x, dtype=np.complex128)
    squeeze = a.ndim == 1
    if squeeze:
        a = a[None, :]

    n = a.shape[-1]
    size = next_pow2(max(1, n))
    if size != n:
        a = np.concatenate([a, np.zeros((a.shape[0], size - n), dtype=np.complex128)], axis=1)

    batch = a.shape[0]
    out = a[:, _bit_reversal(size)]

    half = 1
    while half < size:
        step = half * 2
        twiddle = np.exp(-2j * np.pi * np.arange(half) / step)
        blocks = out.reshape(batch, size // step, step)
        even = blocks[:, :, :half]
        odd = blocks[:, :, half:] * twiddle
        out = np.concatenate([even + odd, even - odd], axis=2).reshape(batch, size)
        half = step

    return out[0] if squeeze else out


def ifft_radix2(x: np.ndarray) -> np.ndarray:
    a = np.asarray(x, dtype=np.complex128)
    n = next_pow2(max(1, a.shape[-1]))
    return np.conj(fft_radix2(np.conj(a))) / float(n)


# ------------------------------------------------------------
# Cached spectral maps
# ------------------------------------------------------------
@lru_cache(maxsize=None)
def _chroma_map(n_fft: int, sr: int, fmin: float, fmax: float) -> Tuple[np.ndarray, np.ndarray]:
    """(bin indices in band, one-hot pitch-class matrix of shape (n_band, 12))."""
    freqs = np.arange(n_fft // 2 + 1, dtype=np.float64) * sr / n_fft
    bins = np.nonzero((freqs >= fmin) & (freqs <= fmax))[0]
    midi = 69.0 + 12.0 * np.log2(freqs[bins] / 440.0)
    pcs = np.mod(np.rint(midi).astype(np.int64), 12)
    onehot = np.zeros((len(bins), 12), dtype=np.float64)
    onehot[np.arange(len(bins)), pcs] = 1.0
    return _readonly(bins), _readonly(onehot)


@lru_cache(maxsize=None)
def _bass_basis(n_fft: int, sr: int, fmax: float, length: int) -> Tuple[np.ndarray, np.ndarray]:
    """(low-band bin indices, cosine basis of shape (n_low, length))."""
    freqs = np.arange(n_fft // 2 + 1, dtype=np.float64) * sr / n_fft
    bins = np.nonzero((freqs > 0.0) & (freqs <= fmax))[0]
    t = np.arange(length, dtype=np.float64)
    basis = np.cos(2.0 * np.pi * np.outer(bins, t) / n_fft)
    return _readonly(bins), _readonly(basis)


def _energy_percentile(energy: np.ndarray, p: float) -> float:
    if len(energy) == 0:
        return 0.0
    return float(np.percentile(energy, p, method="lower"))


# ------------------------------------------------------------
# Per-block analysis
# ------------------------------------------------------------
def _frame_starts(n_samples: int, window: int, hop: int) -> np.ndarray:
    if n_samples < window or hop <= 0:
        return np.zeros(0, dtype=np.int64)
    return np.arange(0, n_samples - window + 1, hop, dtype=np.int64)


def _bass_from_spectrum(
    mag: np.ndarray,
    band_peak: np.ndarray,
    sr: int,
    n_fft: int,
    cfg: FeatureConfig,
) -> np.ndarray:
    """Estimate bass pitch class per frame from the low-band magnitude spectrum."""
    length = n_fft
    bins, basis = _bass_basis(n_fft, sr, cfg.bass_fmax, length)
    out = np.full(mag.shape[0], -1, dtype=np.int64)
    if len(bins) == 0:
        return out

    low = mag[:, bins]
    low_peak = low.max(axis=1)
    ok = (low_peak > 0.0) & (low_peak >= cfg.bass_min_peak_ratio * np.maximum(band_peak, 1e-12))
    if not np.any(ok):
        return out

    # zero-phase resynthesis of the low band
    y = low[ok] @ basis
    y = y - y.mean(axis=1, keepdims=True)

    min_lag = int(np.floor(sr / cfg.bass_fmax))
    max_lag = min(int(np.floor(sr / cfg.bass_fmin)), length - 1)

    spec = fft_radix2(np.concatenate([y, np.zeros_like(y)], axis=1))
    acf = np.real(ifft_radix2(spec * np.conj(spec)))[:, : max_lag + 1]
    r0 = acf[:, 0]
    norm = np.where(r0 > 1e-12, r0, 1.0)
    r = acf[:, min_lag : max_lag + 1] / norm[:, None]

    best = np.argmax(r, axis=1)
    best_r = r[np.arange(len(best)), best]
    lag = best + min_lag
    f0 = sr / lag.astype(np.float64)

    accept = (r0 > 1e-12) & (best_r >= cfg.bass_quality_floor) & (f0 >= cfg.bass_fmin) & (f0 <= cfg.bass_fmax)
    pcs = np.mod(np.rint(69.0 + 12.0 * np.log2(f0 / 440.0)).astype(np.int64), 12)

    idx = np.nonzero(ok)[0]
    out[idx[accept]] = pcs[accept]
    return out


def _reject_bass_noise(bass: np.ndarray, energy: np.ndarray, floor: float) -> np.ndarray:
    """Drop detections in quiet frames and isolated detections both neighbours disagree with."""
    out = bass.copy()
    n = len(bass)
    for i in range(n):
        if bass[i] < 0:
            continue
        if energy[i] < floor:
            out[i] = -1
            continue
        neighbours = []
        if i > 0:
            neighbours.append(int(bass[i - 1]))
        if i + 1 < n:
            neighbours.append(int(bass[i + 1]))
        if neighbours and all(b != bass[i] for b in neighbours):
            out[i] = -1
    return out


# ------------------------------------------------------------
# Tempo / intro
# ------------------------------------------------------------
def estimate_tempo(energy: np.ndarray, hop_seconds: float, cfg: FeatureConfig = FeatureConfig()) -> float:
    """Energy-envelope autocorrelation tempo in BPM, clamped to [min_bpm, max_bpm]."""
    e = np.asarray(energy, dtype=np.float64)
    if len(e) < 4 or hop_seconds <= 0:
        return float(cfg.default_bpm)

    e = e - e.mean()
    min_lag = max(1, int(np.floor(60.0 / (cfg.max_bpm * hop_seconds))))
    max_lag = min(len(e) - 1, int(np.floor(60.0 / (cfg.min_bpm * hop_seconds))))
    if max_lag < min_lag:
        return float(cfg.default_bpm)

    best_lag = 0
    best_r = 0.0
    for lag in range(min_lag, max_lag + 1):
        r = float(np.dot(e[:-lag], e[lag:]))
        if r > best_r:
            best_r = r
            best_lag = lag

    if best_lag == 0:
        return float(cfg.default_bpm)

    bpm = 60.0 / (best_lag * hop_seconds)
    return float(max(cfg.min_bpm, min(cfg.max_bpm, round(bpm))))


def find_intro_frame(energy: np.ndarray, hop_seconds: float, cfg: FeatureConfig = FeatureConfig()) -> int:
    """First frame of a sustained (>= intro_min_run_seconds) loud run, capped at intro_max_seconds."""
    n = len(energy)
    if n == 0 or hop_seconds <= 0:
        return 0

    threshold = _energy_percentile(energy, cfg.intro_percentile)
    need = max(1, int(np.ceil(cfg.intro_min_run_seconds / hop_seconds)))
    cap = int(np.floor(cfg.intro_max_seconds / hop_seconds))

    run = 0
    for i in range(n):
        if energy[i] >= threshold and energy[i] > 0:
            run += 1
            if run >= need:
                return int(min(i - run + 1, cap))
        else:
            run = 0
    return 0


# ------------------------------------------------------------
# Entry
# ------------------------------------------------------------
def extract_features(
    samples: np.ndarray,
    sample_rate: int,
    cfg: FeatureConfig = FeatureConfig(),
    cancel_check: Optional[Callable[[], bool]] = None,
) -> FeatureSet:
    """Turn a mono sample buffer into a FeatureSet.

    Parameters
    ----------
    samples:
        Mono float samples. Not modified.
    sample_rate:
        Source sample rate; audio is resampled to cfg.target_sr.
    cancel_check:
        Optional callable polled between frame batches.
    """
    if sample_rate <= 0:
        raise ValueError(f"sample_rate must be positive, got {sample_rate}")
    x = np.asarray(samples, dtype=np.float64)
    if x.ndim != 1:
        raise ValueError(f"expected mono 1-D samples, got shape {x.shape}")

    sr = int(cfg.target_sr)
    x = resample_linear(x, int(sample_rate), sr)
    x = np.nan_to_num(x, nan=0.0, posinf=0.0, neginf=0.0)
    duration = float(len(x) / sr)

    hop = int(np.floor(cfg.hop_seconds * sr))
    hop_seconds = float(hop / sr)
    win = int(cfg.window)
    n_fft = next_pow2(win)
    window = hann_window(win)
    starts = _frame_starts(len(x), win, hop)
    n_frames = len(starts)

    chroma = np.zeros((n_frames, 12), dtype=np.float64)
    band_peak = np.zeros(n_frames, dtype=np.float64)
    energy = np.zeros(n_frames, dtype=np.float64)
    mags = []

    chroma_bins, chroma_onehot = _chroma_map(n_fft, sr, cfg.fmin, cfg.fmax)
    offsets = np.arange(win, dtype=np.int64)

    for b0 in range(0, n_frames, max(1, cfg.block_frames)):
        check_cancelled(cancel_check, "feature extraction")
        b1 = min(n_frames, b0 + max(1, cfg.block_frames))
        frames = x[starts[b0:b1, None] + offsets[None, :]]
        energy[b0:b1] = np.mean(frames * frames, axis=1)

        mag = np.abs(fft_radix2(frames * window))[:, : n_fft // 2 + 1]
        band = mag[:, chroma_bins]
        acc = band @ chroma_onehot
        total = acc.sum(axis=1, keepdims=True)
        chroma[b0:b1] = np.where(total > 1e-12, acc / np.where(total > 1e-12, total, 1.0), 0.0)
        band_peak[b0:b1] = band.max(axis=1) if band.shape[1] else 0.0
        mags.append(mag)

    percentiles = {p: _energy_percentile(energy, p) for p in PERCENTILES}

    bass = np.full(n_frames, -1, dtype=np.int64)
    for k, b0 in enumerate(range(0, n_frames, max(1, cfg.block_frames))):
        check_cancelled(cancel_check, "bass tracking")
        mag = mags[k]
        bass[b0 : b0 + len(mag)] = _bass_from_spectrum(mag, band_peak[b0 : b0 + len(mag)], sr, n_fft, cfg)
    bass = _reject_bass_noise(bass, energy, _energy_percentile(energy, cfg.bass_energy_percentile))

    bpm = estimate_tempo(energy, hop_seconds, cfg)
    intro = find_intro_frame(energy, hop_seconds, cfg)

    logger.debug(
        "features: %d frames, %.2fs, bpm=%.0f, bass frames=%d, intro frame=%d",
        n_frames,
        duration,
        bpm,
        int(np.sum(bass >= 0)),
        intro,
    )

    return FeatureSet(
        chroma=_readonly(chroma),
        bass=_readonly(bass),
        energy=_readonly(energy),
        hop=hop,
        hop_seconds=hop_seconds,
        sample_rate=sr,
        duration=duration,
        bpm=bpm,
        intro_frame=intro,
        percentiles=percentiles,
    )
