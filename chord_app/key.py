from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from .features import FeatureSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyInfo:
    tonic_pc: int     # 0..11 (C=0)
    mode: str         # "major" | "minor"
    confidence: float # 0..1
    name: str         # e.g. "Cmaj"

    @property
    def minor(self) -> bool:
        return self.mode == "minor"


@dataclass(frozen=True)
class KeyConfig:
    # tier 1: bass histogram
    bass_energy_percentile: int = 80
    bass_confidence_threshold: float = 0.25
    rest_drop_ratio: float = 0.6
    rest_point_weight: float = 1.5
    edge_seconds: float = 3.0
    edge_weight: float = 2.0

    # tier 1: mode decision (third / sixth / seventh strength)
    third_weight: float = 2.0
    sixth_weight: float = 1.0
    seventh_weight: float = 1.0

    # tier 2: Krumhansl-Schmuckler
    head_fraction: float = 0.10
    head_weight: float = 5.0
    tail_fraction: float = 0.10
    tail_weight: float = 3.0


NOTE_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]
FLAT_NAMES = ["C", "Db", "D", "Eb", "E", "F", "Gb", "G", "Ab", "A", "Bb", "B"]

MAJOR_SCALE = (0, 2, 4, 5, 7, 9, 11)
MINOR_SCALE = (0, 2, 3, 5, 7, 8, 10)

# triad quality per scale degree (diminished degrees count as minor)
MAJOR_DEGREE_QUALITIES = ("maj", "min", "min", "maj", "maj", "min", "min")
MINOR_DEGREE_QUALITIES = ("min", "min", "maj", "min", "min", "maj", "maj")

# Krumhansl-Schmuckler key profiles (widely used)
_MAJOR_PROFILE = np.array(
    [6.35, 2.23, 3.48, 2.33, 4.38, 4.09, 2.52, 5.19, 2.39, 3.66, 2.29, 2.88],
    dtype=np.float64,
)
_MINOR_PROFILE = np.array(
    [6.33, 2.68, 3.52, 5.38, 2.60, 3.53, 2.54, 4.75, 3.98, 2.69, 3.34, 3.17],
    dtype=np.float64,
)

# keys spelled with flats (major tonics / minor tonics)
_FLAT_MAJOR = {5, 10, 3, 8, 1, 6}
_FLAT_MINOR = {2, 7, 0, 5, 10, 3}


def key_name(tonic_pc: int, mode: str) -> str:
    return f"{NOTE_NAMES[tonic_pc % 12]}{'min' if mode == 'minor' else 'maj'}"


def make_key(tonic_pc: int, mode: str, confidence: float) -> KeyInfo:
    conf = float(max(0.0, min(1.0, confidence)))
    return KeyInfo(tonic_pc=int(tonic_pc) % 12, mode=mode, confidence=conf, name=key_name(tonic_pc, mode))


def uses_flats(key: Optional[KeyInfo]) -> bool:
    if key is None:
        return False
    flats = _FLAT_MINOR if key.minor else _FLAT_MAJOR
    return key.tonic_pc in flats


def note_name(pc: int, key: Optional[KeyInfo] = None) -> str:
    names = FLAT_NAMES if uses_flats(key) else NOTE_NAMES
    return names[int(pc) % 12]


def parse_key_string(s: str) -> KeyInfo:
    """Parse keys like: Cmaj, Amin, D#maj, F#min, Bbmaj, Am."""
    ss = s.strip()
    if not ss:
        raise ValueError(f"非法 key: {s!r}")

    mode = "major"
    low = ss.lower()
    if low.endswith("min"):
        mode = "minor"
        root = ss[:-3]
    elif low.endswith("maj"):
        root = ss[:-3]
    elif len(ss) > 1 and ss.endswith("m"):
        mode = "minor"
        root = ss[:-1]
    else:
        root = ss

    root = root.strip()
    root = root[:1].upper() + root[1:]
    if root in NOTE_NAMES:
        tonic_pc = NOTE_NAMES.index(root)
    elif root in FLAT_NAMES:
        tonic_pc = FLAT_NAMES.index(root)
    else:
        raise ValueError(f"非法 key root: {root}，请用如 Cmaj / F#min / Bbmaj 的格式")

    return make_key(tonic_pc, mode, 1.0)


def scale_pcs(key: KeyInfo) -> List[int]:
    base = MINOR_SCALE if key.minor else MAJOR_SCALE
    return [int((key.tonic_pc + x) % 12) for x in base]


def diatonic_triads(key: KeyInfo) -> List[Tuple[int, str]]:
    """(root, quality) of the seven scale-degree triads."""
    qualities = MINOR_DEGREE_QUALITIES if key.minor else MAJOR_DEGREE_QUALITIES
    return list(zip(scale_pcs(key), qualities))


def is_diatonic(root: int, quality: str, key: KeyInfo) -> bool:
    return (int(root) % 12, quality) in diatonic_triads(key)


# ------------------------------------------------------------
# Tier 1: bass histogram
# ------------------------------------------------------------
def _edge_mask(n: int, start: int, edge_frames: int) -> np.ndarray:
    mask = np.zeros(n, dtype=bool)
    if n == 0 or edge_frames <= 0:
        return mask
    mask[start : min(n, start + edge_frames)] = True
    mask[max(start, n - edge_frames) :] = True
    return mask


def bass_histogram(features: FeatureSet, cfg: KeyConfig = KeyConfig()) -> np.ndarray:
    """Weighted histogram of bass pitch classes over loud frames."""
    hist = np.zeros(12, dtype=np.float64)
    n = features.n_frames
    if n == 0:
        return hist

    energy = features.energy
    threshold = features.percentile(cfg.bass_energy_percentile)
    if threshold <= 0:
        threshold = float(energy.max()) if n else 0.0
        if threshold <= 0:
            return hist

    edge_frames = int(round(cfg.edge_seconds / max(features.hop_seconds, 1e-9)))
    edges = _edge_mask(n, features.intro_frame, edge_frames)

    for i in range(features.intro_frame, n):
        pc = int(features.bass[i])
        if pc < 0 or energy[i] < threshold:
            continue
        w = float(energy[i] / threshold)
        if i + 1 < n and energy[i + 1] < cfg.rest_drop_ratio * energy[i]:
            w *= cfg.rest_point_weight
        if edges[i]:
            w *= cfg.edge_weight
        hist[pc] += w
    return hist


def _mode_scores(features: FeatureSet, root: int, cfg: KeyConfig) -> Tuple[float, float]:
    """(minor score, major score) from chroma strength at 3rd/6th/7th above root."""
    n = features.n_frames
    start = min(features.intro_frame, max(0, n - 1))
    chroma = features.chroma[start:]
    if len(chroma) == 0:
        return 0.0, 0.0

    edge_frames = int(round(cfg.edge_seconds / max(features.hop_seconds, 1e-9)))
    weights = np.ones(len(chroma), dtype=np.float64)
    weights[_edge_mask(len(chroma), 0, edge_frames)] = cfg.edge_weight
    agg = (chroma * weights[:, None]).sum(axis=0)

    def at(iv: int) -> float:
        return float(agg[(root + iv) % 12])

    minor = cfg.third_weight * at(3) + cfg.sixth_weight * at(8) + cfg.seventh_weight * at(10)
    major = cfg.third_weight * at(4) + cfg.sixth_weight * at(9) + cfg.seventh_weight * at(11)
    return minor, major


# ------------------------------------------------------------
# Tier 2: Krumhansl-Schmuckler
# ------------------------------------------------------------
def weighted_chroma(features: FeatureSet, cfg: KeyConfig = KeyConfig()) -> np.ndarray:
    n = features.n_frames
    if n == 0:
        return np.zeros(12, dtype=np.float64)
    weights = np.ones(n, dtype=np.float64)
    head = max(1, int(np.floor(n * cfg.head_fraction)))
    tail = max(1, int(np.floor(n * cfg.tail_fraction)))
    weights[n - tail :] = cfg.tail_weight
    weights[:head] = cfg.head_weight
    return (features.chroma * weights[:, None]).sum(axis=0)


def krumhansl_key(chroma: np.ndarray) -> KeyInfo:
    """Best (tonic, mode) by Pearson correlation with rotated KS profiles."""
    c = np.asarray(chroma, dtype=np.float64)
    if float(c.sum()) <= 0 or float(np.std(c)) <= 1e-12:
        return make_key(0, "major", 0.0)

    best: Tuple[float, int, str] = (-2.0, 0, "major")
    for tonic in range(12):
        for mode, profile in (("major", _MAJOR_PROFILE), ("minor", _MINOR_PROFILE)):
            r = float(np.corrcoef(c, np.roll(profile, tonic))[0, 1])
            if r > best[0]:
                best = (r, tonic, mode)

    r, tonic, mode = best
    return make_key(tonic, mode, max(0.0, r))


# ------------------------------------------------------------
# Entry
# ------------------------------------------------------------
def estimate_key(features: FeatureSet, cfg: KeyConfig = KeyConfig()) -> KeyInfo:
    """Two-tier key estimate: bass histogram first, KS correlation as fallback."""
    hist = bass_histogram(features, cfg)
    total = float(hist.sum())

    if total > 0:
        root = int(np.argmax(hist))
        bass_conf = float(hist[root] / total)
        if bass_conf > cfg.bass_confidence_threshold:
            minor, major = _mode_scores(features, root, cfg)
            mode = "minor" if minor > major else "major"
            separation = abs(minor - major) / (minor + major + 1e-9)
            conf = 0.3 + 0.4 * bass_conf + 0.3 * separation
            key = make_key(root, mode, conf)
            logger.info(
                "key (bass tier): %s conf=%.2f (bass=%.2f, minor=%.3f, major=%.3f)",
                key.name,
                key.confidence,
                bass_conf,
                minor,
                major,
            )
            return key
        logger.debug("bass tier inconclusive (%.2f), falling back to profiles", bass_conf)

    key = krumhansl_key(weighted_chroma(features, cfg))
    logger.info("key (profile tier): %s conf=%.2f", key.name, key.confidence)
    return key
