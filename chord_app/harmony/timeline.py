from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence

import numpy as np

from ..features import FeatureSet
from ..key import KeyInfo, is_diatonic
from .chords import ChordEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FinalizeConfig:
    min_bpm: float = 60.0
    max_bpm: float = 200.0
    min_seconds: float = 0.5          # lower bound of the short-segment threshold
    min_beats: float = 0.5            # short-segment threshold in beats
    weak_energy_ratio: float = 0.85   # x median frame energy
    tiny_ratio: float = 0.6           # "tiny" = shorter than tiny_ratio * threshold
    snap_tolerance_beats: float = 0.35


def beat_seconds(bpm: float, cfg: FinalizeConfig = FinalizeConfig()) -> float:
    return 60.0 / float(max(cfg.min_bpm, min(cfg.max_bpm, bpm)))


def _span_frames(events: Sequence[ChordEvent], i: int, n_frames: int) -> range:
    f0 = events[i].frame
    f1 = events[i + 1].frame if i + 1 < len(events) else n_frames
    return range(int(f0), int(max(f0, f1)))


def _raw_start(ev: ChordEvent, features: FeatureSet) -> float:
    return features.frame_time(ev.frame)


def _raw_duration(events: Sequence[ChordEvent], i: int, features: FeatureSet) -> float:
    start = _raw_start(events[i], features)
    end = _raw_start(events[i + 1], features) if i + 1 < len(events) else features.duration
    return float(max(0.0, end - start))


def _mean_energy(features: FeatureSet, frames: range) -> float:
    if len(frames) == 0 or features.n_frames == 0:
        return 0.0
    lo = min(frames.start, features.n_frames)
    hi = min(frames.stop, features.n_frames)
    if hi <= lo:
        return 0.0
    return float(np.mean(features.energy[lo:hi]))


def _bass_contradicts(ev: ChordEvent, features: FeatureSet, frames: range) -> bool:
    """True when the segment's dominant bass note is not a chord tone."""
    if features.n_frames == 0:
        return False
    lo = min(frames.start, features.n_frames)
    hi = min(frames.stop, features.n_frames)
    bass = features.bass[lo:hi]
    bass = bass[bass >= 0]
    if len(bass) == 0:
        return False
    dominant = int(np.bincount(bass, minlength=12).argmax())
    return dominant not in ev.tones


def _merge_identical(events: Sequence[ChordEvent]) -> List[ChordEvent]:
    out: List[ChordEvent] = []
    for ev in events:
        if out and out[-1].label == ev.label:
            continue
        out.append(ev)
    return out


def _drop_pass(
    events: List[ChordEvent],
    key: KeyInfo,
    features: FeatureSet,
    cfg: FinalizeConfig,
) -> List[ChordEvent]:
    spb = beat_seconds(features.bpm, cfg)
    min_dur = max(cfg.min_seconds, cfg.min_beats * spb)
    median = features.percentile(50)

    kept: List[ChordEvent] = []
    for i, ev in enumerate(events):
        dur = _raw_duration(events, i, features)
        if dur >= min_dur:
            kept.append(ev)
            continue

        frames = _span_frames(events, i, features.n_frames)
        weak = _mean_energy(features, frames) < cfg.weak_energy_ratio * median
        if dur < cfg.tiny_ratio * min_dur and weak and kept:
            continue
        if kept and (weak or not is_diatonic(ev.root, ev.quality, key) or _bass_contradicts(ev, features, frames)):
            continue
        kept.append(ev)
    return _merge_identical(kept)


def _snap_times(events: Sequence[ChordEvent], features: FeatureSet, cfg: FinalizeConfig) -> List[float]:
    spb = beat_seconds(features.bpm, cfg)
    tol = cfg.snap_tolerance_beats * spb
    raw = [_raw_start(ev, features) for ev in events]
    out: List[float] = []
    for i, t in enumerate(raw):
        lo = 0.5 * (raw[i - 1] + t) if i > 0 else -np.inf
        hi = 0.5 * (t + raw[i + 1]) if i + 1 < len(raw) else features.duration
        grid = round(t / spb) * spb
        if abs(grid - t) <= tol and lo < grid < hi and 0.0 <= grid < features.duration:
            out.append(float(grid))
        else:
            out.append(float(t))
    return out


def finalize_timeline(
    events: Sequence[ChordEvent],
    key: KeyInfo,
    features: FeatureSet,
    cfg: FinalizeConfig = FinalizeConfig(),
) -> List[ChordEvent]:
    """Drop short/weak segments, merge repeats, snap starts to the beat grid.

    Every decision is taken from frame indices, never from previously snapped
    times, so finalize(finalize(x)) == finalize(x).
    """
    timeline = _merge_identical(sorted(events, key=lambda e: e.frame))

    for _ in range(len(timeline) + 1):
        nxt = _drop_pass(timeline, key, features, cfg)
        if len(nxt) == len(timeline):
            break
        timeline = nxt

    if not timeline:
        return []

    starts = _snap_times(timeline, features, cfg)
    out: List[ChordEvent] = []
    for i, ev in enumerate(timeline):
        end = starts[i + 1] if i + 1 < len(timeline) else features.duration
        out.append(
            replace(
                ev,
                start=starts[i],
                end=float(max(end, starts[i])),
                diatonic=is_diatonic(ev.root, ev.quality, key),
            )
        )

    logger.debug("finalized %d -> %d chords", len(events), len(out))
    return out


def timeline_is_valid(events: Sequence[ChordEvent], duration: Optional[float] = None) -> bool:
    """Strictly increasing starts, no repeated adjacent labels, starts inside [0, duration)."""
    for i, ev in enumerate(events):
        if not 0 <= ev.root <= 11:
            return False
        if ev.start < 0 or (duration is not None and ev.start >= duration):
            return False
        if i > 0:
            prev = events[i - 1]
            if not prev.start < ev.start or prev.label == ev.label:
                return False
    return True
