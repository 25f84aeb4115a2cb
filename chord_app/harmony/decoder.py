from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from ..errors import check_cancelled
from ..features import FeatureSet
from ..key import KeyInfo
from .chords import ChordEvent, ChordState, build_states, chord_mask

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecoderConfig:
    """Emission / transition weights for the chord HMM."""

    state_space: str = "key"  # key|full

    # emission
    emission_floor: float = 0.35
    diatonic_bonus: float = 0.20
    borrowed_penalty: float = 0.05
    bass_bonus: float = 0.15
    low_energy_percentile: int = 30
    low_energy_penalty: float = 0.30

    # transition
    base_cost: float = 0.40
    distance_scale: float = 0.08
    fifths_weight: float = 0.85
    chromatic_weight: float = 0.15
    quality_change_cost: float = 0.05
    both_borrowed_cost: float = 0.30
    one_borrowed_cost: float = 0.18
    both_diatonic_bonus: float = 0.12
    fourth_up_bonus: float = 0.08
    step_bonus: float = 0.03
    dominant_tonic_bonus: float = 0.15   # V -> I
    subdominant_dominant_bonus: float = 0.12  # IV -> V
    supertonic_dominant_bonus: float = 0.12   # ii -> V
    plagal_bonus: float = 0.10           # IV -> I

    # beam search
    beam_light: int = 4
    beam_full: int = 8
    full_beam_confidence: float = 0.80

    cancel_poll_frames: int = 256


def _fifths_distance(a: int, b: int) -> int:
    d = abs(((a * 7) % 12) - ((b * 7) % 12))
    return min(d, 12 - d)


def _chromatic_distance(a: int, b: int) -> int:
    d = abs((a % 12) - (b % 12))
    return min(d, 12 - d)


def transition_cost(a: ChordState, b: ChordState, key: KeyInfo, cfg: DecoderConfig = DecoderConfig()) -> float:
    """Cost of moving from chord a to chord b (0 when staying)."""
    if a.root == b.root and a.quality == b.quality:
        return 0.0

    cost = cfg.base_cost + cfg.distance_scale * (
        cfg.fifths_weight * _fifths_distance(a.root, b.root)
        + cfg.chromatic_weight * _chromatic_distance(a.root, b.root)
    )
    if a.quality != b.quality:
        cost += cfg.quality_change_cost

    if not a.diatonic and not b.diatonic:
        cost += cfg.both_borrowed_cost
    elif not a.diatonic or not b.diatonic:
        cost += cfg.one_borrowed_cost
    else:
        cost -= cfg.both_diatonic_bonus

    motion = (b.root - a.root) % 12
    if motion == 5:
        cost -= cfg.fourth_up_bonus
    elif motion in (2, 10):
        cost -= cfg.step_bonus

    deg_a = (a.root - key.tonic_pc) % 12
    deg_b = (b.root - key.tonic_pc) % 12
    if b.diatonic:
        if deg_a == 7 and deg_b == 0:
            cost -= cfg.dominant_tonic_bonus
        elif deg_a == 5 and deg_b == 7:
            cost -= cfg.subdominant_dominant_bonus
        elif deg_a == 2 and deg_b == 7:
            cost -= cfg.supertonic_dominant_bonus
        elif deg_a == 5 and deg_b == 0:
            cost -= cfg.plagal_bonus

    return float(max(0.0, cost))


def transition_matrix(states: Sequence[ChordState], key: KeyInfo, cfg: DecoderConfig = DecoderConfig()) -> np.ndarray:
    n = len(states)
    t = np.zeros((n, n), dtype=np.float64)
    for i, a in enumerate(states):
        for j, b in enumerate(states):
            t[i, j] = transition_cost(a, b, key, cfg)
    return t


def emission_matrix(
    features: FeatureSet,
    states: Sequence[ChordState],
    cfg: DecoderConfig = DecoderConfig(),
    bass_multiplier: float = 1.2,
) -> np.ndarray:
    """(frames, states) log-domain scores; -inf marks a rejected candidate."""
    n = features.n_frames
    if n == 0 or not states:
        return np.zeros((n, len(states)), dtype=np.float64)

    masks = np.stack([chord_mask(s.root, s.quality) for s in states])
    masks /= np.linalg.norm(masks, axis=1, keepdims=True)

    chroma = features.chroma
    norms = np.linalg.norm(chroma, axis=1)
    safe = np.where(norms > 1e-12, norms, 1.0)
    cos = (chroma @ masks.T) / safe[:, None]
    cos[norms <= 1e-12] = 0.0

    prior = np.array(
        [cfg.diatonic_bonus if s.diatonic else -cfg.borrowed_penalty for s in states],
        dtype=np.float64,
    )
    scores = cos + prior[None, :]

    roots = np.array([s.root for s in states], dtype=np.int64)
    bass_hit = features.bass[:, None] == roots[None, :]
    scores += np.where(bass_hit, cfg.bass_bonus * float(bass_multiplier), 0.0)

    low = features.energy < features.percentile(cfg.low_energy_percentile)
    scores[low] -= cfg.low_energy_penalty

    scores[cos < cfg.emission_floor] = -np.inf
    return scores


def beam_width(key: KeyInfo, cfg: DecoderConfig = DecoderConfig(), full: Optional[bool] = None) -> int:
    if full is None:
        full = key.confidence > cfg.full_beam_confidence
    return int(cfg.beam_full if full else cfg.beam_light)


def viterbi_beam(
    emissions: np.ndarray,
    transitions: np.ndarray,
    beam: int,
    cancel_check: Optional[Callable[[], bool]] = None,
    poll_every: int = 256,
) -> np.ndarray:
    """Best state path; -1 for leading frames where no state is viable.

    Only the top-`beam` predecessors feed each frame. A frame where every
    state is rejected carries the previous frame's table forward.
    """
    n_frames, n_states = emissions.shape
    path = np.full(n_frames, -1, dtype=np.int64)
    if n_frames == 0 or n_states == 0:
        return path

    viable = np.isfinite(emissions).any(axis=1)
    if not viable.any():
        return path
    first = int(np.argmax(viable))

    identity = np.arange(n_states, dtype=np.int64)
    back_ptrs: List[np.ndarray] = []
    dp = emissions[first].copy()
    back_ptrs.append(identity)
    k = max(1, min(int(beam), n_states))

    for i in range(first + 1, n_frames):
        if poll_every > 0 and (i - first) % poll_every == 0:
            check_cancelled(cancel_check, "chord decoding")

        if not viable[i]:
            back_ptrs.append(identity)
            continue

        order = np.argsort(-dp, kind="stable")[:k]
        order = order[np.isfinite(dp[order])]

        cand = dp[order][:, None] - transitions[order, :]
        best = np.argmax(cand, axis=0)
        back_ptrs.append(order[best])
        dp = cand[best, identity] + emissions[i]

    s = int(np.argmax(dp))
    for i in range(n_frames - 1, first - 1, -1):
        path[i] = s
        s = int(back_ptrs[i - first][s])
    return path


def decode_chords(
    features: FeatureSet,
    key: KeyInfo,
    cfg: DecoderConfig = DecoderConfig(),
    *,
    bass_multiplier: float = 1.2,
    full: Optional[bool] = None,
    cancel_check: Optional[Callable[[], bool]] = None,
) -> List[ChordEvent]:
    """Decode a raw (unfinalized) chord timeline for the given key prior."""
    states = build_states(key, cfg.state_space)
    emissions = emission_matrix(features, states, cfg, bass_multiplier=bass_multiplier)
    transitions = transition_matrix(states, key, cfg)
    k = beam_width(key, cfg, full)

    path = viterbi_beam(emissions, transitions, k, cancel_check=cancel_check, poll_every=cfg.cancel_poll_frames)
    events = _collapse(path, states, features)
    logger.debug("decoded %d raw chords (%d states, beam=%d, key=%s)", len(events), len(states), k, key.name)
    return events


def _collapse(path: np.ndarray, states: Sequence[ChordState], features: FeatureSet) -> List[ChordEvent]:
    runs: List[Tuple[int, int]] = []  # (state, first frame)
    for i, s in enumerate(path):
        s = int(s)
        if s < 0:
            continue
        if runs and runs[-1][0] == s:
            continue
        runs.append((s, i))

    events: List[ChordEvent] = []
    for j, (s, f) in enumerate(runs):
        st = states[s]
        end = features.frame_time(runs[j + 1][1]) if j + 1 < len(runs) else features.duration
        events.append(
            ChordEvent(
                start=features.frame_time(f),
                end=float(end),
                root=st.root,
                quality=st.quality,
                frame=int(f),
                diatonic=st.diatonic,
            )
        )
    return events
