from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..key import KeyInfo, is_diatonic, make_key
from .chords import ChordEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TonicEstimate:
    root: int
    confidence: float             # 0..100
    scores: Tuple[float, ...] = field(default=(0.0,) * 12)
    method: str = "chords"

    def to_dict(self) -> Dict[str, object]:
        return {"root": int(self.root), "confidence": float(self.confidence), "method": self.method}


@dataclass(frozen=True)
class TonicConfig:
    # key re-validation from decoded chords
    min_events: int = 4
    min_fit_ratio: float = 0.65
    fit_weight: float = 20.0
    duration_weight: float = 5.0
    count_weight: float = 3.0
    fourth_up_target: float = 15.0    # X -> X+5 (V-I)
    fifth_up_target: float = 10.0     # X -> X+7 (IV-I)
    two_five_one_target: float = 20.0
    four_five_one_target: float = 25.0
    first_root_bonus: float = 40.0
    last_root_bonus: float = 25.0
    dominant_root_bonus: float = 30.0
    dominant_root_lead: float = 0.15  # longest root must lead the runner-up by this fraction
    key_change_margin: float = 15.0
    opening_preference: float = 10.0
    subdominant_guard_gain: float = 40.0
    subdominant_guard_fit: float = 0.90
    subdominant_guard_gain_weak: float = 25.0
    subdominant_guard_fit_weak: float = 0.85

    # tonic voting
    tonic_min_events: int = 3
    short_confidence: float = 50.0
    share_weight: float = 40.0
    significant_seconds: float = 0.5
    opening_weights: Tuple[float, ...] = (30.0, 10.0, 5.0)
    closing_weights: Tuple[float, ...] = (5.0, 10.0, 45.0)
    authentic_weight: float = 6.0     # per second of the resolution chord
    plagal_weight: float = 2.0


def _root_stats(timeline: Sequence[ChordEvent]) -> Tuple[np.ndarray, np.ndarray]:
    counts = np.zeros(12, dtype=np.float64)
    durations = np.zeros(12, dtype=np.float64)
    for ev in timeline:
        counts[ev.root] += 1
        durations[ev.root] += max(0.0, ev.duration())
    return counts, durations


def cadence_targets(timeline: Sequence[ChordEvent], cfg: TonicConfig = TonicConfig()) -> np.ndarray:
    """Per-root evidence of being a resolution target (V-I, IV-I, ii-V-I, IV-V-I)."""
    targets = np.zeros(12, dtype=np.float64)
    for i in range(len(timeline) - 1):
        a, b = timeline[i], timeline[i + 1]
        step = (b.root - a.root) % 12
        if step == 5:
            targets[b.root] += cfg.fourth_up_target
        elif step == 7:
            targets[b.root] += cfg.fifth_up_target

        if i + 2 < len(timeline):
            c = timeline[i + 2]
            step2 = (c.root - b.root) % 12
            if step == 5 and step2 == 5:
                targets[c.root] += cfg.two_five_one_target
            elif step == 2 and step2 == 5:
                targets[c.root] += cfg.four_five_one_target
    return targets


@dataclass(frozen=True)
class _KeyCandidate:
    root: int
    mode: str
    score: float
    fit: float


def score_keys(timeline: Sequence[ChordEvent], cfg: TonicConfig = TonicConfig()) -> List[_KeyCandidate]:
    """Score all 24 keys against a decoded timeline, best first."""
    if not timeline:
        return []

    counts, durations = _root_stats(timeline)
    targets = cadence_targets(timeline, cfg)
    first_root = timeline[0].root
    last_root = timeline[-1].root
    ranked = np.sort(durations)[::-1]
    dominant_root: Optional[int] = None
    if ranked[0] > 0 and ranked[0] > ranked[1] * (1.0 + cfg.dominant_root_lead):
        dominant_root = int(durations.argmax())

    out: List[_KeyCandidate] = []
    for root in range(12):
        for mode in ("major", "minor"):
            key = make_key(root, mode, 0.0)
            fit = sum(1 for ev in timeline if is_diatonic(ev.root, ev.quality, key)) / len(timeline)
            if fit < cfg.min_fit_ratio:
                continue
            score = fit * cfg.fit_weight
            score += durations[root] * cfg.duration_weight
            score += counts[root] * cfg.count_weight
            score += targets[root]
            if first_root == root:
                score += cfg.first_root_bonus
            if last_root == root:
                score += cfg.last_root_bonus
            if dominant_root == root:
                score += cfg.dominant_root_bonus
            out.append(_KeyCandidate(root=root, mode=mode, score=float(score), fit=float(fit)))

    out.sort(key=lambda c: (-c.score, c.root, c.mode))
    return out


def revalidate_key(
    timeline: Sequence[ChordEvent],
    key: KeyInfo,
    cfg: TonicConfig = TonicConfig(),
) -> KeyInfo:
    """Re-score the key from decoded chords. Returns `key` itself when nothing changes."""
    if len(timeline) < cfg.min_events:
        return key

    candidates = score_keys(timeline, cfg)
    if not candidates:
        return key

    best = candidates[0]
    current = next((c for c in candidates if c.root == key.tonic_pc and c.mode == key.mode), None)
    current_score = current.score if current is not None else 0.0
    opening_root = timeline[0].root

    # tonic -> subdominant shifts need clear evidence unless the cadences point there
    if (best.root - key.tonic_pc) % 12 == 5 and not key.minor:
        targets = cadence_targets(timeline, cfg)
        if targets[best.root] <= targets[key.tonic_pc]:
            gain = best.score - current_score
            if opening_root == key.tonic_pc:
                blocked = gain < cfg.subdominant_guard_gain or best.fit < cfg.subdominant_guard_fit
            else:
                blocked = gain < cfg.subdominant_guard_gain_weak or best.fit < cfg.subdominant_guard_fit_weak
            if blocked:
                logger.debug("kept %s over subdominant candidate (gain %.1f)", key.name, gain)
                return key

    opening = next((c for c in candidates if c.root == opening_root), None)
    if opening is not None and opening.score >= best.score - cfg.opening_preference:
        best = opening

    if best.root == key.tonic_pc and best.mode == key.mode:
        return key
    if best.score <= current_score + cfg.key_change_margin:
        return key

    new_key = make_key(best.root, best.mode, min(0.95, key.confidence + 0.1))
    logger.info("key re-validated from chords: %s -> %s (%.1f vs %.1f)", key.name, new_key.name, best.score, current_score)
    return new_key


def estimate_tonic(
    timeline: Sequence[ChordEvent],
    key: KeyInfo,
    cfg: TonicConfig = TonicConfig(),
) -> TonicEstimate:
    """Vote for the home chord root from durations, phrase edges and cadences.

    Uses only the chord sequence; the key is consulted for the fallback root
    when the timeline is too short to vote.
    """
    if not timeline:
        return TonicEstimate(root=key.tonic_pc, confidence=0.0, method="empty")
    if len(timeline) < cfg.tonic_min_events:
        return TonicEstimate(root=key.tonic_pc, confidence=cfg.short_confidence, method="key")

    scores = np.zeros(12, dtype=np.float64)
    total = sum(max(0.0, ev.duration()) for ev in timeline)
    if total > 0:
        for ev in timeline:
            scores[ev.root] += cfg.share_weight * max(0.0, ev.duration()) / total

    significant = [ev for ev in timeline if ev.duration() >= cfg.significant_seconds] or list(timeline)
    for w, ev in zip(cfg.opening_weights, significant):
        scores[ev.root] += w

    tail = list(timeline[-len(cfg.closing_weights) :])
    for w, ev in zip(cfg.closing_weights[-len(tail) :], tail):
        scores[ev.root] += w

    for a, b in zip(timeline[:-1], timeline[1:]):
        step = (b.root - a.root) % 12
        if step == 5:
            scores[b.root] += cfg.authentic_weight * max(0.0, b.duration())
        elif step == 7:
            scores[b.root] += cfg.plagal_weight * max(0.0, b.duration())

    order = np.argsort(-scores, kind="stable")
    best, second = int(order[0]), int(order[1])
    denom = float(scores[best] + scores[second])
    conf = 100.0 * float(scores[best]) / denom if denom > 0 else 0.0

    return TonicEstimate(
        root=best,
        confidence=float(max(0.0, min(100.0, conf))),
        scores=tuple(float(s) for s in scores),
    )
