from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

import numpy as np

from ..key import KeyInfo, is_diatonic
from .chords import MAJOR, MINOR, ChordEvent, parse_chord_label

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BassDetail:
    bass_pc: int
    confidence: float


@dataclass(frozen=True)
class QualitySuggestion:
    label: str              # "major" / "minor", or a chord label such as "Am"
    confidence: float
    should_override: bool


@runtime_checkable
class BassDetailDetector(Protocol):
    def detect_bass(
        self,
        audio: np.ndarray,
        timeline: Sequence[ChordEvent],
        key: KeyInfo,
        options: Mapping[str, Any],
    ) -> Sequence[Any]:
        ...


@runtime_checkable
class QualityRefiner(Protocol):
    def refine(
        self,
        audio: np.ndarray,
        timeline: Sequence[ChordEvent],
        options: Mapping[str, Any],
    ) -> Sequence[Any]:
        ...


# ------------------------------------------------------------
# Coercion of collaborator output
# ------------------------------------------------------------
def _coerce_bass(item: Any) -> Optional[BassDetail]:
    if item is None:
        return None
    if isinstance(item, BassDetail):
        pc, conf = item.bass_pc, item.confidence
    elif isinstance(item, Mapping):
        pc = item.get("bass_pc", item.get("bassPitchClass"))
        conf = item.get("confidence", item.get("bassConfidence"))
    else:
        return None
    try:
        pc_i = int(pc)
        conf_f = float(conf)
    except (TypeError, ValueError):
        return None
    if not 0 <= pc_i <= 11 or not np.isfinite(conf_f):
        return None
    return BassDetail(bass_pc=pc_i, confidence=conf_f)


_QUALITY_WORDS = {
    "maj": MAJOR,
    "major": MAJOR,
    "min": MINOR,
    "minor": MINOR,
    "m": MINOR,
    "M": MAJOR,
}


def _coerce_quality(item: Any, ev: ChordEvent) -> Optional[QualitySuggestion]:
    if item is None:
        return None
    if isinstance(item, QualitySuggestion):
        label, conf, override = item.label, item.confidence, item.should_override
    elif isinstance(item, Mapping):
        label = item.get("label", item.get("suggestedQualityLabel"))
        conf = item.get("confidence")
        override = item.get("should_override", item.get("shouldOverride", False))
    else:
        return None
    if not isinstance(label, str):
        return None
    try:
        conf_f = float(conf)
    except (TypeError, ValueError):
        return None
    if not np.isfinite(conf_f):
        return None

    # single-letter "m"/"M" are case-sensitive
    word = label.strip()
    quality = _QUALITY_WORDS.get(word if len(word) == 1 else word.lower())
    if quality is None:
        try:
            root, quality = parse_chord_label(label)
        except ValueError:
            return None
        if root != ev.root:
            return None
    return QualitySuggestion(label=quality, confidence=conf_f, should_override=bool(override))


def _neighbours_distinct(events: Sequence[ChordEvent], i: int, candidate: ChordEvent) -> bool:
    if i > 0 and events[i - 1].label == candidate.label:
        return False
    if i + 1 < len(events) and events[i + 1].label == candidate.label:
        return False
    return True


def _align(results: Any, n: int, who: str) -> List[Any]:
    if results is None:
        return [None] * n
    try:
        items = list(results)
    except TypeError:
        logger.warning("%s returned a non-sequence (%s); ignored", who, type(results).__name__)
        return [None] * n
    except Exception as e:
        logger.warning("%s results could not be read; ignored: %s", who, e)
        return [None] * n
    if len(items) != n:
        logger.warning("%s returned %d results for %d chords", who, len(items), n)
    items = items[:n]
    return items + [None] * (n - len(items))


# ------------------------------------------------------------
# Application
# ------------------------------------------------------------
def apply_bass_details(
    timeline: Sequence[ChordEvent],
    details: Sequence[Any],
    min_confidence: float = 0.35,
    *,
    extension_confidence: Optional[float] = None,
    allow_extensions: bool = True,
) -> List[ChordEvent]:
    """Add inversions / sevenths from confident bass readings. Timing, root and quality never change."""
    ext_floor = min_confidence if extension_confidence is None else extension_confidence
    events = list(timeline)
    for i, raw in enumerate(_align(details, len(events), "bass detector")):
        d = _coerce_bass(raw)
        if d is None or d.confidence < min_confidence:
            continue
        ev = events[i]
        interval = (d.bass_pc - ev.root) % 12

        cand: Optional[ChordEvent] = None
        if interval == 7 or (interval == 3 and ev.quality == MINOR) or (interval == 4 and ev.quality == MAJOR):
            cand = replace(ev, bass=d.bass_pc)
        elif not allow_extensions or d.confidence < ext_floor:
            cand = None
        elif interval == 10 and ev.extension is None:
            cand = replace(ev, extension="7")
        elif interval == 11 and ev.quality == MAJOR and ev.extension is None:
            cand = replace(ev, extension="maj7")

        if cand is not None and _neighbours_distinct(events, i, cand):
            events[i] = cand
    return events


def apply_quality_suggestions(
    timeline: Sequence[ChordEvent],
    suggestions: Sequence[Any],
    min_confidence: float = 0.40,
    key: Optional[KeyInfo] = None,
) -> List[ChordEvent]:
    """Switch major/minor where the refiner insists with enough confidence."""
    events = list(timeline)
    for i, raw in enumerate(_align(suggestions, len(events), "quality refiner")):
        ev = events[i]
        s = _coerce_quality(raw, ev)
        if s is None or not s.should_override or s.confidence < min_confidence:
            continue
        if s.label == ev.quality:
            continue
        cand = replace(ev, quality=s.label, source="refiner")
        if key is not None:
            cand = replace(cand, diatonic=is_diatonic(cand.root, cand.quality, key))
        if _neighbours_distinct(events, i, cand):
            events[i] = cand
        else:
            logger.debug("skipped quality override at %.2fs (would repeat neighbour)", ev.start)
    return events


def run_bass_detector(
    detector: Optional[BassDetailDetector],
    audio: np.ndarray,
    timeline: Sequence[ChordEvent],
    key: KeyInfo,
    options: Mapping[str, Any],
) -> List[ChordEvent]:
    if detector is None or not timeline:
        return list(timeline)
    try:
        details = detector.detect_bass(audio, list(timeline), key, dict(options))
    except Exception as e:
        logger.warning("bass detector failed, keeping decoded chords: %s", e)
        return list(timeline)
    min_conf = float(options.get("min_bass_confidence", 0.35))
    sensitivity = float(options.get("extension_sensitivity", 1.0)) * float(options.get("extension_multiplier", 1.0))
    return apply_bass_details(
        timeline,
        details,
        min_conf,
        extension_confidence=min(1.0, min_conf / max(sensitivity, 1e-6)),
        allow_extensions=options.get("harmony_mode", "jazz") != "basic",
    )


def run_quality_refiner(
    refiner: Optional[QualityRefiner],
    audio: np.ndarray,
    timeline: Sequence[ChordEvent],
    key: KeyInfo,
    options: Mapping[str, Any],
) -> List[ChordEvent]:
    if refiner is None or not timeline:
        return list(timeline)
    try:
        suggestions = refiner.refine(audio, list(timeline), dict(options))
    except Exception as e:
        logger.warning("quality refiner failed, keeping decoded chords: %s", e)
        return list(timeline)
    return apply_quality_suggestions(timeline, suggestions, float(options.get("min_quality_confidence", 0.40)), key)
