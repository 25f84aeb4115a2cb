from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from .errors import check_cancelled
from .features import FeatureConfig, FeatureSet, extract_features
from .harmony.chords import ChordEvent
from .harmony.collaborators import BassDetailDetector, QualityRefiner, run_bass_detector, run_quality_refiner
from .harmony.decoder import DecoderConfig, decode_chords
from .harmony.timeline import FinalizeConfig, finalize_timeline
from .harmony.tonic import TonicConfig, TonicEstimate, estimate_tonic, revalidate_key
from .key import KeyConfig, KeyInfo, estimate_key, make_key, parse_key_string

logger = logging.getLogger(__name__)

HARMONY_MODES = ("basic", "jazz", "pro")


# ------------------------------------------------------------
# Configuration
# ------------------------------------------------------------
@dataclass(frozen=True)
class AnalysisConfig:
    features: FeatureConfig = FeatureConfig()
    key: KeyConfig = KeyConfig()
    decoder: DecoderConfig = DecoderConfig()
    finalize: FinalizeConfig = FinalizeConfig()
    tonic: TonicConfig = TonicConfig()


# Named threshold presets (overrides on top of the defaults).
PROFILES: Dict[str, Dict[str, Dict[str, Any]]] = {
    "balanced": {},
    "sensitive": {
        "features": {"bass_quality_floor": 0.25},
        "key": {"bass_confidence_threshold": 0.20},
        "decoder": {"emission_floor": 0.25, "full_beam_confidence": 0.70},
        "finalize": {"min_seconds": 0.35},
        "tonic": {"key_change_margin": 10.0},
    },
    "conservative": {
        "features": {"bass_quality_floor": 0.40},
        "key": {"bass_confidence_threshold": 0.30},
        "decoder": {"emission_floor": 0.35, "diatonic_bonus": 0.25, "full_beam_confidence": 0.85},
        "finalize": {"min_seconds": 0.75},
        "tonic": {"key_change_margin": 25.0, "min_fit_ratio": 0.75},
    },
}


def config_for_profile(profile: str = "balanced") -> AnalysisConfig:
    if profile not in PROFILES:
        raise ValueError(f"unknown profile: {profile} (choose from {', '.join(PROFILES)})")
    base = AnalysisConfig()
    over = PROFILES[profile]
    return AnalysisConfig(
        features=FeatureConfig(**{**base.features.__dict__, **over.get("features", {})}),
        key=KeyConfig(**{**base.key.__dict__, **over.get("key", {})}),
        decoder=DecoderConfig(**{**base.decoder.__dict__, **over.get("decoder", {})}),
        finalize=FinalizeConfig(**{**base.finalize.__dict__, **over.get("finalize", {})}),
        tonic=TonicConfig(**{**base.tonic.__dict__, **over.get("tonic", {})}),
    )


@dataclass(frozen=True)
class DetectOptions:
    bass_multiplier: float = 1.2
    extension_multiplier: float = 1.0
    extension_sensitivity: float = 1.0
    harmony_mode: str = "jazz"  # basic|jazz|pro
    tonic_rerun_threshold: float = 75.0  # tonic confidence (0..100) needed to re-key
    progress_callback: Optional[Callable[[Dict[str, Any]], None]] = None
    cancel_check: Optional[Callable[[], bool]] = None
    key_override: Optional[str] = None  # e.g. "Amin"; locks the key
    profile: str = "balanced"
    max_key_changes: int = 2
    min_quality_confidence: float = 0.40
    min_bass_confidence: float = 0.35

    def validate(self) -> None:
        if self.harmony_mode not in HARMONY_MODES:
            raise ValueError(f"unknown harmony_mode: {self.harmony_mode} (choose from {', '.join(HARMONY_MODES)})")
        if self.profile not in PROFILES:
            raise ValueError(f"unknown profile: {self.profile}")
        if self.max_key_changes < 0:
            raise ValueError("max_key_changes must be >= 0")
        for name in ("bass_multiplier", "extension_multiplier", "extension_sensitivity"):
            if float(getattr(self, name)) < 0:
                raise ValueError(f"{name} must be >= 0")

    def collaborator_options(self) -> Dict[str, Any]:
        return {
            "harmony_mode": self.harmony_mode,
            "bass_multiplier": float(self.bass_multiplier),
            "extension_multiplier": float(self.extension_multiplier),
            "extension_sensitivity": float(self.extension_sensitivity),
            "min_bass_confidence": float(self.min_bass_confidence),
            "min_quality_confidence": float(self.min_quality_confidence),
        }


# ------------------------------------------------------------
# Refinement state / result
# ------------------------------------------------------------
class Stage(str, Enum):
    DECODED = "decoded"
    KEY_REVALIDATED = "key_revalidated"
    REDECODED = "redecoded"
    TONIC_ESTIMATED = "tonic_estimated"
    DONE = "done"


@dataclass
class RefinementState:
    """Key / timeline owned by one detect() call, plus the key-change budget."""

    key: KeyInfo
    timeline: List[ChordEvent]
    budget: int = 2
    key_changes: int = 0
    stages: List[Stage] = field(default_factory=list)
    key_history: List[str] = field(default_factory=list)

    def can_change(self) -> bool:
        return self.key_changes < self.budget

    def accept(self, key: KeyInfo, timeline: List[ChordEvent]) -> None:
        self.key_history.append(self.key.name)
        self.key = key
        self.timeline = timeline
        self.key_changes += 1

    def mark(self, stage: Stage) -> None:
        self.stages.append(stage)


@dataclass(frozen=True)
class AnalysisResult:
    chords: Tuple[ChordEvent, ...]
    key: KeyInfo
    tonic: TonicEstimate
    bpm: float
    duration: float
    stats: Dict[str, Any]
    timings: Dict[str, float]
    key_changes: int = 0
    stages: Tuple[str, ...] = ()

    def labels(self) -> List[str]:
        return [ev.name(self.key) for ev in self.chords]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": {
                "name": self.key.name,
                "tonic_pc": int(self.key.tonic_pc),
                "mode": self.key.mode,
                "confidence": float(self.key.confidence),
            },
            "tonic": self.tonic.to_dict(),
            "bpm": float(self.bpm),
            "duration": float(self.duration),
            "key_changes": int(self.key_changes),
            "stages": list(self.stages),
            "stats": dict(self.stats),
            "timings": dict(self.timings),
            "chords": [ev.to_dict(self.key) for ev in self.chords],
        }


# ------------------------------------------------------------
# Detector
# ------------------------------------------------------------
class _Progress:
    def __init__(self, callback: Optional[Callable[[Dict[str, Any]], None]]):
        self.callback = callback

    def __call__(self, stage: str, progress: float, **extra: Any) -> None:
        if self.callback is None:
            return
        payload = {"stage": stage, "progress": float(progress), **extra}
        try:
            self.callback(payload)
        except Exception as e:
            logger.warning("progress callback raised at %s: %s", stage, e)


def _ms(t0: float) -> float:
    return float((time.perf_counter() - t0) * 1000.0)


class ChordDetector:
    """Feature extraction -> key -> beam Viterbi -> bounded key/tonic refinement.

    Optional collaborators are injected here and only ever decorate the final
    timeline; their failures never change the decoded result.
    """

    def __init__(
        self,
        bass_detector: Optional[BassDetailDetector] = None,
        quality_refiner: Optional[QualityRefiner] = None,
        config: Optional[AnalysisConfig] = None,
    ):
        self.bass_detector = bass_detector
        self.quality_refiner = quality_refiner
        self.config = config

    def _decode(
        self,
        features: FeatureSet,
        key: KeyInfo,
        cfg: AnalysisConfig,
        opts: DetectOptions,
        full: Optional[bool],
    ) -> List[ChordEvent]:
        raw = decode_chords(
            features,
            key,
            cfg.decoder,
            bass_multiplier=opts.bass_multiplier,
            full=full,
            cancel_check=opts.cancel_check,
        )
        return finalize_timeline(raw, key, features, cfg.finalize)

    def _refine(
        self,
        state: RefinementState,
        features: FeatureSet,
        cfg: AnalysisConfig,
        opts: DetectOptions,
    ) -> TonicEstimate:
        while True:
            check_cancelled(opts.cancel_check, "key refinement")
            new_key = revalidate_key(state.timeline, state.key, cfg.tonic)
            state.mark(Stage.KEY_REVALIDATED)
            if new_key.tonic_pc == state.key.tonic_pc and new_key.mode == state.key.mode:
                break
            if not state.can_change():
                logger.info("key change budget exhausted; keeping %s (suggested %s)", state.key.name, new_key.name)
                break
            state.accept(new_key, self._decode(features, new_key, cfg, opts, full=True))
            state.mark(Stage.REDECODED)

        check_cancelled(opts.cancel_check, "tonic estimation")
        tonic = estimate_tonic(state.timeline, state.key, cfg.tonic)
        state.mark(Stage.TONIC_ESTIMATED)

        if (
            tonic.root != state.key.tonic_pc
            and tonic.confidence >= float(opts.tonic_rerun_threshold)
            and state.can_change()
        ):
            new_key = make_key(tonic.root, state.key.mode, max(state.key.confidence, tonic.confidence / 100.0))
            logger.info("tonic %d (%.0f%%) overrides key %s -> %s", tonic.root, tonic.confidence, state.key.name, new_key.name)
            state.accept(new_key, self._decode(features, new_key, cfg, opts, full=True))
            state.mark(Stage.REDECODED)
            tonic = estimate_tonic(state.timeline, state.key, cfg.tonic)
            state.mark(Stage.TONIC_ESTIMATED)

        return tonic

    def detect(
        self,
        samples: np.ndarray,
        sample_rate: int,
        options: Optional[DetectOptions] = None,
    ) -> AnalysisResult:
        opts = options or DetectOptions()
        opts.validate()
        cfg = self.config or config_for_profile(opts.profile)
        progress = _Progress(opts.progress_callback)
        audio = np.asarray(samples)
        timings: Dict[str, float] = {}
        t_total = time.perf_counter()

        # --- 1) Features ---
        progress("extracting", 0.1)
        t0 = time.perf_counter()
        features = extract_features(audio, int(sample_rate), cfg.features, cancel_check=opts.cancel_check)
        timings["features"] = _ms(t0)

        # --- 2) Key ---
        progress("detecting_key", 0.3)
        t0 = time.perf_counter()
        locked = bool(opts.key_override)
        if locked:
            key = parse_key_string(str(opts.key_override))
        else:
            key = estimate_key(features, cfg.key)
        timings["key"] = _ms(t0)
        progress("key_detected", 0.4, key=key.name, confidence=key.confidence)

        # --- 3) Decode ---
        full = key.confidence > cfg.decoder.full_beam_confidence
        progress("analyzing_full" if full else "analyzing_simple", 0.5)
        t0 = time.perf_counter()
        state = RefinementState(key=key, timeline=self._decode(features, key, cfg, opts, full), budget=int(opts.max_key_changes))
        state.mark(Stage.DECODED)
        timings["decode"] = _ms(t0)

        # --- 4) Refine ---
        t0 = time.perf_counter()
        if locked:
            tonic = estimate_tonic(state.timeline, state.key, cfg.tonic)
            state.mark(Stage.TONIC_ESTIMATED)
        else:
            progress("refining", 0.7)
            tonic = self._refine(state, features, cfg, opts)
        timings["refine"] = _ms(t0)
        progress("key_refined", 0.75, key=state.key.name, key_changes=state.key_changes)

        # --- 5) Collaborators ---
        progress("decorating", 0.8)
        t0 = time.perf_counter()
        collab_opts = opts.collaborator_options()
        timeline = run_quality_refiner(self.quality_refiner, audio, state.timeline, state.key, collab_opts)
        timeline = run_bass_detector(self.bass_detector, audio, timeline, state.key, collab_opts)
        timings["decorate"] = _ms(t0)

        state.mark(Stage.DONE)
        timings["total"] = _ms(t_total)

        stats = build_stats(timeline, features, state)
        result = AnalysisResult(
            chords=tuple(timeline),
            key=state.key,
            tonic=tonic,
            bpm=float(features.bpm),
            duration=float(features.duration),
            stats=stats,
            timings=timings,
            key_changes=state.key_changes,
            stages=tuple(s.value for s in state.stages),
        )
        progress("complete", 1.0, chords=len(timeline))
        logger.info(
            "detected %d chords, key=%s (%.2f), tonic=%d (%.0f), bpm=%.0f in %.0f ms",
            len(timeline),
            result.key.name,
            result.key.confidence,
            tonic.root,
            tonic.confidence,
            result.bpm,
            timings["total"],
        )
        return result


def build_stats(timeline: List[ChordEvent], features: FeatureSet, state: RefinementState) -> Dict[str, Any]:
    n = len(timeline)
    diatonic = sum(1 for ev in timeline if ev.diatonic)
    return {
        "total_chords": n,
        "unique_chords": len({ev.label for ev in timeline}),
        "diatonic_chords": diatonic,
        "borrowed_chords": n - diatonic,
        "diatonic_ratio": float(diatonic / n) if n else 0.0,
        "slash_chords": sum(1 for ev in timeline if ev.bass is not None),
        "extended_chords": sum(1 for ev in timeline if ev.extension),
        "refined_chords": sum(1 for ev in timeline if ev.source == "refiner"),
        "key_changes": state.key_changes,
        "key_history": list(state.key_history),
        "frames": features.n_frames,
        "bass_frames": int(np.sum(features.bass >= 0)),
        "music_start": features.frame_time(features.intro_frame),
    }


def detect(
    samples: np.ndarray,
    sample_rate: int,
    options: Optional[DetectOptions] = None,
    *,
    bass_detector: Optional[BassDetailDetector] = None,
    quality_refiner: Optional[QualityRefiner] = None,
) -> AnalysisResult:
    """Run the full chord analysis on a mono sample buffer."""
    return ChordDetector(bass_detector=bass_detector, quality_refiner=quality_refiner).detect(
        samples, sample_rate, options
    )
