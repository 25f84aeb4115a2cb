from __future__ import annotations

from .chords import ChordEvent, ChordState, build_states, chords_to_notes
from .collaborators import BassDetail, BassDetailDetector, QualityRefiner, QualitySuggestion
from .decoder import DecoderConfig, decode_chords
from .timeline import FinalizeConfig, finalize_timeline
from .tonic import TonicConfig, TonicEstimate, estimate_tonic, revalidate_key

__all__ = [
    "BassDetail",
    "BassDetailDetector",
    "ChordEvent",
    "ChordState",
    "DecoderConfig",
    "FinalizeConfig",
    "QualityRefiner",
    "QualitySuggestion",
    "TonicConfig",
    "TonicEstimate",
    "build_states",
    "chords_to_notes",
    "decode_chords",
    "estimate_tonic",
    "finalize_timeline",
    "revalidate_key",
]
