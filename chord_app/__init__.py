"""chord_app - Chord recognition pipeline for recorded (monophonic mix) audio.

Main entry:
  python -m chord_app.cli ...

Library entry:
  from chord_app import detect

Pipeline stages:
- spectral features (chroma / bass pitch class / energy / tempo)
- two-tier key estimation (bass histogram, Krumhansl-Schmuckler fallback)
- beam Viterbi chord decoding with music-theory transition costs
- bounded key / tonic refinement loop
"""

from __future__ import annotations

from .detector import AnalysisResult, ChordDetector, DetectOptions, detect
from .errors import AnalysisCancelled

__all__ = [
    "__version__",
    "AnalysisCancelled",
    "AnalysisResult",
    "ChordDetector",
    "DetectOptions",
    "detect",
]
__version__ = "1.0.0"
