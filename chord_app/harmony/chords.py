from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..key import FLAT_NAMES, KeyInfo, NOTE_NAMES, diatonic_triads, is_diatonic, note_name, scale_pcs
from ..midi_io import NoteEvent

MAJOR = "maj"
MINOR = "min"
QUALITIES = (MAJOR, MINOR)

_INTERVALS = {MAJOR: (0, 4, 7), MINOR: (0, 3, 7)}


@dataclass(frozen=True)
class ChordState:
    root: int
    quality: str
    diatonic: bool

    @property
    def tones(self) -> Tuple[int, ...]:
        return chord_tones(self.root, self.quality)


@dataclass(frozen=True)
class ChordEvent:
    start: float
    end: float
    root: int
    quality: str
    frame: int
    diatonic: bool = True
    bass: Optional[int] = None        # slash bass pitch class
    extension: Optional[str] = None   # "7" | "maj7"
    source: str = "hmm"

    @property
    def label(self) -> str:
        return self.name()

    @property
    def tones(self) -> Tuple[int, ...]:
        return chord_tones(self.root, self.quality)

    def duration(self) -> float:
        return float(self.end - self.start)

    def name(self, key: Optional[KeyInfo] = None) -> str:
        """Display label, e.g. "C#m7/E". Spelling follows the key's sharp/flat side."""
        s = note_name(self.root, key)
        if self.quality == MINOR:
            s += "m"
        if self.extension:
            s += self.extension
        if self.bass is not None and self.bass != self.root:
            s += "/" + note_name(self.bass, key)
        return s

    def to_dict(self, key: Optional[KeyInfo] = None) -> Dict[str, Any]:
        return {
            "label": self.name(key),
            "start": float(self.start),
            "end": float(self.end),
            "duration": self.duration(),
            "root": int(self.root),
            "quality": self.quality,
            "diatonic": bool(self.diatonic),
            "bass": None if self.bass is None else int(self.bass),
            "extension": self.extension,
            "frame": int(self.frame),
            "source": self.source,
        }


def chord_tones(root: int, quality: str) -> Tuple[int, ...]:
    return tuple(int((root + iv) % 12) for iv in _INTERVALS[quality])


def chord_mask(root: int, quality: str) -> np.ndarray:
    """Binary 12-bin chord-tone mask (root, third, fifth)."""
    m = np.zeros(12, dtype=np.float64)
    m[list(chord_tones(root, quality))] = 1.0
    return m


def build_states(key: KeyInfo, state_space: str = "key") -> List[ChordState]:
    """Candidate chord states for a key.

    state_space:
      "key"  : every scale root in both qualities + common borrowed chords
      "full" : all 24 major/minor triads
    """
    pairs = set()
    if state_space == "full":
        for r in range(12):
            for q in QUALITIES:
                pairs.add((r, q))
    elif state_space == "key":
        for r in scale_pcs(key):
            for q in QUALITIES:
                pairs.add((r, q))
        t = key.tonic_pc
        if key.minor:
            # V, IV, VII (leading-tone root), I
            borrowed = [(t + 7, MAJOR), (t + 5, MAJOR), (t + 11, MAJOR), (t, MAJOR)]
        else:
            # bVII, bVI, bIII, iv
            borrowed = [(t + 10, MAJOR), (t + 8, MAJOR), (t + 3, MAJOR), (t + 5, MINOR)]
        for r, q in borrowed:
            pairs.add((r % 12, q))
    else:
        raise ValueError(f"unknown state_space: {state_space}")

    return [
        ChordState(root=r, quality=q, diatonic=is_diatonic(r, q, key))
        for r, q in sorted(pairs, key=lambda p: (p[0], QUALITIES.index(p[1])))
    ]


def parse_chord_label(label: str) -> Tuple[int, str]:
    """Parse "C", "F#m", "Bbmin", "A:min" into (root, quality). Extensions are not accepted."""
    s = label.strip().replace(":", "")
    if not s:
        raise ValueError("empty chord label")
    root = s[0].upper()
    rest = s[1:]
    if rest[:1] in ("#", "b"):
        root += rest[0]
        rest = rest[1:]
    if root in NOTE_NAMES:
        pc = NOTE_NAMES.index(root)
    elif root in FLAT_NAMES:
        pc = FLAT_NAMES.index(root)
    else:
        raise ValueError(f"unknown chord root in {label!r}")

    if rest in ("", "maj", "M"):
        return pc, MAJOR
    if rest in ("m", "min"):
        return pc, MINOR
    raise ValueError(f"unsupported chord quality in {label!r}")


def roman_degree(event: ChordEvent, key: KeyInfo) -> Optional[str]:
    """Roman numeral of a diatonic chord ("V", "vi"), None for borrowed chords."""
    for i, (r, q) in enumerate(diatonic_triads(key)):
        if r == event.root and q == event.quality:
            numeral = ("I", "II", "III", "IV", "V", "VI", "VII")[i]
            return numeral if q == MAJOR else numeral.lower()
    return None


def chords_to_notes(
    events: Sequence[ChordEvent],
    velocity: int = 70,
    octave: int = 4,
) -> List[NoteEvent]:
    """Block-chord voicing for MIDI export / preview (slash bass an octave lower)."""
    notes: List[NoteEvent] = []
    v = int(max(1, min(127, velocity)))
    base_c = 12 * (octave + 1)  # C4=60 when octave=4

    for ev in events:
        root = base_c + ev.root
        pitches = [root + iv for iv in _INTERVALS[ev.quality]]
        if ev.extension == "7":
            pitches.append(root + 10)
        elif ev.extension == "maj7":
            pitches.append(root + 11)
        if ev.bass is not None:
            pitches.append(base_c - 12 + ev.bass)
        for p in pitches:
            notes.append(NoteEvent(pitch=int(p), start=float(ev.start), end=float(ev.end), velocity=v))

    notes.sort(key=lambda x: (x.start, x.pitch))
    return notes
