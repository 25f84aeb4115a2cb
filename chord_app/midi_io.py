from __future__ import annotations

import csv
import json
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

try:
    import pretty_midi
except ImportError as e:  # pragma: no cover
    raise ImportError(
        "缺少 pretty_midi。请安装：\n"
        "  python -m pip install pretty_midi\n"
        f"原始错误: {e}"
    )

if TYPE_CHECKING:
    from .harmony.chords import ChordEvent
    from .key import KeyInfo


@dataclass(frozen=True)
class NoteEvent:
    pitch: int        # MIDI note number
    start: float      # seconds
    end: float        # seconds
    velocity: int     # 1..127

    def duration(self) -> float:
        return float(self.end - self.start)


def save_midi_notes(
    notes: List[NoteEvent],
    out_midi: Path,
    program: int = 0,
    name: str = "chords",
    tempo: float = 120.0,
) -> None:
    """Save a single-track MIDI."""
    out_midi.parent.mkdir(parents=True, exist_ok=True)
    pm = pretty_midi.PrettyMIDI(initial_tempo=float(tempo))
    inst = pretty_midi.Instrument(program=program, name=name)

    for n in notes:
        if n.end <= n.start:
            continue
        vel = int(max(1, min(127, n.velocity)))
        inst.notes.append(
            pretty_midi.Note(
                velocity=vel,
                pitch=int(n.pitch),
                start=float(n.start),
                end=float(n.end),
            )
        )

    pm.instruments.append(inst)
    pm.write(str(out_midi))


def save_chords_json(
    chords: Sequence["ChordEvent"],
    out_json: Path,
    meta: Dict[str, Any],
    result: Dict[str, Any],
    key: Optional["KeyInfo"] = None,
) -> None:
    out_json.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "meta": meta,
        **{k: v for k, v in result.items() if k != "chords"},
        "chords": [ev.to_dict(key) for ev in chords],
    }
    out_json.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def save_chords_csv(chords: Sequence["ChordEvent"], out_csv: Path, key: Optional["KeyInfo"] = None) -> None:
    out_csv.parent.mkdir(parents=True, exist_ok=True)
    with out_csv.open("w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(["start_s", "end_s", "label", "root", "quality", "diatonic"])
        for ev in chords:
            w.writerow(
                [
                    round(float(ev.start), 3),
                    round(float(ev.end), 3),
                    ev.name(key),
                    int(ev.root),
                    ev.quality,
                    int(bool(ev.diatonic)),
                ]
            )


def save_chords_text(chords: Sequence["ChordEvent"], out_txt: Path, key: "KeyInfo", confidence: float) -> None:
    """Plain chord chart for quick human inspection."""
    out_txt.parent.mkdir(parents=True, exist_ok=True)
    lines = [
        f"# Key: {key.name} (confidence={confidence:.3f})",
        "# Format: time_s <TAB> chord <TAB> duration_ms",
        "",
    ]
    for ev in chords:
        dur_ms = int(round(ev.duration() * 1000))
        lines.append(f"{ev.start:.2f}\t{ev.name(key)}\t{dur_ms}ms")
    out_txt.write_text("\n".join(lines), encoding="utf-8")
