from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .audio import load_audio
from .detector import AnalysisResult, ChordDetector, DetectOptions
from .harmony.chords import chords_to_notes
from .harmony.collaborators import BassDetailDetector, QualityRefiner
from .midi_io import save_chords_csv, save_chords_json, save_chords_text, save_midi_notes
from .synth import render_previews
from .utils.optional_import import load_object

logger = logging.getLogger(__name__)


def run_pipeline(
    *,
    input_audio: Path,
    out_dir: Path,
    options: Optional[DetectOptions] = None,
    make_preview: bool = True,
    bass_detector: Optional[str] = None,  # "module:attr"
    quality_refiner: Optional[str] = None,  # "module:attr"
) -> AnalysisResult:
    """Analyse one file and write chord outputs to out_dir."""

    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    input_audio = Path(input_audio)

    # --- 0) Load ---
    sr, audio = load_audio(input_audio, work_dir=out_dir)
    logger.info("loaded %s: %.2fs @ %d Hz", input_audio.name, len(audio) / max(sr, 1), sr)

    # --- 1) Collaborators (optional plugins) ---
    bass: Optional[BassDetailDetector] = load_object(bass_detector) if bass_detector else None
    refiner: Optional[QualityRefiner] = load_object(quality_refiner) if quality_refiner else None

    # --- 2) Detect ---
    opts = options or DetectOptions()
    result = ChordDetector(bass_detector=bass, quality_refiner=refiner).detect(audio, sr, opts)

    # --- 3) Save outputs ---
    out_csv = out_dir / "01_chords.csv"
    out_json = out_dir / "01_chords.json"
    out_txt = out_dir / "01_chords.txt"
    out_mid = out_dir / "02_chords.mid"

    save_chords_csv(result.chords, out_csv, key=result.key)
    meta = {
        "input": str(input_audio),
        "sample_rate": int(sr),
        "profile": opts.profile,
        "harmony_mode": opts.harmony_mode,
        "key_override": opts.key_override,
    }
    save_chords_json(result.chords, out_json, meta=meta, result=result.to_dict(), key=result.key)
    save_chords_text(result.chords, out_txt, key=result.key, confidence=result.key.confidence)
    save_midi_notes(chords_to_notes(result.chords), out_mid, program=0, name="chords", tempo=result.bpm)

    # --- 4) Preview ---
    if make_preview:
        render_previews(audio, sr, result.chords, out_dir=out_dir)

    # --- 5) Summary ---
    print("\n===== 处理完成 =====")
    print(f"输入: {input_audio}")
    print(f"输出目录: {out_dir}")
    print(f"和弦 CSV: {out_csv}")
    print(f"和弦 JSON: {out_json}")
    print(f"和弦 MIDI: {out_mid}")
    if make_preview:
        print(f"试听(和弦): {out_dir / '03_preview_chords.wav'}")
        print(f"试听(混音): {out_dir / '03_preview_mix.wav'}")

    print("\n===== 调性 / 主音 =====")
    print(f"{result.key.name} (confidence={result.key.confidence:.3f})")
    print(f"tonic: {result.tonic.root} (confidence={result.tonic.confidence:.1f})")
    print(f"bpm: {result.bpm:.0f}")

    print("\n===== 和弦 =====")
    print(" ".join(result.labels()) or "(none)")

    print("\n===== 统计 =====")
    for k, v in result.stats.items():
        print(f"{k}: {v}")
    print("\n===== 耗时 (ms) =====")
    for k, v in result.timings.items():
        print(f"{k}: {v:.1f}")

    return result
