from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

from .detector import HARMONY_MODES, PROFILES, DetectOptions
from .pipeline import run_pipeline


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="chord_app",
        description=(
            "音频 -> 和弦序列 (CSV/JSON/MIDI) + 调性/主音 + 试听 wav\n"
            "流程: chroma/低音/节拍 -> 调性估计 -> Viterbi 和弦解码 -> 调性/主音复核"
        ),
    )

    p.add_argument("input", type=str, help="输入音频路径（wav/flac/ogg 直接读取；m4a/mp3 等需要 ffmpeg）")
    p.add_argument("--out", type=str, default="out_chords", help="输出目录")

    p.add_argument("--key", type=str, default="", help="手动指定调性，如 Cmaj/Amin/Bbmaj (空则自动，指定后不再复核)")
    p.add_argument(
        "--profile",
        type=str,
        default="balanced",
        choices=list(PROFILES),
        help="阈值预设：balanced / sensitive(更多和弦) / conservative(更稳)",
    )
    p.add_argument(
        "--harmony_mode",
        type=str,
        default="jazz",
        choices=list(HARMONY_MODES),
        help="basic 不添加七和弦；jazz/pro 允许低音插件添加 7 / maj7",
    )
    p.add_argument("--bass_multiplier", type=float, default=1.2, help="低音与根音一致时的加分倍数")
    p.add_argument("--extension_multiplier", type=float, default=1.0, help="扩展音加权 (传给插件)")
    p.add_argument("--extension_sensitivity", type=float, default=1.0, help="扩展音灵敏度 (越大越容易加 7)")
    p.add_argument("--tonic_rerun_threshold", type=float, default=75.0, help="主音置信度(0-100)高于该值时按主音重解码")
    p.add_argument("--max_key_changes", type=int, default=2, help="单次分析中最多接受的调性变更次数")

    p.add_argument("--bass_detector", type=str, default="", help="低音细节插件 module:attr (可选)")
    p.add_argument("--quality_refiner", type=str, default="", help="大小调和弦修正插件 module:attr (可选)")

    p.add_argument("--no_preview", action="store_true", help="不生成 preview wav（默认生成）")
    p.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")

    return p


def main(argv: Optional[List[str]] = None) -> None:
    p = build_parser()
    args = p.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    input_path = Path(args.input).expanduser().resolve()
    out_dir = Path(args.out).expanduser().resolve()

    options = DetectOptions(
        bass_multiplier=float(args.bass_multiplier),
        extension_multiplier=float(args.extension_multiplier),
        extension_sensitivity=float(args.extension_sensitivity),
        harmony_mode=str(args.harmony_mode),
        tonic_rerun_threshold=float(args.tonic_rerun_threshold),
        key_override=(args.key.strip() or None),
        profile=str(args.profile),
        max_key_changes=int(args.max_key_changes),
    )

    run_pipeline(
        input_audio=input_path,
        out_dir=out_dir,
        options=options,
        make_preview=(not args.no_preview),
        bass_detector=(args.bass_detector.strip() or None),
        quality_refiner=(args.quality_refiner.strip() or None),
    )


if __name__ == "__main__":
    main()
