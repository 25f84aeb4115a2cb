from __future__ import annotations

import logging
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import numpy as np
import soundfile as sf

logger = logging.getLogger(__name__)

# formats libsndfile reads directly; everything else goes through ffmpeg
SOUNDFILE_SUFFIXES = (".wav", ".flac", ".ogg", ".aiff", ".aif")


# ------------------------------------------------------------
# ffmpeg discovery
# ------------------------------------------------------------
def _find_ffmpeg() -> str:
    """Find ffmpeg executable.

    Priority:
      1) ffmpeg in PATH
      2) ffmpeg inside the active (conda) env prefix
    """
    p = shutil.which("ffmpeg")
    if p:
        return p

    prefix = Path(sys.prefix)
    candidates = [
        prefix / "bin" / "ffmpeg",
        prefix / "Library" / "bin" / "ffmpeg.exe",
        prefix / "Scripts" / "ffmpeg.exe",
    ]
    for c in candidates:
        if c.exists():
            return str(c)

    raise FileNotFoundError(
        "找不到 ffmpeg。wav/flac/ogg 可直接读取，其它格式需要 ffmpeg。\n"
        "推荐：conda install -c conda-forge ffmpeg"
    )


def _ffmpeg_supports_soxr(ffmpeg: str) -> bool:
    """Check whether ffmpeg supports the soxr resampler."""
    try:
        r = subprocess.run(
            [ffmpeg, "-hide_banner", "-filters"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return "aresample" in r.stdout and "soxr" in r.stdout


# ------------------------------------------------------------
# Decode spec
# ------------------------------------------------------------
@dataclass(frozen=True)
class DecodeSpec:
    """How compressed inputs are decoded to analysis WAV."""

    sr: int = 22050
    highpass_hz: Optional[int] = None
    loudnorm: bool = False
    resampler: Optional[str] = "soxr"


def decode_to_wav(input_audio: Path, output_wav: Path, spec: DecodeSpec = DecodeSpec()) -> None:
    """Decode any ffmpeg-readable audio into mono 16-bit PCM WAV."""
    ffmpeg = _find_ffmpeg()
    output_wav.parent.mkdir(parents=True, exist_ok=True)

    chain = []
    if spec.resampler == "soxr":
        if _ffmpeg_supports_soxr(ffmpeg):
            chain.append("aresample=resampler=soxr")
        else:
            logger.warning("ffmpeg has no soxr support, using the default resampler")
    if spec.highpass_hz and spec.highpass_hz > 0:
        chain.append(f"highpass=f={spec.highpass_hz}")
    if spec.loudnorm:
        chain.append("loudnorm=I=-16:TP=-1.5:LRA=11")

    cmd = [
        ffmpeg,
        "-y",
        "-i",
        str(input_audio),
        "-ac",
        "1",
        "-ar",
        str(spec.sr),
        "-vn",
        "-acodec",
        "pcm_s16le",
    ]
    if chain:
        cmd += ["-af", ",".join(chain)]
    cmd += [str(output_wav)]

    r = subprocess.run(cmd, capture_output=True, text=True)
    if r.returncode != 0:
        raise RuntimeError(
            "ffmpeg 解码失败。\n"
            f"命令: {' '.join(cmd)}\n"
            f"stderr:\n{r.stderr}\n"
        )
    if not output_wav.exists() or output_wav.stat().st_size <= 44:
        raise RuntimeError("解码输出 wav 为空，请检查输入音频。")


# ------------------------------------------------------------
# IO helpers
# ------------------------------------------------------------
def read_audio_mono(path: Path) -> Tuple[int, np.ndarray]:
    """Read an audio file into mono float32 [-1, 1] (channels averaged)."""
    data, sr = sf.read(str(path), dtype="float32", always_2d=True)
    return int(sr), data.mean(axis=1).astype(np.float32)


def write_audio_mono(path: Path, sr: int, audio: np.ndarray) -> None:
    """Write float [-1, 1] to 16-bit PCM (format from suffix, WAV by default)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    x = np.clip(np.asarray(audio, dtype=np.float32), -1.0, 1.0)
    sf.write(str(path), x, int(sr), subtype="PCM_16")


def load_audio(input_audio: Path, work_dir: Optional[Path] = None, spec: DecodeSpec = DecodeSpec()) -> Tuple[int, np.ndarray]:
    """Load any input as mono float32. Compressed formats are decoded via ffmpeg into work_dir."""
    input_audio = Path(input_audio)
    if not input_audio.exists():
        raise FileNotFoundError(f"找不到输入文件：{input_audio}")

    if input_audio.suffix.lower() in SOUNDFILE_SUFFIXES:
        return read_audio_mono(input_audio)

    work_dir = Path(work_dir) if work_dir is not None else input_audio.parent
    decoded = work_dir / f"00_decoded_{spec.sr}.wav"
    decode_to_wav(input_audio, decoded, spec)
    return read_audio_mono(decoded)
