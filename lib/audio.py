"""
lib/audio.py — Audio Assembler and PCM helpers.

Provides:
  AudioBuffer      — final mono int16 PCM + sample-rate metadata
  assemble         — concatenate decoded segments, apply volume, clip, quantise
  resample         — torchaudio resampling for non-native output rates
"""

import io
from pathlib import Path

import numpy as np
import soundfile as sf
import torch
import torchaudio

from decoder import SAMPLING_RATE
from errors import EmptyInputError

PCM_MAX = 32767


class AudioBuffer:
    """
    Signed 16-bit linear PCM, mono, at ``sample_rate``.  Owned by the caller
    once returned; enough to write any uncompressed container.
    """

    channels = 1
    sample_width = 2

    def __init__(self, samples: np.ndarray, sample_rate: int) -> None:
        self.samples = np.asarray(samples, dtype=np.int16)
        self.sample_rate = int(sample_rate)

    def __len__(self) -> int:
        return int(self.samples.shape[0])

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AudioBuffer):
            return NotImplemented
        return (
            self.sample_rate == other.sample_rate
            and np.array_equal(self.samples, other.samples)
        )

    def __repr__(self) -> str:
        return f"AudioBuffer({len(self)} samples, {self.sample_rate} Hz, {self.duration:.3f}s)"

    @property
    def duration(self) -> float:
        return len(self) / self.sample_rate

    def to_float(self) -> np.ndarray:
        return self.samples.astype(np.float32) / PCM_MAX

    def to_wav_bytes(self) -> bytes:
        buf = io.BytesIO()
        sf.write(buf, self.samples, self.sample_rate, format="WAV", subtype="PCM_16")
        return buf.getvalue()

    def write(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        sf.write(str(path), self.samples, self.sample_rate, subtype="PCM_16")
        return path


def resample(samples: np.ndarray, orig_sr: int, target_sr: int) -> np.ndarray:
    """Resample mono float32 *samples* from *orig_sr* to *target_sr*."""
    if orig_sr == target_sr:
        return np.asarray(samples, dtype=np.float32)
    tensor = torch.from_numpy(np.ascontiguousarray(samples, dtype=np.float32))
    out = torchaudio.functional.resample(tensor.unsqueeze(0), orig_sr, target_sr)
    return out.squeeze(0).numpy()


def assemble(
    segments,
    volume_scale: float = 1.0,
    sample_rate: int = SAMPLING_RATE,
    output_sampling_rate: int | None = None,
) -> AudioBuffer:
    """
    Join per-utterance float segments into one AudioBuffer.

    Segments are concatenated in order with no gap (pauses are already part
    of each segment), scaled by *volume_scale*, optionally resampled, then
    clipped to [-1, 1] and quantised to int16.  Raises ``EmptyInputError``
    when *segments* is empty.
    """
    parts = [np.asarray(s, dtype=np.float32).reshape(-1) for s in segments]
    if not parts:
        raise EmptyInputError("no audio segments to assemble")
    if volume_scale < 0:
        raise ValueError("volume_scale must be >= 0")

    wave = np.concatenate(parts) * np.float32(volume_scale)
    rate = sample_rate
    if output_sampling_rate and output_sampling_rate != sample_rate:
        wave = resample(wave, sample_rate, output_sampling_rate)
        rate = output_sampling_rate

    wave = np.clip(wave, -1.0, 1.0)
    pcm = np.round(wave * PCM_MAX).astype(np.int16)
    return AudioBuffer(pcm, rate)
