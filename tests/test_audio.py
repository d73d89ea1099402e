import io
from pathlib import Path
import sys

import numpy as np
import pytest
import soundfile as sf


ROOT = Path(__file__).resolve().parents[1]
LIB = ROOT / "lib"
if str(LIB) not in sys.path:
    sys.path.insert(0, str(LIB))

from audio import PCM_MAX, AudioBuffer, assemble, resample  # noqa: E402
from errors import EmptyInputError  # noqa: E402


def test_assemble_concatenates_in_order() -> None:
    buf = assemble([np.full(100, 0.5, np.float32), np.full(50, -0.25, np.float32)])
    assert len(buf) == 150
    assert buf.sample_rate == 24000
    assert buf.samples.dtype == np.int16
    assert buf.samples[0] == round(0.5 * PCM_MAX)
    assert buf.samples[-1] == round(-0.25 * PCM_MAX)


def test_assemble_clips_and_scales() -> None:
    buf = assemble([np.array([2.0, -2.0, 0.25], dtype=np.float32)], volume_scale=2.0)
    assert buf.samples.tolist() == [PCM_MAX, -PCM_MAX, round(0.5 * PCM_MAX)]


def test_assemble_zero_volume_is_silent() -> None:
    buf = assemble([np.full(64, 0.9, np.float32)], volume_scale=0.0)
    assert not buf.samples.any()


def test_assemble_empty_raises() -> None:
    with pytest.raises(EmptyInputError):
        assemble([])


def test_assemble_resamples_when_requested() -> None:
    buf = assemble([np.zeros(2400, np.float32)], output_sampling_rate=48000)
    assert buf.sample_rate == 48000
    assert len(buf) == 4800
    assert buf.duration == pytest.approx(0.1)


def test_resample_same_rate_is_identity() -> None:
    samples = np.linspace(-0.5, 0.5, 32, dtype=np.float32)
    assert np.array_equal(resample(samples, 24000, 24000), samples)


def test_wav_bytes_are_pcm16_mono() -> None:
    buf = AudioBuffer(np.array([0, 1000, -1000, PCM_MAX], dtype=np.int16), 24000)
    data, sr = sf.read(io.BytesIO(buf.to_wav_bytes()), dtype="int16")
    assert sr == 24000
    assert data.tolist() == [0, 1000, -1000, PCM_MAX]
    info = sf.info(io.BytesIO(buf.to_wav_bytes()))
    assert info.channels == 1
    assert info.subtype == "PCM_16"


def test_write_creates_parent_dirs(tmp_path: Path) -> None:
    buf = assemble([np.linspace(-0.5, 0.5, 480, dtype=np.float32)])
    path = buf.write(tmp_path / "out" / "speech.wav")
    assert path.parent.is_dir()
    data, sr = sf.read(str(path), dtype="int16")
    assert sr == 24000
    assert data.tolist() == buf.samples.tolist()
