"""
lib/decoder.py — Waveform Decoder: frame-level features → raw samples.

Provides:
  SAMPLING_RATE, HOP_LENGTH, FRAME_RATE, PADDING_FRAMES
  frame_counts    — seconds → frames per phoneme (round half up)
  phoneme_frames  — frame_counts with at least one frame per inner phoneme
  expand_frames   — phoneme one-hot + f0 per frame
  WaveformDecoder — runs the ``decode`` graph and trims its padding

The vocoder emits HOP_LENGTH samples per frame at SAMPLING_RATE.  Every
phoneme contributes exactly ``phoneme_frames(...)[i]`` frames, so the output
holds ``sum(phoneme_frames) * HOP_LENGTH`` samples.
"""

from __future__ import annotations

import logging
import math

import numpy as np

from errors import EncodingError, InferenceError
from features import FeatureTensor
from linguistic import NUM_PHONEME, PAUSE_PHONEME, StyleId, phoneme_id
from runtime import ModelKind
from sessions import SessionManager
from variance import UNVOICED, VarianceOutput

logger = logging.getLogger(__name__)

SAMPLING_RATE = 24_000
HOP_LENGTH = 256
FRAME_RATE = SAMPLING_RATE / HOP_LENGTH   # 93.75 frames / s

# Silence frames wrapped around the decoder input and cut from its output.
PADDING_SECONDS = 0.4
PADDING_FRAMES = int(math.floor(PADDING_SECONDS * FRAME_RATE + 0.5))


def frame_counts(lengths: np.ndarray) -> np.ndarray:
    """
    Per-phoneme frame counts: ``floor(seconds * FRAME_RATE + 0.5)``.

    Ties round up.
    """
    frames = np.floor(np.asarray(lengths, dtype=np.float64) * FRAME_RATE + 0.5)
    return np.maximum(frames, 0).astype(np.int64)


def phoneme_frames(lengths: np.ndarray) -> np.ndarray:
    """
    Frame counts used for decoding: ``frame_counts`` with every phoneme
    between the two boundary pauses raised to at least one frame.

    The boundary pauses keep their rounded count and may be empty.  The
    decoder input length is the exact sum of the returned counts.
    """
    counts = frame_counts(lengths)
    if counts.shape[0] > 2:
        counts[1:-1] = np.maximum(counts[1:-1], 1)
    return counts


def expand_frames(features: FeatureTensor, variance: VarianceOutput) -> tuple[np.ndarray, np.ndarray]:
    """
    Return ``(phoneme_onehot[frames, NUM_PHONEME], f0[frames])``.

    Each phoneme's one-hot row is repeated for its frame count; every frame
    takes the pitch of the mora slot owning the phoneme, so consonant frames
    share their vowel's pitch.
    """
    if variance.phoneme_lengths.shape[0] != features.num_phonemes:
        raise EncodingError(
            f"{variance.phoneme_lengths.shape[0]} durations for {features.num_phonemes} phonemes"
        )
    if variance.pitches.shape[0] != features.num_moras:
        raise EncodingError(
            f"{variance.pitches.shape[0]} pitches for {features.num_moras} mora slots"
        )

    counts = phoneme_frames(variance.phoneme_lengths)
    total = int(counts.sum())

    frame_ids = np.repeat(features.phoneme_ids, counts)
    onehot = np.zeros((total, NUM_PHONEME), dtype=np.float32)
    onehot[np.arange(total), frame_ids] = 1.0

    phoneme_pitch = variance.pitches[features.mora_of_phoneme]
    f0 = np.repeat(phoneme_pitch, counts).astype(np.float32)
    return onehot, f0


def _pad(onehot: np.ndarray, f0: np.ndarray, frames: int) -> tuple[np.ndarray, np.ndarray]:
    pad_row = np.zeros((frames, NUM_PHONEME), dtype=np.float32)
    pad_row[:, phoneme_id(PAUSE_PHONEME)] = 1.0
    pad_f0 = np.full(frames, UNVOICED, dtype=np.float32)
    return (
        np.concatenate([pad_row, onehot, pad_row], axis=0),
        np.concatenate([pad_f0, f0, pad_f0]),
    )


class WaveformDecoder:
    """Vocoder stage; borrows the WAVEFORM_DECODER session per call."""

    sample_rate = SAMPLING_RATE

    def __init__(self, sessions: SessionManager) -> None:
        self.sessions = sessions

    def decode(
        self,
        features: FeatureTensor,
        variance: VarianceOutput,
        style_id: StyleId,
    ) -> np.ndarray:
        """
        Return float32 samples at SAMPLING_RATE for *variance* (already
        prosody-transformed).  Raises ``InferenceError`` when the executor
        fails or returns a wave whose length does not match the frame count.
        """
        onehot, f0 = expand_frames(features, variance)
        frames = f0.shape[0]
        phoneme_in, f0_in = _pad(onehot, f0, PADDING_FRAMES)
        padded = frames + 2 * PADDING_FRAMES

        with self.sessions.borrow(style_id, ModelKind.WAVEFORM_DECODER) as session:
            outputs = session.infer("decode", {
                "f0": f0_in.reshape(padded, 1),
                "phoneme": phoneme_in,
                "speaker_id": session.speaker_tensor(),
            })

        wave = np.asarray(outputs["wave"], dtype=np.float32).reshape(-1)
        expected = padded * HOP_LENGTH
        if wave.shape[0] != expected:
            raise InferenceError(
                f"decode returned {wave.shape[0]} samples for {padded} frames "
                f"(expected {expected})"
            )
        if not np.all(np.isfinite(wave)):
            raise InferenceError("decode returned non-finite samples")

        pad_samples = PADDING_FRAMES * HOP_LENGTH
        logger.debug("style %d: decoded %d frames (%d samples)", style_id, frames, frames * HOP_LENGTH)
        return wave[pad_samples: wave.shape[0] - pad_samples].copy()
