"""
lib/variance.py — Variance Predictor: per-phoneme durations, per-mora pitch.

Provides:
  UNVOICED, PHONEME_LENGTH_MINIMAL
  VarianceOutput           — parallel duration / pitch arrays
  VariancePredictor        — runs predict_duration + predict_intonation
  annotate                 — write predicted lengths / pitch onto the morae
  variance_from_utterance  — rebuild a VarianceOutput from annotated morae

``phoneme_lengths`` is indexed like ``FeatureTensor.phoneme_ids`` and
``pitches`` like ``FeatureTensor.vowel_indexes`` (mora slots, boundary pauses
included).  Neither stage mutates its inputs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

import numpy as np

from errors import EncodingError, InferenceError
from features import FeatureTensor
from linguistic import UNVOICED_MORA_PHONEMES, AccentPhrase, Mora, StyleId, Utterance
from runtime import ModelKind
from sessions import SessionManager

logger = logging.getLogger(__name__)

# Pitch sentinel for unvoiced mora slots (log-f0 of a voiced mora is > 0).
UNVOICED = 0.0

# Floor for predicted phoneme durations (seconds).
PHONEME_LENGTH_MINIMAL = 0.01


@dataclass(slots=True, frozen=True)
class VarianceOutput:
    phoneme_lengths: np.ndarray           # float32[n_phonemes], seconds
    pitches: np.ndarray                   # float32[n_slots], log-f0, UNVOICED = 0
    pitch_contour: np.ndarray | None = None

    @property
    def voiced(self) -> np.ndarray:
        return self.pitches > UNVOICED

    @property
    def total_length(self) -> float:
        return float(np.sum(self.phoneme_lengths, dtype=np.float64))

    def copy(self, **changes) -> "VarianceOutput":
        base = {
            "phoneme_lengths": self.phoneme_lengths.copy(),
            "pitches": self.pitches.copy(),
            "pitch_contour": None if self.pitch_contour is None else self.pitch_contour.copy(),
        }
        base.update(changes)
        return VarianceOutput(**base)


def _as_vector(value: np.ndarray, expected: int, name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=np.float32).reshape(-1)
    if arr.shape[0] != expected:
        raise InferenceError(f"{name} has {arr.shape[0]} values, expected {expected}")
    if not np.all(np.isfinite(arr)):
        raise InferenceError(f"{name} contains non-finite values")
    return arr


def unvoiced_mask(features: FeatureTensor) -> np.ndarray:
    """True for mora slots whose vowel phoneme carries no f0."""
    return np.array(
        [p in UNVOICED_MORA_PHONEMES for p in features.vowel_phonemes], dtype=bool,
    )


class VariancePredictor:
    """
    Duration / pitch prediction.  Borrows the VARIANCE_PREDICTOR session for
    the requested style; never loads models itself.
    """

    def __init__(self, sessions: SessionManager) -> None:
        self.sessions = sessions

    def predict(self, features: FeatureTensor, style_id: StyleId) -> VarianceOutput:
        """
        Raises ``UnknownStyleError`` / ``ModelLoadError`` (from the session
        manager) and ``InferenceError`` (executor failure, malformed output).
        """
        with self.sessions.borrow(style_id, ModelKind.VARIANCE_PREDICTOR) as session:
            speaker = session.speaker_tensor()
            durations = session.infer("predict_duration", {
                "phoneme_list": features.phoneme_ids,
                "speaker_id": speaker,
            })
            intonation = session.infer("predict_intonation", {
                "length": np.array(features.num_moras, dtype=np.int64),
                "vowel_phoneme_list": features.vowel_phoneme_ids,
                "consonant_phoneme_list": features.consonant_phoneme_ids,
                "start_accent_list": features.start_accent,
                "end_accent_list": features.end_accent,
                "start_accent_phrase_list": features.start_accent_phrase,
                "end_accent_phrase_list": features.end_accent_phrase,
                "speaker_id": speaker,
            })

        lengths = _as_vector(durations["phoneme_length"], features.num_phonemes, "phoneme_length")
        lengths = np.maximum(lengths, np.float32(PHONEME_LENGTH_MINIMAL))

        pitches = _as_vector(intonation["f0_list"], features.num_moras, "f0_list").copy()
        pitches[unvoiced_mask(features)] = UNVOICED

        logger.debug(
            "style %d: predicted %d phonemes (%.3fs), %d mora slots",
            style_id, lengths.shape[0], float(lengths.sum()), pitches.shape[0],
        )
        return VarianceOutput(phoneme_lengths=lengths, pitches=pitches)


def annotate(utterance: Utterance, features: FeatureTensor, variance: VarianceOutput) -> Utterance:
    """
    Return a copy of *utterance* whose morae carry the predicted consonant /
    vowel lengths and pitch.  *features* must be ``encode(utterance)``.
    """
    lengths = variance.phoneme_lengths
    slot = 1   # slot 0 is the leading boundary pause

    def _fill(mora: Mora) -> Mora:
        nonlocal slot
        vi = int(features.vowel_indexes[slot])
        filled = replace(
            mora,
            consonant_length=float(lengths[vi - 1]) if mora.consonant else None,
            vowel_length=float(lengths[vi]),
            pitch=float(variance.pitches[slot]),
        )
        slot += 1
        return filled

    phrases: list[AccentPhrase] = []
    for phrase in utterance.accent_phrases:
        moras = [_fill(m) for m in phrase.moras]
        pause = _fill(phrase.pause_mora) if phrase.pause_mora is not None else None
        phrases.append(phrase.with_moras(moras, pause))
    return Utterance(tuple(phrases))


def variance_from_utterance(features: FeatureTensor, utterance: Utterance) -> VarianceOutput:
    """
    Build a VarianceOutput from morae annotated by ``annotate`` (or edited by
    a caller).  Boundary pauses get PHONEME_LENGTH_MINIMAL; the prosody
    transform replaces them with the requested pre/post silence.
    """
    lengths: list[float] = [PHONEME_LENGTH_MINIMAL]
    pitches: list[float] = [UNVOICED]
    for mora in utterance.flatten_moras():
        if mora.consonant:
            if mora.consonant_length is None:
                raise EncodingError(f"mora {mora.text or mora.vowel!r} has no consonant length")
            lengths.append(max(mora.consonant_length, 0.0))
        lengths.append(max(mora.vowel_length, 0.0))
        pitches.append(mora.pitch)
    lengths.append(PHONEME_LENGTH_MINIMAL)
    pitches.append(UNVOICED)

    if len(lengths) != features.num_phonemes or len(pitches) != features.num_moras:
        raise EncodingError(
            f"annotated utterance does not match its features: {len(lengths)} lengths "
            f"for {features.num_phonemes} phonemes, {len(pitches)} pitches for "
            f"{features.num_moras} mora slots"
        )
    pitch_arr = np.array(pitches, dtype=np.float32)
    pitch_arr[unvoiced_mask(features)] = UNVOICED
    return VarianceOutput(
        phoneme_lengths=np.array(lengths, dtype=np.float32),
        pitches=pitch_arr,
    )
