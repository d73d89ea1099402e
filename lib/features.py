"""
lib/features.py — Feature Encoder: Utterance → model-ready index tensors.

Provides:
  FeatureTensor  — phoneme / mora-slot arrays shared by predictor and decoder
  encode         — flatten an Utterance into a FeatureTensor (pure)
  split_mora     — vowel-slot indexes + per-slot consonant symbols

Layout of a FeatureTensor for ``[k a] [o] | pause | [n i]``::

    phonemes        pau  k  a  o  pau  n  i  pau
    vowel_indexes   0       2  3  4       6  7
    mora slot       0    1  1  2  3    4  4  5     (mora_of_phoneme)

Mora slot 0 and the last slot are the utterance boundary pauses; their
durations carry the pre/post silence.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from errors import EncodingError
from linguistic import (
    MORA_PHONEMES,
    PAUSE_PHONEME,
    AccentPhrase,
    StyleId,
    Utterance,
    phoneme_id,
)


@dataclass(slots=True, frozen=True)
class FeatureTensor:
    phonemes: tuple[str, ...]
    phoneme_ids: np.ndarray            # int64[n_phonemes]
    is_vowel: np.ndarray               # bool[n_phonemes]
    mora_of_phoneme: np.ndarray        # int64[n_phonemes]
    vowel_indexes: np.ndarray          # int64[n_slots]
    vowel_phoneme_ids: np.ndarray      # int64[n_slots]
    consonant_phoneme_ids: np.ndarray  # int64[n_slots], -1 = none
    start_accent: np.ndarray           # int64[n_slots]
    end_accent: np.ndarray
    start_accent_phrase: np.ndarray
    end_accent_phrase: np.ndarray

    @property
    def num_phonemes(self) -> int:
        return int(self.phoneme_ids.shape[0])

    @property
    def num_moras(self) -> int:
        """Number of mora slots, boundary pauses included."""
        return int(self.vowel_indexes.shape[0])

    @property
    def vowel_phonemes(self) -> tuple[str, ...]:
        return tuple(self.phonemes[i] for i in self.vowel_indexes)


def split_mora(phonemes: Sequence[str]) -> tuple[list[int], list[str]]:
    """
    Return ``(vowel_indexes, consonants)`` for a flat phoneme sequence.

    A mora slot's consonant is the phoneme right before its vowel when the
    gap to the previous vowel index is larger than one; the first slot never
    has a consonant.  Missing consonants are the empty string.
    """
    vowel_indexes = [i for i, p in enumerate(phonemes) if p in MORA_PHONEMES]
    consonants = [""]
    for prev, nxt in zip(vowel_indexes, vowel_indexes[1:]):
        consonants.append(phonemes[nxt - 1] if nxt - prev > 1 else "")
    return vowel_indexes, consonants


def _accent_flags(phrase: AccentPhrase, point: int) -> list[int]:
    """
    Per-slot 0/1 flags for one phrase: 1 at mora *point* (negative counts
    from the end).  The trailing pause mora, if any, is always 0.
    """
    n = len(phrase.moras)
    target = point if point >= 0 else n + point
    flags = [int(i == target) for i in range(n)]
    if phrase.pause_mora is not None:
        flags.append(0)
    return flags


def _validate(utterance: Utterance) -> None:
    if not utterance.accent_phrases:
        raise EncodingError("utterance has no accent phrases")
    for i, phrase in enumerate(utterance.accent_phrases):
        try:
            phrase.validate()
        except EncodingError as exc:
            raise EncodingError(f"accent phrase {i}: {exc}") from None
        for mora in phrase.moras:
            if mora.vowel not in MORA_PHONEMES:
                raise EncodingError(f"accent phrase {i}: {mora.vowel!r} is not a mora vowel")
            if mora.consonant and mora.consonant in MORA_PHONEMES:
                raise EncodingError(
                    f"accent phrase {i}: {mora.consonant!r} cannot be a consonant"
                )


def encode(utterance: Utterance, style_id: StyleId | None = None) -> FeatureTensor:
    """
    Flatten *utterance* into a FeatureTensor.

    *style_id* does not influence the encoding; it is accepted so callers can
    treat encoding as a per-(utterance, style) step.  Raises ``EncodingError``
    on empty input, empty phrases, out-of-range accents or unknown phonemes.
    """
    _validate(utterance)

    phonemes: list[str] = [PAUSE_PHONEME]
    for mora in utterance.flatten_moras():
        phonemes.extend(mora.phonemes)
    phonemes.append(PAUSE_PHONEME)

    ids = np.array([phoneme_id(p) for p in phonemes], dtype=np.int64)
    vowel_indexes, consonants = split_mora(phonemes)
    vidx = np.array(vowel_indexes, dtype=np.int64)

    is_vowel = np.zeros(len(phonemes), dtype=bool)
    is_vowel[vidx] = True
    mora_of_phoneme = np.searchsorted(vidx, np.arange(len(phonemes)), side="left")

    phrases = utterance.accent_phrases

    def _slots(point_of) -> np.ndarray:
        values = [0]
        for phrase in phrases:
            values.extend(_accent_flags(phrase, point_of(phrase)))
        values.append(0)
        return np.array(values, dtype=np.int64)

    # rise after the first mora unless the nucleus is the first mora itself
    start_accent = _slots(lambda p: 1 if p.accent != 0 or p.is_flat else 0)
    end_accent = _slots(lambda p: p.accent)
    start_accent_phrase = _slots(lambda p: 0)
    end_accent_phrase = _slots(lambda p: -1)

    if start_accent.shape[0] != vidx.shape[0]:
        raise EncodingError(
            f"mora slot count mismatch: {start_accent.shape[0]} accent slots "
            f"for {vidx.shape[0]} vowel positions"
        )

    return FeatureTensor(
        phonemes=tuple(phonemes),
        phoneme_ids=ids,
        is_vowel=is_vowel,
        mora_of_phoneme=mora_of_phoneme.astype(np.int64),
        vowel_indexes=vidx,
        vowel_phoneme_ids=ids[vidx],
        consonant_phoneme_ids=np.array([phoneme_id(c) for c in consonants], dtype=np.int64),
        start_accent=start_accent,
        end_accent=end_accent,
        start_accent_phrase=start_accent_phrase,
        end_accent_phrase=end_accent_phrase,
    )
