"""
lib/prosody.py — Prosody Transform: user prosody controls on predicted variance.

Provides:
  ProsodyParams               — speed / pitch / intonation / volume / pauses
  interpolate_unvoiced        — fill unvoiced pitch slots from voiced neighbours
  transform                   — (VarianceOutput, ProsodyParams) → VarianceOutput
  apply_interrogative_upspeak — rising final mora for question phrases

Order of operations in ``transform``:

  1. interpolate unvoiced slots (log-f0, genuine voiced neighbours only)
  2. intonation around the voiced mean, then ``× 2 ** pitch_scale``
  3. unvoiced slots reset to the sentinel
  4. durations ÷ speed_scale
  5. boundary pauses set to pre_pause / post_pause seconds

Volume is applied to the final samples by the assembler.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, replace
from typing import Any, Mapping

import numpy as np

from features import FeatureTensor
from linguistic import Mora, Utterance
from variance import UNVOICED, VarianceOutput

# Interrogative upspeak: fixed length / pitch raise of the appended mora.
UPSPEAK_VOWEL_LENGTH = 0.15
UPSPEAK_PITCH_DELTA = 0.3
UPSPEAK_MAX_PITCH = 6.5


@dataclass(slots=True, frozen=True)
class ProsodyParams:
    speed_scale: float = 1.0
    pitch_scale: float = 0.0
    intonation_scale: float = 1.0
    volume_scale: float = 1.0
    pre_pause: float = 0.0
    post_pause: float = 0.0
    enable_interrogative_upspeak: bool = True
    output_sampling_rate: int | None = None

    def __post_init__(self) -> None:
        for name in ("speed_scale", "pitch_scale", "intonation_scale",
                     "volume_scale", "pre_pause", "post_pause"):
            if not math.isfinite(getattr(self, name)):
                raise ValueError(f"{name} must be finite")
        if not self.speed_scale > 0:
            raise ValueError("speed_scale must be > 0")
        if self.intonation_scale < 0:
            raise ValueError("intonation_scale must be >= 0")
        if self.volume_scale < 0:
            raise ValueError("volume_scale must be >= 0")
        if self.pre_pause < 0 or self.post_pause < 0:
            raise ValueError("pre_pause and post_pause must be >= 0")
        if self.output_sampling_rate is not None and self.output_sampling_rate <= 0:
            raise ValueError("output_sampling_rate must be > 0")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProsodyParams":
        known = {f for f in cls.__dataclass_fields__}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"unknown prosody parameter(s): {', '.join(unknown)}")
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if value is None:
                continue
            if key == "enable_interrogative_upspeak":
                kwargs[key] = bool(value)
            elif key == "output_sampling_rate":
                kwargs[key] = int(value)
            else:
                try:
                    kwargs[key] = float(value)
                except (TypeError, ValueError) as exc:
                    raise ValueError(f"{key} must be a number") from exc
        return cls(**kwargs)


def interpolate_unvoiced(pitches: np.ndarray, voiced: np.ndarray | None = None) -> np.ndarray:
    """
    Return a copy of *pitches* with every unvoiced slot replaced by the
    linear interpolation of its nearest voiced neighbours.  Leading and
    trailing unvoiced runs take the nearest voiced value.  All-voiced and
    all-unvoiced inputs come back unchanged.
    """
    p = np.asarray(pitches, dtype=np.float32)
    mask = (p > UNVOICED) if voiced is None else np.asarray(voiced, dtype=bool)
    out = p.copy()
    if not mask.any() or mask.all():
        return out
    idx = np.arange(p.shape[0])
    out[~mask] = np.interp(idx[~mask], idx[mask], p[mask].astype(np.float64))
    return out


def transform(
    variance: VarianceOutput,
    params: ProsodyParams,
    features: FeatureTensor | None = None,
) -> VarianceOutput:
    """
    Apply *params* to *variance*; the input is left untouched.

    The returned ``pitches`` keep the unvoiced sentinel and are what the
    decoder reads.  ``pitch_contour`` holds the continuous (interpolated,
    scaled) curve for inspection only; nothing downstream consumes it.
    When *features* is given its boundary vowel indexes locate the pause
    phonemes, otherwise the first and last phoneme are used.
    """
    voiced = variance.voiced
    contour = interpolate_unvoiced(variance.pitches, voiced).astype(np.float64)

    if voiced.any():
        mean = float(contour[voiced].mean())
        contour = (contour - mean) * params.intonation_scale + mean
    contour = contour * (2.0 ** params.pitch_scale)

    pitches = np.where(voiced, contour, UNVOICED).astype(np.float32)

    lengths = variance.phoneme_lengths.astype(np.float64) / params.speed_scale
    if features is not None:
        first, last = int(features.vowel_indexes[0]), int(features.vowel_indexes[-1])
    else:
        first, last = 0, lengths.shape[0] - 1
    lengths[first] = params.pre_pause
    lengths[last] = params.post_pause

    return VarianceOutput(
        phoneme_lengths=lengths.astype(np.float32),
        pitches=pitches,
        pitch_contour=contour.astype(np.float32),
    )


def _upspeak_mora(last: Mora) -> Mora:
    return Mora(
        vowel=last.vowel,
        consonant=None,
        text=last.vowel,
        consonant_length=None,
        vowel_length=UPSPEAK_VOWEL_LENGTH,
        pitch=min(last.pitch + UPSPEAK_PITCH_DELTA, UPSPEAK_MAX_PITCH),
    )


def apply_interrogative_upspeak(utterance: Utterance) -> Utterance:
    """
    Append a rising mora to every interrogative phrase whose last mora is
    voiced.  Works on annotated utterances (lengths / pitch filled in); the
    caller must re-encode the result since the mora count changes.
    """
    phrases = []
    for phrase in utterance.accent_phrases:
        if phrase.is_interrogative and phrase.moras and phrase.moras[-1].pitch != UNVOICED:
            moras = (*phrase.moras, _upspeak_mora(phrase.moras[-1]))
            phrase = replace(phrase, moras=moras)
        phrases.append(phrase)
    return Utterance(tuple(phrases))
