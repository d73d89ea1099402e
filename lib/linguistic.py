"""
lib/linguistic.py — linguistic data model consumed by the synthesis pipeline.

Provides
--------
Phoneme inventory
    PHONEME_LIST, NUM_PHONEME, MORA_PHONEMES, UNVOICED_MORA_PHONEMES,
    PAUSE_PHONEME, phoneme_id(symbol) → int

Data model
    Mora, AccentPhrase, Utterance, StyleId

The front-end that produces these structures (grapheme-to-phoneme, accent
estimation) lives outside this package; ``labels.py`` adapts full-context
labels, and ``Utterance.from_dict`` reads the JSON form used by the CLI.

Utterance JSON form::

    {
        "accent_phrases": [
            {
                "moras": [
                    {"consonant": "k", "vowel": "a"},
                    {"consonant": null, "vowel": "o", "pitch": 5.6}
                ],
                "accent": 0,
                "pause_after": false,
                "is_interrogative": false,
                "is_flat": false
            }
        ]
    }
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Sequence

from errors import EncodingError


StyleId = int

# Phoneme inventory of the acoustic models; the id of a phoneme is its index.
PHONEME_LIST: tuple[str, ...] = (
    "pau", "A", "E", "I", "N", "O", "U",
    "a", "b", "by", "ch", "cl", "d", "dy", "e", "f", "g", "gw", "gy",
    "h", "hy", "i", "j", "k", "kw", "ky", "m", "my", "n", "ny", "o",
    "p", "py", "r", "ry", "s", "sh", "t", "ts", "ty", "u", "v", "w", "y", "z",
)
NUM_PHONEME = len(PHONEME_LIST)

PAUSE_PHONEME = "pau"

# Phonemes that occupy the vowel slot of a mora.
MORA_PHONEMES = frozenset(
    ["a", "i", "u", "e", "o", "N", "A", "I", "U", "E", "O", "cl", "pau"]
)

# Vowel-slot phonemes without a fundamental frequency (devoiced vowels,
# geminate closure, pause).
UNVOICED_MORA_PHONEMES = frozenset(["A", "I", "U", "E", "O", "cl", "pau"])

_PHONEME_IDS = {p: i for i, p in enumerate(PHONEME_LIST)}


def phoneme_id(symbol: str) -> int:
    """
    Return the model id of *symbol*; the empty symbol (no consonant) is -1.
    Raises ``EncodingError`` for symbols outside the inventory.
    """
    if symbol == "":
        return -1
    try:
        return _PHONEME_IDS[symbol]
    except KeyError:
        raise EncodingError(f"unknown phoneme {symbol!r}") from None


@dataclass(slots=True, frozen=True)
class Mora:
    """
    One mora: optional consonant + vowel-slot phoneme.

    ``consonant_length`` / ``vowel_length`` (seconds) and ``pitch`` (log-f0,
    0.0 = unvoiced) are empty until the variance predictor annotates them.
    """
    vowel: str
    consonant: str | None = None
    text: str = ""
    consonant_length: float | None = None
    vowel_length: float = 0.0
    pitch: float = 0.0

    @property
    def phonemes(self) -> tuple[str, ...]:
        if self.consonant:
            return (self.consonant, self.vowel)
        return (self.vowel,)

    @property
    def is_annotated(self) -> bool:
        if self.consonant and self.consonant_length is None:
            return False
        return self.vowel_length > 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "consonant": self.consonant,
            "consonant_length": self.consonant_length,
            "vowel": self.vowel,
            "vowel_length": self.vowel_length,
            "pitch": self.pitch,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Mora":
        vowel = data.get("vowel")
        if not isinstance(vowel, str) or not vowel:
            raise EncodingError("mora vowel is required")
        consonant = data.get("consonant") or None
        consonant_length = data.get("consonant_length")
        return cls(
            vowel=vowel,
            consonant=consonant,
            text=str(data.get("text") or "".join([consonant or "", vowel])),
            consonant_length=float(consonant_length) if consonant_length is not None else None,
            vowel_length=float(data.get("vowel_length") or 0.0),
            pitch=float(data.get("pitch") or 0.0),
        )


def pause_mora() -> Mora:
    return Mora(vowel=PAUSE_PHONEME, text="、")


@dataclass(slots=True, frozen=True)
class AccentPhrase:
    """
    Morae sharing one pitch-accent contour.

    ``accent`` is the 0-based index of the accent nucleus mora.  Flat
    (heiban) phrases set ``is_flat`` and keep ``accent`` on the last mora,
    where their pitch stays high.  A phrase followed by a pause carries its
    pause as ``pause_mora`` (vowel ``pau``).
    """
    moras: tuple[Mora, ...]
    accent: int
    pause_mora: Mora | None = None
    is_interrogative: bool = False
    is_flat: bool = False

    @classmethod
    def build(
        cls,
        moras: Sequence[Mora | tuple[str | None, str]],
        accent: int = 0,
        *,
        pause_after: bool = False,
        is_interrogative: bool = False,
        is_flat: bool = False,
    ) -> "AccentPhrase":
        """
        Convenience constructor accepting ``(consonant, vowel)`` pairs::

            AccentPhrase.build([("k", "a"), (None, "o")], accent=0)
        """
        built = tuple(
            m if isinstance(m, Mora) else Mora(vowel=m[1], consonant=m[0] or None,
                                               text=f"{m[0] or ''}{m[1]}")
            for m in moras
        )
        return cls(
            moras=built,
            accent=accent,
            pause_mora=pause_mora() if pause_after else None,
            is_interrogative=is_interrogative,
            is_flat=is_flat,
        )

    @property
    def pause_after(self) -> bool:
        return self.pause_mora is not None

    def is_accented(self, index: int) -> bool:
        return index == self.accent

    def validate(self) -> None:
        if not self.moras:
            raise EncodingError("accent phrase has no morae")
        if not 0 <= self.accent < len(self.moras):
            raise EncodingError(
                f"accent position {self.accent} out of range for "
                f"{len(self.moras)} morae"
            )

    def with_moras(self, moras: Sequence[Mora], pause: Mora | None = None) -> "AccentPhrase":
        return replace(self, moras=tuple(moras), pause_mora=pause)

    def to_dict(self) -> dict[str, Any]:
        return {
            "moras": [m.to_dict() for m in self.moras],
            "accent": self.accent,
            "pause_after": self.pause_after,
            "pause_mora": self.pause_mora.to_dict() if self.pause_mora else None,
            "is_interrogative": self.is_interrogative,
            "is_flat": self.is_flat,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AccentPhrase":
        raw_moras = data.get("moras")
        if not isinstance(raw_moras, list):
            raise EncodingError("accent phrase 'moras' must be a list")
        try:
            accent = int(data.get("accent", 0))
        except (TypeError, ValueError) as exc:
            raise EncodingError("accent phrase 'accent' must be an integer") from exc

        pause: Mora | None = None
        if data.get("pause_mora"):
            pause = Mora.from_dict(data["pause_mora"])
        elif data.get("pause_after"):
            pause = pause_mora()

        return cls(
            moras=tuple(Mora.from_dict(m) for m in raw_moras),
            accent=accent,
            pause_mora=pause,
            is_interrogative=bool(data.get("is_interrogative", False)),
            is_flat=bool(data.get("is_flat", False)),
        )


@dataclass(slots=True, frozen=True)
class Utterance:
    """One synthesis request: an ordered sequence of accent phrases."""
    accent_phrases: tuple[AccentPhrase, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.accent_phrases)

    def flatten_moras(self) -> list[Mora]:
        """All morae in order, pause morae included."""
        moras: list[Mora] = []
        for phrase in self.accent_phrases:
            moras.extend(phrase.moras)
            if phrase.pause_mora is not None:
                moras.append(phrase.pause_mora)
        return moras

    @property
    def is_annotated(self) -> bool:
        return bool(self.accent_phrases) and all(
            m.is_annotated for m in self.flatten_moras()
        )

    def to_dict(self) -> dict[str, Any]:
        return {"accent_phrases": [p.to_dict() for p in self.accent_phrases]}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Utterance":
        phrases = data.get("accent_phrases")
        if not isinstance(phrases, list):
            raise EncodingError("'accent_phrases' must be a list")
        return cls(tuple(AccentPhrase.from_dict(p) for p in phrases))
