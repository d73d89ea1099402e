"""
lib/labels.py — front-end adapter: HTS full-context labels → Utterance.

Open JTalk-compatible front-ends emit one full-context label per phoneme,
e.g.::

    xx^xx-sil+k=o/A:xx+xx+xx/B:xx-xx_xx/C:xx_xx+xx/D:xx+xx_xx/E:xx_xx!xx_xx-xx/F:xx_xx#xx_xx@xx_xx|xx_xx/...
    xx^sil-k+o=N/A:-4+1+5/B:xx-xx_xx/C:xx_xx+xx/D:xx+xx_xx/E:xx_xx!xx_xx-xx/F:5_5#0_xx@1_1|1_5/...

Only the fields needed to rebuild morae and accent phrases are read:

  p3  current phoneme              a2  mora position in the accent phrase
  f1  phrase mora count (xx=pause) f2  accent nucleus position (1-based)
  f3  interrogative flag           f5  phrase position in the breath group
  i3  breath-group position        (h1, j1, a3 parsed for completeness)

Raw text → labels (grapheme-to-phoneme, accent estimation) is outside this
package.
"""

from __future__ import annotations

import re
from typing import Iterable

from errors import EncodingError
from linguistic import AccentPhrase, Mora, Utterance, pause_mora

_CONTEXT_RE: dict[str, re.Pattern[str]] = {
    "p3": re.compile(r"\-(.*?)\+"),
    "a2": re.compile(r"\+(\d+|xx)\+"),
    "a3": re.compile(r"\+(\d+|xx)/B:"),
    "f1": re.compile(r"/F:(\d+|xx)_"),
    "f2": re.compile(r"_(\d+|xx)\#"),
    "f3": re.compile(r"\#(\d+|xx)_"),
    "f5": re.compile(r"@(\d+|xx)_"),
    "h1": re.compile(r"/H:(\d+|xx)_"),
    "i3": re.compile(r"@(\d+|xx)\+"),
    "j1": re.compile(r"/J:(\d+|xx)_"),
}

# a2 value Open JTalk uses for phonemes past the end of an accent phrase.
_A2_OUT_OF_PHRASE = "49"


class LabelPhoneme:
    __slots__ = ("label", "contexts")

    def __init__(self, label: str) -> None:
        self.label = label
        self.contexts: dict[str, str] = {}
        for name, pattern in _CONTEXT_RE.items():
            m = pattern.search(label)
            if m is None:
                raise EncodingError(f"cannot read {name} from label {label!r}")
            self.contexts[name] = m.group(1)

    @property
    def phoneme(self) -> str:
        return self.contexts["p3"]

    @property
    def is_pause(self) -> bool:
        return self.contexts["f1"] == "xx"

    def __repr__(self) -> str:
        return f"LabelPhoneme({self.phoneme!r})"


def _mora_from_phonemes(group: list[LabelPhoneme]) -> Mora:
    if len(group) == 1:
        return Mora(vowel=group[0].phoneme, text=group[0].phoneme)
    if len(group) == 2:
        consonant, vowel = group[0].phoneme, group[1].phoneme
        return Mora(vowel=vowel, consonant=consonant, text=consonant + vowel)
    raise EncodingError(
        "mora with more than two phonemes: " + " ".join(p.phoneme for p in group)
    )


def _accent_phrase(phonemes: list[LabelPhoneme], pause_after: bool) -> AccentPhrase:
    moras: list[Mora] = []
    vowels: list[LabelPhoneme] = []
    group: list[LabelPhoneme] = []
    for i, ph in enumerate(phonemes):
        if ph.contexts["a2"] == _A2_OUT_OF_PHRASE:
            break
        group.append(ph)
        last = i + 1 == len(phonemes)
        if last or ph.contexts["a2"] != phonemes[i + 1].contexts["a2"]:
            moras.append(_mora_from_phonemes(group))
            vowels.append(group[-1])
            group = []
    if not moras:
        raise EncodingError("accent phrase without morae in label sequence")

    try:
        nucleus = int(vowels[0].contexts["f2"])
    except ValueError:
        raise EncodingError(f"invalid accent position {vowels[0].contexts['f2']!r}") from None
    nucleus = min(nucleus, len(moras))
    is_interrogative = vowels[-1].contexts["f3"] == "1"

    # 1-based nucleus (0 = flat) → 0-based index; flat phrases peak at the end
    accent = nucleus - 1 if nucleus > 0 else len(moras) - 1
    return AccentPhrase(
        moras=tuple(moras),
        accent=accent,
        pause_mora=pause_mora() if pause_after else None,
        is_interrogative=is_interrogative,
        is_flat=nucleus == 0,
    )


def _split_accent_phrases(phonemes: list[LabelPhoneme]) -> list[list[LabelPhoneme]]:
    phrases: list[list[LabelPhoneme]] = []
    current: list[LabelPhoneme] = []
    for i, ph in enumerate(phonemes):
        current.append(ph)
        last = i + 1 == len(phonemes)
        if last or any(
            ph.contexts[k] != phonemes[i + 1].contexts[k] for k in ("i3", "f5")
        ):
            phrases.append(current)
            current = []
    return phrases


def utterance_from_labels(labels: Iterable[str]) -> Utterance:
    """
    Rebuild an Utterance from full-context labels.

    Pauses split the input into breath groups; every breath group but the
    last ends with a pause mora.  Raises ``EncodingError`` on unreadable
    labels or malformed morae.
    """
    phonemes = [LabelPhoneme(label) for label in labels if label.strip()]

    breath_groups: list[list[LabelPhoneme]] = []
    current: list[LabelPhoneme] = []
    for ph in phonemes:
        if ph.is_pause:
            if current:
                breath_groups.append(current)
                current = []
        else:
            current.append(ph)
    if current:
        breath_groups.append(current)

    phrases: list[AccentPhrase] = []
    for gi, group in enumerate(breath_groups):
        raw_phrases = _split_accent_phrases(group)
        for pi, raw in enumerate(raw_phrases):
            pause_after = gi != len(breath_groups) - 1 and pi == len(raw_phrases) - 1
            phrases.append(_accent_phrase(raw, pause_after))
    return Utterance(tuple(phrases))
