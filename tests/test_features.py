from pathlib import Path
import sys

import numpy as np
import pytest


ROOT = Path(__file__).resolve().parents[1]
LIB = ROOT / "lib"
if str(LIB) not in sys.path:
    sys.path.insert(0, str(LIB))

from errors import EncodingError  # noqa: E402
from features import encode, split_mora  # noqa: E402
from linguistic import AccentPhrase, Mora, Utterance, phoneme_id  # noqa: E402

from fakes import konnichiwa, two_phrases  # noqa: E402


def test_encode_flattens_with_boundary_pauses() -> None:
    ft = encode(konnichiwa())
    assert ft.phonemes == ("pau", "k", "a", "o", "n", "i", "ch", "i", "w", "a", "pau")
    assert ft.phoneme_ids.dtype == np.int64
    assert ft.phoneme_ids.tolist() == [phoneme_id(p) for p in ft.phonemes]
    assert ft.vowel_indexes.tolist() == [0, 2, 3, 5, 7, 9, 10]
    assert ft.num_moras == 7
    assert ft.mora_of_phoneme.tolist() == [0, 1, 1, 2, 3, 3, 4, 4, 5, 5, 6]
    assert ft.is_vowel.tolist() == [
        True, False, True, True, False, True, False, True, False, True, True,
    ]


def test_encode_consonant_slots() -> None:
    ft = encode(konnichiwa())
    expected = [-1, phoneme_id("k"), -1, phoneme_id("n"), phoneme_id("ch"), phoneme_id("w"), -1]
    assert ft.consonant_phoneme_ids.tolist() == expected
    assert ft.vowel_phonemes == ("pau", "a", "o", "i", "i", "a", "pau")


def test_encode_accent_lists_single_phrase() -> None:
    ft = encode(konnichiwa())
    assert ft.start_accent.tolist() == [0, 1, 0, 0, 0, 0, 0]
    assert ft.end_accent.tolist() == [0, 1, 0, 0, 0, 0, 0]
    assert ft.start_accent_phrase.tolist() == [0, 1, 0, 0, 0, 0, 0]
    assert ft.end_accent_phrase.tolist() == [0, 0, 0, 0, 0, 1, 0]


def test_encode_inserts_pause_between_phrases() -> None:
    ft = encode(two_phrases(pause_after=True))
    assert ft.phonemes == (
        "pau", "k", "o", "N", "n", "i", "pau", "s", "o", "r", "a", "U", "pau",
    )
    assert ft.num_moras == 9
    assert ft.start_accent.tolist() == [0, 0, 1, 0, 0, 1, 0, 0, 0]
    assert ft.end_accent.tolist() == [0, 0, 1, 0, 0, 1, 0, 0, 0]
    assert ft.start_accent_phrase.tolist() == [0, 1, 0, 0, 0, 1, 0, 0, 0]
    assert ft.end_accent_phrase.tolist() == [0, 0, 0, 1, 0, 0, 0, 1, 0]


def test_encode_without_pause_has_no_inner_pau() -> None:
    ft = encode(two_phrases(pause_after=False))
    assert ft.phonemes.count("pau") == 2
    assert ft.num_moras == 8


def test_encode_is_pure() -> None:
    utt = konnichiwa()
    a = encode(utt, style_id=1)
    b = encode(utt, style_id=2)
    assert a.phonemes == b.phonemes
    assert np.array_equal(a.phoneme_ids, b.phoneme_ids)
    assert a.phoneme_ids is not b.phoneme_ids


def test_encode_empty_utterance_fails() -> None:
    with pytest.raises(EncodingError):
        encode(Utterance(()))


def test_encode_empty_phrase_fails() -> None:
    with pytest.raises(EncodingError, match="no morae"):
        encode(Utterance((AccentPhrase(moras=(), accent=0),)))


def test_encode_accent_out_of_range_fails() -> None:
    phrase = AccentPhrase.build([("k", "a"), (None, "o")], accent=2)
    with pytest.raises(EncodingError, match="out of range"):
        encode(Utterance((phrase,)))


def test_encode_unknown_phoneme_fails() -> None:
    phrase = AccentPhrase(moras=(Mora(vowel="a", consonant="qq"),), accent=0)
    with pytest.raises(EncodingError, match="unknown phoneme"):
        encode(Utterance((phrase,)))


def test_encode_rejects_vowel_as_consonant() -> None:
    phrase = AccentPhrase(moras=(Mora(vowel="a", consonant="o"),), accent=0)
    with pytest.raises(EncodingError):
        encode(Utterance((phrase,)))


def test_split_mora_gaps() -> None:
    vowel_indexes, consonants = split_mora(["pau", "ky", "o", "o", "cl", "t", "o", "pau"])
    assert vowel_indexes == [0, 2, 3, 4, 6, 7]
    assert consonants == ["", "ky", "", "", "t", ""]


def test_utterance_json_roundtrip_keeps_structure() -> None:
    utt = two_phrases(pause_after=True, is_interrogative=True)
    restored = Utterance.from_dict(utt.to_dict())
    assert restored == utt
    assert restored.accent_phrases[0].pause_after is True
    assert restored.accent_phrases[1].is_interrogative is True


def test_flat_marker_survives_json() -> None:
    phrase = AccentPhrase.build([("k", "i")], accent=0, is_flat=True)
    restored = Utterance.from_dict(Utterance((phrase,)).to_dict())
    assert restored.accent_phrases[0].is_flat
    assert encode(restored).start_accent.tolist() == [0, 0, 0]
    plain = Utterance.from_dict({"accent_phrases": [{"moras": [{"vowel": "a"}]}]})
    assert plain.accent_phrases[0].is_flat is False
