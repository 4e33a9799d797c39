"""
Similarity primitives over normalized strings, each returning a value in [0, 1]
"""

from typing import FrozenSet

import Levenshtein

VOWELS = frozenset("aeiou")
SEMIVOWELS = frozenset("wy")

# Order matters: longer digraphs first
DIGRAPHS = (
    ("sch", "s"),
    ("dj", "j"),
    ("sh", "s"),
    ("ch", "s"),
    ("kh", "k"),
    ("gh", "g"),
    ("th", "t"),
    ("dh", "d"),
    ("ph", "f"),
    ("ck", "k"),
    ("ou", "u"),
)

CONSONANT_CLASSES = {
    "c": "k",
    "q": "k",
    "v": "f",
    "p": "b",
    "x": "ks",
}


def edit_similarity(a: str, b: str) -> float:
    """1 - levenshtein(a, b) / max(len(a), len(b)); 1.0 when both are empty"""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - Levenshtein.distance(a, b) / longest


def _token_code(token: str) -> str:
    for digraph, replacement in DIGRAPHS:
        token = token.replace(digraph, replacement)
    token = "".join(CONSONANT_CLASSES.get(char, char) for char in token)

    # Fatimah / Fatima
    if len(token) > 1 and token[-1] == "h" and token[-2] in VOWELS:
        token = token[:-1]

    code = []
    for position, char in enumerate(token):
        if char in VOWELS:
            continue
        if char in SEMIVOWELS and position > 0:
            continue
        if code and code[-1] == char:
            continue
        code.append(char)
    return "".join(code)


def phonetic_code(value: str) -> str:
    """
    Coarse consonant-skeleton code, one code per token.

    Built to absorb transliteration variance between Latin spellings and
    transliterated Arabic (Mohamed / Muhammad / Mohmed all give 'mhmd').
    """
    codes = (_token_code(token) for token in value.split())
    return " ".join(code for code in codes if code)


def phonetic_similarity(a: str, b: str) -> float:
    """1.0 on equal non-empty phonetic codes, 0.0 otherwise"""
    code_a = phonetic_code(a)
    return 1.0 if code_a and code_a == phonetic_code(b) else 0.0


def trigrams(value: str) -> FrozenSet[str]:
    """Overlapping 3-character windows, padded at the string boundaries"""
    if not value:
        return frozenset()
    padded = f"  {value} "
    return frozenset(padded[i:i + 3] for i in range(len(padded) - 2))


def jaccard(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def trigram_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the two trigram sets"""
    return jaccard(trigrams(a), trigrams(b))
