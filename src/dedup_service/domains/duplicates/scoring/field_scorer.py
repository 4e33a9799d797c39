"""
Per-field similarity for patient attributes.

Every scorer is symmetric in its two arguments; the composite score relies on it.
"""

from datetime import date
from typing import Optional

from .similarity import edit_similarity, phonetic_similarity, trigram_similarity

NAME_EDIT_WEIGHT = 0.4
NAME_PHONETIC_WEIGHT = 0.4
NAME_TRIGRAM_WEIGHT = 0.2

PHONE_SUFFIX_MIN_RUN = 6
PHONE_SUFFIX_SCORE = 0.8

STREET_WEIGHT = 0.7
CITY_WEIGHT = 0.3


def score_name(name_a: str, name_b: str) -> float:
    """Blend of edit, phonetic and trigram similarity over normalized 'first last'"""
    if not name_a or not name_b:
        return 0.0
    return (
        NAME_EDIT_WEIGHT * edit_similarity(name_a, name_b)
        + NAME_PHONETIC_WEIGHT * phonetic_similarity(name_a, name_b)
        + NAME_TRIGRAM_WEIGHT * trigram_similarity(name_a, name_b)
    )


def _shared_suffix_length(a: str, b: str) -> int:
    length = 0
    for char_a, char_b in zip(reversed(a), reversed(b)):
        if char_a != char_b:
            break
        length += 1
    return length


def score_phone(phone_a: str, phone_b: str) -> float:
    """
    Digits-only phone similarity

    exact -> 1.0; trailing run of >= 6 shared digits (country/trunk prefix
    differences) -> 0.8; otherwise edit similarity. Missing on either side -> 0.0.
    """
    if not phone_a or not phone_b:
        return 0.0
    if phone_a == phone_b:
        return 1.0
    if _shared_suffix_length(phone_a, phone_b) >= PHONE_SUFFIX_MIN_RUN:
        return PHONE_SUFFIX_SCORE
    return edit_similarity(phone_a, phone_b)


def _same_day(a: date, b: date) -> bool:
    return a.month == b.month and a.day == b.day


def dob_matches(dob_a: Optional[date], dob_b: Optional[date]) -> bool:
    """
    Exact date of birth, or one of two common entry errors:
    day and month swapped (same year), or year off by exactly one.
    """
    if dob_a is None or dob_b is None:
        return False
    if dob_a == dob_b:
        return True
    if dob_a.year == dob_b.year and dob_a.day == dob_b.month and dob_a.month == dob_b.day:
        return True
    return abs(dob_a.year - dob_b.year) == 1 and _same_day(dob_a, dob_b)


def _component(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    return trigram_similarity(a, b)


def score_address(street_a: str, city_a: str, street_b: str, city_b: str) -> float:
    """Street trigram (0.7) + city trigram (0.3); absent parts contribute nothing"""
    return STREET_WEIGHT * _component(street_a, street_b) + CITY_WEIGHT * _component(city_a, city_b)
