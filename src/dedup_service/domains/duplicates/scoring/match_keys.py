"""
Blocking keys stored alongside each patient so candidate retrieval can be
answered from indexes instead of scanning names.
"""

from datetime import date
from typing import Any, Dict, List, Optional

from ..models.duplicates import PatientFingerprint
from .field_scorer import dob_matches
from .similarity import jaccard, phonetic_code, trigrams


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def dob_variants(dob: Optional[date]) -> List[str]:
    """The DOB plus the entry-error variants dob_matches() tolerates, as ISO strings"""
    if dob is None:
        return []

    variants = [
        dob,
        _safe_date(dob.year, dob.day, dob.month),  # day/month swapped
        _safe_date(dob.year - 1, dob.month, dob.day),
        _safe_date(dob.year + 1, dob.month, dob.day),
    ]
    seen = []
    for variant in variants:
        if variant is not None and variant.isoformat() not in seen:
            seen.append(variant.isoformat())
    return seen


def phone_suffix(phone: str, length: int = 6) -> Optional[str]:
    if len(phone) < length:
        return None
    return phone[-length:]


def build_match_keys(fingerprint: PatientFingerprint, suffix_length: int = 6) -> Dict[str, Any]:
    """Match keys persisted with the patient document and indexed"""
    return {
        "name_trigrams": sorted(trigrams(fingerprint.full_name)),
        "phonetic_tokens": sorted(set(phonetic_code(fingerprint.full_name).split())),
        "phone_suffix": phone_suffix(fingerprint.phone, suffix_length),
        "dob": fingerprint.date_of_birth.isoformat() if fingerprint.date_of_birth else None,
    }


class PrefilterSignals:
    """Which cheap signals connect a target to a stored patient"""

    __slots__ = ("name_overlap", "phonetic_overlap", "phone_suffix", "dob")

    def __init__(self, target: PatientFingerprint, other: PatientFingerprint, suffix_length: int = 6):
        self.name_overlap = jaccard(trigrams(target.full_name), trigrams(other.full_name))

        target_codes = set(phonetic_code(target.full_name).split())
        other_codes = set(phonetic_code(other.full_name).split())
        self.phonetic_overlap = bool(target_codes & other_codes)

        suffix = phone_suffix(target.phone, suffix_length)
        self.phone_suffix = suffix is not None and suffix == phone_suffix(other.phone, suffix_length)

        self.dob = dob_matches(target.date_of_birth, other.date_of_birth)

    def passes(self, name_bar: float) -> bool:
        return self.name_overlap >= name_bar or self.phonetic_overlap or self.phone_suffix or self.dob

    @property
    def strength(self) -> float:
        """Ranking weight used when the result set has to be capped"""
        return (
            self.name_overlap
            + (0.5 if self.phonetic_overlap else 0.0)
            + (1.0 if self.phone_suffix else 0.0)
            + (0.5 if self.dob else 0.0)
        )
