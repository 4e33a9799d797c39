"""
Composite scoring and confidence classification
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from dedup_service.core.config import MatchingConfig
from ..models.duplicates import FieldScore, PatientFingerprint
from .field_scorer import score_name, score_phone, dob_matches, score_address


def _unit(value: float) -> float:
    # clamp float drift and keep six decimals for display
    return round(min(max(value, 0.0), 1.0), 6)


class Confidence(str, Enum):
    """Classification of a composite score against the two thresholds"""
    DISCARD = "discard"
    POTENTIAL = "potential"
    HIGH = "high"


@dataclass
class PairScore:
    """Composite result for one pair of fingerprints"""
    score: float
    confidence: Confidence
    field_scores: List[FieldScore] = field(default_factory=list)

    @property
    def reportable(self) -> bool:
        return self.confidence is not Confidence.DISCARD

    @property
    def high_confidence(self) -> bool:
        return self.confidence is Confidence.HIGH

    @property
    def matched_fields(self) -> List[str]:
        return [fs.field for fs in self.field_scores if fs.matched]


class CompositeScorer:
    """
    Weighted combination of per-field scores.

    composite = w_name*name + w_phone*phone + w_dob*dob(0/1) + w_address*address

    The scorer only classifies. A high score never triggers a merge; that always
    takes an explicit decision through the resolution workflow.
    """

    def __init__(self, config: Optional[MatchingConfig] = None):
        self.config = config or MatchingConfig()

    def field_scores(self, a: PatientFingerprint, b: PatientFingerprint) -> List[FieldScore]:
        cfg = self.config
        name = _unit(score_name(a.full_name, b.full_name))
        phone = _unit(score_phone(a.phone, b.phone))
        dob = dob_matches(a.date_of_birth, b.date_of_birth)
        address = _unit(score_address(a.street, a.city, b.street, b.city))

        return [
            FieldScore(field="name", similarity=name, matched=name >= cfg.name_cutoff, weight=cfg.name_weight),
            FieldScore(field="phone", similarity=phone, matched=phone >= cfg.phone_cutoff, weight=cfg.phone_weight),
            FieldScore(field="dob", similarity=1.0 if dob else 0.0, matched=dob, weight=cfg.dob_weight),
            FieldScore(field="address", similarity=address, matched=address >= cfg.address_cutoff, weight=cfg.address_weight),
        ]

    def classify(self, score: float) -> Confidence:
        if score >= self.config.high_threshold:
            return Confidence.HIGH
        if score >= self.config.low_threshold:
            return Confidence.POTENTIAL
        return Confidence.DISCARD

    def score(self, a: PatientFingerprint, b: PatientFingerprint) -> PairScore:
        scores = self.field_scores(a, b)
        composite = _unit(sum(fs.weight * fs.similarity for fs in scores))
        return PairScore(score=composite, confidence=self.classify(composite), field_scores=scores)


def score_pair(
    a: PatientFingerprint,
    b: PatientFingerprint,
    config: Optional[MatchingConfig] = None
) -> PairScore:
    """Convenience wrapper around CompositeScorer"""
    return CompositeScorer(config).score(a, b)
