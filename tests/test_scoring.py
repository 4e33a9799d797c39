"""
Tests for similarity primitives, field scorers and the composite scorer
"""

from datetime import date
import itertools

import pytest

from dedup_service.core.config import MatchingConfig
from dedup_service.domains.duplicates.models.duplicates import PatientFingerprint
from dedup_service.domains.duplicates.scoring.composite import CompositeScorer, Confidence, score_pair
from dedup_service.domains.duplicates.scoring.field_scorer import (
    dob_matches,
    score_address,
    score_name,
    score_phone,
)
from dedup_service.domains.duplicates.scoring.similarity import (
    edit_similarity,
    phonetic_code,
    phonetic_similarity,
    trigram_similarity,
    trigrams,
)


def fingerprint(**data) -> PatientFingerprint:
    return PatientFingerprint.from_patient_data(data, "clinic-1")


class TestSimilarityPrimitives:

    def test_edit_similarity(self):
        assert edit_similarity("", "") == 1.0
        assert edit_similarity("abc", "abc") == 1.0
        assert edit_similarity("abc", "") == 0.0
        assert edit_similarity("mohamed", "mohmed") == pytest.approx(1 - 1 / 7)

    @pytest.mark.parametrize("spelling", ["mohamed", "muhammad", "mohammed", "mohmed", "mouhamed"])
    def test_phonetic_code_absorbs_transliteration(self, spelling):
        assert phonetic_code(spelling) == "mhmd"

    def test_phonetic_code_per_token(self):
        assert phonetic_code("mohamed benali") == "mhmd bnl"
        assert phonetic_code("fatimah") == phonetic_code("fatima") == "ftm"

    def test_phonetic_similarity_is_binary(self):
        assert phonetic_similarity("mohamed", "muhammad") == 1.0
        assert phonetic_similarity("mohamed", "karim") == 0.0
        assert phonetic_similarity("", "") == 0.0

    def test_trigrams_are_padded(self):
        assert trigrams("ab") == frozenset({"  a", " ab", "ab "})
        assert trigrams("") == frozenset()

    def test_trigram_similarity_bounds(self):
        assert trigram_similarity("", "") == 1.0
        assert trigram_similarity("abc", "") == 0.0
        assert trigram_similarity("benali", "benali") == 1.0


class TestFieldScorer:

    def test_name_blend(self):
        score = score_name("mohamed benali", "mohmed benali")
        # edit 13/14, phonetic 1, trigram 12/17
        assert score == pytest.approx(0.4 * (13 / 14) + 0.4 + 0.2 * (12 / 17))

    def test_name_missing_side(self):
        assert score_name("", "mohamed") == 0.0

    def test_phone_rules(self):
        assert score_phone("0555123456", "0555123456") == 1.0
        assert score_phone("213555123456", "0555123456") == 0.8
        assert score_phone("0555123456", "") == 0.0
        assert score_phone("", "") == 0.0
        assert score_phone("0555123456", "0555123457") == pytest.approx(0.9)

    @pytest.mark.parametrize("a,b,expected", [
        (date(1990, 5, 12), date(1990, 5, 12), True),
        (date(1990, 5, 12), date(1990, 12, 5), True),   # day/month swapped
        (date(1990, 5, 12), date(1991, 5, 12), True),   # year off by one
        (date(1990, 5, 12), date(1992, 5, 12), False),
        (date(1990, 5, 12), date(1990, 5, 13), False),
        (date(1990, 5, 12), None, False),
        (None, None, False),
    ])
    def test_dob_tolerance(self, a, b, expected):
        assert dob_matches(a, b) is expected
        assert dob_matches(b, a) is expected

    def test_address(self):
        assert score_address("rue didouche", "alger", "rue didouche", "alger") == pytest.approx(1.0)
        assert score_address("rue didouche", "", "rue didouche", "alger") == pytest.approx(0.7)
        assert score_address("", "", "", "") == 0.0


class TestCompositeScorer:

    def test_benali_typo_is_high_confidence(self):
        a = fingerprint(first_name="Mohamed", last_name="Benali", dob="1990-05-12", phone="0555123456")
        b = fingerprint(first_name="Mohmed", last_name="Benali", dob="1990-05-12", phone="0555 12 34 56")

        result = score_pair(a, b)

        assert result.score >= 0.8
        assert result.confidence is Confidence.HIGH
        assert result.high_confidence
        assert {"name", "phone", "dob"} <= set(result.matched_fields)
        assert "address" not in result.matched_fields

    def test_unrelated_patients_are_discarded(self):
        a = fingerprint(first_name="Ahmed", last_name="Said", dob="1985-01-01")
        b = fingerprint(first_name="Karim", last_name="Boudiaf", dob="1985-01-01")

        result = score_pair(a, b)

        assert result.score < 0.6
        assert result.confidence is Confidence.DISCARD
        assert not result.reportable
        assert result.matched_fields == ["dob"]

    def test_field_order_and_weights(self):
        a = fingerprint(first_name="Ali", last_name="Haddad")
        result = score_pair(a, a)

        assert [fs.field for fs in result.field_scores] == ["name", "phone", "dob", "address"]
        assert [fs.weight for fs in result.field_scores] == [0.4, 0.3, 0.2, 0.1]
        # identical names only; no phone, dob or address on either side
        assert result.score == pytest.approx(0.4)

    def test_thresholds_are_configurable(self):
        scorer = CompositeScorer(MatchingConfig(low_threshold=0.3, high_threshold=0.5))
        assert scorer.classify(0.29) is Confidence.DISCARD
        assert scorer.classify(0.3) is Confidence.POTENTIAL
        assert scorer.classify(0.5) is Confidence.HIGH

    def test_default_classification_boundaries(self):
        scorer = CompositeScorer(MatchingConfig())
        assert scorer.classify(0.5999) is Confidence.DISCARD
        assert scorer.classify(0.6) is Confidence.POTENTIAL
        assert scorer.classify(0.7999) is Confidence.POTENTIAL
        assert scorer.classify(0.8) is Confidence.HIGH

    def test_scores_are_symmetric(self):
        people = [
            fingerprint(first_name="Mohamed", last_name="Benali", dob="1990-05-12", phone="0555123456",
                        address={"street": "12 rue Didouche Mourad", "city": "Alger"}),
            fingerprint(first_name="محمد", last_name="بن علي", dob="1990-12-05", phone="+213555123456"),
            fingerprint(first_name="Mouhamed", last_name="Ben Ali", dob="1991-05-12",
                        address={"street": "12 rue Didouche", "city": "Alger"}),
            fingerprint(first_name="Karim", last_name="Boudiaf"),
        ]
        scorer = CompositeScorer()
        for a, b in itertools.permutations(people, 2):
            forward = scorer.score(a, b)
            backward = scorer.score(b, a)
            assert forward.score == backward.score
            assert forward.field_scores == backward.field_scores
