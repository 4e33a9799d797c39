"""
Tests for duplicate checks and population scans
"""

import asyncio

import pytest

from dedup_service.core.errors import ValidationError
from dedup_service.domains.duplicates.models.duplicates import CandidateStatus
from dedup_service.domains.duplicates.services.detection_service import UNAVAILABLE_MESSAGE

from conftest import SCOPE, make_candidate
from fakes import InjectedFailure


BENALI = {"first_name": "Mohmed", "last_name": "Benali", "dob": "1990-05-12", "phone": "0555 12 34 56"}


class TestCheck:

    @pytest.mark.asyncio
    async def test_registration_preview_reports_without_persisting(self, service, directory, candidates, audit_store):
        directory.add("P1", SCOPE, first_name="Mohamed", last_name="Benali", dob="1990-05-12", phone="0555123456")

        result = await service.check(BENALI, SCOPE, actor="receptionist-7")

        assert result.available
        assert result.has_duplicates
        [duplicate] = result.duplicates
        assert duplicate.primary_patient_id == "P1"
        assert duplicate.duplicate_patient_id is None
        assert duplicate.high_confidence
        assert candidates.rows == {}
        [entry] = audit_store.of("detect")
        assert entry.actor == "receptionist-7"
        assert entry.details["mode"] == "check"

    @pytest.mark.asyncio
    async def test_registered_patient_creates_pending_candidate(self, service, benali_pair, candidates):
        result = await service.check(dict(BENALI, patient_id="P2"), SCOPE)

        assert result.has_duplicates
        [duplicate] = result.duplicates
        assert duplicate.status is CandidateStatus.PENDING
        assert duplicate.primary_patient_id == "P1"
        assert duplicate.duplicate_patient_id == "P2"
        assert duplicate.pair_key == "P1|P2"
        assert [fs.field for fs in duplicate.field_scores] == ["name", "phone", "dob", "address"]
        assert len(candidates.rows) == 1

    @pytest.mark.asyncio
    async def test_re_detection_is_idempotent(self, service, benali_pair, candidates):
        first = await service.check(dict(BENALI, patient_id="P2"), SCOPE)
        second = await service.check(dict(BENALI, patient_id="P2"), SCOPE)

        assert [c.id for c in first.duplicates] == [c.id for c in second.duplicates]
        assert [c.score for c in first.duplicates] == [c.score for c in second.duplicates]
        assert len(candidates.rows) == 1
        assert second.duplicates[0].detection_count == 2

    @pytest.mark.asyncio
    async def test_pair_checked_from_either_side_shares_one_row(self, service, benali_pair, candidates, directory):
        await service.check(dict(BENALI, patient_id="P2"), SCOPE)
        p1 = directory.records["P1"].attributes
        await service.check(dict(p1, patient_id="P1"), SCOPE)

        assert len(candidates.rows) == 1

    @pytest.mark.asyncio
    async def test_confirmed_different_pair_is_skipped(self, service, benali_pair, candidates):
        candidates.put(make_candidate(status=CandidateStatus.CONFIRMED_DIFFERENT))

        result = await service.check(dict(BENALI, patient_id="P2"), SCOPE)

        assert not result.has_duplicates
        assert candidates.rows["C1"].status is CandidateStatus.CONFIRMED_DIFFERENT
        assert candidates.rows["C1"].detection_count == 1

    @pytest.mark.asyncio
    async def test_confirmed_duplicate_is_reported_unchanged(self, service, benali_pair, candidates):
        candidates.put(make_candidate(status=CandidateStatus.CONFIRMED_DUPLICATE))

        result = await service.check(dict(BENALI, patient_id="P2"), SCOPE)

        [duplicate] = result.duplicates
        assert duplicate.id == "C1"
        assert duplicate.status is CandidateStatus.CONFIRMED_DUPLICATE

    @pytest.mark.asyncio
    async def test_low_scores_are_not_reported(self, service, directory):
        directory.add("P1", SCOPE, first_name="Karim", last_name="Boudiaf", dob="1985-01-01")

        result = await service.check({"first_name": "Ahmed", "last_name": "Said", "dob": "1985-01-01"}, SCOPE)

        assert result.available
        assert not result.has_duplicates

    @pytest.mark.asyncio
    async def test_missing_mandatory_field_raises(self, service):
        with pytest.raises(ValidationError) as exc_info:
            await service.check({"first_name": "Ahmed"}, SCOPE)
        assert exc_info.value.details["missing"] == ["last_name"]

    @pytest.mark.asyncio
    async def test_unparseable_dob_raises(self, service):
        with pytest.raises(ValidationError):
            await service.check({"first_name": "Ahmed", "last_name": "Said", "dob": "someday"}, SCOPE)

    @pytest.mark.asyncio
    async def test_retrieval_failure_degrades(self, service, directory):
        directory.fail_on("find_by_match_keys")

        result = await service.check(BENALI, SCOPE)

        assert not result.available
        assert not result.has_duplicates
        assert result.message == UNAVAILABLE_MESSAGE

    @pytest.mark.asyncio
    async def test_persistence_failure_degrades(self, service, benali_pair, candidates):
        candidates.fail_on("upsert_pending")

        result = await service.check(dict(BENALI, patient_id="P2"), SCOPE)

        assert not result.available
        assert result.message == UNAVAILABLE_MESSAGE

    @pytest.mark.asyncio
    async def test_timeout_degrades_without_writes(self, service, benali_pair, candidates, directory, monkeypatch):
        service.detection.performance_config.detection_timeout_seconds = 0.01
        original = directory.find_by_match_keys

        async def slow_find(*args, **kwargs):
            await asyncio.sleep(0.5)
            return await original(*args, **kwargs)

        monkeypatch.setattr(directory, "find_by_match_keys", slow_find)

        result = await service.check(dict(BENALI, patient_id="P2"), SCOPE)

        assert not result.available
        assert candidates.rows == {}


class TestScan:

    def _population(self, directory):
        directory.add("P1", SCOPE, first_name="Mohamed", last_name="Benali", dob="1990-05-12", phone="0555123456")
        directory.add("P2", SCOPE, first_name="Mohmed", last_name="Benali", dob="1990-05-12", phone="0555123456")
        directory.add("P3", SCOPE, first_name="Karim", last_name="Boudiaf", dob="1970-06-30")
        directory.add("P4", SCOPE, first_name="Fatima", last_name="Zohra", dob="1982-03-03", phone="0661000000")
        directory.add("P5", SCOPE, first_name="Fatimah", last_name="Zohra", dob="1982-03-03", phone="0661000000")

    @pytest.mark.asyncio
    async def test_scan_finds_each_pair_once(self, service, directory, candidates, checkpoints, audit_store):
        self._population(directory)

        report = await service.scan(SCOPE, actor="nightly")

        assert report.completed
        assert report.processed == 5
        assert report.failed == 0
        assert report.candidates_found == 2
        assert sorted(row.pair_key for row in candidates.rows.values()) == ["P1|P2", "P4|P5"]
        assert all(row.detection_count == 1 for row in candidates.rows.values())
        # batch size 2: checkpoints after P2, P4 and P5, cleared at the end
        assert checkpoints.history == ["P2", "P4", "P5"]
        assert checkpoints.values == {}
        [entry] = audit_store.of("detect")
        assert entry.details["mode"] == "scan"

    @pytest.mark.asyncio
    async def test_scan_resumes_from_checkpoint(self, service, directory, checkpoints):
        self._population(directory)
        checkpoints.values[SCOPE] = "P3"

        report = await service.scan(SCOPE)

        assert report.resumed_from == "P3"
        assert report.processed == 2
        assert report.last_patient_id == "P5"

    @pytest.mark.asyncio
    async def test_restart_ignores_checkpoint(self, service, directory, checkpoints):
        self._population(directory)
        checkpoints.values[SCOPE] = "P3"

        report = await service.scan(SCOPE, restart=True)

        assert report.resumed_from is None
        assert report.processed == 5

    @pytest.mark.asyncio
    async def test_scan_counts_failures_and_continues(self, service, directory, candidates):
        self._population(directory)
        candidates.fail_on("upsert_pending", InjectedFailure("write refused"))

        report = await service.scan(SCOPE)

        assert report.completed
        assert report.processed == 5
        assert report.failed == 4
        assert report.candidates_found == 0
