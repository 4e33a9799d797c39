"""Shared fixtures: the engine wired over in-memory stores."""

from datetime import datetime, timezone

import pytest

from dedup_service.core.config import ApplicationConfig, MatchingConfig, PerformanceConfig
from dedup_service.core.dependencies import build_duplicate_service
from dedup_service.domains.duplicates.models.duplicates import (
    CandidateStatus,
    DuplicateCandidate,
    make_pair_key,
)

from fakes import (
    FakeAuditStore,
    FakeCandidateStore,
    FakeCheckpointStore,
    FakeDependentStore,
    FakeLockProvider,
    FakePatientDirectory,
)

SCOPE = "clinic-1"

DEPENDENT_CATEGORIES = ("appointments", "clinical_documents", "prescriptions", "bills", "insurance_policies")


@pytest.fixture
def config():
    return ApplicationConfig(
        matching=MatchingConfig(),
        performance=PerformanceConfig(detection_timeout_seconds=5.0, scan_batch_size=2),
    )


@pytest.fixture
def directory():
    return FakePatientDirectory()


@pytest.fixture
def candidates():
    return FakeCandidateStore()


@pytest.fixture
def audit_store():
    return FakeAuditStore()


@pytest.fixture
def dependents():
    return {category: FakeDependentStore(category) for category in DEPENDENT_CATEGORIES}


@pytest.fixture
def locks():
    return FakeLockProvider()


@pytest.fixture
def checkpoints():
    return FakeCheckpointStore()


@pytest.fixture
def service(directory, candidates, audit_store, dependents, locks, checkpoints, config):
    return build_duplicate_service(
        directory=directory,
        candidates=candidates,
        audit_store=audit_store,
        dependents=list(dependents.values()),
        locks=locks,
        checkpoints=checkpoints,
        config=config,
    )


@pytest.fixture
def benali_pair(directory):
    """Two registrations of the same person with a one-letter typo"""
    directory.add("P1", SCOPE, first_name="Mohamed", last_name="Benali", dob="1990-05-12", phone="0555123456")
    directory.add("P2", SCOPE, first_name="Mohmed", last_name="Benali", dob="1990-05-12", phone="0555123456")
    return "P1", "P2"


def make_candidate(
    primary: str = "P1",
    duplicate: str = "P2",
    status: CandidateStatus = CandidateStatus.PENDING,
    candidate_id: str = "C1",
    score: float = 0.86,
    scope_id: str = SCOPE,
    created_at: datetime = None,
) -> DuplicateCandidate:
    now = created_at or datetime(2024, 3, 1, tzinfo=timezone.utc)
    return DuplicateCandidate(
        id=candidate_id,
        scope_id=scope_id,
        pair_key=make_pair_key(primary, duplicate),
        primary_patient_id=primary,
        duplicate_patient_id=duplicate,
        score=score,
        high_confidence=score >= 0.8,
        status=status,
        created_at=now,
        updated_at=now,
    )
