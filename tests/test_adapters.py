"""
Tests for the MongoDB and Redis adapters against mocked drivers
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import DuplicateKeyError
from redis.exceptions import RedisError

from dedup_service.core.cache import (
    CacheKeyBuilder,
    CacheManager,
    RedisCheckpointStore,
    RedisLockProvider,
)
from dedup_service.core.config import DatabaseConfig, RedisConfig
from dedup_service.core.database import MongoTransactionManager, get_transaction_manager
from dedup_service.core.errors import ConflictError, NotFoundError
from dedup_service.core.ports import NoTransactionManager
from dedup_service.domains.audit.models.audit import AuditEntry, AuditOperation
from dedup_service.domains.audit.repositories.audit_repository import AuditRepository
from dedup_service.domains.duplicates.models.duplicates import CandidateStatus
from dedup_service.domains.duplicates.repositories.candidate_repository import CandidateRepository
from dedup_service.domains.merge.repositories.dependent_repository import build_dependent_repositories
from dedup_service.domains.patient.models.patient import PatientRecord
from dedup_service.domains.patient.repositories.patient_repository import PatientRepository

from conftest import make_candidate


@pytest.fixture
def collection():
    mock = MagicMock()
    mock.find_one = AsyncMock(return_value=None)
    mock.find_one_and_update = AsyncMock(return_value=None)
    mock.insert_one = AsyncMock()
    mock.update_one = AsyncMock(return_value=MagicMock(matched_count=1, upserted_id=None))
    mock.update_many = AsyncMock()
    mock.replace_one = AsyncMock(return_value=MagicMock(matched_count=1, upserted_id=None))
    return mock


@pytest.fixture
def db_manager(collection):
    mock = MagicMock()
    mock.config = DatabaseConfig()
    mock.get_collection.return_value = collection
    return mock


@pytest.fixture
def cache_manager():
    mock = MagicMock()
    mock.config = RedisConfig()
    mock.get = AsyncMock(return_value=None)
    mock.set = AsyncMock(return_value=True)
    mock.delete = AsyncMock(return_value=True)
    return mock


class TestCandidateRepository:

    @pytest.mark.asyncio
    async def test_upsert_refreshes_pending_row(self, db_manager, collection):
        stored = CandidateRepository._to_doc(make_candidate())
        stored["detection_count"] = 2
        collection.find_one_and_update.return_value = stored

        result = await CandidateRepository(db_manager).upsert_pending(make_candidate(candidate_id="new-id"))

        assert result.id == "C1"
        assert result.detection_count == 2
        collection.insert_one.assert_not_awaited()
        query, update = collection.find_one_and_update.await_args.args
        assert query == {"pair_key": "P1|P2", "status": "pending"}
        assert update["$inc"] == {"detection_count": 1}

    @pytest.mark.asyncio
    async def test_upsert_inserts_new_pair(self, db_manager, collection):
        candidate = make_candidate()

        result = await CandidateRepository(db_manager).upsert_pending(candidate)

        assert result.id == "C1"
        doc = collection.insert_one.await_args.args[0]
        assert doc["_id"] == "C1"
        assert doc["status"] == "pending"
        assert "id" not in doc

    @pytest.mark.asyncio
    async def test_concurrent_insert_falls_back_to_refresh(self, db_manager, collection):
        winner = CandidateRepository._to_doc(make_candidate(candidate_id="winner"))
        winner["detection_count"] = 2
        collection.find_one_and_update.side_effect = [None, winner]
        collection.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")

        result = await CandidateRepository(db_manager).upsert_pending(make_candidate(candidate_id="loser"))

        assert result.id == "winner"
        assert result.detection_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_insert_of_adjudicated_pair_returns_it(self, db_manager, collection):
        collection.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
        collection.find_one.return_value = CandidateRepository._to_doc(
            make_candidate(candidate_id="done", status=CandidateStatus.CONFIRMED_DIFFERENT)
        )

        result = await CandidateRepository(db_manager).upsert_pending(make_candidate())

        assert result.status is CandidateStatus.CONFIRMED_DIFFERENT

    @pytest.mark.asyncio
    async def test_transition_is_compare_and_set(self, db_manager, collection):
        collection.find_one_and_update.return_value = CandidateRepository._to_doc(
            make_candidate(status=CandidateStatus.CONFIRMED_DUPLICATE)
        )
        session = object()

        result = await CandidateRepository(db_manager).transition(
            "C1", CandidateStatus.PENDING, CandidateStatus.CONFIRMED_DUPLICATE, {"reviewer_id": "dr"}, session=session
        )

        assert result.status is CandidateStatus.CONFIRMED_DUPLICATE
        query, update = collection.find_one_and_update.await_args.args
        assert query == {"_id": "C1", "status": "pending"}
        assert update["$set"]["status"] == "confirmed_duplicate"
        assert update["$set"]["reviewer_id"] == "dr"
        assert collection.find_one_and_update.await_args.kwargs["session"] is session

    @pytest.mark.asyncio
    async def test_transition_from_stale_status_conflicts(self, db_manager, collection):
        collection.find_one.return_value = {"_id": "C1", "status": "merged"}

        with pytest.raises(ConflictError):
            await CandidateRepository(db_manager).transition("C1", CandidateStatus.PENDING, CandidateStatus.MERGED)

    @pytest.mark.asyncio
    async def test_transition_of_missing_candidate(self, db_manager):
        with pytest.raises(NotFoundError):
            await CandidateRepository(db_manager).transition("C1", CandidateStatus.PENDING, CandidateStatus.MERGED)


class TestPatientRepository:

    @pytest.mark.asyncio
    async def test_index_patient_stores_match_keys(self, db_manager, collection):
        record = PatientRecord("P1", "clinic-1", {"first_name": "Mohamed", "last_name": "Benali",
                                                  "dob": "1990-05-12", "phone": "0555123456"})
        await PatientRepository(db_manager).index_patient(record)

        query, update = collection.update_one.await_args.args
        assert query == {"patient_id": "P1", "status": "active"}
        keys = update["$set"]["match_keys"]
        assert keys["phonetic_tokens"] == ["bnl", "mhmd"]
        assert keys["phone_suffix"] == "123456"
        assert "status" not in update["$set"]
        assert update["$setOnInsert"] == {"merged_into_id": None, "merged_at": None}
        assert collection.update_one.await_args.kwargs["upsert"] is True

    @pytest.mark.asyncio
    async def test_index_patient_never_revives_a_merged_patient(self, db_manager, collection):
        # the active-only filter misses, so the upsert hits the unique patient_id index
        collection.update_one.side_effect = DuplicateKeyError("E11000 duplicate key")
        record = PatientRecord("P2", "clinic-1", {"first_name": "Mohmed", "last_name": "Benali"})

        with pytest.raises(ConflictError):
            await PatientRepository(db_manager).index_patient(record)

    @pytest.mark.asyncio
    async def test_mark_merged_requires_active_patient(self, db_manager, collection):
        collection.update_one.return_value = MagicMock(matched_count=0, upserted_id=None)

        with pytest.raises(ConflictError):
            await PatientRepository(db_manager).mark_merged("P2", "P1", datetime.now(timezone.utc))

        query = collection.update_one.await_args.args[0]
        assert query == {"patient_id": "P2", "status": "active"}

    @pytest.mark.asyncio
    async def test_find_by_match_keys_without_keys_skips_query(self, db_manager, collection):
        found = await PatientRepository(db_manager).find_by_match_keys("clinic-1", {}, [], None, 10)

        assert found == []
        collection.aggregate.assert_not_called()


class TestDependentRepositories:

    def test_one_repository_per_category(self, db_manager):
        repositories = build_dependent_repositories(db_manager)

        assert [r.category for r in repositories] == [
            "appointments", "clinical_documents", "prescriptions", "bills", "insurance_policies"
        ]

    @pytest.mark.asyncio
    async def test_reassign_records_without_ids_is_a_no_op(self, db_manager, collection):
        [appointments, *_] = build_dependent_repositories(db_manager)

        assert await appointments.reassign_records([], "P2") == 0
        collection.update_many.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reassign_records_moves_exactly_the_given_ids(self, db_manager, collection):
        collection.update_many.return_value = MagicMock(modified_count=2)
        [appointments, *_] = build_dependent_repositories(db_manager)

        assert await appointments.reassign_records(["A1", "A2"], "P1") == 2

        query, update = collection.update_many.await_args.args
        assert query == {"_id": {"$in": ["A1", "A2"]}}
        assert update["$set"]["patient_id"] == "P1"


class TestAuditRepository:

    @pytest.mark.asyncio
    async def test_append_inserts_with_entry_id(self, db_manager, collection):
        entry = AuditEntry(operation=AuditOperation.MERGE, actor="dr-amrani", subject_ids=["P1", "P2"])

        await AuditRepository(db_manager).append(entry)

        doc = collection.insert_one.await_args.args[0]
        assert doc["_id"] == entry.entry_id
        assert doc["operation"] == "merge"
        assert "entry_id" not in doc

    def test_has_no_update_or_delete(self):
        for name in ("update", "update_entry", "delete", "delete_entry", "remove"):
            assert not hasattr(AuditRepository, name)


class TestRedisLockProvider:

    @pytest.mark.asyncio
    async def test_acquire_uses_owner_token(self, cache_manager):
        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=True)
        cache_manager.client.lock.return_value = lock

        handle = await RedisLockProvider(cache_manager).acquire("patient:P1", "merge-1")

        assert handle is lock
        key = cache_manager.client.lock.call_args.args[0]
        assert key == "dedup:lock:patient:P1"
        lock.acquire.assert_awaited_once_with(token="merge-1")

    @pytest.mark.asyncio
    async def test_busy_lock_conflicts(self, cache_manager):
        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=False)
        cache_manager.client.lock.return_value = lock

        with pytest.raises(ConflictError):
            await RedisLockProvider(cache_manager).acquire("patient:P1", "merge-1")

    @pytest.mark.asyncio
    async def test_hold_releases_even_when_release_fails(self, cache_manager):
        first, second = MagicMock(), MagicMock()
        for lock in (first, second):
            lock.acquire = AsyncMock(return_value=True)
        first.release = AsyncMock()
        second.release = AsyncMock(side_effect=RedisError("expired"))
        cache_manager.client.lock.side_effect = [first, second]

        async with RedisLockProvider(cache_manager).hold(["patient:P2", "patient:P1"], "merge-1") as keys:
            assert keys == ["patient:P1", "patient:P2"]

        second.release.assert_awaited_once()
        first.release.assert_awaited_once()


class TestRedisCheckpointStore:

    @pytest.mark.asyncio
    async def test_get_returns_last_patient_id(self, cache_manager):
        cache_manager.get.return_value = {"last_patient_id": "P7", "updated_at": "2024-03-01T00:00:00+00:00"}

        assert await RedisCheckpointStore(cache_manager).get("clinic-1") == "P7"
        cache_manager.get.assert_awaited_once_with(CacheKeyBuilder.scan_checkpoint_key("clinic-1"))

    @pytest.mark.asyncio
    async def test_missing_checkpoint(self, cache_manager):
        assert await RedisCheckpointStore(cache_manager).get("clinic-1") is None

    @pytest.mark.asyncio
    async def test_set_uses_checkpoint_ttl(self, cache_manager):
        await RedisCheckpointStore(cache_manager).set("clinic-1", "P9")

        key, value = cache_manager.set.await_args.args
        assert key == "dedup:scan:clinic-1"
        assert value["last_patient_id"] == "P9"
        assert cache_manager.set.await_args.kwargs["ttl_seconds"] == cache_manager.config.scan_checkpoint_ttl_seconds


class TestCacheManager:

    @pytest.mark.asyncio
    async def test_redis_errors_read_as_misses(self):
        manager = CacheManager(RedisConfig())
        manager._client = MagicMock()
        manager._client.get = AsyncMock(side_effect=RedisError("down"))
        manager._initialized = True

        assert await manager.get("dedup:scan:clinic-1") is None

    def test_client_requires_initialize(self):
        with pytest.raises(RuntimeError):
            CacheManager(RedisConfig()).client


class FakeMongoSession:

    def __init__(self):
        self.events = []

    @asynccontextmanager
    async def start_transaction(self):
        self.events.append("start")
        try:
            yield
        except Exception:
            self.events.append("abort")
            raise
        self.events.append("commit")


class TestTransactions:

    def _manager(self, session):
        db_manager = MagicMock()

        @asynccontextmanager
        async def open_session():
            yield session

        db_manager.session = open_session
        return MongoTransactionManager(db_manager)

    @pytest.mark.asyncio
    async def test_clean_exit_commits(self):
        session = FakeMongoSession()

        async with self._manager(session).transaction() as active:
            assert active is session

        assert session.events == ["start", "commit"]

    @pytest.mark.asyncio
    async def test_exception_aborts(self):
        session = FakeMongoSession()

        with pytest.raises(ValueError):
            async with self._manager(session).transaction():
                raise ValueError("step failed")

        assert session.events == ["start", "abort"]

    def test_disabled_transactions_fall_back_to_compensation(self, db_manager):
        db_manager.config.use_transactions = False

        assert isinstance(get_transaction_manager(db_manager), NoTransactionManager)
