"""
Storage ports used by the engine

The engine talks to storage only through these interfaces. MongoDB and Redis
implementations live in the domain repositories and core.cache; tests supply
in-memory ones.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional
import logging

from dedup_service.domains.audit.models.audit import AuditEntry
from dedup_service.domains.duplicates.models.duplicates import (
    CandidateFilter,
    CandidateStatus,
    DuplicateCandidate,
    PatientFingerprint,
)
from dedup_service.domains.patient.models.patient import PatientRecord

logger = logging.getLogger(__name__)


class PatientDirectory(ABC):
    """Read access to patients plus the few writes a merge needs"""

    @abstractmethod
    async def get_patient(self, patient_id: str, session: Any = None) -> Optional[PatientRecord]:
        pass

    @abstractmethod
    async def find_by_match_keys(
        self,
        scope_id: str,
        match_keys: Dict[str, Any],
        dob_variants: List[str],
        exclude_id: Optional[str],
        limit: int
    ) -> List[PatientFingerprint]:
        """
        Active patients in scope sharing at least one match key with the target

        Implementations must answer from indexes and return at most ``limit``
        rows, best ranked first. The rank weighs a shared phone suffix above a
        shared DOB, and both above phonetic and trigram overlap, so phone and
        DOB hits survive the cap.
        """
        pass

    @abstractmethod
    async def list_scope(self, scope_id: str, after_id: Optional[str], limit: int) -> List[PatientFingerprint]:
        """Active patients in scope ordered by patient_id, starting after ``after_id``"""
        pass

    @abstractmethod
    async def index_patient(self, record: PatientRecord, session: Any = None) -> None:
        """
        Insert a patient, or refresh an active one and its match keys.

        Never changes a patient's status; raises ConflictError for a merged patient.
        """
        pass

    @abstractmethod
    async def update_attributes(self, patient_id: str, attributes: Dict[str, Any], session: Any = None) -> None:
        pass

    @abstractmethod
    async def mark_merged(self, absorbed_id: str, survivor_id: str, merged_at: datetime, session: Any = None) -> None:
        pass

    @abstractmethod
    async def restore(self, record: PatientRecord, session: Any = None) -> None:
        """Put a patient back exactly as the snapshot describes"""
        pass

    async def get_fingerprint(self, patient_id: str) -> Optional[PatientFingerprint]:
        record = await self.get_patient(patient_id)
        if record is None:
            return None
        return fingerprint_from_record(record)


def fingerprint_from_record(record: PatientRecord) -> PatientFingerprint:
    data = dict(record.attributes)
    data["patient_id"] = record.patient_id
    return PatientFingerprint.from_patient_data(data, record.scope_id)


class CandidateStore(ABC):
    """Persistence for DuplicateCandidate rows, one row per unordered pair"""

    @abstractmethod
    async def get(self, candidate_id: str) -> Optional[DuplicateCandidate]:
        pass

    @abstractmethod
    async def find_by_pairs(self, pair_keys: Iterable[str]) -> Dict[str, DuplicateCandidate]:
        pass

    @abstractmethod
    async def upsert_pending(self, candidate: DuplicateCandidate) -> DuplicateCandidate:
        """
        Create the pair's row, or refresh the score of its pending row.

        Serialized per pair: concurrent callers end up updating one row. A row
        that is no longer pending is returned untouched.
        """
        pass

    @abstractmethod
    async def list(self, scope_id: str, candidate_filter: CandidateFilter) -> List[DuplicateCandidate]:
        pass

    @abstractmethod
    async def transition(
        self,
        candidate_id: str,
        from_status: CandidateStatus,
        to_status: CandidateStatus,
        changes: Optional[Dict[str, Any]] = None,
        session: Any = None
    ) -> DuplicateCandidate:
        """
        Compare-and-set the status; raises ConflictError when the stored status
        is not ``from_status`` and NotFoundError when the row is missing.
        """
        pass

    @abstractmethod
    async def restore(self, candidate: DuplicateCandidate, session: Any = None) -> None:
        """Write a snapshot back over the stored row"""
        pass


class AuditStore(ABC):
    """Append-only audit log; no update or delete"""

    @abstractmethod
    async def append(self, entry: AuditEntry, session: Any = None) -> None:
        pass

    @abstractmethod
    async def find(
        self,
        subject_id: Optional[str] = None,
        operation: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditEntry]:
        pass


class DependentRecordStore(ABC):
    """A category of records (appointments, bills, ...) that points at a patient"""

    category: str = "records"

    @abstractmethod
    async def record_ids(self, patient_id: str, session: Any = None) -> List[Any]:
        pass

    @abstractmethod
    async def reassign_records(self, record_ids: List[Any], new_patient_id: str, session: Any = None) -> int:
        """Re-point exactly these records; returns how many moved"""
        pass


class LockProvider(ABC):
    """Exclusive locks keyed by string"""

    @abstractmethod
    async def acquire(self, key: str, owner: str) -> Any:
        """Return a handle, or raise ConflictError when the key stays busy"""
        pass

    @abstractmethod
    async def release(self, handle: Any) -> None:
        pass

    @asynccontextmanager
    async def hold(self, keys: Iterable[str], owner: str) -> AsyncIterator[List[str]]:
        """
        Hold every key for the duration of the block.

        Keys are acquired in sorted order so two holders sharing a key can never
        deadlock, and released in reverse order.
        """
        ordered = sorted(set(keys))
        handles = []
        try:
            for key in ordered:
                handles.append(await self.acquire(key, owner))
            yield ordered
        finally:
            for handle in reversed(handles):
                try:
                    await self.release(handle)
                except Exception as e:
                    # an expired lock is released by its TTL anyway
                    logger.warning(f"Failed to release lock for {owner}: {e}")


class CheckpointStore(ABC):
    """Resumption points for long-running scans"""

    @abstractmethod
    async def get(self, name: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, name: str, value: str) -> None:
        pass

    @abstractmethod
    async def clear(self, name: str) -> None:
        pass


class TransactionManager(ABC):
    """Unit-of-work boundary; yields a session handed to every store call"""

    @abstractmethod
    def transaction(self):
        pass


class NoTransactionManager(TransactionManager):
    """For stores without multi-document transactions; compensation does the rollback"""

    @asynccontextmanager
    async def transaction(self):
        yield None
