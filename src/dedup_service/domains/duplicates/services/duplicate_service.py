"""
DuplicateService - the engine's public operations
"""

import uuid
from typing import Any, Dict, List, Optional, Sequence, Union

from dedup_service.core.errors import ConflictError
from dedup_service.core.ports import LockProvider
from dedup_service.domains.audit.models.audit import AuditEntry
from dedup_service.domains.audit.services.audit_recorder import AuditRecorder
from dedup_service.domains.merge.models.merge import MergeDecision, MergeOutcome
from dedup_service.domains.merge.services.merge_engine import patient_lock_name
from dedup_service.domains.patient.models.patient import PatientRecord
from ..models.duplicates import (
    CandidateFilter,
    CheckResult,
    DuplicateCandidate,
    PatientFingerprint,
    ResolutionDecision,
    ScanReport,
)
from .detection_service import DetectionService
from .resolution_service import ResolutionService


class DuplicateService:
    """Facade over detection and resolution; scope and actor are always explicit"""

    def __init__(
        self,
        detection: DetectionService,
        resolution: ResolutionService,
        audit: AuditRecorder,
        locks: LockProvider
    ):
        self.detection = detection
        self.resolution = resolution
        self.audit = audit
        self.locks = locks

    async def check(self, patient_data: Dict[str, Any], scope_id: str, actor: str = "system") -> CheckResult:
        return await self.detection.check(patient_data, scope_id, actor)

    async def scan(
        self,
        scope_id: str,
        actor: str = "system",
        batch_size: Optional[int] = None,
        restart: bool = False
    ) -> ScanReport:
        return await self.detection.scan(scope_id, actor, batch_size, restart)

    async def list_candidates(
        self,
        scope_id: str,
        candidate_filter: Optional[CandidateFilter] = None
    ) -> List[DuplicateCandidate]:
        return await self.resolution.list_candidates(scope_id, candidate_filter)

    async def get_candidate(self, candidate_id: str) -> DuplicateCandidate:
        return await self.resolution.get_candidate(candidate_id)

    async def resolve(
        self,
        candidate_id: str,
        decision: Union[ResolutionDecision, str],
        reviewer_id: Optional[str] = None,
        merge_decisions: Optional[Sequence[MergeDecision]] = None,
        survivor_id: Optional[str] = None
    ) -> Union[DuplicateCandidate, MergeOutcome]:
        return await self.resolution.resolve(candidate_id, decision, reviewer_id, merge_decisions, survivor_id)

    async def audit_history(self, subject_id: str, limit: int = 100) -> List[AuditEntry]:
        """Audit entries naming a patient or candidate, newest first"""
        return await self.audit.history(subject_id, limit)

    async def index_patient(self, patient_id: str, scope_id: str, attributes: Dict[str, Any]) -> PatientRecord:
        """
        Store or refresh a patient as the directory sees it.

        Called by the registration side whenever demographics change, so match
        keys stay current. Rejects attributes that cannot be fingerprinted.
        Takes the same patient lock as a merge, so an edit never interleaves
        with one; a busy lock raises ConflictError.
        """
        data = dict(attributes)
        data["patient_id"] = patient_id
        PatientFingerprint.from_patient_data(data, scope_id)

        directory = self.detection.directory
        owner = f"index-{uuid.uuid4()}"
        async with self.locks.hold([patient_lock_name(patient_id)], owner=owner):
            current = await directory.get_patient(patient_id)
            if current is not None and current.is_merged:
                raise ConflictError(
                    f"Patient {patient_id} was merged into {current.merged_into_id}",
                    {"patient_id": patient_id, "merged_into_id": current.merged_into_id}
                )

            record = PatientRecord(patient_id=patient_id, scope_id=scope_id, attributes=dict(attributes))
            await directory.index_patient(record)
        return record
