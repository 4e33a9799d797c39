"""
Dependency injection for the application
"""

from typing import Optional, Sequence
from fastapi import Request

from .config import ApplicationConfig, get_config
from .ports import (
    AuditStore,
    CandidateStore,
    CheckpointStore,
    DependentRecordStore,
    LockProvider,
    PatientDirectory,
    TransactionManager,
)
from dedup_service.domains.audit.services.audit_recorder import AuditRecorder
from dedup_service.domains.duplicates.services.detection_service import DetectionService
from dedup_service.domains.duplicates.services.duplicate_service import DuplicateService
from dedup_service.domains.duplicates.services.resolution_service import ResolutionService
from dedup_service.domains.merge.services.merge_engine import MergeEngine


def build_duplicate_service(
    directory: PatientDirectory,
    candidates: CandidateStore,
    audit_store: AuditStore,
    dependents: Sequence[DependentRecordStore],
    locks: LockProvider,
    checkpoints: Optional[CheckpointStore] = None,
    transactions: Optional[TransactionManager] = None,
    config: Optional[ApplicationConfig] = None
) -> DuplicateService:
    """Wire the engine from its ports"""
    config = config or get_config()
    audit = AuditRecorder(audit_store)

    detection = DetectionService(
        directory,
        candidates,
        audit,
        checkpoints=checkpoints,
        matching_config=config.matching,
        performance_config=config.performance,
    )
    merge_engine = MergeEngine(
        directory,
        candidates,
        dependents,
        audit,
        locks,
        transactions=transactions,
    )
    resolution = ResolutionService(candidates, audit, merge_engine)
    return DuplicateService(detection, resolution, audit, locks)


async def get_service_context(request: Request):
    """Get the service context created at start-up"""
    return request.app.state.dedup_service


async def get_duplicate_service(request: Request) -> DuplicateService:
    """Get the duplicate engine facade"""
    return request.app.state.dedup_service.duplicate_service
