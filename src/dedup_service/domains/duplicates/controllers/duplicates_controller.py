"""
Duplicates controller - HTTP endpoint handlers for detection, review and merge
"""

from typing import Any, Dict, List, Optional, Union
from datetime import datetime
from fastapi import APIRouter, HTTPException, Depends, Query
import logging

from dedup_service.core.dependencies import get_duplicate_service
from dedup_service.core.errors import DedupError
from dedup_service.domains.audit.models.audit import AuditEntry
from dedup_service.domains.merge.models.merge import MergeOutcome
from ..models.duplicates import (
    CandidateFilter,
    CandidateStatus,
    CheckRequest,
    CheckResult,
    DuplicateCandidate,
    PatientIndexRequest,
    ResolveRequest,
    ScanReport,
    ScanRequest,
)
from ..services.duplicate_service import DuplicateService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/duplicates", tags=["duplicates"])


def _http_error(error: DedupError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.to_dict())


@router.post("/check", response_model=CheckResult)
async def check_duplicates(
    request: CheckRequest,
    service: DuplicateService = Depends(get_duplicate_service)
) -> CheckResult:
    """
    Check a patient for duplicates during registration

    Never fails the registration because of a detection problem: the response
    then carries ``available: false``. Malformed patient data is a 422.
    """
    try:
        return await service.check(request.patient_data, request.scope_id, request.actor)

    except DedupError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error in duplicate check: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/candidates", response_model=List[DuplicateCandidate])
async def list_candidates(
    scope_id: str = Query(..., description="Clinic / tenant scope"),
    status: Optional[CandidateStatus] = Query(None),
    created_from: Optional[datetime] = Query(None),
    created_to: Optional[datetime] = Query(None),
    high_confidence: Optional[bool] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: DuplicateService = Depends(get_duplicate_service)
) -> List[DuplicateCandidate]:
    """Review queue, newest first"""
    candidate_filter = CandidateFilter(
        status=status,
        created_from=created_from,
        created_to=created_to,
        high_confidence=high_confidence,
        limit=limit,
        offset=offset,
    )
    try:
        return await service.list_candidates(scope_id, candidate_filter)

    except DedupError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error listing candidates: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/candidates/{candidate_id}", response_model=DuplicateCandidate)
async def get_candidate(
    candidate_id: str,
    service: DuplicateService = Depends(get_duplicate_service)
) -> DuplicateCandidate:
    """Get one candidate with its field-level breakdown"""
    try:
        return await service.get_candidate(candidate_id)

    except DedupError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error fetching candidate {candidate_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/candidates/{candidate_id}/resolve", response_model=Union[MergeOutcome, DuplicateCandidate])
async def resolve_candidate(
    candidate_id: str,
    request: ResolveRequest,
    service: DuplicateService = Depends(get_duplicate_service)
) -> Union[MergeOutcome, DuplicateCandidate]:
    """
    Resolve a candidate

    With ``merge_decisions`` a confirmed duplicate is merged in the same call
    and the merge outcome is returned. A failed merge answers 500 with the
    failing step and category; the candidate stays confirmed and can be retried.
    """
    try:
        return await service.resolve(
            candidate_id,
            request.decision,
            request.reviewer_id,
            request.merge_decisions,
            request.survivor_id
        )

    except DedupError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error resolving candidate {candidate_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/scan", response_model=ScanReport)
async def scan_scope(
    request: ScanRequest,
    service: DuplicateService = Depends(get_duplicate_service)
) -> ScanReport:
    """
    Scan a whole scope for duplicates

    Resumes from the last checkpoint unless ``restart`` is set.
    """
    try:
        return await service.scan(request.scope_id, request.actor, request.batch_size, request.restart)

    except DedupError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error scanning scope {request.scope_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.put("/patients/{patient_id}")
async def index_patient(
    patient_id: str,
    request: PatientIndexRequest,
    service: DuplicateService = Depends(get_duplicate_service)
) -> Dict[str, Any]:
    """Store or refresh a patient's demographics and match keys"""
    try:
        record = await service.index_patient(patient_id, request.scope_id, request.attributes)
        return {"patient_id": record.patient_id, "scope_id": record.scope_id, "status": record.status}

    except DedupError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error indexing patient {patient_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/audit/{subject_id}", response_model=List[AuditEntry])
async def audit_history(
    subject_id: str,
    limit: int = Query(100, ge=1, le=1000),
    service: DuplicateService = Depends(get_duplicate_service)
) -> List[AuditEntry]:
    """Audit trail of a patient or candidate"""
    try:
        return await service.audit_history(subject_id, limit)

    except Exception as e:
        logger.error(f"Error fetching audit history for {subject_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
