"""
Resolution workflow for duplicate candidates
"""

from datetime import datetime, timezone
from typing import List, Optional, Sequence, Union
import logging

from dedup_service.core.errors import ConflictError, NotFoundError, ValidationError
from dedup_service.core.ports import CandidateStore
from dedup_service.domains.audit.services.audit_recorder import AuditRecorder
from dedup_service.domains.merge.models.merge import MergeDecision, MergeOutcome
from dedup_service.domains.merge.services.merge_engine import MergeEngine
from ..models.duplicates import (
    CandidateFilter,
    CandidateStatus,
    DuplicateCandidate,
    ResolutionDecision,
)

logger = logging.getLogger(__name__)

# Allowed status moves; confirmed_different and merged are terminal
TRANSITIONS = {
    CandidateStatus.PENDING: frozenset({CandidateStatus.CONFIRMED_DUPLICATE, CandidateStatus.CONFIRMED_DIFFERENT}),
    CandidateStatus.CONFIRMED_DUPLICATE: frozenset({CandidateStatus.MERGED}),
    CandidateStatus.CONFIRMED_DIFFERENT: frozenset(),
    CandidateStatus.MERGED: frozenset(),
}

DECISION_STATUS = {
    ResolutionDecision.CONFIRM_DUPLICATE: CandidateStatus.CONFIRMED_DUPLICATE,
    ResolutionDecision.CONFIRM_DIFFERENT: CandidateStatus.CONFIRMED_DIFFERENT,
}


def ensure_transition(current: CandidateStatus, target: CandidateStatus):
    if target not in TRANSITIONS[current]:
        raise ConflictError(
            f"Cannot move candidate from {current.value} to {target.value}",
            {"from": current.value, "to": target.value}
        )


class ResolutionService:
    """Applies reviewer decisions and hands confirmed pairs to the merge engine"""

    def __init__(self, candidates: CandidateStore, audit: AuditRecorder, merge_engine: MergeEngine):
        self.candidates = candidates
        self.audit = audit
        self.merge_engine = merge_engine

    async def get_candidate(self, candidate_id: str) -> DuplicateCandidate:
        candidate = await self.candidates.get(candidate_id)
        if candidate is None:
            raise NotFoundError(f"Duplicate candidate not found: {candidate_id}", {"candidate_id": candidate_id})
        return candidate

    async def list_candidates(
        self,
        scope_id: str,
        candidate_filter: Optional[CandidateFilter] = None
    ) -> List[DuplicateCandidate]:
        return await self.candidates.list(scope_id, candidate_filter or CandidateFilter())

    async def resolve(
        self,
        candidate_id: str,
        decision: Union[ResolutionDecision, str],
        reviewer_id: Optional[str] = None,
        merge_decisions: Optional[Sequence[MergeDecision]] = None,
        survivor_id: Optional[str] = None
    ) -> Union[DuplicateCandidate, MergeOutcome]:
        """
        Record a reviewer decision.

        ``confirm_duplicate`` with merge decisions also runs the merge and
        returns its MergeOutcome. Sending merge decisions for a pair that is
        already confirmed retries a merge that failed earlier.
        """
        try:
            decision = ResolutionDecision(decision)
        except ValueError:
            raise ValidationError(f"Unknown resolution decision: {decision}")

        reviewer_id = (reviewer_id or "").strip() or None
        if decision is ResolutionDecision.CONFIRM_DUPLICATE and reviewer_id is None:
            raise ValidationError("A reviewer is required to confirm a duplicate", {"field": "reviewer_id"})

        candidate = await self.get_candidate(candidate_id)
        target = DECISION_STATUS[decision]

        if (candidate.status is CandidateStatus.CONFIRMED_DUPLICATE
                and target is CandidateStatus.CONFIRMED_DUPLICATE
                and merge_decisions is not None):
            logger.info(f"Retrying merge for confirmed candidate {candidate_id}")
            return await self._merge(candidate, reviewer_id, merge_decisions, survivor_id)

        ensure_transition(candidate.status, target)
        if merge_decisions is not None and target is not CandidateStatus.CONFIRMED_DUPLICATE:
            raise ValidationError("Merge decisions only apply to confirm_duplicate")

        now = datetime.now(timezone.utc)
        updated = await self.candidates.transition(
            candidate.id,
            candidate.status,
            target,
            {"reviewer_id": reviewer_id, "reviewed_at": now, "updated_at": now}
        )
        await self.audit.record_resolution(
            actor=reviewer_id or "system",
            scope_id=candidate.scope_id,
            candidate_id=candidate.id,
            before={"status": candidate.status.value, "reviewer_id": candidate.reviewer_id},
            after={"status": updated.status.value, "reviewer_id": reviewer_id},
            details={
                "decision": decision.value,
                "pair_key": candidate.pair_key,
                "score": candidate.score,
            }
        )
        logger.info(f"Candidate {candidate_id} resolved as {target.value} by {reviewer_id or 'system'}")

        if merge_decisions is not None:
            return await self._merge(updated, reviewer_id, merge_decisions, survivor_id)
        return updated

    async def _merge(
        self,
        candidate: DuplicateCandidate,
        reviewer_id: str,
        merge_decisions: Sequence[MergeDecision],
        survivor_id: Optional[str]
    ) -> MergeOutcome:
        survivor = survivor_id or candidate.primary_patient_id
        if not candidate.involves(survivor):
            raise ValidationError(
                f"Survivor {survivor} is not part of candidate {candidate.id}",
                {"survivor_id": survivor}
            )
        return await self.merge_engine.merge(
            candidate.id,
            survivor,
            candidate.other_patient(survivor),
            merge_decisions,
            actor=reviewer_id
        )
