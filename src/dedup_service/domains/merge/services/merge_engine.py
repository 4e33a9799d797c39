"""
Merge engine: consolidates two confirmed patient identities into one
"""

import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from dedup_service.core.errors import ConflictError, MergeFailure, NotFoundError, ValidationError
from dedup_service.core.ports import (
    CandidateStore,
    DependentRecordStore,
    LockProvider,
    NoTransactionManager,
    PatientDirectory,
    TransactionManager,
)
from dedup_service.domains.audit.services.audit_recorder import AuditRecorder
from dedup_service.domains.duplicates.models.duplicates import CandidateStatus, DuplicateCandidate
from dedup_service.domains.patient.models.patient import PatientRecord
from ..models.merge import CategoryCount, FieldChoice, MergeDecision, MergeOutcome

logger = logging.getLogger(__name__)

STEP_VALIDATE = "validate"
STEP_UPDATE_SURVIVOR = "update_survivor"
STEP_REASSIGN = "reassign_dependents"
STEP_MARK_ABSORBED = "mark_absorbed"
STEP_TRANSITION_CANDIDATE = "transition_candidate"
STEP_AUDIT = "audit"


def patient_lock_name(patient_id: str) -> str:
    return f"patient:{patient_id}"


def apply_decisions(
    survivor: Dict[str, Any],
    absorbed: Dict[str, Any],
    decisions: Sequence[MergeDecision]
) -> Dict[str, Any]:
    """
    Survivor attributes after applying per-field choices.

    Fields without a decision keep the survivor's value. A decision must name an
    attribute present on at least one side, and at most once.
    """
    merged = copy.deepcopy(survivor)
    seen = set()
    for decision in decisions:
        if decision.field in seen:
            raise ValidationError(f"Duplicate merge decision for field: {decision.field}", {"field": decision.field})
        seen.add(decision.field)

        if decision.field not in survivor and decision.field not in absorbed:
            raise ValidationError(f"Unknown patient attribute: {decision.field}", {"field": decision.field})

        if decision.choice is FieldChoice.ADOPT_DUPLICATE:
            if decision.field in absorbed:
                merged[decision.field] = copy.deepcopy(absorbed[decision.field])
            else:
                merged.pop(decision.field, None)
    return merged


class CompensationLog:
    """
    Undo actions of a merge in progress, run newest first on failure.

    Every action restores a snapshot, so running one whose step never wrote
    anything is harmless.
    """

    def __init__(self):
        self._actions: List[tuple] = []

    def register(self, label: str, action: Callable[[], Awaitable[Any]]):
        self._actions.append((label, action))

    async def run(self) -> List[str]:
        failed = []
        for label, action in reversed(self._actions):
            try:
                await action()
                logger.info(f"Compensated: {label}")
            except Exception as e:
                logger.error(f"Compensation failed for {label}: {e}")
                failed.append(label)
        return failed


class MergeEngine:
    """
    Executes a merge as one unit of work.

    Both patients are locked in sorted-id order for the whole merge. Steps run
    inside a database transaction when one is available; whether or not it is,
    each step first registers a restore-to-snapshot compensation, and a failure
    aborts the transaction and then runs the compensations in reverse.
    """

    def __init__(
        self,
        directory: PatientDirectory,
        candidates: CandidateStore,
        dependents: Sequence[DependentRecordStore],
        audit: AuditRecorder,
        locks: LockProvider,
        transactions: Optional[TransactionManager] = None
    ):
        self.directory = directory
        self.candidates = candidates
        self.dependents = list(dependents)
        self.audit = audit
        self.locks = locks
        self.transactions = transactions or NoTransactionManager()

    async def merge(
        self,
        candidate_id: str,
        survivor_id: str,
        absorbed_id: str,
        decisions: Optional[Sequence[MergeDecision]] = None,
        actor: str = "system"
    ) -> MergeOutcome:
        if survivor_id == absorbed_id:
            raise ValidationError("Survivor and absorbed patient must differ")

        candidate = await self._load_candidate(candidate_id, survivor_id, absorbed_id)
        if candidate.status is CandidateStatus.MERGED:
            return self._already_merged(candidate, survivor_id, absorbed_id)

        merge_id = str(uuid.uuid4())
        lock_names = [patient_lock_name(survivor_id), patient_lock_name(absorbed_id)]

        async with self.locks.hold(lock_names, owner=merge_id):
            # the candidate may have moved while we waited for the locks
            candidate = await self._load_candidate(candidate_id, survivor_id, absorbed_id)
            if candidate.status is CandidateStatus.MERGED:
                return self._already_merged(candidate, survivor_id, absorbed_id)

            logger.info(f"Merge {merge_id}: {absorbed_id} -> {survivor_id} (candidate {candidate_id})")
            return await self._execute(merge_id, candidate, survivor_id, absorbed_id, list(decisions or []), actor)

    async def _load_candidate(self, candidate_id: str, survivor_id: str, absorbed_id: str) -> DuplicateCandidate:
        candidate = await self.candidates.get(candidate_id)
        if candidate is None:
            raise NotFoundError(f"Duplicate candidate not found: {candidate_id}", {"candidate_id": candidate_id})
        if not (candidate.involves(survivor_id) and candidate.involves(absorbed_id)):
            raise ValidationError(
                "Survivor and absorbed patient must be the candidate's pair",
                {"candidate_id": candidate_id}
            )
        if candidate.status not in (CandidateStatus.CONFIRMED_DUPLICATE, CandidateStatus.MERGED):
            raise ConflictError(
                f"Candidate {candidate_id} is {candidate.status.value}; only a confirmed duplicate can be merged",
                {"candidate_id": candidate_id, "status": candidate.status.value}
            )
        return candidate

    async def _load_patient(self, patient_id: str) -> PatientRecord:
        record = await self.directory.get_patient(patient_id)
        if record is None:
            raise NotFoundError(f"Patient not found: {patient_id}", {"patient_id": patient_id})
        if record.is_merged:
            raise ConflictError(
                f"Patient {patient_id} was already merged into {record.merged_into_id}",
                {"patient_id": patient_id}
            )
        return record

    async def _execute(
        self,
        merge_id: str,
        candidate: DuplicateCandidate,
        survivor_id: str,
        absorbed_id: str,
        decisions: List[MergeDecision],
        actor: str
    ) -> MergeOutcome:
        survivor = await self._load_patient(survivor_id)
        absorbed = await self._load_patient(absorbed_id)
        if survivor.scope_id != absorbed.scope_id:
            raise ValidationError("Cannot merge patients from different scopes")

        merged_attributes = apply_decisions(survivor.attributes, absorbed.attributes, decisions)

        survivor_before = copy.deepcopy(survivor)
        absorbed_before = copy.deepcopy(absorbed)
        candidate_before = candidate.model_copy(deep=True)

        compensations = CompensationLog()
        migrated: List[CategoryCount] = []
        step = STEP_VALIDATE
        category = None
        now = datetime.now(timezone.utc)

        try:
            async with self.transactions.transaction() as session:
                step = STEP_UPDATE_SURVIVOR
                compensations.register("survivor attributes", lambda: self.directory.restore(survivor_before))
                await self.directory.update_attributes(survivor_id, merged_attributes, session=session)

                step = STEP_REASSIGN
                for store in self.dependents:
                    category = store.category
                    moved_ids = await store.record_ids(absorbed_id, session=session)
                    compensations.register(
                        f"{category} reassignment",
                        lambda store=store, moved_ids=moved_ids: store.reassign_records(moved_ids, absorbed_id)
                    )
                    count = await store.reassign_records(moved_ids, survivor_id, session=session)
                    migrated.append(CategoryCount(category=category, count=count))
                    logger.debug(f"Merge {merge_id}: moved {count} {category}")

                # rows are not locked; anything added for the absorbed patient meanwhile fails the merge
                for store in self.dependents:
                    category = store.category
                    stray_ids = await store.record_ids(absorbed_id, session=session)
                    if stray_ids:
                        raise ConflictError(
                            f"{len(stray_ids)} {category} records were added for {absorbed_id} during the merge",
                            {"patient_id": absorbed_id, "category": category}
                        )
                category = None

                step = STEP_MARK_ABSORBED
                compensations.register("absorbed patient", lambda: self.directory.restore(absorbed_before))
                await self.directory.mark_merged(absorbed_id, survivor_id, now, session=session)

                step = STEP_TRANSITION_CANDIDATE
                compensations.register("candidate status", lambda: self.candidates.restore(candidate_before))
                await self.candidates.transition(
                    candidate.id,
                    CandidateStatus.CONFIRMED_DUPLICATE,
                    CandidateStatus.MERGED,
                    {"merge_id": merge_id, "updated_at": now},
                    session=session
                )

                step = STEP_AUDIT
                outcome = MergeOutcome(
                    merge_id=merge_id,
                    candidate_id=candidate.id,
                    survivor_id=survivor_id,
                    absorbed_id=absorbed_id,
                    migrated=migrated,
                    success=True,
                    completed_at=now,
                )
                await self.audit.record_merge(
                    actor=actor,
                    scope_id=survivor.scope_id,
                    subject_ids=[survivor_id, absorbed_id, candidate.id],
                    before={
                        "survivor": survivor_before.to_dict(),
                        "absorbed": absorbed_before.to_dict(),
                        "candidate_status": candidate_before.status.value,
                    },
                    after={
                        "survivor_attributes": merged_attributes,
                        "absorbed_status": "merged",
                        "absorbed_merged_into_id": survivor_id,
                        "candidate_status": CandidateStatus.MERGED.value,
                    },
                    details={
                        "merge_id": merge_id,
                        "decisions": [d.model_dump(mode="json") for d in decisions],
                        "migrated": [m.model_dump() for m in migrated],
                    },
                    session=session
                )

        except Exception as e:
            location = f"{step}/{category}" if category else step
            logger.error(f"Merge {merge_id} failed at {location}: {e}; rolling back")

            leftovers = await compensations.run()
            outcome = MergeOutcome(
                merge_id=merge_id,
                candidate_id=candidate.id,
                survivor_id=survivor_id,
                absorbed_id=absorbed_id,
                migrated=[],
                success=False,
                failed_step=step,
                failed_category=category,
                error=str(e),
                completed_at=datetime.now(timezone.utc),
            )
            await self._audit_failure(outcome, survivor.scope_id, actor, leftovers)

            raise MergeFailure(
                f"Merge failed at step {location}: {e}",
                step=step,
                category=category,
                outcome=outcome,
                details={"merge_id": merge_id, "uncompensated": leftovers}
            ) from e

        logger.info(f"Merge {merge_id} committed: {outcome.total_migrated} dependent records moved")
        return outcome

    async def _audit_failure(self, outcome: MergeOutcome, scope_id: str, actor: str, leftovers: List[str]):
        try:
            await self.audit.record_merge(
                actor=actor,
                scope_id=scope_id,
                subject_ids=[outcome.survivor_id, outcome.absorbed_id, outcome.candidate_id],
                before=None,
                after=None,
                details={
                    "merge_id": outcome.merge_id,
                    "success": False,
                    "failed_step": outcome.failed_step,
                    "failed_category": outcome.failed_category,
                    "error": outcome.error,
                    "uncompensated": leftovers,
                }
            )
        except Exception as e:
            logger.error(f"Could not audit failed merge {outcome.merge_id}: {e}")

    @staticmethod
    def _already_merged(candidate: DuplicateCandidate, survivor_id: str, absorbed_id: str) -> MergeOutcome:
        logger.info(f"Candidate {candidate.id} already merged (merge {candidate.merge_id})")
        return MergeOutcome(
            merge_id=candidate.merge_id or "",
            candidate_id=candidate.id,
            survivor_id=survivor_id,
            absorbed_id=absorbed_id,
            success=True,
            already_merged=True,
            completed_at=candidate.updated_at,
        )
