"""
Duplicate detection: interactive checks during registration and resumable
population scans
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from dedup_service.core.config import MatchingConfig, PerformanceConfig
from dedup_service.core.ports import CandidateStore, CheckpointStore, PatientDirectory
from dedup_service.domains.audit.services.audit_recorder import AuditRecorder
from ..models.duplicates import (
    CandidateStatus,
    CheckResult,
    DuplicateCandidate,
    PatientFingerprint,
    ScanReport,
    make_pair_key,
)
from ..scoring.composite import CompositeScorer, PairScore
from .retriever import CandidateRetriever

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "duplicate check unavailable"

Match = Tuple[PatientFingerprint, PairScore]


class DetectionService:
    """
    Finds and records potential duplicates.

    Retrieval and scoring only read. Candidate rows are written in a final
    persistence phase that is shielded from the request timeout, so a check
    either records its whole candidate set or nothing.
    """

    def __init__(
        self,
        directory: PatientDirectory,
        candidates: CandidateStore,
        audit: AuditRecorder,
        checkpoints: Optional[CheckpointStore] = None,
        matching_config: Optional[MatchingConfig] = None,
        performance_config: Optional[PerformanceConfig] = None
    ):
        self.directory = directory
        self.candidates = candidates
        self.audit = audit
        self.checkpoints = checkpoints
        self.matching_config = matching_config or MatchingConfig()
        self.performance_config = performance_config or PerformanceConfig()
        self.scorer = CompositeScorer(self.matching_config)
        self.retriever = CandidateRetriever(directory, self.matching_config)

    async def find_matches(self, target: PatientFingerprint) -> List[Match]:
        """Score every retrieved patient; reportable pairs only, best first"""
        matches = []
        for other in await self.retriever.retrieve(target):
            pair_score = self.scorer.score(target, other)
            if pair_score.reportable:
                matches.append((other, pair_score))
        matches.sort(key=lambda item: (-item[1].score, item[0].patient_id or ""))
        return matches

    async def check(
        self,
        patient_data: Dict[str, Any],
        scope_id: str,
        actor: str = "system"
    ) -> CheckResult:
        """
        Check a patient for duplicates.

        Malformed input raises ValidationError. Anything that goes wrong after
        that is logged and reported as an unavailable check, never raised, so
        registration can carry on.
        """
        target = PatientFingerprint.from_patient_data(patient_data, scope_id)
        timeout = self.performance_config.detection_timeout_seconds

        try:
            matches = await asyncio.wait_for(self.find_matches(target), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Duplicate check timed out after {timeout}s in scope {scope_id}")
            return self._unavailable()
        except Exception as e:
            logger.error(f"Duplicate check failed in scope {scope_id}: {e}", exc_info=True)
            return self._unavailable()

        try:
            duplicates = await asyncio.shield(self._persist_check(target, matches, actor))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Failed to record duplicate candidates in scope {scope_id}: {e}", exc_info=True)
            return self._unavailable()

        return CheckResult(has_duplicates=bool(duplicates), duplicates=duplicates)

    async def _persist_check(
        self,
        target: PatientFingerprint,
        matches: List[Match],
        actor: str
    ) -> List[DuplicateCandidate]:
        if target.patient_id is None:
            # Not registered yet: nothing to pair with, report only
            duplicates = [self._build_candidate(target, other, pair_score) for other, pair_score in matches]
        else:
            duplicates = await self._write_candidates(target, matches)

        await self.audit.record_detection(
            actor=actor,
            scope_id=target.scope_id,
            subject_id=target.patient_id,
            candidate_ids=[c.id for c in duplicates if c.id and c.pair_key],
            details={
                "mode": "check",
                "matches": len(matches),
                "high_confidence": sum(1 for c in duplicates if c.high_confidence),
            }
        )
        return duplicates

    async def _write_candidates(
        self,
        target: PatientFingerprint,
        matches: List[Match]
    ) -> List[DuplicateCandidate]:
        """
        Upsert one pending row per pair.

        Pairs a reviewer declared different, and pairs already merged, are left
        alone. A pair confirmed as duplicate but not merged yet is reported as is.
        """
        by_pair = {
            make_pair_key(other.patient_id, target.patient_id): (other, pair_score)
            for other, pair_score in matches
        }
        existing = await self.candidates.find_by_pairs(list(by_pair))

        results = []
        for pair_key, (other, pair_score) in by_pair.items():
            current = existing.get(pair_key)
            if current is not None and current.status is not CandidateStatus.PENDING:
                if current.status is CandidateStatus.CONFIRMED_DUPLICATE:
                    results.append(current)
                continue

            stored = await self.candidates.upsert_pending(self._build_candidate(target, other, pair_score))
            # a reviewer may have adjudicated the pair since find_by_pairs()
            if stored.status in (CandidateStatus.PENDING, CandidateStatus.CONFIRMED_DUPLICATE):
                results.append(stored)
        return results

    def _build_candidate(
        self,
        target: PatientFingerprint,
        other: PatientFingerprint,
        pair_score: PairScore
    ) -> DuplicateCandidate:
        now = datetime.now(timezone.utc)
        pair_key = make_pair_key(other.patient_id, target.patient_id) if target.patient_id else None
        return DuplicateCandidate(
            id=str(uuid.uuid4()) if pair_key else None,
            scope_id=target.scope_id,
            pair_key=pair_key,
            primary_patient_id=other.patient_id,
            duplicate_patient_id=target.patient_id,
            score=pair_score.score,
            high_confidence=pair_score.high_confidence,
            field_scores=pair_score.field_scores,
            matched_fields=pair_score.matched_fields,
            status=CandidateStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _unavailable() -> CheckResult:
        return CheckResult(has_duplicates=False, duplicates=[], available=False, message=UNAVAILABLE_MESSAGE)

    async def scan(
        self,
        scope_id: str,
        actor: str = "system",
        batch_size: Optional[int] = None,
        restart: bool = False
    ) -> ScanReport:
        """
        Run detection over every active patient of a scope.

        Patients are visited in id order. The last processed id is checkpointed
        after each batch, so an interrupted scan resumes where it stopped. No
        locks are taken; candidates go through the same per-pair upsert as
        interactive checks.
        """
        size = batch_size or self.performance_config.scan_batch_size

        resumed_from = None
        if self.checkpoints is not None:
            if restart:
                await self.checkpoints.clear(scope_id)
            else:
                resumed_from = await self.checkpoints.get(scope_id)

        report = ScanReport(scope_id=scope_id, resumed_from=resumed_from, last_patient_id=resumed_from)
        seen_pairs: Set[str] = set()
        after = resumed_from

        logger.info(f"Starting duplicate scan of scope {scope_id} (resume after: {resumed_from})")

        while True:
            batch = await self.directory.list_scope(scope_id, after, size)
            if not batch:
                break

            for target in batch:
                try:
                    matches = [
                        (other, pair_score) for other, pair_score in await self.find_matches(target)
                        if make_pair_key(other.patient_id, target.patient_id) not in seen_pairs
                    ]
                    stored = await self._write_candidates(target, matches)
                    seen_pairs.update(c.pair_key for c in stored)
                    report.candidates_found += len(stored)
                except Exception as e:
                    report.failed += 1
                    logger.error(f"Scan failed for patient {target.patient_id}: {e}")
                report.processed += 1

            after = batch[-1].patient_id
            report.last_patient_id = after
            if self.checkpoints is not None:
                await self.checkpoints.set(scope_id, after)

            if len(batch) < size:
                break

        report.completed = True
        if self.checkpoints is not None:
            await self.checkpoints.clear(scope_id)

        await self.audit.record_detection(
            actor=actor,
            scope_id=scope_id,
            subject_id=None,
            candidate_ids=[],
            details={
                "mode": "scan",
                "processed": report.processed,
                "candidates_found": report.candidates_found,
                "failed": report.failed,
                "resumed_from": resumed_from,
            }
        )
        logger.info(
            f"Scan of scope {scope_id} complete: {report.processed} patients, "
            f"{report.candidates_found} candidates, {report.failed} failures"
        )
        return report
