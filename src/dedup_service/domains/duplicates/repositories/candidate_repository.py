"""
Candidate repository - duplicate_candidates persistence
"""

from typing import Optional, List, Dict, Any, Iterable
import logging

from pymongo.errors import DuplicateKeyError

from dedup_service.core.database import BaseRepository, DatabaseManager, utcnow
from dedup_service.core.errors import ConflictError, NotFoundError
from dedup_service.core.ports import CandidateStore
from ..models.duplicates import CandidateFilter, CandidateStatus, DuplicateCandidate

logger = logging.getLogger(__name__)

REFRESHED_FIELDS = ("score", "high_confidence", "field_scores", "matched_fields")


class CandidateRepository(BaseRepository, CandidateStore):
    """
    One document per unordered pair, keyed by a unique ``pair_key`` index.

    The candidate id is the document ``_id``.
    """

    def __init__(self, db_manager: DatabaseManager):
        super().__init__(db_manager, "duplicate_candidates")

    @staticmethod
    def _to_doc(candidate: DuplicateCandidate) -> Dict[str, Any]:
        doc = candidate.model_dump(exclude={"id"})
        doc["_id"] = candidate.id
        doc["status"] = candidate.status.value
        return doc

    @staticmethod
    def _from_doc(doc: Dict[str, Any]) -> DuplicateCandidate:
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return DuplicateCandidate(**data)

    async def get(self, candidate_id: str) -> Optional[DuplicateCandidate]:
        doc = await self.find_one({"_id": candidate_id})
        return self._from_doc(doc) if doc else None

    async def find_by_pairs(self, pair_keys: Iterable[str]) -> Dict[str, DuplicateCandidate]:
        keys = list(pair_keys)
        if not keys:
            return {}
        docs = await self.find_many({"pair_key": {"$in": keys}})
        return {doc["pair_key"]: self._from_doc(doc) for doc in docs}

    async def _refresh_pending(self, candidate: DuplicateCandidate) -> Optional[DuplicateCandidate]:
        doc = await self.find_one_and_update(
            {"pair_key": candidate.pair_key, "status": CandidateStatus.PENDING.value},
            {
                "$set": {
                    "score": candidate.score,
                    "high_confidence": candidate.high_confidence,
                    "field_scores": [fs.model_dump() for fs in candidate.field_scores],
                    "matched_fields": candidate.matched_fields,
                    "updated_at": utcnow(),
                },
                "$inc": {"detection_count": 1},
            }
        )
        return self._from_doc(doc) if doc else None

    async def upsert_pending(self, candidate: DuplicateCandidate) -> DuplicateCandidate:
        refreshed = await self._refresh_pending(candidate)
        if refreshed is not None:
            return refreshed

        try:
            await self.collection.insert_one(self._to_doc(candidate))
            return candidate
        except DuplicateKeyError:
            # a concurrent detection inserted the pair first; update its row instead
            logger.debug(f"Pair {candidate.pair_key} inserted concurrently, updating")

        refreshed = await self._refresh_pending(candidate)
        if refreshed is not None:
            return refreshed

        doc = await self.find_one({"pair_key": candidate.pair_key})
        if doc is None:
            raise ConflictError(f"Candidate for pair {candidate.pair_key} vanished during upsert")
        return self._from_doc(doc)

    async def list(self, scope_id: str, candidate_filter: CandidateFilter) -> List[DuplicateCandidate]:
        query: Dict[str, Any] = {"scope_id": scope_id}
        if candidate_filter.status is not None:
            query["status"] = candidate_filter.status.value
        if candidate_filter.high_confidence is not None:
            query["high_confidence"] = candidate_filter.high_confidence

        created: Dict[str, Any] = {}
        if candidate_filter.created_from is not None:
            created["$gte"] = candidate_filter.created_from
        if candidate_filter.created_to is not None:
            created["$lte"] = candidate_filter.created_to
        if created:
            query["created_at"] = created

        docs = await self.find_many(
            query,
            sort=[("created_at", -1), ("_id", 1)],
            skip=candidate_filter.offset,
            limit=candidate_filter.limit
        )
        return [self._from_doc(doc) for doc in docs]

    async def transition(
        self,
        candidate_id: str,
        from_status: CandidateStatus,
        to_status: CandidateStatus,
        changes: Optional[Dict[str, Any]] = None,
        session: Any = None
    ) -> DuplicateCandidate:
        update = {"$set": dict(changes or {})}
        update["$set"]["status"] = to_status.value

        doc = await self.find_one_and_update(
            {"_id": candidate_id, "status": from_status.value},
            update,
            session=session
        )
        if doc is not None:
            return self._from_doc(doc)

        current = await self.find_one({"_id": candidate_id}, session=session)
        if current is None:
            raise NotFoundError(f"Duplicate candidate not found: {candidate_id}", {"candidate_id": candidate_id})
        raise ConflictError(
            f"Candidate {candidate_id} is {current['status']}, expected {from_status.value}",
            {"candidate_id": candidate_id, "status": current["status"]}
        )

    async def restore(self, candidate: DuplicateCandidate, session: Any = None) -> None:
        await self.replace_one({"_id": candidate.id}, self._to_doc(candidate), session=session)
