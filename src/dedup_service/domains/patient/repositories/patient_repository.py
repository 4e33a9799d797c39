"""
Patient repository - the MongoDB Patient Directory
"""

from typing import Optional, List, Dict, Any
from datetime import datetime
import logging

from pymongo.errors import DuplicateKeyError

from dedup_service.core.config import MatchingConfig
from dedup_service.core.database import BaseRepository, DatabaseManager
from dedup_service.core.errors import ConflictError, NotFoundError, ValidationError
from dedup_service.core.ports import PatientDirectory, fingerprint_from_record
from dedup_service.domains.duplicates.models.duplicates import PatientFingerprint
from dedup_service.domains.duplicates.scoring.match_keys import build_match_keys
from ..models.patient import PatientRecord, PatientStatus

logger = logging.getLogger(__name__)

# Rank boosts so phone and DOB hits survive the fetch cap next to name overlap
PHONE_RANK_BOOST = 1000
DOB_RANK_BOOST = 500
PHONETIC_RANK_WEIGHT = 10


class PatientRepository(BaseRepository, PatientDirectory):
    """
    Patients as seen by the duplicate engine.

    Each document carries precomputed ``match_keys`` (name trigrams, phonetic
    tokens, phone suffix, DOB) kept in step with its attributes, so retrieval
    only touches indexes.
    """

    def __init__(self, db_manager: DatabaseManager, matching_config: Optional[MatchingConfig] = None):
        super().__init__(db_manager, "patients")
        self.matching_config = matching_config or MatchingConfig()

    def _match_keys(self, patient_id: str, scope_id: str, attributes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        record = PatientRecord(patient_id=patient_id, scope_id=scope_id, attributes=attributes)
        try:
            fingerprint = fingerprint_from_record(record)
        except ValidationError as e:
            # stored without keys; such a patient cannot be matched until fixed
            logger.warning(f"Patient {patient_id} has no match keys: {e.message}")
            return None
        return build_match_keys(fingerprint, self.matching_config.phone_suffix_length)

    def _to_fingerprint(self, doc: Dict[str, Any]) -> Optional[PatientFingerprint]:
        try:
            return fingerprint_from_record(PatientRecord.from_dict(doc))
        except ValidationError as e:
            logger.warning(f"Skipping patient {doc.get('patient_id')}: {e.message}")
            return None

    async def get_patient(self, patient_id: str, session: Any = None) -> Optional[PatientRecord]:
        doc = await self.find_one({"patient_id": patient_id}, session=session)
        return PatientRecord.from_dict(doc) if doc else None

    async def find_by_match_keys(
        self,
        scope_id: str,
        match_keys: Dict[str, Any],
        dob_variants: List[str],
        exclude_id: Optional[str],
        limit: int
    ) -> List[PatientFingerprint]:
        """Index-backed candidate query, strongest shared signals first"""
        trigrams = match_keys.get("name_trigrams") or []
        tokens = match_keys.get("phonetic_tokens") or []
        suffix = match_keys.get("phone_suffix")

        clauses = []
        if trigrams:
            clauses.append({"match_keys.name_trigrams": {"$in": trigrams}})
        if tokens:
            clauses.append({"match_keys.phonetic_tokens": {"$in": tokens}})
        if suffix:
            clauses.append({"match_keys.phone_suffix": suffix})
        if dob_variants:
            clauses.append({"match_keys.dob": {"$in": dob_variants}})
        if not clauses:
            return []

        query: Dict[str, Any] = {
            "scope_id": scope_id,
            "status": PatientStatus.ACTIVE,
            "$or": clauses,
        }
        if exclude_id:
            query["patient_id"] = {"$ne": exclude_id}

        rank = [
            {"$size": {"$setIntersection": [{"$ifNull": ["$match_keys.name_trigrams", []]}, trigrams]}},
            {"$multiply": [
                PHONETIC_RANK_WEIGHT,
                {"$size": {"$setIntersection": [{"$ifNull": ["$match_keys.phonetic_tokens", []]}, tokens]}}
            ]},
        ]
        if suffix:
            rank.append({"$cond": [{"$eq": ["$match_keys.phone_suffix", suffix]}, PHONE_RANK_BOOST, 0]})
        if dob_variants:
            rank.append({"$cond": [{"$in": ["$match_keys.dob", dob_variants]}, DOB_RANK_BOOST, 0]})

        pipeline = [
            {"$match": query},
            {"$addFields": {"_rank": {"$add": rank}}},
            {"$sort": {"_rank": -1, "patient_id": 1}},
            {"$limit": limit},
            {"$project": {"_id": 0, "match_keys": 0, "_rank": 0}},
        ]
        docs = await self.aggregate(pipeline)

        fingerprints = [self._to_fingerprint(doc) for doc in docs]
        return [fp for fp in fingerprints if fp is not None]

    async def list_scope(self, scope_id: str, after_id: Optional[str], limit: int) -> List[PatientFingerprint]:
        query: Dict[str, Any] = {"scope_id": scope_id, "status": PatientStatus.ACTIVE}
        if after_id:
            query["patient_id"] = {"$gt": after_id}

        docs = await self.find_many(
            query,
            projection={"_id": 0, "match_keys": 0},
            sort=[("patient_id", 1)],
            limit=limit
        )
        fingerprints = [self._to_fingerprint(doc) for doc in docs]
        return [fp for fp in fingerprints if fp is not None]

    async def index_patient(self, record: PatientRecord, session: Any = None) -> None:
        """
        Refresh an active patient or insert a new one.

        A merged patient never matches the filter, so the upsert collides with
        the unique patient_id index instead of reviving it.
        """
        try:
            await self.update_one(
                {"patient_id": record.patient_id, "status": PatientStatus.ACTIVE},
                {
                    "$set": {
                        "scope_id": record.scope_id,
                        "attributes": dict(record.attributes),
                        "match_keys": self._match_keys(record.patient_id, record.scope_id, record.attributes),
                    },
                    # status comes from the filter on insert
                    "$setOnInsert": {
                        "merged_into_id": None,
                        "merged_at": None,
                    },
                },
                upsert=True,
                session=session
            )
        except DuplicateKeyError:
            raise ConflictError(
                f"Patient {record.patient_id} is not active",
                {"patient_id": record.patient_id}
            )

    async def update_attributes(self, patient_id: str, attributes: Dict[str, Any], session: Any = None) -> None:
        current = await self.get_patient(patient_id, session=session)
        if current is None:
            raise NotFoundError(f"Patient not found: {patient_id}", {"patient_id": patient_id})

        await self.update_one(
            {"patient_id": patient_id},
            {"$set": {
                "attributes": attributes,
                "match_keys": self._match_keys(patient_id, current.scope_id, attributes),
            }},
            session=session
        )

    async def mark_merged(self, absorbed_id: str, survivor_id: str, merged_at: datetime, session: Any = None) -> None:
        updated = await self.update_one(
            {"patient_id": absorbed_id, "status": PatientStatus.ACTIVE},
            {"$set": {
                "status": PatientStatus.MERGED,
                "merged_into_id": survivor_id,
                "merged_at": merged_at,
            }},
            session=session
        )
        if not updated:
            raise ConflictError(f"Patient {absorbed_id} is not active", {"patient_id": absorbed_id})

    async def restore(self, record: PatientRecord, session: Any = None) -> None:
        await self.update_one(
            {"patient_id": record.patient_id},
            {"$set": {
                "attributes": record.attributes,
                "status": record.status,
                "merged_into_id": record.merged_into_id,
                "merged_at": record.merged_at,
                "match_keys": self._match_keys(record.patient_id, record.scope_id, record.attributes),
            }},
            session=session
        )
