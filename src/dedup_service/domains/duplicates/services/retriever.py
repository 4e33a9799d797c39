"""
Candidate retrieval: bounded, recall-oriented prefilter ahead of full scoring
"""

from typing import List, Optional
import logging

from dedup_service.core.config import MatchingConfig
from dedup_service.core.ports import PatientDirectory
from ..models.duplicates import PatientFingerprint
from ..scoring.match_keys import PrefilterSignals, build_match_keys, dob_variants

logger = logging.getLogger(__name__)


class CandidateRetriever:
    """
    Pulls patients sharing a match key with the target from the directory
    indexes, keeps those that clear the prefilter and returns the strongest
    ``candidate_limit`` of them.
    """

    def __init__(self, directory: PatientDirectory, config: Optional[MatchingConfig] = None):
        self.directory = directory
        self.config = config or MatchingConfig()

    async def retrieve(self, target: PatientFingerprint) -> List[PatientFingerprint]:
        cfg = self.config
        keys = build_match_keys(target, cfg.phone_suffix_length)

        rows = await self.directory.find_by_match_keys(
            scope_id=target.scope_id,
            match_keys=keys,
            dob_variants=dob_variants(target.date_of_birth),
            exclude_id=target.patient_id,
            limit=cfg.retrieval_fetch_limit,
        )

        ranked = []
        for other in rows:
            if other.scope_id != target.scope_id:
                continue
            if target.patient_id and other.patient_id == target.patient_id:
                continue
            signals = PrefilterSignals(target, other, cfg.phone_suffix_length)
            if signals.passes(cfg.prefilter_name_bar):
                ranked.append((signals.strength, other.patient_id or "", other))

        # ties broken by id so the cap is deterministic
        ranked.sort(key=lambda item: (-item[0], item[1]))
        candidates = [other for _, _, other in ranked[:cfg.candidate_limit]]

        logger.debug(
            f"Retrieved {len(candidates)} of {len(rows)} indexed rows for "
            f"{target.patient_id or 'new patient'} in scope {target.scope_id}"
        )
        return candidates
