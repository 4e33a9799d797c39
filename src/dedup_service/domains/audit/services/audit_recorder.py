"""
Audit recorder: builds audit entries and appends them to the audit store
"""

from typing import Dict, List, Any, Optional
import logging

from dedup_service.core.ports import AuditStore
from ..models.audit import AuditEntry, AuditOperation

logger = logging.getLogger(__name__)


class AuditRecorder:
    """
    Thin writer over the append-only audit store.

    Entries are never updated; a correction is a new entry.
    """

    def __init__(self, store: AuditStore):
        self.store = store

    async def record(self, entry: AuditEntry, session: Any = None) -> AuditEntry:
        await self.store.append(entry, session=session)
        logger.debug(f"Audit {entry.operation.value} by {entry.actor}: {entry.subject_ids}")
        return entry

    async def record_detection(
        self,
        actor: str,
        scope_id: str,
        subject_id: Optional[str],
        candidate_ids: List[str],
        details: Optional[Dict[str, Any]] = None
    ) -> AuditEntry:
        subjects = [subject_id] if subject_id else []
        entry = AuditEntry(
            operation=AuditOperation.DETECT,
            actor=actor,
            scope_id=scope_id,
            subject_ids=subjects + list(candidate_ids),
            after={"candidate_ids": list(candidate_ids)},
            details=details or {},
        )
        return await self.record(entry)

    async def record_resolution(
        self,
        actor: str,
        scope_id: str,
        candidate_id: str,
        before: Dict[str, Any],
        after: Dict[str, Any],
        details: Optional[Dict[str, Any]] = None,
        session: Any = None
    ) -> AuditEntry:
        entry = AuditEntry(
            operation=AuditOperation.RESOLVE,
            actor=actor,
            scope_id=scope_id,
            subject_ids=[candidate_id],
            before=before,
            after=after,
            details=details or {},
        )
        return await self.record(entry, session=session)

    async def record_merge(
        self,
        actor: str,
        scope_id: str,
        subject_ids: List[str],
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
        details: Dict[str, Any],
        session: Any = None
    ) -> AuditEntry:
        entry = AuditEntry(
            operation=AuditOperation.MERGE,
            actor=actor,
            scope_id=scope_id,
            subject_ids=subject_ids,
            before=before,
            after=after,
            details=details,
        )
        return await self.record(entry, session=session)

    async def history(self, subject_id: str, limit: int = 100) -> List[AuditEntry]:
        return await self.store.find(subject_id=subject_id, limit=limit)
